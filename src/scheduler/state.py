"""Execution unit state and the aggregate scheduler result.

A unit is one (action, node) pairing. Its status only moves forward:
pending -> eligible -> running -> succeeded | failed, or straight to
failed (dependency failed) or cancelled (run stopped before it started).
Each unit's outcome is written once, by whoever terminates it.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Optional

PENDING = 'pending'
ELIGIBLE = 'eligible'
RUNNING = 'running'
SUCCEEDED = 'succeeded'
FAILED = 'failed'
CANCELLED = 'cancelled'

TERMINAL = frozenset({SUCCEEDED, FAILED, CANCELLED})


@dataclass(eq=False)
class ExecutionUnit:
    """One (action, node) pairing in the dependency graph.

    Attributes:
        action: The Action to run
        node: The Node to run it on
        dependencies: Units that must succeed first
        dependents: Units waiting on this one
        status: Current lifecycle status
        error: Exception recorded on failure or cancellation
    """
    action: Any
    node: Any
    dependencies: list['ExecutionUnit'] = field(default_factory=list)
    dependents: list['ExecutionUnit'] = field(default_factory=list)
    status: str = PENDING
    error: Optional[BaseException] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def key(self) -> str:
        return f'{self.action.id}@{self.node.name}'

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def start(self) -> None:
        self.status = RUNNING
        self.started_at = time.time()

    def succeed(self) -> None:
        self.status = SUCCEEDED
        self.completed_at = time.time()

    def fail(self, error: BaseException) -> None:
        self.status = FAILED
        self.error = error
        self.completed_at = time.time()

    def cancel(self, error: BaseException) -> None:
        self.status = CANCELLED
        self.error = error
        self.completed_at = time.time()

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'unit': self.key,
            'action': str(self.action.id),
            'node': self.node.name,
            'status': self.status,
        }
        if self.duration is not None:
            d['duration'] = round(self.duration, 3)
        if self.error is not None:
            d['error'] = str(self.error)
        return d

    def __repr__(self) -> str:
        return f"ExecutionUnit({self.key}, status={self.status})"


@dataclass
class SchedulerResult:
    """Outcome of every unit in a run.

    Attributes:
        units: All units, in construction order
    """
    units: list[ExecutionUnit] = field(default_factory=list)

    @property
    def succeeded(self) -> list[str]:
        return [u.key for u in self.units if u.status == SUCCEEDED]

    @property
    def failures(self) -> dict[str, BaseException]:
        """unit key -> exception, for every unit that did not succeed."""
        return {u.key: u.error for u in self.units if u.status in (FAILED, CANCELLED)}

    @property
    def success(self) -> bool:
        return all(u.status == SUCCEEDED for u in self.units)

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'units': [u.to_dict() for u in self.units],
        }
