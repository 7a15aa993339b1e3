"""Action scheduler.

Runs the unit graph with bounded parallelism. Dispatching happens in the
thread that calls wait(); units execute on a thread pool sized to
max_concurrent. A unit is dispatched once all of its dependencies have
succeeded and no other unit is running on its node, so each node's
channel is only ever used by one unit at a time.

When a unit fails, every unit that transitively depends on it is failed
with DependencyFailedError without running. When the shutdown token fires
or the wait times out, nothing new is dispatched and units that have not
started are cancelled. After a shutdown running units are left to finish;
after a timeout they are abandoned.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional

from actions import registered_types
from errors import (
    CastleError,
    DependencyFailedError,
    SchedulerTimeoutError,
    UnitCancelledError,
)
from scheduler.graph import UnitGraph, expand_targets
from scheduler.shutdown import ShutdownToken
from scheduler.state import ELIGIBLE, PENDING, ExecutionUnit, SchedulerResult

logger = logging.getLogger(__name__)


class ActionScheduler:
    """Builds the unit graph for the requested targets and executes it.

    Use as a context manager so the worker pool is released on every path:

        with ActionScheduler(['up'], actions, cluster, 6) as scheduler:
            result = scheduler.wait(timeout)
    """

    def __init__(
        self,
        targets: Iterable[str],
        actions: list,
        cluster,
        max_concurrent: int,
        shutdown: Optional[ShutdownToken] = None,
        known_types: Optional[Iterable[str]] = None,
        hierarchy: Optional[dict[str, list[str]]] = None,
    ):
        """Validate the requested targets and build the unit graph.

        Args:
            targets: Requested target names
            actions: Actions registered for this run
            cluster: Cluster whose nodes the actions run on
            max_concurrent: Maximum units running at once, cluster-wide
            shutdown: Cancellation token (a private one if None)
            known_types: Registered action types (default: the action factory table)
            hierarchy: Target grouping table (default: TARGET_HIERARCHY)

        Raises:
            ValueError: If max_concurrent < 1
            ValidationError: On bad targets, unresolved dependencies, or cycles
        """
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be > 0, got {max_concurrent}")
        self.cluster = cluster
        self.max_concurrent = max_concurrent
        self.shutdown = shutdown or ShutdownToken()
        self.targets = list(targets)

        types = set(registered_types() if known_types is None else known_types)
        types.update(a.id.type for a in actions)
        expanded = expand_targets(self.targets, types, hierarchy)
        self.graph = UnitGraph(expanded, actions, list(cluster.nodes.values()), types)

        self._cond = threading.Condition()
        self._node_locks = {name: threading.Lock() for name in cluster.nodes}
        self._busy_nodes: set[str] = set()
        self._running: set[ExecutionUnit] = set()
        self._remaining: dict[ExecutionUnit, int] = {}
        self._eligible: deque[ExecutionUnit] = deque()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._stop_reason: Optional[str] = None
        self._timed_out = False
        self._closed = False

        logger.info(
            f"Scheduled {len(self.graph.units)} units for targets {' '.join(self.targets)} "
            f"(max concurrent: {max_concurrent})"
        )

    @property
    def units(self) -> list[ExecutionUnit]:
        return self.graph.units

    @property
    def result(self) -> SchedulerResult:
        return SchedulerResult(units=self.graph.units)

    def _start(self) -> None:
        if self._pool is not None:
            return
        self._pool = ThreadPoolExecutor(max_workers=self.max_concurrent, thread_name_prefix='castle-action')
        for unit in self.graph.units:
            self._remaining[unit] = len(unit.dependencies)
            if not unit.dependencies:
                unit.status = ELIGIBLE
                self._eligible.append(unit)

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def wait(self, timeout: Optional[float] = None) -> SchedulerResult:
        """Run every unit and block until all are terminal.

        Args:
            timeout: Seconds to wait (None: no limit)

        Returns:
            SchedulerResult; check .success and .failures

        Raises:
            SchedulerTimeoutError: If the timeout elapses first
        """
        if self._closed:
            raise RuntimeError("ActionScheduler is closed")
        deadline = None if timeout is None else time.monotonic() + timeout
        self.shutdown.add_callback(self._wake)
        try:
            with self._cond:
                self._start()
                while True:
                    if self.shutdown.is_set and self._stop_reason is None:
                        self._stop(self.shutdown.reason or 'shutdown requested')
                    if self._finished():
                        break
                    # Deadline is checked before dispatching so nothing starts late
                    remaining = None
                    if deadline is not None:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            self._time_out(timeout)
                    if self._stop_reason is None:
                        self._dispatch()
                        if self._finished():
                            break
                    self._cond.wait(remaining)
        finally:
            self.shutdown.remove_callback(self._wake)

        result = self.result
        self._log_summary(result)
        return result

    def _all_terminal(self) -> bool:
        return all(u.is_terminal for u in self.graph.units)

    def _finished(self) -> bool:
        return not self._running and (self._stop_reason is not None or self._all_terminal())

    def _time_out(self, timeout: float) -> None:
        """Stop dispatching, fire the shutdown token, and raise. Caller holds _cond."""
        reason = f'timed out after {timeout}s'
        self._stop(reason)
        self._timed_out = True
        self.shutdown.fire(reason)
        logger.error(f"Actions did not complete within {timeout}s; "
                     f"abandoning {len(self._running)} running units")
        raise SchedulerTimeoutError(timeout, self.result)

    def _dispatch(self) -> None:
        """Start eligible units while slots are free. Caller holds _cond."""
        while len(self._running) < self.max_concurrent:
            unit = next((u for u in self._eligible if u.node.name not in self._busy_nodes), None)
            if unit is None:
                return
            self._eligible.remove(unit)
            self._busy_nodes.add(unit.node.name)
            self._running.add(unit)
            unit.start()
            self._pool.submit(self._execute, unit)

    def _execute(self, unit: ExecutionUnit) -> None:
        error: Optional[BaseException] = None
        with self._node_locks[unit.node.name]:
            logger.info(f"Running {unit.key}")
            try:
                unit.action.run(self.cluster, unit.node, self.shutdown)
            except CastleError as e:
                logger.error(f"{unit.key} failed: {e}")
                error = e
            except Exception as e:
                logger.exception(f"{unit.key} raised an unexpected exception")
                error = e
        self._complete(unit, error)

    def _complete(self, unit: ExecutionUnit, error: Optional[BaseException]) -> None:
        with self._cond:
            self._running.discard(unit)
            self._busy_nodes.discard(unit.node.name)
            if error is None:
                unit.succeed()
                logger.info(f"Finished {unit.key} in {unit.duration or 0:.1f}s")
                for dependent in unit.dependents:
                    if dependent.status != PENDING:
                        continue
                    self._remaining[dependent] -= 1
                    if self._remaining[dependent] == 0:
                        dependent.status = ELIGIBLE
                        self._eligible.append(dependent)
            else:
                unit.fail(error)
                self._fail_dependents(unit)
            self._cond.notify_all()

    def _fail_dependents(self, failed: ExecutionUnit) -> None:
        queue: deque[ExecutionUnit] = deque([failed])
        while queue:
            current = queue.popleft()
            for dependent in current.dependents:
                if dependent.is_terminal:
                    continue
                dependent.fail(DependencyFailedError(dependent.key, current.key))
                logger.warning(f"Not running {dependent.key}: dependency {current.key} failed")
                queue.append(dependent)

    def _stop(self, reason: str) -> None:
        """Stop dispatching and cancel units that have not started. Caller holds _cond."""
        self._stop_reason = reason
        self._eligible.clear()
        cancelled = 0
        for unit in self.graph.units:
            if unit.status in (PENDING, ELIGIBLE):
                unit.cancel(UnitCancelledError(unit.key, reason))
                cancelled += 1
        if cancelled:
            logger.warning(f"Stopping ({reason}): cancelled {cancelled} units that had not started")

    def _log_summary(self, result: SchedulerResult) -> None:
        failures = result.failures
        logger.info(f"{len(result.succeeded)} of {len(result.units)} units succeeded")
        for key, error in failures.items():
            logger.error(f"  {key}: {error}")

    def close(self) -> None:
        """Release the worker pool. Safe to call more than once.

        Running units are waited for, except after a timeout: then they are
        abandoned (their commands are bounded by the channel timeout).
        """
        if self._closed:
            return
        self._closed = True
        if self._pool is not None:
            self._pool.shutdown(wait=not self._timed_out, cancel_futures=True)
            self._pool = None

    def __enter__(self) -> 'ActionScheduler':
        return self

    def __exit__(self, *exc) -> None:
        self.close()
