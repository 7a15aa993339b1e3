"""Unit graph construction.

Expands requested target names through the target hierarchy, creates one
execution unit per (action, node) the targets select, pulls in the units
they transitively depend on, and wires dependency edges. Every problem
(malformed or unknown target, dependency on an unregistered type, cycle)
raises ValidationError here, before anything runs.
"""

import logging
from collections import deque
from typing import Iterable, Optional

from actions.ids import TargetId
from errors import ValidationError
from scheduler.state import ExecutionUnit

logger = logging.getLogger(__name__)

# Grouping targets and what they stand for. Expanded transitively.
TARGET_HIERARCHY: dict[str, list[str]] = {
    'up': ['init', 'setup', 'start'],
    'setup': ['ubuntuSetup', 'daemonSetup'],
    'start': ['daemonStart'],
    'status': ['daemonStatus', 'taskStatus'],
    'down': ['saveLogs', 'stop', 'destroy'],
    'stop': ['daemonStop'],
    'destroyNodes': ['destroy'],
}


def expand_targets(
    names: Iterable[str],
    known_types: Iterable[str],
    hierarchy: Optional[dict[str, list[str]]] = None,
) -> list[TargetId]:
    """Expand target names into TargetIds, deduplicated, in first-seen order.

    Args:
        names: Requested target names ('up', 'daemonStart', 'daemonStart:kafka')
        known_types: Registered action types
        hierarchy: Grouping table (default TARGET_HIERARCHY)

    Raises:
        ValidationError: On malformed names or types nothing registers
    """
    hierarchy = TARGET_HIERARCHY if hierarchy is None else hierarchy
    known = set(known_types)
    result: list[TargetId] = []
    seen_groups: set[str] = set()
    seen_targets: set[TargetId] = set()

    def visit(name: str) -> None:
        if name in hierarchy:
            if name in seen_groups:
                return
            seen_groups.add(name)
            for child in hierarchy[name]:
                visit(child)
            return
        target = TargetId.parse(name)
        if target.type not in known:
            raise ValidationError(
                f"Unknown target '{name}'. Valid targets: {sorted(set(hierarchy) | known)}"
            )
        if target not in seen_targets:
            seen_targets.add(target)
            result.append(target)

    for name in names:
        visit(name)
    return result


class UnitGraph:
    """Execution units and their dependency edges for one run.

    Attributes:
        units: Units in materialization order (requested first, then dependencies)
    """

    def __init__(self, targets: list[TargetId], actions: list, nodes: list, known_types: Iterable[str]):
        """Build the graph.

        Args:
            targets: Expanded requested targets
            actions: Registered actions for this run
            nodes: Cluster nodes
            known_types: Registered action types

        Raises:
            ValidationError: On unregistered dependency types or cycles
        """
        self.actions = list(actions)
        self.nodes = list(nodes)
        self.known_types = frozenset(known_types) | {a.id.type for a in self.actions}
        self._units: dict[tuple, ExecutionUnit] = {}
        self._check_actions()
        self._build(targets)
        self.check_acyclic()

    @property
    def units(self) -> list[ExecutionUnit]:
        return list(self._units.values())

    def get_unit(self, key: str) -> ExecutionUnit:
        """Get a unit by its 'type:scope@node' key.

        Raises:
            KeyError: If no such unit was scheduled
        """
        for unit in self._units.values():
            if unit.key == key:
                return unit
        raise KeyError(key)

    def _check_actions(self) -> None:
        seen = set()
        for action in self.actions:
            if action.id in seen:
                raise ValidationError(f"Duplicate action id {action.id}")
            seen.add(action.id)
            for target in tuple(action.dependencies) + tuple(action.local_dependencies):
                if target.type not in self.known_types:
                    raise ValidationError(
                        f"Action {action.id} depends on unregistered action type '{target.type}'"
                    )

    def _matching(self, target: TargetId) -> list:
        return [a for a in self.actions if target.matches(a.id)]

    def _unit(self, action, node) -> tuple[ExecutionUnit, bool]:
        key = (action.id, node.name)
        unit = self._units.get(key)
        if unit is not None:
            return unit, False
        unit = ExecutionUnit(action=action, node=node)
        self._units[key] = unit
        return unit, True

    def _build(self, targets: list[TargetId]) -> None:
        queue: deque[ExecutionUnit] = deque()
        for target in targets:
            matched = self._matching(target)
            if not matched:
                logger.debug(f"Target {target} matches no registered action")
            for action in matched:
                for node in self.nodes:
                    if action.applies_to(node):
                        unit, created = self._unit(action, node)
                        if created:
                            queue.append(unit)

        # Pull in dependencies transitively and wire edges
        while queue:
            unit = queue.popleft()
            for dep in self._dependency_pairs(unit):
                dep_unit, created = self._unit(*dep)
                if created:
                    queue.append(dep_unit)
                if dep_unit is unit:
                    raise ValidationError(f"Unit {unit.key} depends on itself")
                if dep_unit not in unit.dependencies:
                    unit.dependencies.append(dep_unit)
                    dep_unit.dependents.append(unit)

    def _dependency_pairs(self, unit: ExecutionUnit) -> list[tuple]:
        pairs = []
        for target in unit.action.dependencies:
            for action in self._matching(target):
                pairs.extend((action, n) for n in self.nodes if action.applies_to(n))
        for target in unit.action.local_dependencies:
            for action in self._matching(target):
                if action.applies_to(unit.node):
                    pairs.append((action, unit.node))
        return pairs

    def topological_order(self) -> list[ExecutionUnit]:
        """Units ordered so every unit follows its dependencies.

        Raises:
            ValidationError: If the graph has a cycle
        """
        indeg = {id(u): len(u.dependencies) for u in self._units.values()}
        queue: deque[ExecutionUnit] = deque(u for u in self._units.values() if not u.dependencies)
        ordered: list[ExecutionUnit] = []
        while queue:
            unit = queue.popleft()
            ordered.append(unit)
            for dependent in unit.dependents:
                indeg[id(dependent)] -= 1
                if indeg[id(dependent)] == 0:
                    queue.append(dependent)

        if len(ordered) != len(self._units):
            stuck = sorted(u.key for u in self._units.values() if indeg[id(u)] > 0)
            raise ValidationError(f"Action dependency graph has a cycle. Stuck units: {stuck}")
        return ordered

    def check_acyclic(self) -> None:
        self.topological_order()
