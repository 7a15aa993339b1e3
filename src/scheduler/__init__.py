"""Dependency-ordered, bounded-parallel execution of cluster actions."""

from scheduler.executor import ActionScheduler
from scheduler.graph import TARGET_HIERARCHY, UnitGraph, expand_targets
from scheduler.shutdown import ReturnCode, ShutdownManager, ShutdownToken
from scheduler.state import ExecutionUnit, SchedulerResult

__all__ = [
    'ActionScheduler',
    'ExecutionUnit',
    'ReturnCode',
    'SchedulerResult',
    'ShutdownManager',
    'ShutdownToken',
    'TARGET_HIERARCHY',
    'UnitGraph',
    'expand_targets',
]
