"""Cluster actions and the action registry.

ACTION_TYPES is the closed set of action variants, keyed by type name.
Dependency references are resolved against it: a TargetId whose type is
not in the table can never be satisfied and fails scheduler construction.
"""

import logging

from actions.base import (
    ALL_NODES,
    Action,
    CommandRetryPolicy,
    NodeSelector,
    run_checked,
    run_command_with_retry,
)
from actions.daemon import (
    DaemonSetupAction,
    DaemonStartAction,
    DaemonStatusAction,
    DaemonStopAction,
    SaveLogsAction,
    TaskStatusAction,
)
from actions.ids import WILDCARD, ActionId, TargetId
from actions.lifecycle import DestroyAction, InitAction, create_lifecycle_actions
from actions.ubuntu import UbuntuSetupAction
from errors import ValidationError

logger = logging.getLogger(__name__)

ACTION_TYPES: dict[str, type[Action]] = {
    cls.type_name: cls
    for cls in (
        InitAction,
        UbuntuSetupAction,
        DaemonSetupAction,
        DaemonStartAction,
        DaemonStatusAction,
        TaskStatusAction,
        DaemonStopAction,
        SaveLogsAction,
        DestroyAction,
    )
}


def registered_types() -> frozenset[str]:
    return frozenset(ACTION_TYPES)


def check_actions(actions: list[Action]) -> dict[ActionId, Action]:
    """Index actions by id.

    Raises:
        ValidationError: On duplicate ActionIds or types outside ACTION_TYPES
    """
    by_id: dict[ActionId, Action] = {}
    for action in actions:
        if action.id.type not in ACTION_TYPES:
            raise ValidationError(f"Action {action.id} has unregistered type '{action.id.type}'")
        if action.id in by_id:
            raise ValidationError(f"Duplicate action id {action.id}")
        by_id[action.id] = action
    return by_id


def build_actions(cluster) -> list[Action]:
    """Create a fresh set of actions for one run: lifecycle plus every role's."""
    actions = create_lifecycle_actions()
    for role in cluster.roles.values():
        actions.extend(role.create_actions())
    check_actions(actions)
    logger.debug(f"Registered {len(actions)} actions: {', '.join(str(a.id) for a in actions)}")
    return actions


__all__ = [
    'ACTION_TYPES',
    'ALL_NODES',
    'Action',
    'ActionId',
    'CommandRetryPolicy',
    'DaemonSetupAction',
    'DaemonStartAction',
    'DaemonStatusAction',
    'DaemonStopAction',
    'DestroyAction',
    'InitAction',
    'NodeSelector',
    'SaveLogsAction',
    'TargetId',
    'TaskStatusAction',
    'UbuntuSetupAction',
    'WILDCARD',
    'build_actions',
    'check_actions',
    'registered_types',
    'run_checked',
    'run_command_with_retry',
]
