"""Node lifecycle actions: init and destroy.

Both apply to every node in the cluster under the 'cluster' scope. Node
allocation itself happens outside this tool; init prepares the node's
scratch directory (and so verifies its channel works), destroy removes it.
"""

import logging
from dataclasses import dataclass

from actions.base import ALL_NODES, Action, run_checked
from actions.ids import TargetId

logger = logging.getLogger(__name__)

CLUSTER_SCOPE = 'cluster'


@dataclass
class InitAction(Action):
    """Create the remote scratch directory on a node."""
    type_name = 'init'

    def run(self, cluster, node, shutdown=None) -> None:
        node.log.info(f"*** {node.name}: Initializing {cluster.conf.remote_dir}")
        run_checked(node, ['mkdir', '-p', cluster.conf.remote_dir])


@dataclass
class DestroyAction(Action):
    """Remove the remote scratch directory from a node."""
    type_name = 'destroy'

    def run(self, cluster, node, shutdown=None) -> None:
        node.log.info(f"*** {node.name}: Removing {cluster.conf.remote_dir}")
        run_checked(node, ['rm', '-rf', cluster.conf.remote_dir])


def create_lifecycle_actions() -> list[Action]:
    """The cluster-scoped init and destroy actions."""
    return [
        InitAction(scope=CLUSTER_SCOPE, selector=ALL_NODES),
        DestroyAction(
            scope=CLUSTER_SCOPE,
            selector=ALL_NODES,
            local_dependencies=(TargetId('saveLogs'), TargetId('daemonStop')),
        ),
    ]
