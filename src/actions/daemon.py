"""Daemon role actions: setup, start, status, stop, and log collection.

Every command comes from the role settings (with the node's patch applied)
and may reference dynamic variables as %{name}. Commands run through
'sh -c' on the node so the role can use shell syntax.
"""

import logging
from dataclasses import dataclass
from pathlib import PurePosixPath

from actions.base import Action, run_checked
from errors import UnitCancelledError

logger = logging.getLogger(__name__)


def _run_role_command(cluster, node, command: str) -> None:
    expanded = cluster.expand(command, node)
    run_checked(node, ['sh', '-c', expanded])


@dataclass
class _RoleCommandAction(Action):
    """Runs one optional role command; no command configured means nothing to do."""
    command_attr = ''
    label = ''

    def run(self, cluster, node, shutdown=None) -> None:
        role = self.role.for_node(cluster, node)
        command = getattr(role, self.command_attr)
        if not command:
            node.log.info(f"*** {node.name}: No {self.label} command for role {self.scope}.")
            return
        node.log.info(f"*** {node.name}: Running {self.label} for role {self.scope}...")
        _run_role_command(cluster, node, command)
        node.log.info(f"*** {node.name}: Finished {self.label} for role {self.scope}.")


@dataclass
class DaemonSetupAction(Action):
    """Run the role's setup commands in order."""
    type_name = 'daemonSetup'

    def run(self, cluster, node, shutdown=None) -> None:
        role = self.role.for_node(cluster, node)
        node.log.info(f"*** {node.name}: Setting up {self.scope} ({len(role.setup_commands)} commands)")
        for command in role.setup_commands:
            if shutdown is not None and shutdown.is_set:
                raise UnitCancelledError(f"{self.id}@{node.name}", shutdown.reason or 'shutdown requested')
            _run_role_command(cluster, node, command)


@dataclass
class DaemonStartAction(_RoleCommandAction):
    type_name = 'daemonStart'
    command_attr = 'start_command'
    label = 'start'


@dataclass
class DaemonStatusAction(_RoleCommandAction):
    type_name = 'daemonStatus'
    command_attr = 'status_command'
    label = 'status'


@dataclass
class TaskStatusAction(_RoleCommandAction):
    type_name = 'taskStatus'
    command_attr = 'task_status_command'
    label = 'task status'


@dataclass
class DaemonStopAction(_RoleCommandAction):
    type_name = 'daemonStop'
    command_attr = 'stop_command'
    label = 'stop'


@dataclass
class SaveLogsAction(Action):
    """Copy the role's log files into <working dir>/logs/<node>/.

    A log file that cannot be fetched is noted in the node log; it does
    not fail the unit.
    """
    type_name = 'saveLogs'

    def run(self, cluster, node, shutdown=None) -> None:
        role = self.role.for_node(cluster, node)
        dest_dir = cluster.logs_dir / node.name
        dest_dir.mkdir(parents=True, exist_ok=True)
        for log_path in role.log_paths:
            remote = cluster.expand(log_path, node)
            dest = dest_dir / f'{self.scope}-{PurePosixPath(remote).name}'
            rc = node.channel.fetch(remote, dest)
            if rc == 0:
                node.log.info(f"*** {node.name}: Saved {remote} to {dest}")
            else:
                node.log.info(f"*** {node.name}: Unable to fetch {remote} (exit status {rc})")
