"""Cluster and node runtime objects.

A Cluster is built once per run from a ClusterSpec. It owns the nodes, their
execution channels and per-node log files, the roles instantiated from the
spec, and the dynamic-variable registry. Close it (or use it as a context
manager) to release channels and log files whatever the run outcome.
"""

import logging
from pathlib import Path
from typing import Callable, Optional, Protocol, runtime_checkable

from common import DEFAULT_COMMAND_TIMEOUT, copy_from_host, join_args, run_command, run_ssh
from config import ClusterConf, ClusterSpec, NodeSpec
from roles import Role, create_roles
from roles.variables import DynamicVariableRegistry, register_builtin_providers

logger = logging.getLogger(__name__)

LOCAL_HOSTS = {None, '', 'localhost', '127.0.0.1'}


@runtime_checkable
class NodeChannel(Protocol):
    """Execution channel to one node.

    run() returns the exit status and never raises for a nonzero exit;
    interpreting the status is the caller's job.
    """

    def run(self, args: list[str]) -> int:
        """Run an argument list on the node."""

    def fetch(self, remote_path: str, local_path: Path) -> int:
        """Copy a file from the node."""

    def close(self) -> None:
        """Release the channel."""


def _log_output(log: logging.Logger, out: str, err: str) -> None:
    for line in out.splitlines():
        log.info(line)
    for line in err.splitlines():
        log.info(f"[stderr] {line}")


class LocalChannel:
    """Runs commands on the local machine through sh."""

    def __init__(self, log: logging.Logger, timeout: int = DEFAULT_COMMAND_TIMEOUT):
        self.log = log
        self.timeout = timeout

    def run(self, args: list[str]) -> int:
        self.log.debug(f"+ {' '.join(args)}")
        rc, out, err = run_command(['sh', '-c', join_args(args)], timeout=self.timeout)
        _log_output(self.log, out, err)
        return rc

    def fetch(self, remote_path: str, local_path: Path) -> int:
        rc, _, err = run_command(['cp', remote_path, str(local_path)], timeout=self.timeout)
        if rc != 0:
            self.log.info(f"[stderr] {err.strip()}")
        return rc

    def close(self) -> None:
        pass


class SSHChannel:
    """Runs commands on a remote host over ssh."""

    def __init__(self, host: str, log: logging.Logger, user: Optional[str] = None,
                 identity_file: Optional[str] = None, timeout: int = DEFAULT_COMMAND_TIMEOUT):
        self.host = host
        self.user = user
        self.identity_file = identity_file
        self.log = log
        self.timeout = timeout

    def run(self, args: list[str]) -> int:
        self.log.debug(f"+ {' '.join(args)}")
        rc, out, err = run_ssh(self.host, join_args(args), user=self.user,
                               identity_file=self.identity_file, timeout=self.timeout)
        _log_output(self.log, out, err)
        return rc

    def fetch(self, remote_path: str, local_path: Path) -> int:
        rc, _, err = copy_from_host(self.host, remote_path, local_path, user=self.user,
                                    identity_file=self.identity_file, timeout=self.timeout)
        if rc != 0:
            self.log.info(f"[stderr] {err.strip()}")
        return rc

    def close(self) -> None:
        pass


ChannelFactory = Callable[[str, NodeSpec, ClusterConf, logging.Logger], NodeChannel]


def default_channel_factory(name: str, spec: NodeSpec, conf: ClusterConf,
                            log: logging.Logger) -> NodeChannel:
    """Local channel for local hosts, ssh otherwise."""
    if spec.host in LOCAL_HOSTS:
        return LocalChannel(log, timeout=conf.command_timeout)
    return SSHChannel(spec.host, log, user=conf.ssh_user, identity_file=conf.ssh_identity_file,
                      timeout=conf.command_timeout)


class Node:
    """A machine in the cluster.

    Attributes:
        name: Node name from the cluster spec
        host: Address (None for the local machine)
        role_names: Roles this node plays
        channel: Execution channel (serial; the scheduler never shares it)
        log: Per-node logger
    """

    def __init__(self, name: str, spec: NodeSpec, channel: NodeChannel, log: logging.Logger):
        self.name = name
        self.spec = spec
        self.host = spec.host
        self.role_names = list(spec.role_names)
        self.channel = channel
        self.log = log

    def has_role(self, role_name: str) -> bool:
        return role_name in self.role_names

    @property
    def address(self) -> str:
        return self.host or 'localhost'

    def __repr__(self) -> str:
        return f"Node({self.name}, host={self.host}, roles={self.role_names})"


class Cluster:
    """Nodes plus resolved configuration for one run."""

    def __init__(
        self,
        spec: ClusterSpec,
        working_dir: Path,
        channel_factory: Optional[ChannelFactory] = None,
    ):
        self.spec = spec
        self.conf = spec.conf
        self.working_dir = Path(working_dir)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        factory = channel_factory or default_channel_factory

        self.roles: dict[str, Role] = create_roles(spec.roles)
        self.variables = DynamicVariableRegistry()
        register_builtin_providers(self.variables, self.conf.variables)
        for role in self.roles.values():
            for provider in role.variable_providers():
                self.variables.register(provider)

        self._handlers: list[tuple[logging.Logger, logging.Handler]] = []
        self.nodes: dict[str, Node] = {}
        self._closed = False
        try:
            for name in sorted(spec.nodes):
                node_spec = spec.nodes[name]
                log = self._node_logger(name)
                self.nodes[name] = Node(name, node_spec, factory(name, node_spec, self.conf, log), log)
        except Exception:
            # Release the channels and log files opened so far
            self.close()
            raise

    @property
    def logs_dir(self) -> Path:
        return self.working_dir / 'logs'

    def _node_logger(self, name: str) -> logging.Logger:
        log = logging.getLogger(f'castle.node.{name}')
        handler = logging.FileHandler(self.logs_dir / f'{name}.log', encoding='utf-8')
        handler.setFormatter(logging.Formatter('%(asctime)s %(message)s', datefmt='%Y-%m-%d %H:%M:%S'))
        log.addHandler(handler)
        self._handlers.append((log, handler))
        return log

    def role_config(self, node: Node, role_name: str) -> dict:
        """Settings of a role on one node (role definition plus node patch)."""
        return self.spec.node_role_config(node.name, role_name)

    def nodes_with_role(self, role_name: str) -> list[Node]:
        return [n for n in self.nodes.values() if n.has_role(role_name)]

    def expand(self, template: str, node: Node) -> str:
        """Expand %{name} dynamic variables in template for node."""
        return self.variables.expand(template, self, node)

    def close(self) -> None:
        """Release node channels and log files. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        for node in self.nodes.values():
            try:
                node.channel.close()
            except OSError as e:
                logger.warning(f"Error closing channel for {node.name}: {e}")
        for log, handler in self._handlers:
            log.removeHandler(handler)
            handler.close()
        self._handlers.clear()

    def __enter__(self) -> 'Cluster':
        return self

    def __exit__(self, *exc) -> None:
        self.close()
