"""Generic daemon role (brokers, zookeeper, agents, ...)."""

from dataclasses import dataclass, field
from typing import Optional

from actions.base import NodeSelector
from actions.daemon import (
    DaemonSetupAction,
    DaemonStartAction,
    DaemonStatusAction,
    DaemonStopAction,
    SaveLogsAction,
    TaskStatusAction,
)
from actions.ids import TargetId
from config import ConfigError
from roles import Role, get_setting, register_role
from roles.variables import ROLE_PRIORITY, DynamicVariableProvider


@register_role
@dataclass
class DaemonRole(Role):
    """A process started and stopped with shell commands.

    Settings (all commands may use %{variables}):
        setupCommands: Commands run in order by daemonSetup
        startCommand / stopCommand / statusCommand: Daemon control
        taskStatusCommand: Reports the state of tasks running on the daemon
        logPaths: Remote files collected by saveLogs
        port: Service port, enables the %{<role>Connect} variable
        startAfter: Roles whose daemons must be started first (on all nodes)
        stopAfter: Roles whose daemons must be stopped first (on all nodes)

    Provides %{<role>Nodes}: comma-separated hosts running this role.
    """
    type_name = 'daemon'

    name: str
    setup_commands: list[str] = field(default_factory=list)
    start_command: Optional[str] = None
    stop_command: Optional[str] = None
    status_command: Optional[str] = None
    task_status_command: Optional[str] = None
    log_paths: list[str] = field(default_factory=list)
    port: Optional[int] = None
    start_after: list[str] = field(default_factory=list)
    stop_after: list[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, name: str, config: dict) -> 'DaemonRole':
        return cls(
            name=name,
            setup_commands=list(get_setting(config, 'setupCommands', [], list)),
            start_command=get_setting(config, 'startCommand', None, str),
            stop_command=get_setting(config, 'stopCommand', None, str),
            status_command=get_setting(config, 'statusCommand', None, str),
            task_status_command=get_setting(config, 'taskStatusCommand', None, str),
            log_paths=list(get_setting(config, 'logPaths', [], list)),
            port=get_setting(config, 'port', None, int),
            start_after=list(get_setting(config, 'startAfter', [], list)),
            stop_after=list(get_setting(config, 'stopAfter', [], list)),
        )

    def validate(self, roles: dict[str, Role]) -> None:
        for key, names in (('startAfter', self.start_after), ('stopAfter', self.stop_after)):
            for other in names:
                if not isinstance(roles.get(other), DaemonRole):
                    raise ConfigError(f"Role '{self.name}': {key} names '{other}', which is not a daemon role")

    def create_actions(self) -> list:
        selector = NodeSelector(role=self.name)
        actions = [
            DaemonSetupAction(
                scope=self.name, selector=selector, role=self,
                local_dependencies=(TargetId('init'), TargetId('ubuntuSetup')),
            ),
            DaemonStartAction(
                scope=self.name, selector=selector, role=self,
                dependencies=tuple(TargetId('daemonStart', r) for r in self.start_after),
                local_dependencies=(TargetId('daemonSetup', self.name),),
            ),
            DaemonStatusAction(scope=self.name, selector=selector, role=self),
            DaemonStopAction(
                scope=self.name, selector=selector, role=self,
                dependencies=tuple(TargetId('daemonStop', r) for r in self.stop_after),
            ),
            SaveLogsAction(
                scope=self.name, selector=selector, role=self,
                local_dependencies=(TargetId('daemonStop', self.name),),
            ),
        ]
        if self.task_status_command:
            actions.append(TaskStatusAction(scope=self.name, selector=selector, role=self))
        return actions

    def variable_providers(self) -> list:
        role_name = self.name

        def hosts(cluster, node) -> str:
            return ','.join(n.address for n in cluster.nodes_with_role(role_name))

        providers = [DynamicVariableProvider(f'{role_name}Nodes', ROLE_PRIORITY, hosts)]
        if self.port is not None:
            port = self.port

            def connect(cluster, node) -> str:
                return ','.join(f'{n.address}:{port}' for n in cluster.nodes_with_role(role_name))

            providers.append(DynamicVariableProvider(f'{role_name}Connect', ROLE_PRIORITY, connect))
        return providers
