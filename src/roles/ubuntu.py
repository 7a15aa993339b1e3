"""Ubuntu host role."""

from dataclasses import dataclass, field
from typing import Optional

from actions.base import DEFAULT_RETRY_INTERVAL, NodeSelector
from actions.ids import TargetId
from actions.ubuntu import UbuntuSetupAction
from config import ConfigError
from roles import Role, get_setting, register_role

DEFAULT_JDK_PACKAGE = 'openjdk-8-jdk-headless'


@register_role
@dataclass
class UbuntuRole(Role):
    """Installs system packages on Ubuntu nodes.

    Settings:
        jdkPackage: JDK package to install
        packages: Extra packages
        retryIntervalMs: Wait between attempts while apt is busy (default 200)
        maxAttempts: Give up after this many attempts (default: never)
    """
    type_name = 'ubuntu'

    name: str
    jdk_package: str = DEFAULT_JDK_PACKAGE
    packages: list[str] = field(default_factory=list)
    retry_interval: float = DEFAULT_RETRY_INTERVAL
    max_attempts: Optional[int] = None

    @classmethod
    def from_config(cls, name: str, config: dict) -> 'UbuntuRole':
        interval_ms = get_setting(config, 'retryIntervalMs', int(DEFAULT_RETRY_INTERVAL * 1000), int)
        max_attempts = get_setting(config, 'maxAttempts', None, int)
        if interval_ms < 0:
            raise ConfigError(f"Role '{name}': retryIntervalMs must be >= 0")
        if max_attempts is not None and max_attempts < 1:
            raise ConfigError(f"Role '{name}': maxAttempts must be >= 1")
        return cls(
            name=name,
            jdk_package=get_setting(config, 'jdkPackage', DEFAULT_JDK_PACKAGE, str),
            packages=list(get_setting(config, 'packages', [], list)),
            retry_interval=interval_ms / 1000.0,
            max_attempts=max_attempts,
        )

    def create_actions(self) -> list:
        return [
            UbuntuSetupAction(
                scope=self.name,
                selector=NodeSelector(role=self.name),
                local_dependencies=(TargetId('init'),),
                role=self,
            ),
        ]
