"""Role definitions.

A role is what a node does in the cluster (an Ubuntu host, a daemon such as
a broker or zookeeper). Roles are declared in the cluster spec's 'roles'
section by name with a 'type' selecting the role class. Each role
contributes the actions that provision and operate it, scoped by the role
name, plus any dynamic variables it provides.
"""

import logging
from typing import Any

from config import ConfigError

logger = logging.getLogger(__name__)


class Role:
    """Base class for roles.

    Class attributes:
        type_name: Value of 'type' in the cluster spec selecting this class
    """
    type_name: str = ''
    name: str

    @classmethod
    def from_config(cls, name: str, config: dict) -> 'Role':
        """Build the role from its spec settings."""
        raise NotImplementedError

    def for_node(self, cluster, node) -> 'Role':
        """Role settings with the node's patch applied."""
        return type(self).from_config(self.name, cluster.role_config(node, self.name))

    def create_actions(self) -> list:
        """Actions contributed by this role."""
        return []

    def variable_providers(self) -> list:
        """Dynamic-variable providers contributed by this role."""
        return []

    def validate(self, roles: dict[str, 'Role']) -> None:
        """Check references to other roles. Raises ConfigError."""


# Registry of role types
_role_types: dict[str, type[Role]] = {}


def register_role(cls: type[Role]) -> type[Role]:
    """Decorator to register a role class by its type_name."""
    _role_types[cls.type_name] = cls
    return cls


def list_role_types() -> list[str]:
    return sorted(_role_types)


def create_roles(role_specs: dict[str, dict]) -> dict[str, Role]:
    """Instantiate every role declared in the cluster spec.

    Raises:
        ConfigError: On unknown role types or bad cross-role references
    """
    roles: dict[str, Role] = {}
    for name, config in sorted(role_specs.items()):
        type_name = config.get('type')
        if type_name not in _role_types:
            raise ConfigError(
                f"Role '{name}' has unknown type {type_name!r}. Available: {list_role_types()}"
            )
        roles[name] = _role_types[type_name].from_config(name, config)
    for role in roles.values():
        role.validate(roles)
    return roles


def get_setting(config: dict, key: str, default: Any, expected: type) -> Any:
    """Typed lookup of a role setting.

    Raises:
        ConfigError: If the value has the wrong type
    """
    value = config.get(key, default)
    if value is not None and not isinstance(value, expected):
        raise ConfigError(f"Role setting '{key}' must be {expected.__name__}, got {value!r}")
    return value


# Import roles to trigger registration
from roles import ubuntu  # noqa: E402, F401
from roles import daemon  # noqa: E402, F401
