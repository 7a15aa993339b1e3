"""Dynamic variables.

A dynamic variable is a named value computed from cluster and node state
when an action renders its per-node parameters, e.g. the comma-separated
hosts of every node running a role. Several providers may register the
same name; the highest priority wins. Two providers with the same name and
priority are rejected at registration, since there is no defined order
between them.

Templates reference variables as %{name}.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from errors import UnresolvedVariableError, ValidationError

logger = logging.getLogger(__name__)

VARIABLE_RE = re.compile(r'%\{([^}]+)\}')

# Built-in providers lose to role providers, which lose to conf.variables
BUILTIN_PRIORITY = 0
ROLE_PRIORITY = 10
CONF_PRIORITY = 100


@dataclass(frozen=True)
class DynamicVariableProvider:
    """Provides a value for one dynamic variable.

    Attributes:
        name: Variable name
        priority: Higher priorities take precedence
        calculate_fn: (cluster, node) -> value
    """
    name: str
    priority: int
    calculate_fn: Callable[[Any, Any], str]

    def calculate(self, cluster, node) -> str:
        return str(self.calculate_fn(cluster, node))


class DynamicVariableRegistry:
    """Maps variable names to their registered providers."""

    def __init__(self):
        self._providers: dict[str, dict[int, DynamicVariableProvider]] = {}

    def register(self, provider: DynamicVariableProvider) -> None:
        """Register a provider.

        Raises:
            ValidationError: If a provider with the same name and priority exists
        """
        by_priority = self._providers.setdefault(provider.name, {})
        if provider.priority in by_priority:
            raise ValidationError(
                f"Duplicate provider for dynamic variable '{provider.name}' "
                f"at priority {provider.priority}"
            )
        by_priority[provider.priority] = provider

    def names(self) -> list[str]:
        return sorted(self._providers)

    def provider_for(self, name: str) -> DynamicVariableProvider:
        """Return the highest-priority provider for name.

        Raises:
            UnresolvedVariableError: If nothing provides name
        """
        by_priority = self._providers.get(name)
        if not by_priority:
            raise UnresolvedVariableError(name)
        return by_priority[max(by_priority)]

    def resolve(self, name: str, cluster, node) -> str:
        """Compute the value of name for node. Evaluated on every call."""
        return self.provider_for(name).calculate(cluster, node)

    def expand(self, template: str, cluster, node) -> str:
        """Replace every %{name} in template with its resolved value."""
        return VARIABLE_RE.sub(lambda m: self.resolve(m.group(1), cluster, node), template)


def _static(value: str) -> Callable[[Any, Any], str]:
    return lambda cluster, node: value


def register_builtin_providers(registry: DynamicVariableRegistry, conf_variables: dict[str, str]) -> None:
    """Register the node/cluster built-ins and the static conf.variables overrides."""
    builtins = {
        'nodeName': lambda cluster, node: node.name,
        'nodeHost': lambda cluster, node: node.address,
        'clusterNodes': lambda cluster, node: ','.join(cluster.nodes),
        'remoteDir': lambda cluster, node: cluster.conf.remote_dir,
        'workingDirectory': lambda cluster, node: str(cluster.working_dir),
    }
    for name, fn in builtins.items():
        registry.register(DynamicVariableProvider(name, BUILTIN_PRIORITY, fn))
    for name, value in conf_variables.items():
        registry.register(DynamicVariableProvider(name, CONF_PRIORITY, _static(value)))
