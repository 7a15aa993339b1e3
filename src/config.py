"""Cluster specification loading, environment expansion, and merging.

A cluster spec has three sections:
- conf: cluster-wide settings (global timeout, remote dir, ssh, variables)
- nodes: node name -> host, role names, and per-node role patches
- roles: role name -> role type and role settings

Spec files are JSON (YAML is accepted too). Any string of the form
%{CASTLE_NAME} is replaced from the environment at load time; other
%{name} references are left for dynamic-variable expansion at run time.

The canonical spec lives at <working dir>/cluster.json. When a new spec is
supplied and a canonical one already exists, merge_cluster_specs decides
what gets persisted.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from common import DEFAULT_COMMAND_TIMEOUT

logger = logging.getLogger(__name__)

ENV_PREFIX = 'CASTLE_'
CLUSTER_FILE_NAME = 'cluster.json'

DEFAULT_GLOBAL_TIMEOUT = 3600
DEFAULT_REMOTE_DIR = '/tmp/castle'

_VARIABLE_RE = re.compile(r'%\{([^}]+)\}')


class ConfigError(Exception):
    """Configuration error."""


def get_env(name: str, default: str = '') -> str:
    """Get an environment variable with a default."""
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get a boolean environment variable ('true', '1', 'yes' are true)."""
    val = os.environ.get(name)
    if val is None:
        return default
    return val.strip().lower() in ('true', '1', 'yes', 'on')


def get_env_int(name: str, default: int) -> int:
    """Get an integer environment variable.

    Raises:
        ConfigError: If the value is not an integer
    """
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError as e:
        raise ConfigError(f"Unable to parse value {val!r} given for {name}") from e


def expand_env(value: Any) -> Any:
    """Recursively replace %{CASTLE_*} references with environment values.

    Raises:
        ConfigError: If a referenced CASTLE_ variable is not set
    """
    if isinstance(value, str):
        return _VARIABLE_RE.sub(_lookup_env, value)
    if isinstance(value, list):
        return [expand_env(v) for v in value]
    if isinstance(value, dict):
        return {k: expand_env(v) for k, v in value.items()}
    return value


def _lookup_env(match: re.Match) -> str:
    key = match.group(1)
    if not key.startswith(ENV_PREFIX):
        return match.group(0)
    val = os.environ.get(key)
    if val is None:
        raise ConfigError(
            f"You must set the environment variable {key} to use this configuration file."
        )
    return val


@dataclass
class ClusterConf:
    """Cluster-wide settings.

    Attributes:
        global_timeout: Seconds the whole run may take
        command_timeout: Seconds a single node command may take
        remote_dir: Scratch directory created on every node by init
        ssh_user: User for ssh connections (None: ssh default)
        ssh_identity_file: Private key for ssh connections
        variables: Static dynamic-variable overrides
    """
    global_timeout: int = DEFAULT_GLOBAL_TIMEOUT
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT
    remote_dir: str = DEFAULT_REMOTE_DIR
    ssh_user: Optional[str] = None
    ssh_identity_file: Optional[str] = None
    variables: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> 'ClusterConf':
        timeouts = {}
        for key, default in (('globalTimeout', DEFAULT_GLOBAL_TIMEOUT),
                             ('commandTimeout', DEFAULT_COMMAND_TIMEOUT)):
            value = data.get(key, default)
            if not isinstance(value, int) or value <= 0:
                raise ConfigError(f"conf.{key} must be a positive integer, got {value!r}")
            timeouts[key] = value
        variables = data.get('variables') or {}
        if not isinstance(variables, dict):
            raise ConfigError("conf.variables must be a mapping")
        return cls(
            global_timeout=timeouts['globalTimeout'],
            command_timeout=timeouts['commandTimeout'],
            remote_dir=data.get('remoteDir', DEFAULT_REMOTE_DIR),
            ssh_user=data.get('sshUser'),
            ssh_identity_file=data.get('sshIdentityFile'),
            variables={str(k): str(v) for k, v in variables.items()},
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'globalTimeout': self.global_timeout,
            'commandTimeout': self.command_timeout,
            'remoteDir': self.remote_dir,
        }
        if self.ssh_user is not None:
            d['sshUser'] = self.ssh_user
        if self.ssh_identity_file is not None:
            d['sshIdentityFile'] = self.ssh_identity_file
        if self.variables:
            d['variables'] = dict(self.variables)
        return d


@dataclass
class NodeSpec:
    """Per-node assignment.

    Attributes:
        role_names: Roles this node plays, in order
        role_patches: role name -> settings overriding the role definition on this node
        host: Address to reach the node (None or 'localhost': local machine)
    """
    role_names: list[str] = field(default_factory=list)
    role_patches: dict[str, dict] = field(default_factory=dict)
    host: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'NodeSpec':
        role_names = data.get('roleNames') or []
        if not isinstance(role_names, list):
            raise ConfigError("roleNames must be a list")
        return cls(
            role_names=list(role_names),
            role_patches=dict(data.get('rolePatches') or {}),
            host=data.get('host'),
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'roleNames': list(self.role_names)}
        if self.host is not None:
            d['host'] = self.host
        if self.role_patches:
            d['rolePatches'] = dict(self.role_patches)
        return d


@dataclass
class ClusterSpec:
    """Parsed cluster specification."""
    conf: ClusterConf = field(default_factory=ClusterConf)
    nodes: dict[str, NodeSpec] = field(default_factory=dict)
    roles: dict[str, dict] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> 'ClusterSpec':
        """Create and validate a ClusterSpec from a parsed document.

        Raises:
            ConfigError: On missing role types or undefined role references
        """
        if not isinstance(data, dict):
            raise ConfigError("Cluster spec must be a mapping")
        roles = data.get('roles') or {}
        for role_name, role in roles.items():
            if not isinstance(role, dict) or 'type' not in role:
                raise ConfigError(f"Role '{role_name}' must be a mapping with a 'type'")

        nodes = {}
        for node_name, node_data in (data.get('nodes') or {}).items():
            node = NodeSpec.from_dict(node_data or {})
            for role_name in node.role_names:
                if role_name not in roles:
                    raise ConfigError(f"Node '{node_name}' references undefined role '{role_name}'")
            for role_name in node.role_patches:
                if role_name not in node.role_names:
                    raise ConfigError(
                        f"Node '{node_name}' patches role '{role_name}' it does not have"
                    )
            nodes[node_name] = node

        return cls(
            conf=ClusterConf.from_dict(data.get('conf') or {}),
            nodes=nodes,
            roles={name: dict(role) for name, role in roles.items()},
        )

    def to_dict(self) -> dict:
        return {
            'conf': self.conf.to_dict(),
            'nodes': {name: node.to_dict() for name, node in sorted(self.nodes.items())},
            'roles': {name: dict(role) for name, role in sorted(self.roles.items())},
        }

    def node_role_config(self, node_name: str, role_name: str) -> dict:
        """Role settings for one node: role definition overlaid with the node's patch."""
        node = self.nodes[node_name]
        merged = dict(self.roles[role_name])
        merged.update(node.role_patches.get(role_name, {}))
        return merged


def _parse_file(path: Path) -> dict:
    """Parse a JSON or YAML file (JSON is valid YAML)."""
    try:
        with open(path, encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Unable to parse cluster spec {path}: {e}") from e


def load_cluster_spec(path: Path) -> ClusterSpec:
    """Read a cluster spec file and expand %{CASTLE_*} references.

    Raises:
        ConfigError: If the file is missing, unparseable, or invalid
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"The specified cluster path {path} does not exist.")
    data = expand_env(_parse_file(path))
    return ClusterSpec.from_dict(data)


def write_cluster_spec(spec: ClusterSpec, path: Path) -> Path:
    """Persist a cluster spec as JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(spec.to_dict(), f, indent=2)
        f.write('\n')
    logger.debug(f"Saved cluster spec to {path}")
    return path


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def merge_cluster_specs(old: ClusterSpec, new: ClusterSpec) -> tuple[ClusterSpec, bool]:
    """Merge a newly supplied spec into a previously persisted one.

    If neither conf nor the role definitions changed, the old spec is kept
    as is. Otherwise the merged spec takes conf, roles, and each node's host
    and role names from the new spec, while nodes that already existed keep
    their recorded role patches.

    Neither input is modified.

    Returns:
        (merged spec, changed) where changed means the result must be persisted
    """
    conf_changed = _canonical(new.conf.to_dict()) != _canonical(old.conf.to_dict())
    roles_changed = _canonical(new.roles) != _canonical(old.roles)
    if not conf_changed and not roles_changed:
        return old, False

    merged_nodes = {}
    for name, new_node in new.nodes.items():
        old_node = old.nodes.get(name)
        patches = old_node.role_patches if old_node is not None else {}
        merged_nodes[name] = NodeSpec(
            role_names=list(new_node.role_names),
            role_patches={
                role: dict(patch) for role, patch in patches.items()
                if role in new_node.role_names
            },
            host=new_node.host,
        )

    merged = ClusterSpec(
        conf=ClusterConf.from_dict(new.conf.to_dict()),
        nodes=merged_nodes,
        roles={name: dict(role) for name, role in new.roles.items()},
    )
    return merged, True


def merge_cluster_file(new_path: Path, old_path: Path) -> bool:
    """Merge the spec at new_path into the canonical spec at old_path.

    Returns:
        True if old_path was rewritten
    """
    merged, changed = merge_cluster_specs(load_cluster_spec(old_path), load_cluster_spec(new_path))
    if changed:
        logger.info(f"Merging new data from {new_path} into {old_path}")
        write_cluster_spec(merged, old_path)
    return changed


def resolve_cluster_path(cluster_path: str, working_dir: Path) -> Path:
    """Pick the cluster spec to use for this run.

    If a canonical spec exists in the working directory it wins, after
    merging in cluster_path when one is given. Otherwise cluster_path must
    name an existing file, which is copied into the working directory.

    Raises:
        ConfigError: If no usable cluster spec is available
    """
    canonical = Path(working_dir) / CLUSTER_FILE_NAME
    if canonical.exists():
        if cluster_path:
            merge_cluster_file(Path(cluster_path), canonical)
        return canonical.resolve()
    if not cluster_path:
        raise ConfigError("You must specify a cluster with -c or --cluster.")
    path = Path(cluster_path)
    if not path.exists():
        raise ConfigError(f"The specified cluster path {path} does not exist.")
    write_cluster_spec(load_cluster_spec(path), canonical)
    return canonical.resolve()
