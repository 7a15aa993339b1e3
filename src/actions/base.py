"""Action base contract and the command retry policy.

An action is identified by an ActionId, declares the targets it must run
after, and applies to a subset of nodes. run() returns on success and
raises on failure; the scheduler records the outcome per (action, node).
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional

from actions.ids import ActionId, TargetId
from errors import CommandResultError, TransientCommandError

logger = logging.getLogger(__name__)

# apt-get exits 100 while another process holds the dpkg lock
APT_GET_BUSY_ERROR_CODE = 100
DEFAULT_RETRY_INTERVAL = 0.2


@dataclass(frozen=True)
class NodeSelector:
    """Which nodes an action applies to.

    Exactly one of node_names or role may be set; neither means all nodes.
    """
    node_names: Optional[tuple[str, ...]] = None
    role: Optional[str] = None

    def __post_init__(self):
        if self.node_names is not None and self.role is not None:
            raise ValueError("NodeSelector takes node_names or role, not both")

    def matches(self, node) -> bool:
        if self.node_names is not None:
            return node.name in self.node_names
        if self.role is not None:
            return node.has_role(self.role)
        return True


ALL_NODES = NodeSelector()


@dataclass(frozen=True)
class CommandRetryPolicy:
    """How an action treats retryable exit codes.

    Attributes:
        retryable_codes: Exit codes meaning "busy, try again later"
        interval: Seconds to wait between attempts
        max_attempts: Give up after this many attempts (None: never)
    """
    retryable_codes: frozenset = frozenset({APT_GET_BUSY_ERROR_CODE})
    interval: float = DEFAULT_RETRY_INTERVAL
    max_attempts: Optional[int] = None

    def __post_init__(self):
        if self.interval < 0:
            raise ValueError(f"Retry interval must be >= 0, got {self.interval}")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")


NO_RETRY = CommandRetryPolicy(retryable_codes=frozenset())


def run_command_with_retry(node, args: list[str], policy: CommandRetryPolicy = CommandRetryPolicy(),
                           shutdown=None) -> int:
    """Run args on node, retrying while it exits with a retryable code.

    The wait between attempts happens on the shutdown token when one is
    given, so an interrupt ends the wait and the retry loop.

    Returns:
        Number of retries performed before success

    Raises:
        CommandResultError: On a non-retryable nonzero exit
        TransientCommandError: When max_attempts is reached or shutdown fires
    """
    attempts = 0
    while True:
        attempts += 1
        code = node.channel.run(args)
        if code == 0:
            return attempts - 1
        if code not in policy.retryable_codes:
            raise CommandResultError(args, code)
        if policy.max_attempts is not None and attempts >= policy.max_attempts:
            raise TransientCommandError(args, code, attempts)
        node.log.info(
            f"*** {node.name}: got exit status {code}: retrying in {int(policy.interval * 1000)} ms."
        )
        if shutdown is not None:
            if shutdown.wait(policy.interval):
                raise TransientCommandError(args, code, attempts, reason='shutdown requested')
        else:
            time.sleep(policy.interval)


def run_checked(node, args: list[str]) -> None:
    """Run args on node once; any nonzero exit raises CommandResultError."""
    code = node.channel.run(args)
    if code != 0:
        raise CommandResultError(args, code)


@dataclass
class Action:
    """Base class for actions.

    Subclasses set type_name and implement run().

    Attributes:
        scope: Distinguishes instances of one type (role name or 'cluster')
        selector: Nodes this action applies to
        dependencies: Targets that must finish on every node first
        local_dependencies: Targets that must finish on the same node first
    """
    type_name: ClassVar[str] = ''

    scope: str
    selector: NodeSelector = ALL_NODES
    dependencies: tuple[TargetId, ...] = ()
    local_dependencies: tuple[TargetId, ...] = ()
    role: Any = field(default=None, repr=False)

    @property
    def id(self) -> ActionId:
        return ActionId(self.type_name, self.scope)

    def applies_to(self, node) -> bool:
        return self.selector.matches(node)

    def run(self, cluster, node, shutdown=None) -> None:
        """Execute on one node. Returns on success, raises on failure."""
        raise NotImplementedError
