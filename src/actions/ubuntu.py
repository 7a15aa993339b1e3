"""Ubuntu package setup."""

import logging
from dataclasses import dataclass

from actions.base import Action, CommandRetryPolicy, run_command_with_retry

logger = logging.getLogger(__name__)

BASE_PACKAGES = [
    'iptables', 'rsync', 'wget', 'curl', 'collectd-core',
    'coreutils', 'cmake', 'pkg-config', 'libfuse-dev',
]


@dataclass
class UbuntuSetupAction(Action):
    """Install the base packages plus the role's JDK and extra packages.

    apt-get exits 100 while the dpkg lock is held (e.g. by unattended
    upgrades on a fresh node); that status is retried per the role's
    retry policy, which by default never gives up.
    """
    type_name = 'ubuntuSetup'

    def command_line(self, role) -> list[str]:
        packages = BASE_PACKAGES + [p for p in [role.jdk_package] + role.packages if p]
        return [
            'sudo', 'dpkg', '--configure', '-a', '&&',
            'sudo', 'apt-get', 'update', '-y', '&&',
            'sudo', 'apt-get', 'install', '-y', *packages,
        ]

    def run(self, cluster, node, shutdown=None) -> None:
        role = self.role.for_node(cluster, node)
        policy = CommandRetryPolicy(interval=role.retry_interval, max_attempts=role.max_attempts)
        node.log.info(f"*** {node.name}: Beginning UbuntuSetup...")
        retries = run_command_with_retry(node, self.command_line(role), policy, shutdown)
        if retries:
            logger.debug(f"[{node.name}] ubuntuSetup succeeded after {retries} retries")
        node.log.info(f"*** {node.name}: Finished UbuntuSetup.")
