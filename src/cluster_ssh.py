"""The 'ssh' target: run a command on nodes, or open an interactive session.

Usage (after the ssh target, node names come first, then the command):
    castle ssh                      # interactive shell (cluster must have one node)
    castle ssh node1                # interactive shell on node1
    castle ssh node1 node2 uptime   # run 'uptime' on node1 and node2
    castle ssh uptime               # run 'uptime' on every node
"""

import logging
import os
import subprocess

from cluster import LOCAL_HOSTS
from common import ssh_base_command

logger = logging.getLogger(__name__)

COMMAND = 'ssh'


def split_ssh_args(targets: list[str], node_names: list[str]) -> tuple[list[str], list[str]]:
    """Split the arguments after 'ssh' into (selected nodes, command).

    No node names selects every node.
    """
    args = targets[targets.index(COMMAND) + 1:] if COMMAND in targets else list(targets)
    selected: list[str] = []
    while args and args[0] in node_names:
        selected.append(args.pop(0))
    return (selected or list(node_names)), args


def _interactive(cluster, node) -> int:
    if node.host in LOCAL_HOSTS:
        cmd = [os.environ.get('SHELL', '/bin/sh')]
    else:
        cmd = ssh_base_command(node.host, user=cluster.conf.ssh_user,
                               identity_file=cluster.conf.ssh_identity_file, tty=True)
    logger.info(f"Opening session on {node.name}: {' '.join(cmd)}")
    return subprocess.call(cmd)


def run(cluster, targets: list[str]) -> int:
    """Run the ssh target. Returns a process exit status."""
    node_names, command = split_ssh_args(targets, list(cluster.nodes))
    if not node_names:
        logger.error("Cluster has no nodes")
        return 1

    if not command:
        if len(node_names) != 1:
            logger.error(f"An interactive session needs exactly one node; choose from: {', '.join(node_names)}")
            return 1
        return _interactive(cluster, cluster.nodes[node_names[0]])

    if len(command) == 1:
        # One argument is a shell command line ('ls -l', 'cd /tmp && ls')
        command = ['sh', '-c', command[0]]

    failed = []
    for name in node_names:
        node = cluster.nodes[name]
        rc = node.channel.run(command)
        if rc != 0:
            logger.error(f"{name}: command exited with status {rc}")
            failed.append(name)
        else:
            logger.info(f"{name}: command succeeded")
    return 1 if failed else 0
