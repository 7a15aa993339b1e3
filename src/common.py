"""Command transport helpers for cluster nodes."""

import logging
import shlex
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Relaxed host key checking: cluster nodes are ephemeral and get recycled addresses
SSH_OPTS = ['-o', 'StrictHostKeyChecking=no', '-o', 'UserKnownHostsFile=/dev/null', '-o', 'LogLevel=ERROR']

DEFAULT_COMMAND_TIMEOUT = 600


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = DEFAULT_COMMAND_TIMEOUT,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # Callers interpret return codes
        )
        return result.returncode, result.stdout or '', result.stderr or ''
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def ssh_base_command(
    host: str,
    user: Optional[str] = None,
    identity_file: Optional[str] = None,
    connect_timeout: int = 30,
    tty: bool = False,
) -> list[str]:
    """Build the ssh argument prefix for a host (without the remote command)."""
    cmd = ['ssh'] + SSH_OPTS + ['-o', f'ConnectTimeout={connect_timeout}']
    if identity_file:
        cmd += ['-i', identity_file]
    cmd.append('-t' if tty else '-n')
    cmd.append(f'{user}@{host}' if user else host)
    return cmd


def run_ssh(
    host: str,
    command: str,
    user: Optional[str] = None,
    identity_file: Optional[str] = None,
    timeout: int = DEFAULT_COMMAND_TIMEOUT,
) -> tuple[int, str, str]:
    """Run command over SSH."""
    cmd = ssh_base_command(host, user=user, identity_file=identity_file) + ['--', command]
    return run_command(cmd, timeout=timeout)


def copy_from_host(
    host: str,
    remote_path: str,
    local_path: Path,
    user: Optional[str] = None,
    identity_file: Optional[str] = None,
    timeout: int = DEFAULT_COMMAND_TIMEOUT,
) -> tuple[int, str, str]:
    """Copy a remote file to local_path with scp."""
    cmd = ['scp', '-q'] + SSH_OPTS
    if identity_file:
        cmd += ['-i', identity_file]
    source = f'{user}@{host}:{remote_path}' if user else f'{host}:{remote_path}'
    cmd += [source, str(local_path)]
    return run_command(cmd, timeout=timeout)


def join_args(args: list[str]) -> str:
    """Join an argument list into one shell command line.

    Shell operators ('&&', '||', ';', '|') pass through unquoted so that
    argument lists can chain commands on the remote side.
    """
    operators = {'&&', '||', ';', '|'}
    return ' '.join(a if a in operators else shlex.quote(a) for a in args)
