#!/usr/bin/env python3
"""CLI entry point for castle.

Usage:
    castle -w <working dir> [-c <cluster file>] [-v] [-m N] <target>...
    castle -w <working dir> ssh [nodes...] [command...]

Every flag falls back to a CASTLE_* environment variable when omitted.
Exit status: 0 success, 1 tool failure (bad config, timeout, uncaught
error), 2 one or more actions failed, 130 interrupted.
"""

import argparse
import logging
import sys
from importlib import metadata
from pathlib import Path

import cluster_ssh
from actions import build_actions
from cluster import Cluster
from config import (
    ConfigError,
    get_env,
    get_env_bool,
    get_env_int,
    load_cluster_spec,
    resolve_cluster_path,
)
from errors import SchedulerTimeoutError
from reporting import RunReport
from scheduler import ActionScheduler, ReturnCode, ShutdownManager

CASTLE_CLUSTER_INPUT_PATH = 'CASTLE_CLUSTER_INPUT_PATH'
CASTLE_TARGETS = 'CASTLE_TARGETS'
CASTLE_WORKING_DIRECTORY = 'CASTLE_WORKING_DIRECTORY'
CASTLE_VERBOSE = 'CASTLE_VERBOSE'
CASTLE_MAX_CONCURRENT_ACTIONS = 'CASTLE_MAX_CONCURRENT_ACTIONS'
CASTLE_MAX_CONCURRENT_ACTIONS_DEFAULT = 6

DESCRIPTION = """The castle cluster tool.

Valid targets:
up:                Bring up all nodes.
  init:            Prepare nodes.
  setup:           Set up all nodes.
  start:           Start the system.

status:            Get the system status.
  daemonStatus:    Get the status of system daemons.
  taskStatus:      Get the status of tasks.

down:              Bring down all nodes.
  saveLogs:        Save the system logs.
  stop:            Stop the system.
  destroy:         Clean up nodes.

destroyNodes:      Destroy all nodes.

ssh [nodes] [cmd]: Ssh to the given node(s)

A single action can be targeted as type:scope (e.g. daemonStart:broker).
"""

logger = logging.getLogger(__name__)


def get_version() -> str:
    """Installed package version, or 'dev' when running from a checkout."""
    try:
        return metadata.version('castle-driver')
    except metadata.PackageNotFoundError:
        return 'dev'


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser. Defaults come from the environment."""
    parser = argparse.ArgumentParser(
        prog='castle',
        description=DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'castle {get_version()}'
    )
    parser.add_argument(
        '-c', '--cluster',
        default=get_env(CASTLE_CLUSTER_INPUT_PATH, ''),
        metavar=CASTLE_CLUSTER_INPUT_PATH,
        help='The cluster file to use.'
    )
    parser.add_argument(
        '-w', '--working-directory',
        default=get_env(CASTLE_WORKING_DIRECTORY, ''),
        metavar=CASTLE_WORKING_DIRECTORY,
        help='The output path to store logs, cluster files, and other outputs in.'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        default=get_env_bool(CASTLE_VERBOSE, False),
        help='Enable verbose logging.'
    )
    parser.add_argument(
        '-m', '--max-concurrent-actions',
        type=int,
        default=get_env_int(CASTLE_MAX_CONCURRENT_ACTIONS, CASTLE_MAX_CONCURRENT_ACTIONS_DEFAULT),
        metavar=CASTLE_MAX_CONCURRENT_ACTIONS,
        help='The maximum number of concurrent actions to allow.'
    )
    parser.add_argument(
        'targets',
        nargs='*',
        metavar='TARGET',
        help='The target action(s) to run.'
    )
    return parser


def _setup_logging(verbose: bool) -> None:
    """Configure logging based on flags."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _run_targets(cluster: Cluster, targets: list[str], max_concurrent: int,
                 manager: ShutdownManager, cluster_path: Path) -> None:
    """Schedule and run the targets, recording the outcome on manager."""
    report = RunReport(targets=targets, report_dir=cluster.working_dir / 'reports', cluster=str(cluster_path))
    report.start()
    actions = build_actions(cluster)
    with ActionScheduler(targets, actions, cluster, max_concurrent, shutdown=manager.token) as scheduler:
        try:
            result = scheduler.wait(cluster.conf.global_timeout)
        except SchedulerTimeoutError as e:
            if e.result is not None:
                report.record_result(e.result)
            paths = report.finish(False, str(e))
            logger.info(f"Report written to {paths[0]}")
            raise
    report.record_result(result)
    paths = report.finish(result.success)
    logger.info(f"Report written to {paths[0]}")
    manager.record(ReturnCode.SUCCESS if result.success else ReturnCode.CLUSTER_FAILED)


def run(args, targets: list[str], manager: ShutdownManager) -> int:
    """Load the cluster and run the targets (or the ssh command).

    Raises:
        ConfigError: On missing working directory or cluster spec problems
    """
    if not args.working_directory:
        raise ConfigError(
            f"You must specify the working directory with -w or {CASTLE_WORKING_DIRECTORY}"
        )
    if args.max_concurrent_actions < 1:
        raise ConfigError(f"--max-concurrent-actions must be > 0, got {args.max_concurrent_actions}")

    working_dir = Path(args.working_directory)
    working_dir.mkdir(parents=True, exist_ok=True)
    cluster_path = resolve_cluster_path(args.cluster, working_dir)
    spec = load_cluster_spec(cluster_path)
    logger.info(f"Loaded cluster {cluster_path} ({len(spec.nodes)} nodes)")

    with Cluster(spec, working_dir) as cluster:
        if cluster_ssh.COMMAND in targets:
            rc = cluster_ssh.run(cluster, targets)
            manager.record(ReturnCode.SUCCESS if rc == 0 else ReturnCode.CLUSTER_FAILED)
        else:
            _run_targets(cluster, targets, args.max_concurrent_actions, manager, cluster_path)
    return int(manager.return_code)


def main(argv=None) -> int:
    """CLI entry point."""
    try:
        parser = build_parser()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    targets = args.targets or get_env(CASTLE_TARGETS, '').split()
    if not targets:
        parser.print_help()
        return 0

    manager = ShutdownManager()
    manager.install()
    try:
        return run(args, targets, manager)
    except Exception:
        logger.exception("Exiting with exception")
        return int(ReturnCode.TOOL_FAILED)
    finally:
        manager.uninstall()


if __name__ == '__main__':
    sys.exit(main())
