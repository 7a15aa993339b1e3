"""Tests for the action base contract, command retry, and the concrete actions.

Actions run against FakeChannel nodes (see conftest.py), so no command
leaves the test process.
"""

import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch, MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from conftest import FakeChannel, FakeToken
from actions import (
    ACTION_TYPES,
    ActionId,
    CommandRetryPolicy,
    NodeSelector,
    TargetId,
    build_actions,
    check_actions,
    run_checked,
    run_command_with_retry,
)
from actions.base import APT_GET_BUSY_ERROR_CODE, NO_RETRY
from actions.daemon import DaemonStartAction
from actions.lifecycle import InitAction
from errors import CommandResultError, TransientCommandError, UnitCancelledError, ValidationError


def _node(codes=None, default=0, name='node0', roles=()):
    """A bare node with a FakeChannel."""
    channel = FakeChannel(codes=codes, default=default)
    return SimpleNamespace(
        name=name,
        channel=channel,
        log=MagicMock(),
        has_role=lambda role: role in roles,
    )


class TestRunCommandWithRetry:
    """Test the retry contract for busy exit codes."""

    def test_success_first_try(self):
        node = _node(codes=[0])
        assert run_command_with_retry(node, ['true'], CommandRetryPolicy(), FakeToken()) == 0
        assert node.channel.calls == [['true']]

    def test_retries_busy_code_until_success(self):
        """k busy exits followed by success should report k retries."""
        node = _node(codes=[100, 100, 100, 0])
        token = FakeToken()
        policy = CommandRetryPolicy(interval=0.05)

        retries = run_command_with_retry(node, ['apt-get', 'install', '-y', 'jq'], policy, token)

        assert retries == 3
        assert len(node.channel.calls) == 4
        assert token.waits == [0.05, 0.05, 0.05]

    def test_logs_each_retry(self):
        node = _node(codes=[100, 0])
        run_command_with_retry(node, ['apt-get'], CommandRetryPolicy(interval=0.2), FakeToken())
        node.log.info.assert_called_once_with("*** node0: got exit status 100: retrying in 200 ms.")

    def test_non_retryable_code_raises(self):
        node = _node(codes=[1])
        with pytest.raises(CommandResultError) as exc_info:
            run_command_with_retry(node, ['false'], CommandRetryPolicy(), FakeToken())
        assert exc_info.value.args_list == ['false']
        assert exc_info.value.code == 1
        assert len(node.channel.calls) == 1

    def test_non_retryable_after_busy(self):
        node = _node(codes=[100, 2])
        with pytest.raises(CommandResultError) as exc_info:
            run_command_with_retry(node, ['apt-get'], CommandRetryPolicy(interval=0), FakeToken())
        assert exc_info.value.code == 2

    def test_max_attempts(self):
        node = _node(default=100)
        policy = CommandRetryPolicy(interval=0, max_attempts=3)
        with pytest.raises(TransientCommandError) as exc_info:
            run_command_with_retry(node, ['apt-get'], policy, FakeToken())
        assert exc_info.value.attempts == 3
        assert exc_info.value.code == 100
        assert len(node.channel.calls) == 3

    def test_shutdown_ends_retry_loop(self):
        node = _node(default=100)
        token = FakeToken(fire_after=2)
        with pytest.raises(TransientCommandError, match='shutdown requested'):
            run_command_with_retry(node, ['apt-get'], CommandRetryPolicy(interval=0.1), token)
        assert len(node.channel.calls) == 2

    def test_sleeps_without_token(self):
        node = _node(codes=[100, 0])
        with patch('actions.base.time.sleep') as mock_sleep:
            assert run_command_with_retry(node, ['apt-get'], CommandRetryPolicy(interval=0.3)) == 1
        mock_sleep.assert_called_once_with(0.3)

    def test_no_retry_policy(self):
        node = _node(codes=[APT_GET_BUSY_ERROR_CODE])
        with pytest.raises(CommandResultError):
            run_command_with_retry(node, ['apt-get'], NO_RETRY, FakeToken())


class TestCommandRetryPolicy:
    """Test retry policy validation."""

    def test_defaults(self):
        policy = CommandRetryPolicy()
        assert policy.retryable_codes == frozenset({100})
        assert policy.interval == 0.2
        assert policy.max_attempts is None

    def test_negative_interval_rejected(self):
        with pytest.raises(ValueError):
            CommandRetryPolicy(interval=-1)

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError):
            CommandRetryPolicy(max_attempts=0)


class TestRunChecked:
    """Test single-shot command execution."""

    def test_success(self):
        node = _node(codes=[0])
        run_checked(node, ['true'])

    def test_failure(self):
        node = _node(codes=[7])
        with pytest.raises(CommandResultError) as exc_info:
            run_checked(node, ['sh', '-c', 'exit 7'])
        assert exc_info.value.code == 7


class TestNodeSelector:
    """Test action node selection."""

    def test_all_nodes(self):
        assert NodeSelector().matches(_node())

    def test_by_name(self):
        selector = NodeSelector(node_names=('node1',))
        assert selector.matches(_node(name='node1'))
        assert not selector.matches(_node(name='node0'))

    def test_by_role(self):
        selector = NodeSelector(role='broker')
        assert selector.matches(_node(roles=('broker',)))
        assert not selector.matches(_node(roles=('zk',)))

    def test_names_and_role_exclusive(self):
        with pytest.raises(ValueError):
            NodeSelector(node_names=('node0',), role='broker')


class TestActionRegistry:
    """Test the action type table and per-run action creation."""

    def test_registered_types(self):
        assert set(ACTION_TYPES) == {
            'init', 'ubuntuSetup', 'daemonSetup', 'daemonStart', 'daemonStatus',
            'taskStatus', 'daemonStop', 'saveLogs', 'destroy',
        }

    def test_build_actions(self, cluster):
        ids = {a.id for a in build_actions(cluster)}
        assert ActionId('init', 'cluster') in ids
        assert ActionId('destroy', 'cluster') in ids
        assert ActionId('ubuntuSetup', 'ubuntu') in ids
        assert ActionId('daemonStart', 'broker') in ids
        assert ActionId('daemonStart', 'zk') in ids
        assert ActionId('taskStatus', 'broker') in ids
        # zk has no taskStatusCommand
        assert ActionId('taskStatus', 'zk') not in ids

    def test_build_actions_returns_fresh_instances(self, cluster):
        first = build_actions(cluster)
        second = build_actions(cluster)
        assert all(a is not b for a, b in zip(first, second))

    def test_duplicate_id_rejected(self):
        actions = [InitAction(scope='cluster'), InitAction(scope='cluster')]
        with pytest.raises(ValidationError, match='Duplicate action id'):
            check_actions(actions)

    def test_start_after_dependencies(self, cluster):
        actions = {a.id: a for a in build_actions(cluster)}
        start = actions[ActionId('daemonStart', 'broker')]
        assert start.dependencies == (TargetId('daemonStart', 'zk'),)
        assert start.local_dependencies == (TargetId('daemonSetup', 'broker'),)


class TestLifecycleActions:
    """Test init and destroy."""

    def test_init_creates_remote_dir(self, cluster):
        node = cluster.nodes['node0']
        InitAction(scope='cluster').run(cluster, node)
        assert node.channel.calls == [['mkdir', '-p', '/tmp/castle-test']]

    def test_init_failure(self, cluster):
        node = cluster.nodes['node0']
        node.channel.codes = [255]
        with pytest.raises(CommandResultError):
            InitAction(scope='cluster').run(cluster, node)

    def test_destroy_depends_on_stop_and_logs(self, cluster):
        actions = {a.id: a for a in build_actions(cluster)}
        destroy = actions[ActionId('destroy', 'cluster')]
        assert TargetId('saveLogs') in destroy.local_dependencies
        assert TargetId('daemonStop') in destroy.local_dependencies


class TestUbuntuSetupAction:
    """Test package installation with apt busy retries."""

    def _action(self, cluster):
        return {a.id: a for a in build_actions(cluster)}[ActionId('ubuntuSetup', 'ubuntu')]

    def test_installs_packages(self, cluster):
        node = cluster.nodes['node0']
        self._action(cluster).run(cluster, node, FakeToken())
        (args,) = node.channel.calls
        assert args[:4] == ['sudo', 'dpkg', '--configure', '-a']
        assert 'openjdk-8-jdk-headless' in args
        assert 'rsync' in args

    def test_node_patch_applied(self, cluster):
        node = cluster.nodes['node1']
        self._action(cluster).run(cluster, node, FakeToken())
        (args,) = node.channel.calls
        assert 'openjdk-11-jdk' in args
        assert 'openjdk-8-jdk-headless' not in args

    def test_retries_while_apt_busy(self, cluster):
        node = cluster.nodes['node0']
        node.channel.codes = [100, 100, 0]
        token = FakeToken()
        self._action(cluster).run(cluster, node, token)
        assert len(node.channel.calls) == 3
        # retryIntervalMs is 0 in the sample spec
        assert token.waits == [0.0, 0.0]

    def test_apt_failure(self, cluster):
        node = cluster.nodes['node0']
        node.channel.codes = [1]
        with pytest.raises(CommandResultError):
            self._action(cluster).run(cluster, node, FakeToken())

    def test_max_attempts_from_role(self, make_cluster, sample_spec):
        sample_spec['roles']['ubuntu']['maxAttempts'] = 2
        cluster = make_cluster(sample_spec)
        node = cluster.nodes['node0']
        node.channel.default = 100
        with pytest.raises(TransientCommandError):
            self._action(cluster).run(cluster, node, FakeToken())
        assert len(node.channel.calls) == 2


class TestDaemonActions:
    """Test daemon role command actions."""

    def _actions(self, cluster):
        return {a.id: a for a in build_actions(cluster)}

    def test_setup_runs_commands_in_order(self, make_cluster, sample_spec):
        sample_spec['roles']['zk']['setupCommands'] = ['mkdir -p %{remoteDir}/zk', 'echo %{nodeName}']
        cluster = make_cluster(sample_spec)
        node = cluster.nodes['node0']
        self._actions(cluster)[ActionId('daemonSetup', 'zk')].run(cluster, node, FakeToken())
        assert node.channel.calls == [
            ['sh', '-c', 'mkdir -p /tmp/castle-test/zk'],
            ['sh', '-c', 'echo node0'],
        ]

    def test_setup_stops_on_failure(self, make_cluster, sample_spec):
        sample_spec['roles']['zk']['setupCommands'] = ['first', 'second']
        cluster = make_cluster(sample_spec)
        node = cluster.nodes['node0']
        node.channel.codes = [3]
        with pytest.raises(CommandResultError):
            self._actions(cluster)[ActionId('daemonSetup', 'zk')].run(cluster, node, FakeToken())
        assert len(node.channel.calls) == 1

    def test_setup_stops_on_shutdown(self, make_cluster, sample_spec):
        sample_spec['roles']['zk']['setupCommands'] = ['first', 'second']
        cluster = make_cluster(sample_spec)
        node = cluster.nodes['node0']
        token = FakeToken()
        token.is_set = True
        token.reason = 'interrupted'
        with pytest.raises(UnitCancelledError, match='interrupted'):
            self._actions(cluster)[ActionId('daemonSetup', 'zk')].run(cluster, node, token)
        assert node.channel.calls == []

    def test_start_expands_variables(self, cluster):
        node = cluster.nodes['node1']
        self._actions(cluster)[ActionId('daemonStart', 'broker')].run(cluster, node)
        assert node.channel.calls == [['sh', '-c', 'broker-start --zk 192.0.2.10:2181']]

    def test_start_failure(self, cluster):
        node = cluster.nodes['node0']
        node.channel.codes = [1]
        with pytest.raises(CommandResultError):
            self._actions(cluster)[ActionId('daemonStart', 'zk')].run(cluster, node)

    def test_missing_command_is_noop(self, cluster):
        node = cluster.nodes['node0']
        # zk defines no statusCommand
        self._actions(cluster)[ActionId('daemonStatus', 'zk')].run(cluster, node)
        assert node.channel.calls == []

    def test_stop(self, cluster):
        node = cluster.nodes['node2']
        self._actions(cluster)[ActionId('daemonStop', 'broker')].run(cluster, node)
        assert node.channel.calls == [['sh', '-c', 'broker-stop']]

    def test_save_logs(self, cluster):
        node = cluster.nodes['node0']
        self._actions(cluster)[ActionId('saveLogs', 'zk')].run(cluster, node)
        assert node.channel.fetched == [
            ('/tmp/castle-test/zk/zk.log', cluster.logs_dir / 'node0' / 'zk-zk.log'),
        ]
        assert (cluster.logs_dir / 'node0' / 'zk-zk.log').exists()

    def test_save_logs_fetch_failure_does_not_raise(self, cluster):
        node = cluster.nodes['node1']
        node.channel.fetch_rc = 1
        self._actions(cluster)[ActionId('saveLogs', 'broker')].run(cluster, node)
        assert not (cluster.logs_dir / 'node1' / 'broker-server.log').exists()

    def test_selector_targets_role_nodes(self, cluster):
        start = DaemonStartAction(scope='broker', selector=NodeSelector(role='broker'))
        assert [n for n in cluster.nodes.values() if start.applies_to(n)] == [
            cluster.nodes['node1'], cluster.nodes['node2'],
        ]
