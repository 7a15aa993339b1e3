"""Shared pytest fixtures for castle tests."""

import itertools
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Optional

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from actions import Action, ActionId  # noqa: E402
from cluster import Cluster  # noqa: E402
from config import ClusterSpec  # noqa: E402


class FakeChannel:
    """Node channel that records commands and returns scripted exit codes."""

    def __init__(self, codes=None, default=0):
        self.calls = []
        self.codes = list(codes or [])
        self.default = default
        self.fetched = []
        self.fetch_rc = 0
        self.closed = False
        self._lock = threading.Lock()

    def run(self, args):
        with self._lock:
            self.calls.append(list(args))
            if self.codes:
                return self.codes.pop(0)
            return self.default

    def fetch(self, remote_path, local_path):
        self.fetched.append((remote_path, Path(local_path)))
        if self.fetch_rc == 0:
            Path(local_path).write_text(f'contents of {remote_path}\n')
        return self.fetch_rc

    def close(self):
        self.closed = True


class FakeToken:
    """Shutdown token stand-in that records waits instead of sleeping."""

    def __init__(self, fire_after=None):
        self.waits = []
        self.fire_after = fire_after
        self.is_set = False
        self.reason = None

    def wait(self, timeout=None):
        self.waits.append(timeout)
        if self.fire_after is not None and len(self.waits) >= self.fire_after:
            self.is_set = True
        return self.is_set


@pytest.fixture
def sample_spec():
    """Three-node cluster: one zookeeper node and two brokers, all Ubuntu."""
    return {
        'conf': {
            'globalTimeout': 60,
            'remoteDir': '/tmp/castle-test',
        },
        'nodes': {
            'node0': {'host': '192.0.2.10', 'roleNames': ['ubuntu', 'zk']},
            'node1': {
                'host': '192.0.2.11',
                'roleNames': ['ubuntu', 'broker'],
                'rolePatches': {'ubuntu': {'jdkPackage': 'openjdk-11-jdk'}},
            },
            'node2': {'host': '192.0.2.12', 'roleNames': ['ubuntu', 'broker']},
        },
        'roles': {
            'ubuntu': {'type': 'ubuntu', 'retryIntervalMs': 0},
            'zk': {
                'type': 'daemon',
                'port': 2181,
                'setupCommands': ['mkdir -p %{remoteDir}/zk'],
                'startCommand': 'zk-start --id %{nodeName}',
                'stopCommand': 'zk-stop',
                'stopAfter': ['broker'],
                'logPaths': ['%{remoteDir}/zk/zk.log'],
            },
            'broker': {
                'type': 'daemon',
                'startCommand': 'broker-start --zk %{zkConnect}',
                'stopCommand': 'broker-stop',
                'statusCommand': 'broker-status',
                'taskStatusCommand': 'broker-tasks',
                'startAfter': ['zk'],
                'logPaths': ['/var/log/broker/server.log'],
            },
        },
    }


@pytest.fixture
def make_cluster(tmp_path):
    """Factory building a Cluster with FakeChannel nodes; closes them afterwards."""
    clusters = []

    def _make(spec_dict, channels=None):
        spec = ClusterSpec.from_dict(spec_dict)
        channels = {} if channels is None else channels

        def factory(name, node_spec, conf, log):
            return channels.setdefault(name, FakeChannel())

        cluster = Cluster(spec, tmp_path / 'work', channel_factory=factory)
        clusters.append(cluster)
        return cluster

    yield _make
    for cluster in clusters:
        cluster.close()


@pytest.fixture
def cluster(make_cluster, sample_spec):
    """The sample cluster with FakeChannel nodes."""
    return make_cluster(sample_spec)


class Recorder:
    """Thread-safe log of action start/finish order on each node."""

    def __init__(self):
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self.started = {}
        self.finished = {}
        self.running = 0
        self.max_running = 0
        self.busy_nodes = set()
        self.node_overlap = False

    def enter(self, key, node_name):
        with self._lock:
            self.started[key] = next(self._seq)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
            if node_name in self.busy_nodes:
                self.node_overlap = True
            self.busy_nodes.add(node_name)

    def exit(self, key, node_name):
        with self._lock:
            self.finished[key] = next(self._seq)
            self.running -= 1
            self.busy_nodes.discard(node_name)


@dataclass
class StubAction(Action):
    """Action with a caller-chosen type that records when it runs.

    fn(node, shutdown) is called while the action runs; raise from it to
    fail the unit.
    """
    kind: str = 'stub'
    recorder: Any = field(default=None, repr=False)
    fn: Optional[Callable] = field(default=None, repr=False)

    @property
    def id(self) -> ActionId:
        return ActionId(self.kind, self.scope)

    def run(self, cluster, node, shutdown=None) -> None:
        key = f'{self.id}@{node.name}'
        if self.recorder is not None:
            self.recorder.enter(key, node.name)
        try:
            if self.fn is not None:
                self.fn(node, shutdown)
        finally:
            if self.recorder is not None:
                self.recorder.exit(key, node.name)


def stub_cluster(*node_names):
    """Minimal cluster: named nodes with no roles."""
    nodes = {
        name: SimpleNamespace(name=name, has_role=lambda role: False)
        for name in node_names
    }
    return SimpleNamespace(nodes=nodes)
