"""Pytest configuration and shared fixtures."""

import asyncio

import pytest

from pvewatch.data.models import ClusterSnapshot, NodeStatus, NodeSummary

GIB = 1024 ** 3


def make_node(name, status="online", cpu=0.1, **kwargs):
    return NodeSummary(node=name, status=NodeStatus(status), cpu=cpu, **kwargs)


def make_snapshot(*nodes):
    """Build a snapshot from (name, status) pairs or NodeSummary objects."""
    summaries = []
    for node in nodes:
        if isinstance(node, NodeSummary):
            summaries.append(node)
        else:
            name, status = node
            summaries.append(make_node(name, status))
    return ClusterSnapshot(nodes=tuple(summaries))


class RecordingTransport:
    """Transport that records every event it is asked to send."""

    def __init__(self, fail_after=None, delay=0.0):
        self.events = []
        self.fail_after = fail_after
        self.delay = delay
        self.attempts = 0

    async def send(self, event):
        self.attempts += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_after is not None and len(self.events) >= self.fail_after:
            raise ConnectionResetError("Cannot write to closing transport")
        self.events.append(event)

    def types(self):
        return [event.type for event in self.events]


class StubClient:
    """Minimal upstream client returning queued snapshots or raising queued errors."""

    name = "stub"

    def __init__(self, results=(), delay=0.0):
        self.results = list(results)
        self.delay = delay
        self.calls = 0

    async def get_cluster_summary(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def sample_nodes_payload():
    """Sample /nodes response rows."""
    return [
        {
            "node": "pve-1",
            "status": "online",
            "uptime": 123456,
            "cpu": 0.25,
            "maxcpu": 16,
            "mem": 8 * GIB,
            "maxmem": 64 * GIB,
            "disk": 40 * GIB,
            "maxdisk": 100 * GIB,
            "loadavg": ["0.52", "0.48", "0.40"],
        },
        {
            "node": "pve-2",
            "status": "online",
            "uptime": 654321,
            "cpu": 0.95,
            "maxcpu": 8,
            "mem": 30 * GIB,
            "maxmem": 32 * GIB,
            "disk": 95 * GIB,
            "maxdisk": 100 * GIB,
        },
        {
            "node": "pve-3",
            "status": "unknown",
        },
    ]


@pytest.fixture
def sample_cluster_status_payload():
    """Sample /cluster/status response rows."""
    return [
        {"type": "cluster", "name": "homelab", "quorate": 1, "nodes": 3},
        {"type": "node", "name": "pve-1", "online": 1, "ip": "10.0.0.11"},
        {"type": "node", "name": "pve-2", "online": 1, "ip": "10.0.0.12"},
        {"type": "node", "name": "pve-3", "online": 0, "ip": "10.0.0.13"},
    ]


@pytest.fixture
def sample_rrd_payload():
    """Sample /nodes/{node}/rrddata rows, deliberately out of order."""
    return [
        {"time": 1700000120, "cpu": 0.30, "mem": 4 * GIB, "maxmem": 16 * GIB},
        {"time": 1700000000, "cpu": 0.10, "mem": 2 * GIB, "maxmem": 16 * GIB},
        {"time": 1700000060, "cpu": 0.20, "mem": 3 * GIB, "maxmem": 16 * GIB},
        {"cpu": 0.99},
    ]


@pytest.fixture
def sample_resources_payload():
    """Sample /cluster/resources?type=vm rows."""
    return [
        {
            "id": "qemu/101", "vmid": 101, "type": "qemu", "name": "web",
            "node": "pve-1", "status": "running", "cpu": 0.05, "maxcpu": 2,
            "mem": GIB, "maxmem": 4 * GIB, "disk": 0, "maxdisk": 32 * GIB, "uptime": 3600,
        },
        {
            "id": "lxc/100", "vmid": 100, "type": "lxc", "name": "dns",
            "node": "pve-2", "status": "stopped", "maxmem": 512 * 1024 ** 2,
        },
        {
            "id": "qemu/9000", "vmid": 9000, "type": "qemu", "name": "tmpl",
            "node": "pve-1", "status": "stopped", "template": 1,
        },
        {"id": "storage/pve-1/local", "type": "storage", "node": "pve-1"},
    ]


@pytest.fixture
def recording_transport():
    return RecordingTransport()


@pytest.fixture
def snapshot_factory():
    return make_snapshot


@pytest.fixture
def node_factory():
    return make_node


@pytest.fixture
def transport_factory():
    return RecordingTransport


@pytest.fixture
def stub_client_factory():
    return StubClient
