"""In-memory simulated Proxmox cluster.

Keeps raw rows shaped like the Proxmox API and drifts them on every poll,
so the normal normalization path and the event stream can be exercised
without a hypervisor. Enabled with ``proxmox.mock: true`` or ``ENABLE_MOCK``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import random
import time
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence, Union

from ..data.models import (
    Alert,
    BackupJob,
    ClusterSnapshot,
    HistoricalMetrics,
    LogEntry,
    MetricsSeries,
    NodeStatus,
    ServiceStatus,
    TimeRange,
    VmAction,
    VmList,
    validate_node_name,
)
from ..data.normalization import (
    build_cluster_snapshot,
    derive_alerts,
    normalize_backup_jobs,
    normalize_historical_metrics,
    normalize_log_entries,
    normalize_metrics_series,
    normalize_services,
    normalize_vm_list,
)
from .base import CollectorError, UpstreamClient

GIB = 1024 ** 3

DEFAULT_NODES = ("pve-1", "pve-2", "pve-3")

LOG_MESSAGES = (
    ("6", "pvedaemon[1123]: <root@pam> successful auth for user 'root@pam'"),
    ("6", "pvestatd[1042]: status update time (0.412 seconds)"),
    ("4", "pvestatd[1042]: storage 'local-lvm' is running low on space"),
    ("6", "pveproxy[2210]: worker 2211 finished"),
    ("3", "kernel: [ 1234.5678] EXT4-fs warning: mounting fs with errors"),
    ("6", "vzdump[3301]: INFO: Finished Backup of VM 100 (00:01:42)"),
)

SERVICES = (
    ("pveproxy", "PVE API Proxy Server"),
    ("pvedaemon", "PVE API Daemon"),
    ("pvestatd", "PVE Status Daemon"),
    ("pve-cluster", "The Proxmox VE cluster filesystem"),
    ("corosync", "Corosync Cluster Engine"),
)

ACTION_RESULT = {
    VmAction.START: "running",
    VmAction.STOP: "stopped",
    VmAction.RESTART: "running",
    VmAction.PAUSE: "paused",
    VmAction.RESUME: "running",
    VmAction.SHUTDOWN: "stopped",
    VmAction.RESET: "running",
}


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class MockCollector(UpstreamClient):
    """Simulated cluster for local runs and tests.

    Args:
        nodes: Node names to simulate.
        seed: Seed for the random walk, for reproducible runs.
        drift: If False, metrics stay fixed between polls.
        latency: Seconds each call sleeps before answering.

    Set ``fail_next`` to make that many upcoming calls raise
    :class:`CollectorError`.
    """

    def __init__(
        self,
        nodes: Sequence[str] = DEFAULT_NODES,
        *,
        seed: Optional[int] = None,
        drift: bool = True,
        latency: float = 0.0,
    ):
        self._random = random.Random(seed)
        self.drift = drift
        self.latency = latency
        self.fail_next = 0
        self.calls: Counter = Counter()
        self._acknowledged = set()
        self._logs: Dict[str, List[Dict[str, Any]]] = {}

        self._nodes: Dict[str, Dict[str, Any]] = {}
        for index, name in enumerate(nodes):
            validate_node_name(name)
            self._nodes[name] = {
                "node": name,
                "status": "online",
                "uptime": 86400 * (index + 3),
                "cpu": round(self._random.uniform(0.05, 0.4), 3),
                "maxcpu": 8 * (index + 1),
                "mem": int(self._random.uniform(8, 24) * GIB),
                "maxmem": 32 * GIB * (index + 1),
                "disk": int(self._random.uniform(20, 60) * GIB),
                "maxdisk": 100 * GIB,
                "loadavg": ["0.40", "0.35", "0.30"],
            }
            self._logs[name] = []

        names = list(self._nodes)
        self._vms: List[Dict[str, Any]] = []
        for offset in range(2 * len(names)):
            vmid = 100 + offset
            kind = "qemu" if offset % 2 == 0 else "lxc"
            self._vms.append({
                "id": f"{kind}/{vmid}",
                "vmid": vmid,
                "type": kind,
                "name": f"{'vm' if kind == 'qemu' else 'ct'}-{vmid}",
                "node": names[offset % len(names)],
                "status": "running" if offset % 3 else "stopped",
                "cpu": 0.1,
                "maxcpu": 2,
                "mem": 2 * GIB,
                "maxmem": 4 * GIB,
                "disk": 10 * GIB,
                "maxdisk": 32 * GIB,
                "uptime": 3600,
            })

    @property
    def name(self) -> str:
        return "mock"

    @property
    def display_name(self) -> str:
        return "Simulated Proxmox Cluster"

    def is_available(self) -> bool:
        return True

    # --- Simulation controls ---

    def set_node_status(self, node: str, status: Union[NodeStatus, str]) -> None:
        """Force a node online or offline."""
        self._nodes[node]["status"] = NodeStatus(status).value

    def remove_node(self, node: str) -> None:
        self._nodes.pop(node, None)

    def step(self) -> None:
        """Advance the random walk by one tick."""
        for name, row in self._nodes.items():
            if row["status"] != "online":
                continue
            row["uptime"] += 5
            row["cpu"] = round(_clamp(row["cpu"] + self._random.uniform(-0.05, 0.05), 0.01, 0.99), 3)
            row["mem"] = int(_clamp(row["mem"] + self._random.uniform(-0.5, 0.5) * GIB, GIB, row["maxmem"]))
            load = float(row["loadavg"][0])
            load = round(_clamp(load + self._random.uniform(-0.3, 0.3), 0.1, 16.0), 2)
            row["loadavg"] = [f"{load:.2f}", row["loadavg"][0], row["loadavg"][1]]
            if self._random.random() < 0.3:
                self._append_log(name)

    def _append_log(self, node: str) -> None:
        pri, message = self._random.choice(LOG_MESSAGES)
        now = time.time()
        stamp = dt.datetime.fromtimestamp(now).strftime("%b %d %H:%M:%S")
        log = self._logs[node]
        log.append({"n": len(log) + 1, "t": f"{stamp} {node} {message}", "pri": pri, "time": now})
        del log[:-500]

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise CollectorError(self.name, f"Simulated upstream failure in {operation}")

    def _require_node(self, node: str) -> Dict[str, Any]:
        validate_node_name(node)
        if node not in self._nodes:
            raise CollectorError(self.name, f"HTTP 500 Internal Server Error: no such node '{node}'")
        return self._nodes[node]

    def _snapshot(self) -> ClusterSnapshot:
        status_rows = [
            {"type": "node", "name": name, "online": 1 if row["status"] == "online" else 0}
            for name, row in self._nodes.items()
        ]
        return build_cluster_snapshot([dict(row) for row in self._nodes.values()], status_rows)

    def _rrd_rows(self, node: str, span_seconds: int, points: int = 60) -> List[Dict[str, Any]]:
        row = self._nodes[node]
        now = int(time.time())
        step = max(1, span_seconds // points)
        rows = []
        for i in range(points):
            rows.append({
                "time": now - (points - 1 - i) * step,
                "cpu": round(_clamp(row["cpu"] + self._random.uniform(-0.05, 0.05), 0, 1), 3),
                "mem": row["mem"],
                "maxmem": row["maxmem"],
                "rootused": row["disk"],
                "roottotal": row["maxdisk"],
                "netin": self._random.randint(10, 950) * 1024,
                "netout": self._random.randint(5, 450) * 1024,
            })
        return rows

    # --- UpstreamClient ---

    async def get_cluster_summary(self) -> ClusterSnapshot:
        await self._enter("get_cluster_summary")
        if self.drift:
            self.step()
        return self._snapshot()

    async def get_node_metrics(self, node: str, range_seconds: float) -> MetricsSeries:
        await self._enter("get_node_metrics")
        self._require_node(node)
        return normalize_metrics_series(node, self._rrd_rows(node, int(range_seconds)))

    async def get_historical_metrics(
        self,
        node: str,
        time_range: Union[TimeRange, str],
        vmid: Optional[int] = None,
    ) -> HistoricalMetrics:
        await self._enter("get_historical_metrics")
        self._require_node(node)
        time_range = TimeRange(time_range)
        rows = self._rrd_rows(node, time_range.seconds)
        return normalize_historical_metrics(node, time_range, rows, vmid=vmid)

    async def get_vm_list(self) -> VmList:
        await self._enter("get_vm_list")
        return normalize_vm_list(self._vms)

    async def perform_vm_action(self, node: str, vmid: int, action: Union[VmAction, str]) -> Dict[str, Any]:
        await self._enter("perform_vm_action")
        action = VmAction(action)
        self._require_node(node)
        for vm in self._vms:
            if vm["vmid"] == vmid:
                vm["status"] = ACTION_RESULT[action]
                vm["node"] = node
                return {"success": True, "message": f"{action.value} requested for VM {vmid}"}
        raise CollectorError(self.name, f"VM {vmid} not found")

    async def get_system_logs(self, node: str, limit: int = 50, since: Optional[int] = None) -> List[LogEntry]:
        await self._enter("get_system_logs")
        self._require_node(node)
        rows = self._logs[node]
        if since is not None:
            rows = [row for row in rows if row["time"] * 1000 >= since]
        return normalize_log_entries(rows[-limit:] if limit else rows)

    async def get_backup_jobs(self, node: Optional[str] = None) -> List[BackupJob]:
        await self._enter("get_backup_jobs")
        names = list(self._nodes)
        rows = [
            {
                "id": f"backup-{index + 1}",
                "enabled": 1,
                "schedule": "sun 01:00",
                "storage": "local",
                "node": name,
                "vmid": ",".join(str(vm["vmid"]) for vm in self._vms if vm["node"] == name),
                "mode": "snapshot",
            }
            for index, name in enumerate(names)
        ]
        return normalize_backup_jobs(rows, node=node)

    async def get_service_status(self, node: str) -> List[ServiceStatus]:
        await self._enter("get_service_status")
        row = self._require_node(node)
        state = "running" if row["status"] == "online" else "unknown"
        return normalize_services(node, [{"name": name, "state": state, "desc": desc} for name, desc in SERVICES])

    async def get_active_alerts(self) -> List[Alert]:
        await self._enter("get_active_alerts")
        alerts = derive_alerts(self._snapshot())
        self._acknowledged &= {alert.id for alert in alerts}
        return [
            dataclasses.replace(alert, acknowledged=True) if alert.id in self._acknowledged else alert
            for alert in alerts
        ]

    async def acknowledge_alert(self, alert_id: str) -> Dict[str, Any]:
        await self._enter("acknowledge_alert")
        self._acknowledged.add(alert_id)
        return {"success": True, "alertId": alert_id}

    async def get_version(self) -> Dict[str, Any]:
        await self._enter("get_version")
        return {"version": "8.2.4", "release": "8.2", "repoid": "mock"}
