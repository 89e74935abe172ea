"""Proxmox API payload normalization.

The Proxmox API reports the same resources in slightly different shapes
depending on the endpoint. This module turns raw JSON rows into the
immutable models in :mod:`pvewatch.data.models`.

Key normalizations:
1. Node status → online / offline / unknown (cluster/status wins over /nodes)
2. Memory and disk → used/free pairs that never exceed the reported total
3. rrddata rows → ascending metric series with epoch-millisecond timestamps
4. Cluster state → derived alerts against fixed thresholds
"""

from __future__ import annotations

import re
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import (
    Alert,
    AlertSeverity,
    AlertType,
    BackupJob,
    ClusterSnapshot,
    HistoricalMetricPoint,
    HistoricalMetrics,
    LogEntry,
    MemoryUsage,
    MetricPoint,
    MetricsSeries,
    NodeStatus,
    NodeSummary,
    ServiceStatus,
    StorageUsage,
    TimeRange,
    VmList,
    VmResource,
    VmStatus,
    VmType,
)


# =============================================================================
# Status Normalization Mappings
# =============================================================================

NODE_STATUS_MAP = {
    "online": NodeStatus.ONLINE,
    "up": NodeStatus.ONLINE,
    "offline": NodeStatus.OFFLINE,
    "down": NodeStatus.OFFLINE,
    "unknown": NodeStatus.UNKNOWN,
}

VM_STATUS_MAP = {
    "running": VmStatus.RUNNING,
    "stopped": VmStatus.STOPPED,
    "paused": VmStatus.PAUSED,
    "suspended": VmStatus.SUSPENDED,
    "prelaunch": VmStatus.STOPPED,
}

# Proxmox rrddata accepts these timeframes, smallest first
RRD_TIMEFRAMES: Tuple[Tuple[int, str], ...] = (
    (3600, "hour"),
    (86400, "day"),
    (604800, "week"),
    (2592000, "month"),
)

# "Oct 27 10:00:00 rest of line" or ISO "2024-10-27T10:00:00+0200 rest of line"
SYSLOG_LINE_RE = re.compile(r"^([A-Z][a-z]{2} [ \d]\d \d{2}:\d{2}:\d{2}|\d{4}-\d{2}-\d{2}T\S+)\s+(.*)$")

# Alert thresholds (percent of capacity)
CPU_ALERT_PERCENT = 90.0
MEMORY_ALERT_PERCENT = 90.0
STORAGE_ALERT_PERCENT = 90.0


def _number(value: Any, default: Optional[float] = None) -> Optional[float]:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return value
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_node_status(raw: Any) -> NodeStatus:
    """Map any upstream status value onto the three canonical states."""
    if isinstance(raw, bool):
        return NodeStatus.ONLINE if raw else NodeStatus.OFFLINE
    return NODE_STATUS_MAP.get(str(raw or "").strip().lower(), NodeStatus.UNKNOWN)


def normalize_memory(total: Any, used: Any) -> Optional[MemoryUsage]:
    total_n = _number(total)
    if total_n is None or total_n < 0:
        return None
    used_n = min(max(_number(used, 0.0) or 0.0, 0.0), total_n)
    return MemoryUsage(total=total_n, used=used_n, free=max(0, total_n - used_n))


def normalize_storage(total: Any, used: Any) -> Optional[StorageUsage]:
    total_n = _number(total)
    if total_n is None or total_n < 0:
        return None
    used_n = min(max(_number(used, 0.0) or 0.0, 0.0), total_n)
    return StorageUsage(total=total_n, used=used_n, avail=max(0, total_n - used_n))


def normalize_loadavg(raw: Any) -> Optional[Tuple[float, float, float]]:
    if not isinstance(raw, (list, tuple)) or len(raw) != 3:
        return None
    values = [_number(v) for v in raw]
    if any(v is None or v < 0 for v in values):
        return None
    return (values[0], values[1], values[2])


def _clamp_fraction(value: Any) -> Optional[float]:
    number = _number(value)
    if number is None:
        return None
    return min(max(number, 0.0), 1.0)


def normalize_node(row: Dict[str, Any]) -> NodeSummary:
    """Build a NodeSummary from a /nodes row."""
    maxcpu = _number(row.get("maxcpu"))
    uptime = _number(row.get("uptime"))
    return NodeSummary(
        node=row.get("node") or row.get("name"),
        status=normalize_node_status(row.get("status")),
        uptime=uptime if uptime is not None and uptime >= 0 else None,
        loadavg=normalize_loadavg(row.get("loadavg")),
        cpu=_clamp_fraction(row.get("cpu")),
        maxcpu=int(maxcpu) if maxcpu and maxcpu > 0 else None,
        memory=normalize_memory(row.get("maxmem"), row.get("mem")),
        storage=normalize_storage(row.get("maxdisk"), row.get("disk")),
    )


def build_cluster_snapshot(
    nodes: Iterable[Dict[str, Any]],
    cluster_status: Iterable[Dict[str, Any]] = (),
) -> ClusterSnapshot:
    """Merge /nodes and /cluster/status into a ClusterSnapshot.

    /nodes carries resource usage; /cluster/status is authoritative for
    online/offline. Rows without a node name are skipped and duplicate
    names keep the first occurrence.
    """
    summaries: Dict[str, NodeSummary] = {}
    for row in nodes:
        name = row.get("node") or row.get("name")
        if not name or name in summaries:
            continue
        summaries[name] = normalize_node(row)

    for entry in cluster_status:
        if entry.get("type") != "node":
            continue
        name = entry.get("name")
        if name not in summaries:
            continue
        online = bool(_number(entry.get("online"), 0))
        current = summaries[name]
        summaries[name] = NodeSummary(
            node=current.node,
            status=NodeStatus.ONLINE if online else NodeStatus.OFFLINE,
            uptime=current.uptime,
            loadavg=current.loadavg,
            cpu=current.cpu,
            maxcpu=current.maxcpu,
            memory=current.memory,
            storage=current.storage,
        )

    return ClusterSnapshot(nodes=tuple(summaries.values()))


# =============================================================================
# Metrics
# =============================================================================


def rrd_timeframe(range_seconds: float) -> str:
    """Map a range in seconds onto the closest rrddata timeframe."""
    for limit, timeframe in RRD_TIMEFRAMES:
        if range_seconds <= limit:
            return timeframe
    return "year"


def normalize_metrics_series(node: str, rows: Iterable[Dict[str, Any]]) -> MetricsSeries:
    """Turn rrddata rows into an ascending metric series.

    Rows without a numeric ``time`` are dropped; missing values become 0.
    """
    points: List[MetricPoint] = []
    for row in rows:
        ts = row.get("time")
        if isinstance(ts, bool) or not isinstance(ts, (int, float)) or ts <= 0:
            continue
        points.append(MetricPoint(
            t=int(ts * 1000),
            cpu=_clamp_fraction(row.get("cpu")) or 0.0,
            mem_used=max(_number(row.get("mem"), 0.0) or 0.0, 0.0),
            mem_total=max(_number(row.get("maxmem"), 0.0) or 0.0, 0.0),
        ))
    return MetricsSeries(node=node, series=tuple(points))


def normalize_historical_metrics(
    node: str,
    time_range: TimeRange,
    rows: Iterable[Dict[str, Any]],
    vmid: Optional[int] = None,
    now: Optional[float] = None,
) -> HistoricalMetrics:
    """Turn rrddata rows into historical points limited to ``time_range``."""
    cutoff = (now if now is not None else time.time()) - time_range.seconds
    points: List[HistoricalMetricPoint] = []
    for row in rows:
        ts = _number(row.get("time"))
        if ts is None or ts <= 0 or ts < cutoff:
            continue
        memory = None
        mem_total = _number(row.get("maxmem"))
        if mem_total:
            memory = {"used": _number(row.get("mem"), 0.0), "total": mem_total}
        storage = None
        # Node rows report root filesystem usage, guest rows report disk usage
        disk_total = _number(row.get("maxdisk", row.get("roottotal")))
        if disk_total:
            storage = {"used": _number(row.get("disk", row.get("rootused")), 0.0), "total": disk_total}
        network = None
        if "netin" in row or "netout" in row:
            network = {"rx": _number(row.get("netin"), 0.0), "tx": _number(row.get("netout"), 0.0)}
        points.append(HistoricalMetricPoint(
            timestamp=int(ts * 1000),
            cpu=_clamp_fraction(row.get("cpu")),
            memory=memory,
            storage=storage,
            network=network,
        ))
    points.sort(key=lambda p: p.timestamp)
    return HistoricalMetrics(node=node, time_range=time_range, data=tuple(points), vmid=vmid)


# =============================================================================
# Guests, logs, backups, services
# =============================================================================


def normalize_vm(row: Dict[str, Any]) -> Optional[VmResource]:
    """Build a VmResource from a /cluster/resources?type=vm row.

    Returns None for rows that are not guests.
    """
    kind = str(row.get("type") or "").lower()
    if kind not in (VmType.QEMU.value, VmType.LXC.value):
        return None
    vmid = _number(row.get("vmid"))
    if not vmid or not row.get("node"):
        return None
    template = bool(_number(row.get("template"), 0))
    status = VmStatus.TEMPLATE if template else VM_STATUS_MAP.get(
        str(row.get("status") or "").lower(), VmStatus.STOPPED
    )
    memory = None
    if row.get("maxmem") is not None:
        memory = {"used": _number(row.get("mem"), 0.0), "max": _number(row.get("maxmem"), 0.0)}
    disk = None
    if row.get("maxdisk") is not None:
        disk = {"used": _number(row.get("disk"), 0.0), "max": _number(row.get("maxdisk"), 0.0)}
    maxcpu = _number(row.get("maxcpu"))
    return VmResource(
        vmid=int(vmid),
        type=VmType(kind),
        status=status,
        node=row.get("node"),
        name=row.get("name"),
        cpu=_clamp_fraction(row.get("cpu")),
        maxcpu=int(maxcpu) if maxcpu and maxcpu > 0 else None,
        memory=memory,
        disk=disk,
        uptime=_number(row.get("uptime")),
        template=template,
        tags=row.get("tags") or None,
    )


def normalize_vm_list(rows: Iterable[Dict[str, Any]]) -> VmList:
    vms = [vm for vm in (normalize_vm(row) for row in rows) if vm is not None]
    vms.sort(key=lambda vm: vm.vmid)
    return VmList(vms=tuple(vms))


def normalize_log_entries(rows: Iterable[Dict[str, Any]]) -> List[LogEntry]:
    """Split /nodes/{node}/syslog rows into timestamp and message.

    The API returns each line as ``{"n": 1, "t": "<whole line>"}``.
    """
    entries = []
    for index, row in enumerate(rows, start=1):
        line = str(row.get("t") or "")
        match = SYSLOG_LINE_RE.match(line)
        stamp, message = (match.group(1), match.group(2)) if match else ("", line)
        entries.append(LogEntry(
            n=int(_number(row.get("n"), index)),
            t=stamp,
            msg=message,
            pri=str(row["pri"]) if row.get("pri") is not None else None,
        ))
    return entries


def normalize_backup_jobs(rows: Iterable[Dict[str, Any]], node: Optional[str] = None) -> List[BackupJob]:
    jobs = []
    for row in rows:
        job_node = row.get("node")
        if node and job_node and job_node != node:
            continue
        vmids: Tuple[int, ...] = ()
        raw_vmids = row.get("vmid")
        if raw_vmids:
            vmids = tuple(int(v) for v in str(raw_vmids).split(",") if v.strip().isdigit())
        jobs.append(BackupJob(
            id=str(row.get("id")),
            enabled=bool(_number(row.get("enabled"), 1)),
            schedule=row.get("schedule"),
            storage=row.get("storage"),
            node=job_node,
            vmids=vmids,
            mode=row.get("mode"),
        ))
    return jobs


def normalize_services(node: str, rows: Iterable[Dict[str, Any]]) -> List[ServiceStatus]:
    return [
        ServiceStatus(
            node=node,
            name=str(row.get("name") or row.get("service")),
            state=str(row.get("state") or "unknown"),
            description=row.get("desc"),
        )
        for row in rows
    ]


# =============================================================================
# Alerts
# =============================================================================


def derive_alerts(snapshot: ClusterSnapshot, timestamp: Optional[int] = None) -> List[Alert]:
    """Derive active alerts from a cluster snapshot.

    Alert ids are stable for a given node and condition so acknowledgements
    survive across polls.
    """
    ts = timestamp if timestamp is not None else now_ms()
    alerts: List[Alert] = []
    for node in snapshot:
        if node.status == NodeStatus.OFFLINE:
            alerts.append(Alert(
                id=f"{node.node}:offline",
                type=AlertType.CUSTOM,
                severity=AlertSeverity.CRITICAL,
                message=f"Node {node.node} is offline",
                timestamp=ts,
                node=node.node,
            ))
            continue
        if node.cpu is not None and node.cpu * 100 >= CPU_ALERT_PERCENT:
            alerts.append(Alert(
                id=f"{node.node}:cpu",
                type=AlertType.CPU,
                severity=AlertSeverity.CRITICAL,
                message=f"High CPU usage on {node.node} ({node.cpu * 100:.0f}%)",
                timestamp=ts,
                node=node.node,
            ))
        memory_percent = node.memory_percent
        if memory_percent is not None and memory_percent >= MEMORY_ALERT_PERCENT:
            alerts.append(Alert(
                id=f"{node.node}:memory",
                type=AlertType.MEMORY,
                severity=AlertSeverity.WARNING,
                message=f"High memory usage on {node.node} ({memory_percent:.0f}%)",
                timestamp=ts,
                node=node.node,
            ))
        storage_percent = node.storage_percent
        if storage_percent is not None and storage_percent >= STORAGE_ALERT_PERCENT:
            alerts.append(Alert(
                id=f"{node.node}:storage",
                type=AlertType.STORAGE,
                severity=AlertSeverity.WARNING,
                message=f"Low disk space on {node.node} ({100 - storage_percent:.0f}% free)",
                timestamp=ts,
                node=node.node,
            ))
    return alerts
