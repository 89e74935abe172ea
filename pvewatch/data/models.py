"""Data models for Proxmox cluster monitoring.

This module defines the value types shared by the collectors, the snapshot
cache, the diff engine and the event stream, following these principles:

1. IMMUTABLE SNAPSHOTS
   - Every model is a frozen dataclass; state changes by replacement only
   - A ClusterSnapshot is a complete point-in-time view of all nodes

2. EXPLICIT UNITS
   - Timestamps: epoch milliseconds (integers) on the wire
   - Memory and storage: bytes
   - CPU: fraction of the node's capacity in [0, 1]

3. CLOSED EVENT UNION
   - EventMessage is exactly HeartbeatEvent | StatusEvent | ErrorEvent
   - event_from_dict() is the only decoder; anything else is rejected
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

PROTOCOL_VERSION = 1

NODE_NAME_MAX_LENGTH = 50
ERROR_MESSAGE_MAX_LENGTH = 500


class ValidationError(ValueError):
    """Raised when data does not satisfy a model invariant."""


# =============================================================================
# Enumerations
# =============================================================================


class NodeStatus(str, Enum):
    """Availability of a cluster node."""

    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class VmType(str, Enum):
    """Guest type."""

    QEMU = "qemu"  # Full virtual machine
    LXC = "lxc"  # Container


class VmStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    SUSPENDED = "suspended"
    TEMPLATE = "template"


class VmAction(str, Enum):
    """Power actions accepted by the VM action endpoint."""

    START = "start"
    STOP = "stop"
    RESTART = "restart"
    PAUSE = "pause"
    RESUME = "resume"
    SHUTDOWN = "shutdown"
    RESET = "reset"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertType(str, Enum):
    CPU = "cpu"
    MEMORY = "memory"
    STORAGE = "storage"
    NETWORK = "network"
    CUSTOM = "custom"


class TimeRange(str, Enum):
    """Time ranges for historical metrics."""

    HOUR = "1h"
    SIX_HOURS = "6h"
    DAY = "24h"
    WEEK = "7d"
    MONTH = "30d"

    @property
    def seconds(self) -> int:
        return TIME_RANGE_SECONDS[self]


TIME_RANGE_SECONDS = {
    TimeRange.HOUR: 3600,
    TimeRange.SIX_HOURS: 6 * 3600,
    TimeRange.DAY: 86400,
    TimeRange.WEEK: 7 * 86400,
    TimeRange.MONTH: 30 * 86400,
}


# =============================================================================
# Validation helpers
# =============================================================================


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ValidationError(message)


def _non_negative(value: Optional[float], name: str) -> None:
    if value is not None:
        _require(isinstance(value, (int, float)) and value >= 0, f"{name} must be a non-negative number")


def _parse_loadavg(value: Any) -> Optional[Tuple[float, float, float]]:
    if value is None:
        return None
    _require(isinstance(value, (list, tuple)), "loadavg must be a list of three numbers")
    try:
        return tuple(float(v) for v in value)
    except (TypeError, ValueError):
        raise ValidationError("loadavg must be a list of three numbers") from None


def _fraction(value: Optional[float], name: str) -> None:
    if value is not None:
        _require(isinstance(value, (int, float)) and 0 <= value <= 1, f"{name} must be within [0, 1]")


def validate_node_name(name: Any) -> str:
    _require(isinstance(name, str) and len(name) >= 1, "Node name is required")
    _require(
        len(name) <= NODE_NAME_MAX_LENGTH,
        f"Node name must be less than {NODE_NAME_MAX_LENGTH} characters",
    )
    return name


def _parse_enum(enum_cls, value: Any, name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {name} {value!r}; expected one of: {allowed}")


# =============================================================================
# Node and cluster models
# =============================================================================


@dataclass(frozen=True)
class MemoryUsage:
    """Memory usage of a node in bytes."""

    total: float
    used: float
    free: float

    def __post_init__(self):
        _non_negative(self.total, "memory.total")
        _non_negative(self.used, "memory.used")
        _non_negative(self.free, "memory.free")
        _require(
            self.used + self.free <= self.total,
            "Used + free memory cannot exceed total memory",
        )

    def to_dict(self) -> Dict[str, float]:
        return {"total": self.total, "used": self.used, "free": self.free}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryUsage":
        return cls(total=data.get("total", 0), used=data.get("used", 0), free=data.get("free", 0))


@dataclass(frozen=True)
class StorageUsage:
    """Root storage usage of a node in bytes."""

    total: float
    used: float
    avail: float

    def __post_init__(self):
        _non_negative(self.total, "storage.total")
        _non_negative(self.used, "storage.used")
        _non_negative(self.avail, "storage.avail")
        _require(
            self.used + self.avail <= self.total,
            "Used + available storage cannot exceed total storage",
        )

    def to_dict(self) -> Dict[str, float]:
        return {"total": self.total, "used": self.used, "avail": self.avail}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StorageUsage":
        return cls(total=data.get("total", 0), used=data.get("used", 0), avail=data.get("avail", 0))


@dataclass(frozen=True)
class NodeSummary:
    """Point-in-time state of one cluster node."""

    node: str
    status: NodeStatus = NodeStatus.UNKNOWN
    uptime: Optional[float] = None  # seconds
    loadavg: Optional[Tuple[float, float, float]] = None
    cpu: Optional[float] = None  # fraction of maxcpu
    maxcpu: Optional[int] = None
    memory: Optional[MemoryUsage] = None
    storage: Optional[StorageUsage] = None

    def __post_init__(self):
        validate_node_name(self.node)
        if not isinstance(self.status, NodeStatus):
            object.__setattr__(self, "status", _parse_enum(NodeStatus, self.status, "node status"))
        _non_negative(self.uptime, "uptime")
        _fraction(self.cpu, "cpu")
        if self.maxcpu is not None:
            _require(self.maxcpu > 0, "maxcpu must be positive")
        if self.loadavg is not None:
            loadavg = tuple(self.loadavg)
            _require(len(loadavg) == 3, "loadavg must have exactly three values")
            for value in loadavg:
                _non_negative(value, "loadavg")
            object.__setattr__(self, "loadavg", loadavg)

    @property
    def is_online(self) -> bool:
        return self.status == NodeStatus.ONLINE

    @property
    def memory_percent(self) -> Optional[float]:
        if not self.memory or not self.memory.total:
            return None
        return self.memory.used / self.memory.total * 100

    @property
    def storage_percent(self) -> Optional[float]:
        if not self.storage or not self.storage.total:
            return None
        return self.storage.used / self.storage.total * 100

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"node": self.node, "status": self.status.value}
        if self.uptime is not None:
            result["uptime"] = self.uptime
        if self.loadavg is not None:
            result["loadavg"] = list(self.loadavg)
        if self.cpu is not None:
            result["cpu"] = self.cpu
        if self.maxcpu is not None:
            result["maxcpu"] = self.maxcpu
        if self.memory is not None:
            result["memory"] = self.memory.to_dict()
        if self.storage is not None:
            result["storage"] = self.storage.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeSummary":
        _require(isinstance(data, dict), "Node summary must be an object")
        memory = data.get("memory")
        storage = data.get("storage")
        loadavg = data.get("loadavg")
        return cls(
            node=data.get("node"),
            status=data.get("status", NodeStatus.UNKNOWN.value),
            uptime=data.get("uptime"),
            loadavg=_parse_loadavg(loadavg),
            cpu=data.get("cpu"),
            maxcpu=data.get("maxcpu"),
            memory=MemoryUsage.from_dict(memory) if isinstance(memory, dict) else None,
            storage=StorageUsage.from_dict(storage) if isinstance(storage, dict) else None,
        )


@dataclass(frozen=True)
class ClusterSnapshot:
    """Complete point-in-time view of cluster node state.

    Nodes keep the order reported by the upstream; names are unique.
    """

    nodes: Tuple[NodeSummary, ...] = ()

    def __post_init__(self):
        nodes = tuple(self.nodes)
        seen = set()
        for node in nodes:
            _require(node.node not in seen, f"Duplicate node in snapshot: {node.node}")
            seen.add(node.node)
        object.__setattr__(self, "nodes", nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes)

    def get(self, name: str) -> Optional[NodeSummary]:
        for node in self.nodes:
            if node.node == name:
                return node
        return None

    def names(self) -> List[str]:
        return [node.node for node in self.nodes]

    def to_dict(self) -> Dict[str, Any]:
        return {"nodes": [node.to_dict() for node in self.nodes]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterSnapshot":
        return cls(nodes=tuple(NodeSummary.from_dict(n) for n in data.get("nodes", [])))


# =============================================================================
# Metrics
# =============================================================================


@dataclass(frozen=True)
class MetricPoint:
    t: int  # epoch milliseconds
    cpu: float
    mem_used: float
    mem_total: float

    def __post_init__(self):
        _require(self.t > 0, "Metric timestamp must be positive")
        _fraction(self.cpu, "cpu")
        _non_negative(self.mem_used, "memUsed")
        _non_negative(self.mem_total, "memTotal")

    def to_dict(self) -> Dict[str, Any]:
        return {"t": self.t, "cpu": self.cpu, "memUsed": self.mem_used, "memTotal": self.mem_total}


@dataclass(frozen=True)
class MetricsSeries:
    node: str
    series: Tuple[MetricPoint, ...] = ()

    def __post_init__(self):
        validate_node_name(self.node)
        object.__setattr__(self, "series", tuple(sorted(self.series, key=lambda p: p.t)))

    def to_dict(self) -> Dict[str, Any]:
        return {"node": self.node, "series": [p.to_dict() for p in self.series]}


@dataclass(frozen=True)
class HistoricalMetricPoint:
    timestamp: int  # epoch milliseconds
    cpu: Optional[float] = None
    memory: Optional[Dict[str, float]] = None  # used, total
    storage: Optional[Dict[str, float]] = None  # used, total
    network: Optional[Dict[str, float]] = None  # rx, tx bytes/s

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"timestamp": self.timestamp}
        for key in ("cpu", "memory", "storage", "network"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result


@dataclass(frozen=True)
class HistoricalMetrics:
    node: str
    time_range: TimeRange
    data: Tuple[HistoricalMetricPoint, ...] = ()
    vmid: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "node": self.node,
            "timeRange": self.time_range.value,
            "data": [p.to_dict() for p in self.data],
        }
        if self.vmid is not None:
            result["vmid"] = self.vmid
        return result


# =============================================================================
# Guests, logs, backups, services, alerts
# =============================================================================


@dataclass(frozen=True)
class VmResource:
    """A virtual machine or container as reported by /cluster/resources."""

    vmid: int
    type: VmType
    status: VmStatus
    node: str
    name: Optional[str] = None
    cpu: Optional[float] = None
    maxcpu: Optional[int] = None
    memory: Optional[Dict[str, float]] = None  # used, max
    disk: Optional[Dict[str, float]] = None  # used, max
    uptime: Optional[float] = None
    template: bool = False
    tags: Optional[str] = None

    def __post_init__(self):
        _require(isinstance(self.vmid, int) and self.vmid > 0, "vmid must be a positive integer")
        validate_node_name(self.node)
        if not isinstance(self.type, VmType):
            object.__setattr__(self, "type", _parse_enum(VmType, self.type, "guest type"))
        if not isinstance(self.status, VmStatus):
            object.__setattr__(self, "status", _parse_enum(VmStatus, self.status, "guest status"))
        _fraction(self.cpu, "cpu")
        _non_negative(self.uptime, "uptime")

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "vmid": self.vmid,
            "type": self.type.value,
            "status": self.status.value,
            "node": self.node,
            "template": self.template,
        }
        for key in ("name", "cpu", "maxcpu", "memory", "disk", "uptime", "tags"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result


@dataclass(frozen=True)
class VmList:
    vms: Tuple[VmResource, ...] = ()

    def find(self, vmid: int) -> Optional[VmResource]:
        for vm in self.vms:
            if vm.vmid == vmid:
                return vm
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"vms": [vm.to_dict() for vm in self.vms]}


@dataclass(frozen=True)
class LogEntry:
    n: int  # line number
    t: str  # timestamp as reported by the node
    msg: str
    pri: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"n": self.n, "t": self.t, "msg": self.msg}
        if self.pri is not None:
            result["pri"] = self.pri
        return result


@dataclass(frozen=True)
class BackupJob:
    id: str
    enabled: bool = True
    schedule: Optional[str] = None
    storage: Optional[str] = None
    node: Optional[str] = None
    vmids: Tuple[int, ...] = ()
    mode: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "enabled": self.enabled,
            "schedule": self.schedule,
            "storage": self.storage,
            "node": self.node,
            "vmids": list(self.vmids),
            "mode": self.mode,
        }


@dataclass(frozen=True)
class ServiceStatus:
    node: str
    name: str
    state: str
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"node": self.node, "name": self.name, "state": self.state, "description": self.description}


@dataclass(frozen=True)
class Alert:
    """An active condition derived from cluster state."""

    id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: int  # epoch milliseconds
    node: Optional[str] = None
    vmid: Optional[int] = None
    acknowledged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "acknowledged": self.acknowledged,
        }
        if self.node is not None:
            result["node"] = self.node
        if self.vmid is not None:
            result["vmid"] = self.vmid
        return result


# =============================================================================
# Event stream wire contract
# =============================================================================


@dataclass(frozen=True)
class HeartbeatEvent:
    """Liveness-only event carrying no state change."""

    type: ClassVar[str] = "heartbeat"

    ts: int  # epoch milliseconds

    def __post_init__(self):
        _require(isinstance(self.ts, (int, float)) and self.ts > 0, "Heartbeat timestamp must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "ts": self.ts}


@dataclass(frozen=True)
class StatusEvent:
    """Full current summary of one node whose status changed."""

    type: ClassVar[str] = "status"

    node: str
    status: NodeSummary

    def __post_init__(self):
        validate_node_name(self.node)
        _require(isinstance(self.status, NodeSummary), "Status event requires a node summary")
        _require(self.status.node == self.node, "Status event node does not match its summary")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "node": self.node, "status": self.status.to_dict()}


@dataclass(frozen=True)
class ErrorEvent:
    type: ClassVar[str] = "error"

    message: str = field(default="Unknown error")

    def __post_init__(self):
        message = str(self.message) if self.message is not None else "Unknown error"
        object.__setattr__(self, "message", message[:ERROR_MESSAGE_MAX_LENGTH])

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "message": self.message}


EventMessage = Union[HeartbeatEvent, StatusEvent, ErrorEvent]

EVENT_TYPES = (HeartbeatEvent, StatusEvent, ErrorEvent)


def event_from_dict(data: Any) -> EventMessage:
    """Decode a wire dictionary into an EventMessage.

    Raises:
        ValidationError: If the payload is not one of the known variants or
            violates the variant's schema.
    """
    _require(isinstance(data, dict), "Event message must be an object")
    kind = data.get("type")
    if kind == HeartbeatEvent.type:
        return HeartbeatEvent(ts=data.get("ts"))
    if kind == StatusEvent.type:
        status = data.get("status")
        return StatusEvent(node=data.get("node"), status=NodeSummary.from_dict(status))
    if kind == ErrorEvent.type:
        message = data.get("message")
        _require(isinstance(message, str), "Error event requires a message")
        _require(len(message) <= ERROR_MESSAGE_MAX_LENGTH, "Error message too long")
        return ErrorEvent(message=message)
    raise ValidationError(f"Unknown event type: {kind!r}")
