"""Data layer - models, normalization and caching."""

from .cache import SnapshotCache, CacheKeys
from .models import (
    ValidationError,
    NodeStatus,
    MemoryUsage,
    StorageUsage,
    NodeSummary,
    ClusterSnapshot,
    MetricPoint,
    MetricsSeries,
    HeartbeatEvent,
    StatusEvent,
    ErrorEvent,
    EventMessage,
    event_from_dict,
)

__all__ = [
    "SnapshotCache",
    "CacheKeys",
    "ValidationError",
    "NodeStatus",
    "MemoryUsage",
    "StorageUsage",
    "NodeSummary",
    "ClusterSnapshot",
    "MetricPoint",
    "MetricsSeries",
    "HeartbeatEvent",
    "StatusEvent",
    "ErrorEvent",
    "EventMessage",
    "event_from_dict",
]
