"""Event stream - snapshot diffing, SSE framing, sessions and the client consumer."""

from .diff import diff_snapshots, removed_nodes
from .sessions import SubscriptionSession, SubscriberLimitError

__all__ = [
    "diff_snapshots",
    "removed_nodes",
    "SubscriptionSession",
    "SubscriberLimitError",
]
