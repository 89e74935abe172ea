"""Diff successive cluster snapshots into status change events."""

from __future__ import annotations

from typing import List, Optional

from ..data.models import ClusterSnapshot, StatusEvent


def diff_snapshots(previous: Optional[ClusterSnapshot], current: ClusterSnapshot) -> List[StatusEvent]:
    """Return one StatusEvent per node that is new or whose status changed.

    With no previous snapshot every node of ``current`` is reported, so a
    fresh subscriber gets a complete picture. Only the ``status`` field is
    compared; changes in cpu, memory or uptime alone produce no event. Each
    event carries the full current summary, ordered as in ``current``.
    Nodes missing from ``current`` produce nothing.
    """
    if previous is None:
        return [StatusEvent(node=summary.node, status=summary) for summary in current]

    events = []
    for summary in current:
        before = previous.get(summary.node)
        if before is None or before.status != summary.status:
            events.append(StatusEvent(node=summary.node, status=summary))
    return events


def removed_nodes(previous: Optional[ClusterSnapshot], current: ClusterSnapshot) -> List[str]:
    """Names present in ``previous`` but gone from ``current``."""
    if previous is None:
        return []
    remaining = set(current.names())
    return [name for name in previous.names() if name not in remaining]
