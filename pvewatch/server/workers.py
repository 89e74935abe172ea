"""Background poll loop that feeds every event stream subscriber.

One EventMultiplexer per process polls the upstream through the snapshot
cache, diffs consecutive snapshots, and fans heartbeat/status/error events
out to all attached subscription sessions.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..collectors.base import UpstreamClient
from ..data.cache import CacheKeys, SnapshotCache
from ..data.models import ClusterSnapshot, ErrorEvent, EventMessage, HeartbeatEvent
from ..data.normalization import now_ms
from ..events.diff import diff_snapshots, removed_nodes
from ..events.sessions import (
    DEFAULT_WRITE_TIMEOUT,
    SubscriberLimitError,
    SubscriptionSession,
    Transport,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0
MIN_POLL_INTERVAL = 0.5
DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_CACHE_TTL = 2.0


class CycleState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    EMITTING = "emitting"
    FAILED = "failed"
    SLEEPING = "sleeping"
    STOPPED = "stopped"


class UpstreamTimeoutError(Exception):
    """A snapshot fetch did not finish within ``request_timeout``."""


class EventMultiplexer:
    """Single poll loop shared by all subscribers.

    The loop starts on the first :meth:`attach` (unless ``autostart`` is
    off) and keeps running until :meth:`stop`, whether or not anyone is
    subscribed. Each cycle emits a
    heartbeat, then either the status changes since the last good snapshot
    or one error event. A failed cycle keeps the last good snapshot.
    """

    def __init__(
        self,
        client: UpstreamClient,
        cache: Optional[SnapshotCache] = None,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        request_timeout: Optional[float] = DEFAULT_REQUEST_TIMEOUT,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        write_timeout: Optional[float] = DEFAULT_WRITE_TIMEOUT,
        max_sessions: Optional[int] = None,
        autostart: bool = True,
        clock: Callable[[], int] = now_ms,
    ):
        self.client = client
        self.cache = cache if cache is not None else SnapshotCache(ttl=cache_ttl)
        self.poll_interval = max(MIN_POLL_INTERVAL, poll_interval)
        self.request_timeout = request_timeout
        self.cache_ttl = cache_ttl
        self.write_timeout = write_timeout
        self.max_sessions = max_sessions
        self.autostart = autostart
        self._clock = clock

        self.state = CycleState.IDLE
        self._sessions: Dict[str, SubscriptionSession] = {}
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._last_snapshot: Optional[ClusterSnapshot] = None
        self._last_error: Optional[str] = None
        self._last_heartbeat_ts = 0
        self._last_cycle_at: Optional[float] = None
        self._cycle_count = 0
        self._consecutive_failures = 0
        self._events_emitted = 0

    # --- Subscribers ---

    def attach(self, transport: Transport) -> SubscriptionSession:
        """Register a transport and make sure the poll loop is running.

        Raises:
            SubscriberLimitError: If ``max_sessions`` subscribers are attached.
        """
        self._prune()
        if self.max_sessions is not None and len(self._sessions) >= self.max_sessions:
            raise SubscriberLimitError(self.max_sessions)
        session = SubscriptionSession(transport, write_timeout=self.write_timeout)
        self._sessions[session.id] = session
        logger.info("[multiplexer] Session %s attached (%d active)", session.id[:8], len(self._sessions))
        if self.autostart:
            self.ensure_started()
        return session

    def detach(self, session: SubscriptionSession) -> None:
        """Unregister a session. Safe to call more than once."""
        session.close()
        if self._sessions.pop(session.id, None) is not None:
            logger.info("[multiplexer] Session %s detached (%d active)", session.id[:8], len(self._sessions))

    def sessions(self) -> List[SubscriptionSession]:
        return list(self._sessions.values())

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def at_capacity(self) -> bool:
        self._prune()
        return self.max_sessions is not None and len(self._sessions) >= self.max_sessions

    # --- Loop control ---

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def ensure_started(self) -> None:
        """Start the poll loop unless it is already running."""
        if self.running or self._stopping:
            return
        self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        """Stop the loop and close every session. Idempotent."""
        self._stopping = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for session in list(self._sessions.values()):
            self.detach(session)
        self.state = CycleState.STOPPED

    async def _run(self) -> None:
        logger.info("[multiplexer] Starting (poll_interval=%gs, request_timeout=%ss)",
                    self.poll_interval, self.request_timeout)
        while not self._stopping:
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("[multiplexer] Cycle %d crashed", self._cycle_count)
            if self._stopping:
                break
            self.state = CycleState.SLEEPING
            await asyncio.sleep(self.poll_interval)
        logger.info("[multiplexer] Stopped")

    async def run_cycle(self) -> None:
        """Run one heartbeat/poll/emit cycle."""
        self._cycle_count += 1
        self._last_cycle_at = time.time()

        await self._broadcast(HeartbeatEvent(ts=self._next_heartbeat_ts()))

        self.state = CycleState.POLLING
        try:
            current = await self._fetch_snapshot()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.state = CycleState.FAILED
            self._consecutive_failures += 1
            message = _describe(exc)
            self._last_error = message
            logger.warning("[multiplexer] Cycle %d failed (failure %d): %s",
                           self._cycle_count, self._consecutive_failures, message)
            await self._broadcast(ErrorEvent(message=message))
            return

        self.state = CycleState.EMITTING
        self._consecutive_failures = 0
        self._last_error = None
        gone = removed_nodes(self._last_snapshot, current)
        if gone:
            logger.info("[multiplexer] Nodes no longer reported: %s", ", ".join(gone))
        for event in diff_snapshots(self._last_snapshot, current):
            await self._broadcast(event)
        self._last_snapshot = current

    async def _fetch_snapshot(self) -> ClusterSnapshot:
        fetch = self.cache.get_or_compute(
            CacheKeys.cluster_summary(),
            self.client.get_cluster_summary,
            ttl=self.cache_ttl,
        )
        if not self.request_timeout:
            return await fetch
        task = asyncio.ensure_future(fetch)
        try:
            done, _ = await asyncio.wait({task}, timeout=self.request_timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if not done:
            task.cancel()
            raise UpstreamTimeoutError(f"Upstream request timed out after {self.request_timeout:g}s")
        return task.result()

    def _next_heartbeat_ts(self) -> int:
        # Heartbeat timestamps never go backwards even if the wall clock does
        ts = max(int(self._clock()), self._last_heartbeat_ts)
        self._last_heartbeat_ts = ts
        return ts

    async def _broadcast(self, event: EventMessage) -> None:
        sessions = list(self._sessions.values())
        if sessions:
            results = await asyncio.gather(*(session.send(event) for session in sessions))
            for session, delivered in zip(sessions, results):
                if not delivered:
                    logger.info("[multiplexer] Dropping session %s: %s", session.id[:8], session.last_error)
                    self.detach(session)
        self._events_emitted += 1

    def _prune(self) -> None:
        for session in [s for s in self._sessions.values() if not s.alive]:
            self.detach(session)

    # --- Introspection ---

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def last_snapshot(self) -> Optional[ClusterSnapshot]:
        return self._last_snapshot

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "state": self.state.value,
            "sessions": len(self._sessions),
            "max_sessions": self.max_sessions,
            "cycles": self._cycle_count,
            "events_emitted": self._events_emitted,
            "consecutive_failures": self._consecutive_failures,
            "last_cycle_at": self._last_cycle_at,
            "last_error": self._last_error,
            "nodes": len(self._last_snapshot) if self._last_snapshot is not None else None,
            "poll_interval": self.poll_interval,
        }


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__
