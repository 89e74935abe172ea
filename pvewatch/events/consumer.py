"""Reconnecting SSE consumer.

Consumes the event stream produced by the server, keeps a heartbeat
watchdog, and reconnects with a fixed delay until a retry ceiling is hit.
Used by ``pvewatch watch`` and usable from any asyncio client.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional

import aiohttp

from ..data.models import ErrorEvent, EventMessage, ValidationError
from .framing import SSEFrame, SSEParser, decode_frame

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY = 3.0
DEFAULT_MAX_RETRIES = 5
DEFAULT_HEARTBEAT_INTERVAL = 10.0

OpenStream = Callable[[], Awaitable[AsyncIterator[str]]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class RetryState:
    attempt: int = 0
    last_error: Optional[str] = None
    is_retrying: bool = False

    def reset(self) -> None:
        self.attempt = 0
        self.last_error = None
        self.is_retrying = False


class ReconnectingConsumer:
    """Client-side state machine over an SSE stream.

    ``open_stream`` is a coroutine function returning an async iterator of
    text lines; it raises when the connection cannot be opened.

    States move DISCONNECTED -> CONNECTING -> CONNECTED, and on failure to
    ERROR followed by another CONNECTING after ``retry_delay``. After
    ``max_retries`` consecutive failures the consumer stays in ERROR until
    :meth:`reconnect` is called.
    """

    def __init__(
        self,
        open_stream: OpenStream,
        *,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        max_retries: int = DEFAULT_MAX_RETRIES,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        on_message: Optional[Callable[[EventMessage], None]] = None,
        on_state_change: Optional[Callable[[ConnectionState], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._open_stream = open_stream
        self.retry_delay = retry_delay
        self.max_retries = max_retries
        self.heartbeat_interval = heartbeat_interval
        self.on_message = on_message
        self.on_state_change = on_state_change
        self.on_error = on_error

        self.state = ConnectionState.DISCONNECTED
        self.retry_state = RetryState()
        self.last_event: Optional[EventMessage] = None
        self.error: Optional[str] = None
        self.connection_time: Optional[float] = None
        self.connect_attempts = 0

        self._task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._watchdog_handle: Optional[asyncio.TimerHandle] = None
        self._watchdog_expired = False
        self._settled: Optional[asyncio.Event] = None

    # --- Public API ---

    @property
    def indicator(self) -> str:
        """Connection indicator for display: connected, connecting, error or disconnected."""
        return self.state.value

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def exhausted(self) -> bool:
        """True once the retry budget is spent and no reconnect is scheduled."""
        return self.state == ConnectionState.ERROR and not self.retry_state.is_retrying

    @property
    def watchdog_timeout(self) -> float:
        return 2 * self.heartbeat_interval

    def connect(self) -> None:
        """Start consuming in the background. No-op while a connection is active."""
        if self._task is not None and not self._task.done():
            return
        self._cancel_reconnect()
        self._settled_event().clear()
        self._task = asyncio.ensure_future(self._attempt())

    async def disconnect(self) -> None:
        """Stop consuming. Timers are cancelled before the stream is torn down."""
        self._cancel_reconnect()
        self._cancel_watchdog()
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.retry_state.reset()
        self.connection_time = None
        self._set_state(ConnectionState.DISCONNECTED)
        self._settled_event().set()

    async def reconnect(self) -> None:
        await self.disconnect()
        self.retry_state.reset()
        self.connect()

    async def wait_settled(self) -> None:
        """Wait until the consumer is disconnected or out of retries."""
        await self._settled_event().wait()

    # --- Connection lifecycle ---

    async def _attempt(self) -> None:
        self.connect_attempts += 1
        self._watchdog_expired = False
        self._set_state(ConnectionState.CONNECTING)

        try:
            stream = await self._open_stream()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail(f"Connection failed: {exc}")
            return

        reason = "Stream closed by server"
        try:
            self._on_connected()
            parser = SSEParser()
            async for line in stream:
                frame = parser.feed(line)
                if frame is None:
                    continue
                self._arm_watchdog()
                self._handle_frame(frame)
        except asyncio.CancelledError:
            if not self._watchdog_expired:
                raise
            reason = f"No message received for {self.watchdog_timeout:g}s"
        except Exception as exc:
            reason = f"Connection lost: {exc}"
        finally:
            self._cancel_watchdog()
            await _close_stream(stream)

        self._fail(reason)

    def _on_connected(self) -> None:
        self.retry_state.reset()
        self.connection_time = time.time()
        self.error = None
        self._set_state(ConnectionState.CONNECTED)
        self._arm_watchdog()
        logger.info("[consumer] Connected")

    def _fail(self, reason: str) -> None:
        self.connection_time = None
        self.retry_state.attempt += 1
        self.retry_state.last_error = reason

        if self.retry_state.attempt < self.max_retries:
            self.retry_state.is_retrying = True
            self.error = f"Connection lost, retrying... ({self.retry_state.attempt}/{self.max_retries})"
            logger.warning("[consumer] %s; reconnecting in %gs", reason, self.retry_delay)
            self._set_state(ConnectionState.ERROR)
            loop = asyncio.get_running_loop()
            self._reconnect_handle = loop.call_later(self.retry_delay, self._reconnect_due)
            return

        self.retry_state.is_retrying = False
        self.error = "Max reconnection attempts reached"
        logger.error("[consumer] %s (%s)", self.error, reason)
        self._set_state(ConnectionState.ERROR)
        self._notify(self.on_error, ConnectionError(self.error))
        self._settled_event().set()

    def _reconnect_due(self) -> None:
        self._reconnect_handle = None
        self._task = asyncio.ensure_future(self._attempt())

    # --- Watchdog ---

    def _arm_watchdog(self) -> None:
        self._cancel_watchdog()
        loop = asyncio.get_running_loop()
        self._watchdog_handle = loop.call_later(self.watchdog_timeout, self._watchdog_fired)

    def _watchdog_fired(self) -> None:
        self._watchdog_handle = None
        if self._task is None or self._task.done():
            return
        logger.warning("[consumer] Heartbeat timeout, reconnecting...")
        self._watchdog_expired = True
        self._task.cancel()

    def _cancel_watchdog(self) -> None:
        if self._watchdog_handle is not None:
            self._watchdog_handle.cancel()
            self._watchdog_handle = None

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # --- Messages ---

    def _handle_frame(self, frame: SSEFrame) -> None:
        try:
            event = decode_frame(frame)
        except json.JSONDecodeError as exc:
            logger.warning("[consumer] Failed to parse event message: %s", exc)
            event = ErrorEvent(message=f"Failed to parse message: {frame.data}")
        except ValidationError as exc:
            logger.warning("[consumer] Invalid event message received: %s", exc)
            return
        except (TypeError, ValueError) as exc:
            logger.warning("[consumer] Failed to decode event message: %s", exc)
            event = ErrorEvent(message=f"Failed to parse message: {frame.data}")

        if event is None:
            return
        self.last_event = event
        self._notify(self.on_message, event)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        self.state = state
        self._notify(self.on_state_change, state)

    def _notify(self, callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("[consumer] Callback %r failed", callback)

    def _settled_event(self) -> asyncio.Event:
        if self._settled is None:
            self._settled = asyncio.Event()
        return self._settled


async def _close_stream(stream) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


async def open_sse_stream(
    session: aiohttp.ClientSession,
    url: str,
    connect_timeout: float = 10.0,
) -> AsyncIterator[str]:
    """Open ``url`` as an event stream and return an iterator of its lines.

    Raises:
        ConnectionError: On a non-200 response or a non-SSE content type.
        aiohttp.ClientError: On transport failures.
    """
    response = await session.get(
        url,
        headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
        timeout=aiohttp.ClientTimeout(total=None, sock_connect=connect_timeout),
    )
    if response.status != 200:
        response.release()
        raise ConnectionError(f"HTTP {response.status} {response.reason} for {url}")
    content_type = response.headers.get("Content-Type", "")
    if not content_type.startswith("text/event-stream"):
        response.release()
        raise ConnectionError(f"Unexpected content type {content_type!r} for {url}")
    return _iter_lines(response)


async def _iter_lines(response: aiohttp.ClientResponse) -> AsyncIterator[str]:
    try:
        async for raw in response.content:
            yield raw.decode("utf-8", errors="replace")
    finally:
        response.release()
