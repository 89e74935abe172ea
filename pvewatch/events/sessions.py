"""Subscription sessions: one per connected stream consumer."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Optional, Protocol

from ..data.models import EventMessage

logger = logging.getLogger(__name__)

DEFAULT_WRITE_TIMEOUT = 5.0


class Transport(Protocol):
    async def send(self, event: EventMessage) -> None:
        ...


class SubscriberLimitError(RuntimeError):
    """Raised when attaching would exceed the configured subscriber bound."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Subscriber limit reached ({limit})")


class SubscriptionSession:
    """Wraps a transport so a failing consumer cannot affect anyone else.

    ``send`` never raises for transport problems: the first failed or
    timed-out write marks the session dead and every later send is a no-op.
    """

    def __init__(self, transport: Transport, write_timeout: Optional[float] = DEFAULT_WRITE_TIMEOUT):
        self.id = uuid.uuid4().hex
        self.transport = transport
        self.write_timeout = write_timeout
        self.alive = True
        self.sent = 0
        self.last_error: Optional[str] = None
        self._closed: Optional[asyncio.Event] = None

    def __repr__(self) -> str:
        return f"<SubscriptionSession {self.id[:8]} alive={self.alive}>"

    async def send(self, event: EventMessage) -> bool:
        if not self.alive:
            return False
        try:
            if self.write_timeout:
                await asyncio.wait_for(self.transport.send(event), self.write_timeout)
            else:
                await self.transport.send(event)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            self._fail(f"write timed out after {self.write_timeout}s")
            return False
        except Exception as exc:
            self._fail(str(exc) or type(exc).__name__)
            return False
        self.sent += 1
        return True

    def close(self) -> None:
        if not self.alive:
            return
        self.alive = False
        self._closed_event().set()

    async def wait_closed(self) -> None:
        if not self.alive:
            return
        await self._closed_event().wait()

    def _fail(self, reason: str) -> None:
        self.last_error = reason
        logger.debug("[session] %s write failed: %s", self.id[:8], reason)
        self.close()

    def _closed_event(self) -> asyncio.Event:
        # Created lazily so sessions can be built outside a running loop
        if self._closed is None:
            self._closed = asyncio.Event()
        return self._closed
