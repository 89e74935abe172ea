"""Server-Sent Events framing.

Outbound, every EventMessage becomes one SSE frame:

    event: status\\ndata: {...}\\n\\n
    event: error\\ndata: {...}\\n\\n
    : heartbeat 1700000000000\\n\\n

Heartbeats travel as comments so proxies keep the connection open without
waking browser ``onmessage`` handlers. Inbound, ``SSEParser`` reassembles
frames from text lines and ``decode_frame`` turns them back into events.
"""

from __future__ import annotations

import datetime as dt
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..data.models import (
    ErrorEvent,
    EventMessage,
    HeartbeatEvent,
    StatusEvent,
    ValidationError,
    event_from_dict,
)

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

HEARTBEAT_COMMENT = "heartbeat"
CONNECTED_COMMENT = "connected"


def format_event(name: str, payload: Dict[str, Any]) -> str:
    data = json.dumps(payload, separators=(",", ":"))
    return f"event: {name}\ndata: {data}\n\n"


def format_comment(text: str) -> str:
    return f": {text}\n\n"


def connected_comment(now: Optional[dt.datetime] = None) -> str:
    """First frame written to a new stream."""
    now = now or dt.datetime.now(dt.timezone.utc)
    stamp = now.replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return format_comment(f"{CONNECTED_COMMENT} {stamp}")


def encode_event(event: EventMessage) -> str:
    """Frame one event for the wire.

    Raises:
        TypeError: If ``event`` is not a member of the event union.
    """
    if isinstance(event, HeartbeatEvent):
        return format_comment(f"{HEARTBEAT_COMMENT} {int(event.ts)}")
    if isinstance(event, StatusEvent):
        return format_event(event.type, event.to_dict())
    if isinstance(event, ErrorEvent):
        return format_event(event.type, event.to_dict())
    raise TypeError(f"Cannot encode {type(event).__name__} as an SSE event")


class SSETransport:
    """Writes framed events to an open ``aiohttp.web.StreamResponse``."""

    def __init__(self, response):
        self.response = response

    async def send(self, event: EventMessage) -> None:
        await self.response.write(encode_event(event).encode("utf-8"))

    async def send_comment(self, text: str) -> None:
        await self.response.write(format_comment(text).encode("utf-8"))

    async def send_raw(self, frame: str) -> None:
        await self.response.write(frame.encode("utf-8"))


# =============================================================================
# Inbound parsing
# =============================================================================


@dataclass
class SSEFrame:
    """One dispatched SSE frame: either a comment or an event with data."""

    event: Optional[str] = None
    data: str = ""
    comment: Optional[str] = None

    @property
    def is_comment(self) -> bool:
        return self.comment is not None


class SSEParser:
    """Incremental line-oriented SSE parser.

    Feed decoded lines (with or without their line terminator). A frame is
    returned when a blank line completes it; comment lines are returned
    immediately.
    """

    def __init__(self):
        self._event: Optional[str] = None
        self._data: list = []

    def feed(self, line: str) -> Optional[SSEFrame]:
        line = line.rstrip("\r\n")

        if not line:
            return self._dispatch()

        if line.startswith(":"):
            return SSEFrame(comment=line[1:].strip())

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        # id and retry fields are not used by this stream
        return None

    def _dispatch(self) -> Optional[SSEFrame]:
        if not self._data and self._event is None:
            return None
        frame = SSEFrame(event=self._event, data="\n".join(self._data))
        self._event = None
        self._data = []
        return frame


def decode_frame(frame: SSEFrame) -> Optional[EventMessage]:
    """Turn a parsed frame into an event.

    Returns None for comments that only signal liveness.

    Raises:
        json.JSONDecodeError: If the data is not JSON.
        ValidationError: If the payload is not a valid event.
    """
    if frame.is_comment:
        text = frame.comment or ""
        if not text.startswith(HEARTBEAT_COMMENT + " "):
            return None
        raw_ts = text[len(HEARTBEAT_COMMENT) + 1:].strip()
        try:
            ts = int(raw_ts)
        except ValueError:
            raise ValidationError(f"Invalid heartbeat timestamp: {raw_ts!r}")
        return HeartbeatEvent(ts=ts)

    payload = json.loads(frame.data)
    if isinstance(payload, dict) and frame.event and "type" not in payload:
        payload = dict(payload, type=frame.event)
    event = event_from_dict(payload)
    if frame.event and frame.event != event.type:
        raise ValidationError(f"Event name {frame.event!r} does not match payload type {event.type!r}")
    return event
