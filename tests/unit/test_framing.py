"""Tests for SSE framing and parsing."""

import datetime as dt
import json

import pytest

from pvewatch.data.models import ErrorEvent, HeartbeatEvent, NodeSummary, StatusEvent, ValidationError
from pvewatch.events.framing import (
    SSE_HEADERS,
    SSEFrame,
    SSEParser,
    SSETransport,
    connected_comment,
    decode_frame,
    encode_event,
)


def parse_all(text):
    parser = SSEParser()
    frames = []
    for line in text.splitlines(keepends=True):
        frame = parser.feed(line)
        if frame is not None:
            frames.append(frame)
    return frames


class TestEncode:
    def test_heartbeat_is_a_comment(self):
        assert encode_event(HeartbeatEvent(ts=1700000000000)) == ": heartbeat 1700000000000\n\n"

    def test_status_frame(self):
        event = StatusEvent(node="pve-1", status=NodeSummary(node="pve-1", status="online"))
        frame = encode_event(event)
        assert frame.startswith("event: status\ndata: ")
        assert frame.endswith("\n\n")
        payload = json.loads(frame.split("data: ", 1)[1])
        assert payload == {"type": "status", "node": "pve-1", "status": {"node": "pve-1", "status": "online"}}

    def test_error_frame(self):
        frame = encode_event(ErrorEvent(message="Upstream down"))
        assert frame == 'event: error\ndata: {"type":"error","message":"Upstream down"}\n\n'

    def test_data_stays_on_one_line(self):
        frame = encode_event(ErrorEvent(message="line one\nline two"))
        assert frame.count("\n") == 3

    def test_rejects_other_types(self):
        with pytest.raises(TypeError):
            encode_event({"type": "status"})

    def test_connected_comment(self):
        now = dt.datetime(2024, 1, 2, 3, 4, 5, 678, tzinfo=dt.timezone.utc)
        assert connected_comment(now) == ": connected 2024-01-02T03:04:05Z\n\n"

    def test_headers(self):
        assert SSE_HEADERS["Content-Type"].startswith("text/event-stream")
        assert SSE_HEADERS["Cache-Control"].startswith("no-cache")


class TestParser:
    def test_round_trip(self):
        events = [
            HeartbeatEvent(ts=5),
            StatusEvent(node="a", status=NodeSummary(node="a", status="offline")),
            ErrorEvent(message="boom"),
        ]
        frames = parse_all("".join(encode_event(e) for e in events))
        assert [decode_frame(f) for f in frames] == events

    def test_comment_returned_immediately(self):
        parser = SSEParser()
        frame = parser.feed(": connected 2024-01-01T00:00:00Z\n")
        assert frame.is_comment
        assert decode_frame(frame) is None

    def test_multiline_data_joined(self):
        frames = parse_all("event: error\ndata: {\"type\":\ndata: \"error\",\"message\":\"x\"}\n\n")
        assert frames[0].data == '{"type":\n"error","message":"x"}'
        assert decode_frame(frames[0]) == ErrorEvent(message="x")

    def test_crlf_lines(self):
        frames = parse_all('event: error\r\ndata: {"message":"x"}\r\n\r\n')
        assert decode_frame(frames[0]) == ErrorEvent(message="x")

    def test_blank_lines_without_data_ignored(self):
        assert parse_all("\n\n\n") == []

    def test_unused_fields_ignored(self):
        frames = parse_all('id: 7\nretry: 1000\nevent: error\ndata: {"message":"x"}\n\n')
        assert frames == [SSEFrame(event="error", data='{"message":"x"}')]


class TestDecode:
    def test_invalid_json(self):
        with pytest.raises(json.JSONDecodeError):
            decode_frame(SSEFrame(event="status", data="{not json"))

    def test_event_name_mismatch(self):
        with pytest.raises(ValidationError):
            decode_frame(SSEFrame(event="status", data='{"type":"error","message":"x"}'))

    def test_bad_heartbeat_timestamp(self):
        with pytest.raises(ValidationError):
            decode_frame(SSEFrame(comment="heartbeat soon"))

    def test_unnamed_frame_uses_payload_type(self):
        assert decode_frame(SSEFrame(data='{"type":"heartbeat","ts":9}')) == HeartbeatEvent(ts=9)


class FakeResponse:
    def __init__(self):
        self.chunks = []

    async def write(self, data):
        self.chunks.append(data)


class TestTransport:
    @pytest.mark.asyncio
    async def test_writes_encoded_frames(self):
        response = FakeResponse()
        transport = SSETransport(response)
        await transport.send(HeartbeatEvent(ts=1))
        await transport.send_comment("hello")
        await transport.send_raw(": raw\n\n")
        assert response.chunks == [b": heartbeat 1\n\n", b": hello\n\n", b": raw\n\n"]
