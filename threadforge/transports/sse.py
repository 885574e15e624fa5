"""
Server-sent events framing for the request-scoped stream.

Wire format, one frame per event::

    event: <type>
    data: {"type": "<type>", "content": "..."}
    <blank line>

Readers split on blank lines, join a frame's ``data:`` lines with newlines,
trim the result and parse it as a JSON object ``{type, content}``. Frames that
do not parse are dropped; they never end the stream.
"""
import asyncio
import json
import logging
from typing import AsyncIterator, Optional

from threadforge.core.sessions import StreamSessionManager, Subscription
from threadforge.events import StreamEvent

logger = logging.getLogger(__name__)

KEEPALIVE_INTERVAL = 15.0


def encode_event(event: StreamEvent) -> str:
    data = json.dumps(event.to_dict(), ensure_ascii=False)
    return f"event: {event.type.value}\ndata: {data}\n\n"


def decode_frame(frame: str) -> Optional[StreamEvent]:
    """Decode one frame; None when it carries no valid ``{type, content}`` payload."""
    data_lines = [line[5:] for line in frame.splitlines() if line.startswith("data:")]
    payload = "\n".join(data_lines).strip()
    if not payload:
        return None
    try:
        obj = json.loads(payload)
        if not isinstance(obj, dict):
            return None
        return StreamEvent.from_dict(obj)
    except (ValueError, KeyError, TypeError):
        logger.debug(f"Discarding malformed SSE frame: {payload[:120]!r}")
        return None


class FrameDecoder:
    """Incremental decoder: feed arbitrary text chunks, get whole events back."""

    def __init__(self):
        self._buffer = ""

    def feed(self, chunk: str) -> list[StreamEvent]:
        self._buffer += chunk.replace("\r\n", "\n")
        events = []
        while "\n\n" in self._buffer:
            frame, self._buffer = self._buffer.split("\n\n", 1)
            event = decode_frame(frame)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[StreamEvent]:
        frame, self._buffer = self._buffer, ""
        event = decode_frame(frame) if frame.strip() else None
        return [event] if event is not None else []


def parse_frames(text: str) -> list[StreamEvent]:
    decoder = FrameDecoder()
    return decoder.feed(text) + decoder.flush()


async def stream_session(
    sessions: StreamSessionManager,
    sub: Subscription,
    keepalive: float = KEEPALIVE_INTERVAL,
) -> AsyncIterator[str]:
    """Yield encoded frames from ``sub`` until the turn's terminal event.

    The subscription is detached when the generator closes, including when the
    client goes away. The turn itself keeps running.
    """
    try:
        while True:
            try:
                event = await sub.get(timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield encode_event(event)
            if event.is_terminal:
                return
    finally:
        sessions.detach(sub)
