"""
Unit tests for SSE framing: encoding, tolerant decoding and incremental feeds.
"""
import json

import pytest

from threadforge.events import EventType, StreamEvent
from threadforge.transports.sse import FrameDecoder, decode_frame, encode_event, parse_frames


def test_encode_event_wire_format():
    frame = encode_event(StreamEvent.token("Hi"))
    assert frame == 'event: token\ndata: {"type": "token", "content": "Hi"}\n\n'


def test_encode_keeps_non_ascii_and_newlines_inside_json():
    frame = encode_event(StreamEvent.done("line one\nline two é"))
    assert frame.count("\n\n") == 1
    data = frame.split("data: ", 1)[1].strip()
    assert json.loads(data) == {"type": "done", "content": "line one\nline two é"}


def test_decode_joins_multiple_data_lines():
    frame = 'event: progress\ndata: {"type": "progress",\ndata:  "content": "working"}'
    event = decode_frame(frame)
    assert event == StreamEvent.progress("working")


def test_malformed_frames_are_discarded_not_fatal():
    text = (
        "data: not json\n\n"
        'data: {"type": "mystery", "content": "x"}\n\n'
        "data: [1, 2]\n\n"
        ": keep-alive\n\n"
        'data: {"type": "token", "content": "ok"}\n\n'
        'data: {"type": "done"}\n\n'
    )
    events = parse_frames(text)
    assert events == [StreamEvent.token("ok"), StreamEvent.done("")]


def test_decoder_handles_frames_split_across_chunks():
    wire = "".join(encode_event(e) for e in [
        StreamEvent.thinking("hmm"),
        StreamEvent.token("Hello "),
        StreamEvent.token("world"),
        StreamEvent.done("Hello world"),
    ])
    decoder = FrameDecoder()
    events = []
    for i in range(0, len(wire), 7):
        events.extend(decoder.feed(wire[i:i + 7]))
    events.extend(decoder.flush())
    assert [e.type for e in events] == [EventType.THINKING, EventType.TOKEN, EventType.TOKEN, EventType.DONE]
    assert events[-1].is_terminal


def test_decoder_accepts_crlf_line_endings():
    wire = 'event: error\r\ndata: {"type": "error", "content": "boom"}\r\n\r\n'
    assert parse_frames(wire) == [StreamEvent.error("boom")]


def test_flush_decodes_trailing_frame_without_blank_line():
    decoder = FrameDecoder()
    assert decoder.feed('data: {"type": "done", "content": "x"}') == []
    assert decoder.flush() == [StreamEvent.done("x")]
    assert decoder.flush() == []


def test_event_dict_roundtrip_rejects_unknown_type():
    assert StreamEvent.from_dict({"type": "response", "content": None}) == StreamEvent.response("")
    with pytest.raises(ValueError):
        StreamEvent.from_dict({"type": "unknown", "content": ""})
