from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from flowchat.chat.classifier import DEFAULT_TEMPLATES
from flowchat.chat.decoder import ChunkDecoder, Framing, decode_stream, framing_for_content_type
from flowchat.chat.events import (
    ErrorKind,
    RunComplete,
    RunError,
    RunStart,
    TextDelta,
    ToolCallDelta,
)
from tests.support.upstream import ndjson, sse

pytestmark = pytest.mark.unit


def decode(body: bytes, content_type: str | None = None, *, chunk_size: int | None = None) -> list:
    decoder = ChunkDecoder(content_type)
    events = []
    if chunk_size is None:
        events += decoder.feed(body)
    else:
        for start in range(0, len(body), chunk_size):
            events += decoder.feed(body[start : start + chunk_size])
    events += decoder.finish()
    return events


SSE_BODY = sse(
    {"type": "start"},
    {"type": "text", "text": "Hel"},
    {"type": "text", "text": "lo"},
    {"type": "tool_call", "index": 0, "fragment": '{"city":'},
    {"type": "tool_call", "index": 0, "fragment": '"Oslo"}'},
    "[DONE]",
)
NDJSON_BODY = ndjson(
    {"type": "begin"},
    {"type": "item", "content": "Hi "},
    {"type": "item", "content": "thére ☃"},
    {"type": "end"},
)
DOCUMENT_BODY = b'{\n  "output": "Pretty printed reply \xe2\x9c\x93"\n}\n'


class TestFramingDetection:
    def test_content_type_selects_framing(self):
        assert framing_for_content_type("text/event-stream; charset=utf-8") is Framing.EVENT_STREAM
        assert framing_for_content_type("application/x-ndjson") is Framing.NDJSON
        assert framing_for_content_type("application/json") is None
        assert framing_for_content_type(None) is None

    @pytest.mark.parametrize(
        ("body", "framing"),
        [
            (SSE_BODY, Framing.EVENT_STREAM),
            (NDJSON_BODY, Framing.NDJSON),
            (DOCUMENT_BODY, Framing.DOCUMENT),
            (b": keep-alive\n\n" + sse("[DONE]"), Framing.EVENT_STREAM),
        ],
    )
    def test_first_line_selects_framing(self, body, framing):
        decoder = ChunkDecoder()
        decoder.feed(body)
        assert decoder.framing is framing


class TestChunkingIdempotence:
    @pytest.mark.parametrize(
        ("body", "content_type"),
        [
            (SSE_BODY, None),
            (SSE_BODY, "text/event-stream"),
            (NDJSON_BODY, None),
            (NDJSON_BODY, "application/x-ndjson"),
            (DOCUMENT_BODY, None),
            (DOCUMENT_BODY, "application/json"),
        ],
    )
    def test_byte_by_byte_matches_single_chunk(self, body, content_type):
        whole = decode(body, content_type)
        assert decode(body, content_type, chunk_size=1) == whole
        assert decode(body, content_type, chunk_size=7) == whole

    def test_multibyte_characters_split_across_chunks(self):
        events = decode(NDJSON_BODY, chunk_size=1)
        assert "".join(e.text for e in events if isinstance(e, TextDelta)) == "Hi thére ☃"


class TestEventStream:
    def test_text_deltas_assemble_and_done_completes(self):
        events = decode(sse({"type": "text", "text": "Hel"}, {"type": "text", "text": "lo"}, "[DONE]"))

        assert events == [RunStart(), TextDelta(text="Hel"), TextDelta(text="lo"), RunComplete()]

    def test_comments_and_non_data_fields_are_ignored(self):
        body = b": ping\nevent: message\nid: 42\nretry: 1000\n" + sse({"type": "delta", "delta": "ok"})

        assert decode(body) == [RunStart(), TextDelta(text="ok"), RunComplete()]

    def test_multi_line_data_is_joined(self):
        body = b'data: {"type": "text",\ndata:  "text": "joined"}\n\n'

        assert decode(body) == [RunStart(), TextDelta(text="joined"), RunComplete()]

    def test_crlf_line_endings(self):
        body = b'data: {"type":"text","text":"a"}\r\n\r\ndata: [DONE]\r\n\r\n'

        assert decode(body) == [RunStart(), TextDelta(text="a"), RunComplete()]

    def test_pending_data_is_dispatched_at_eof(self):
        body = b'data: {"type":"text","text":"tail"}'

        assert decode(body, "text/event-stream") == [RunStart(), TextDelta(text="tail"), RunComplete()]


class TestLineDelimitedJson:
    def test_item_content_is_text(self):
        assert decode(NDJSON_BODY) == [
            RunStart(),
            TextDelta(text="Hi "),
            TextDelta(text="thére ☃"),
            RunComplete(),
        ]

    def test_duplicate_start_is_dropped(self):
        body = ndjson({"type": "start"}, {"type": "run_start"}, {"type": "text", "text": "x"}, {"type": "done"})

        assert decode(body) == [RunStart(), TextDelta(text="x"), RunComplete()]

    def test_nothing_after_terminal_event(self):
        decoder = ChunkDecoder()
        events = decoder.feed(ndjson({"type": "done"}, {"type": "text", "text": "late"}))

        assert events == [RunStart(), RunComplete()]
        assert decoder.finished
        assert decoder.feed(ndjson({"type": "text", "text": "later"})) == []
        assert decoder.finish() == []

    def test_empty_text_deltas_are_skipped(self):
        body = ndjson({"type": "text", "text": ""}, {"type": "text", "text": "x"})

        assert decode(body) == [RunStart(), TextDelta(text="x"), RunComplete()]


class TestToolCalls:
    def test_fragments_accumulate_per_index(self):
        body = ndjson(
            {"type": "tool_call_delta", "index": 1, "fragment": '{"q":'},
            {"type": "tool_call", "arguments": {"a": 1}},
            {"type": "tool_call_delta", "index": 1, "fragment": '"x"}'},
            {"type": "complete"},
        )
        decoder = ChunkDecoder()

        events = decoder.feed(body) + decoder.finish()

        assert [e for e in events if isinstance(e, ToolCallDelta)] == [
            ToolCallDelta(index=1, fragment='{"q":'),
            ToolCallDelta(index=0, fragment='{"a":1}'),
            ToolCallDelta(index=1, fragment='"x"}'),
        ]
        assert decoder.tool_calls == {0: '{"a":1}', 1: '{"q":"x"}'}


class TestErrors:
    def test_error_event_uses_template_not_upstream_message(self):
        body = ndjson(
            {"type": "text", "text": "partial"},
            {"type": "error", "kind": "rate_limit", "retry_after": 3, "message": "stack trace at node 7"},
        )

        events = decode(body)

        assert events[:2] == [RunStart(), TextDelta(text="partial")]
        error = events[-1]
        assert isinstance(error, RunError)
        assert error.kind is ErrorKind.RATE_LIMIT
        assert error.retry_after == 3.0
        assert error.retryable is True
        assert error.message == DEFAULT_TEMPLATES[ErrorKind.RATE_LIMIT]
        assert len(events) == 3

    def test_unknown_error_kind_defaults_to_upstream(self):
        events = decode(ndjson({"type": "error", "kind": "exploded", "status": 500}))

        assert events[-1].kind is ErrorKind.UPSTREAM
        assert events[-1].detail == 500

    def test_three_consecutive_malformed_lines_end_the_run(self):
        before = REGISTRY.get_sample_value(
            "flowchat_decoder_malformed_lines_total", {"framing": "ndjson"}
        ) or 0.0
        body = (
            ndjson({"type": "text", "text": "a"})
            + b"not json\n{also bad\n[1, 2]\n"
            + ndjson({"type": "text", "text": "never"})
        )
        decoder = ChunkDecoder()

        events = decoder.feed(body)

        assert events[:2] == [RunStart(), TextDelta(text="a")]
        assert len(events) == 3
        assert isinstance(events[2], RunError)
        assert events[2].kind is ErrorKind.PROTOCOL
        assert events[2].retryable is False
        assert decoder.finish() == []
        after = REGISTRY.get_sample_value("flowchat_decoder_malformed_lines_total", {"framing": "ndjson"})
        assert after - before == 3

    def test_malformed_counter_resets_on_valid_payload(self):
        body = (
            ndjson({"type": "start"})
            + b"bad\n"
            + ndjson({"type": "mystery"})
            + ndjson({"type": "text", "text": "ok"})
            + b"bad\nbad\n"
        )
        decoder = ChunkDecoder()

        events = decoder.feed(body) + decoder.finish()

        assert events == [RunStart(), TextDelta(text="ok"), RunComplete()]
        assert decoder.malformed_total == 4

    def test_unknown_event_stream_fields_count_as_malformed(self):
        body = b"data: [DONE]\n" b"garbage\n" b"nonsense\n" b"junk\n\n"

        events = decode(b"event: x\n" + body, "text/event-stream")

        # the [DONE] frame is dispatched only at the blank line, after the strikes
        assert events[-1].kind is ErrorKind.PROTOCOL


class TestDocument:
    def test_output_field_is_the_reply(self):
        assert decode(b'{"output": "Hello world"}') == [
            RunStart(),
            TextDelta(text="Hello world"),
            RunComplete(),
        ]

    def test_text_lookup_order(self):
        assert decode(b'{"message": "m", "response": "r"}')[1] == TextDelta(text="m")

    def test_array_uses_first_element(self):
        assert decode(b'[{"output": "first"}, {"output": "second"}]')[1] == TextDelta(text="first")

    def test_plain_text_body(self):
        assert decode(b"Thanks! We will be in touch.") == [
            RunStart(),
            TextDelta(text="Thanks! We will be in touch."),
            RunComplete(),
        ]

    def test_error_document_is_upstream_error(self):
        events = decode(b'{"error": "Workflow could not be started"}')

        assert len(events) == 2
        assert events[0] == RunStart()
        assert events[1].kind is ErrorKind.UPSTREAM
        assert "Workflow" not in events[1].message

    def test_relay_error_trailer_after_partial_document(self):
        events = decode(b'{"output": "partial"}\n{"type":"error","kind":"TIMEOUT"}\n')

        assert events[:2] == [RunStart(), TextDelta(text="partial")]
        assert events[2].kind is ErrorKind.TIMEOUT
        assert len(events) == 3

    def test_empty_body_completes(self):
        assert decode(b"") == [RunStart(), RunComplete()]


@pytest.mark.asyncio
async def test_decode_stream_stops_at_terminal_event():
    consumed = []

    async def chunks():
        for chunk in (b'data: {"type":"text","text":"a"}\n\n', b"data: [DONE]\n\n", b"data: extra\n\n"):
            consumed.append(chunk)
            yield chunk

    events = [event async for event in decode_stream(chunks())]

    assert events == [RunStart(), TextDelta(text="a"), RunComplete()]
    assert len(consumed) == 2
