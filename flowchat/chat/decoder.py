"""
Chunk Decoder

Turns a response body, delivered as arbitrary byte chunks, into StreamEvents.
The decoder does no I/O: callers feed bytes as they arrive and call finish()
at end of body. Three framings are understood:

- event stream: `data:` lines grouped by blank lines, `[DONE]` ends the run
- line-delimited JSON: one `{"type": ...}` object per line
- single document: anything else, buffered to EOF and read as one reply

Framing comes from the declared content type when it is specific, otherwise
from the first complete non-empty line, so the result never depends on where
the chunk boundaries fall.
"""

from __future__ import annotations

import codecs
import json
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Callable

import structlog

from flowchat.chat.classifier import ErrorClassifier
from flowchat.chat.events import (
    ErrorKind,
    RunComplete,
    RunStart,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
    is_terminal,
)
from flowchat.kernel.serialization import json_dumps_compact
from flowchat.metrics import decoder_malformed_lines_total

logger = structlog.get_logger()


class Framing(str, Enum):
    EVENT_STREAM = "event_stream"
    NDJSON = "ndjson"
    DOCUMENT = "document"


START_TYPES = frozenset({"start", "begin", "run_start"})
TEXT_TYPES = frozenset({"text", "delta", "text_delta", "item"})
TOOL_CALL_TYPES = frozenset({"tool_call", "tool_call_delta"})
COMPLETE_TYPES = frozenset({"done", "end", "complete", "run_complete"})
ERROR_TYPES = frozenset({"error"})

KNOWN_TYPES = START_TYPES | TEXT_TYPES | TOOL_CALL_TYPES | COMPLETE_TYPES | ERROR_TYPES

TEXT_KEYS = ("text", "delta", "content")
FRAGMENT_KEYS = ("fragment", "arguments", "args")
DOCUMENT_TEXT_KEYS = ("output", "text", "message", "response", "content")

SSE_PREFIXES = ("data:", ":", "event:", "id:", "retry:")
SSE_DONE = "[DONE]"

_NDJSON_MEDIA_TYPES = {
    "application/x-ndjson",
    "application/ndjson",
    "application/jsonl",
    "application/x-jsonlines",
    "application/jsonlines",
}


def framing_for_content_type(content_type: str | None) -> Framing | None:
    """Framing implied by a Content-Type header, or None to sniff the body."""
    if not content_type:
        return None
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type == "text/event-stream":
        return Framing.EVENT_STREAM
    if media_type in _NDJSON_MEDIA_TYPES:
        return Framing.NDJSON
    # application/json is declared by streaming and non-streaming webhooks alike
    return None


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def _first_string(payload: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str):
            return value
    return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _as_seconds(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if value >= 0 else None


class ChunkDecoder:
    def __init__(
        self,
        content_type: str | None = None,
        *,
        classifier: ErrorClassifier | None = None,
        max_consecutive_malformed: int = 3,
    ) -> None:
        self._framing = framing_for_content_type(content_type)
        self._classifier = classifier or ErrorClassifier()
        self._max_consecutive_malformed = max_consecutive_malformed
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

        self._tail = ""
        self._data_lines: list[str] = []
        self._document_lines: list[str] = []

        self._started = False
        self._finished = False
        self._consecutive_malformed = 0
        self._malformed_total = 0
        self._tool_calls: dict[int, list[str]] = {}

        self._handlers: dict[str, Callable[[dict[str, Any]], list[StreamEvent]]] = {}
        for types, handler in (
            (START_TYPES, self._on_start),
            (TEXT_TYPES, self._on_text),
            (TOOL_CALL_TYPES, self._on_tool_call),
            (COMPLETE_TYPES, self._on_complete),
            (ERROR_TYPES, self._on_error),
        ):
            self._handlers.update(dict.fromkeys(types, handler))

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def framing(self) -> Framing | None:
        return self._framing

    @property
    def finished(self) -> bool:
        """True once a terminal event has been produced."""
        return self._finished

    @property
    def malformed_total(self) -> int:
        return self._malformed_total

    @property
    def tool_calls(self) -> dict[int, str]:
        """Argument fragments joined per tool-call index."""
        return {index: "".join(parts) for index, parts in sorted(self._tool_calls.items())}

    # -------------------------------------------------------------------------
    # Input
    # -------------------------------------------------------------------------

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        if self._finished or not chunk:
            return []
        self._tail += self._utf8.decode(chunk)
        *lines, self._tail = self._tail.split("\n")

        events: list[StreamEvent] = []
        for line in lines:
            if self._finished:
                break
            events.extend(self._line(line.rstrip("\r")))
        return events

    def finish(self) -> list[StreamEvent]:
        """Flush at end of body; always leaves the decoder finished."""
        if self._finished:
            return []
        events: list[StreamEvent] = []

        rest = self._tail + self._utf8.decode(b"", final=True)
        self._tail = ""
        if rest:
            events.extend(self._line(rest.rstrip("\r")))

        if not self._finished:
            if self._framing is Framing.EVENT_STREAM and self._data_lines:
                events.extend(self._sse_line(""))
            elif self._framing is Framing.DOCUMENT:
                events.extend(self._finish_document())

        if not self._finished:
            events.extend(self._emit(RunComplete()))
        return events

    # -------------------------------------------------------------------------
    # Framing
    # -------------------------------------------------------------------------

    def _line(self, line: str) -> list[StreamEvent]:
        if self._framing is None:
            if not line.strip():
                return []
            self._framing = self._detect(line)
            logger.debug("Stream framing detected", framing=self._framing.value)

        if self._framing is Framing.EVENT_STREAM:
            return self._sse_line(line)
        if self._framing is Framing.NDJSON:
            return self._ndjson_line(line)
        self._document_lines.append(line)
        return []

    @staticmethod
    def _detect(line: str) -> Framing:
        if line.startswith(SSE_PREFIXES):
            return Framing.EVENT_STREAM
        payload = _loads_object(line.strip())
        if payload is not None and payload.get("type") in KNOWN_TYPES:
            return Framing.NDJSON
        return Framing.DOCUMENT

    def _sse_line(self, line: str) -> list[StreamEvent]:
        if line == "":
            if not self._data_lines:
                return []
            data = "\n".join(self._data_lines)
            self._data_lines = []
            return self._sse_payload(data)
        if line.startswith(":"):
            return []

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data_lines.append(value)
            return []
        if field in ("event", "id", "retry"):
            return []
        return self._malformed(line)

    def _sse_payload(self, data: str) -> list[StreamEvent]:
        if data.strip() == SSE_DONE:
            self._consecutive_malformed = 0
            return self._emit(RunComplete())
        payload = _loads_object(data)
        if payload is None:
            return self._malformed(data)
        return self._dispatch(payload, data)

    def _ndjson_line(self, line: str) -> list[StreamEvent]:
        if not line.strip():
            return []
        payload = _loads_object(line)
        if payload is None:
            return self._malformed(line)
        return self._dispatch(payload, line)

    def _finish_document(self) -> list[StreamEvent]:
        lines = self._document_lines
        self._document_lines = []
        while lines and not lines[-1].strip():
            lines.pop()

        # The relay appends an error line to a body it could not finish.
        trailer = None
        if len(lines) > 1:
            last = _loads_object(lines[-1].strip())
            if last is not None and last.get("type") in ERROR_TYPES:
                trailer = last
                lines = lines[:-1]

        events = self._document_events("\n".join(lines))
        if trailer is not None and not self._finished:
            events.extend(self._on_error(trailer))
        return events

    def _document_events(self, body: str) -> list[StreamEvent]:
        if not body.strip():
            return []
        try:
            document = json.loads(body)
        except ValueError:
            return self._emit(TextDelta(text=body))

        if isinstance(document, list):
            document = document[0] if document else None
        if document is None:
            return []
        if isinstance(document, dict):
            if document.get("error"):
                logger.info("Upstream document reported an error")
                return self._emit(self._classifier.error_event(ErrorKind.UPSTREAM))
            text = _first_string(document, DOCUMENT_TEXT_KEYS)
            if text is None:
                text = json.dumps(document)
        elif isinstance(document, str):
            text = document
        else:
            text = json.dumps(document)
        return self._emit(TextDelta(text=text)) if text else []

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def _dispatch(self, payload: dict[str, Any], raw: str) -> list[StreamEvent]:
        kind = payload.get("type")
        handler = self._handlers.get(kind) if isinstance(kind, str) else None
        if handler is None:
            return self._malformed(raw)
        self._consecutive_malformed = 0
        return handler(payload)

    def _on_start(self, payload: dict[str, Any]) -> list[StreamEvent]:
        if self._started:
            return []
        self._started = True
        return [RunStart()]

    def _on_text(self, payload: dict[str, Any]) -> list[StreamEvent]:
        text = _first_string(payload, TEXT_KEYS)
        if not text:
            return []
        return self._emit(TextDelta(text=text))

    def _on_tool_call(self, payload: dict[str, Any]) -> list[StreamEvent]:
        index = _as_int(payload.get("index"))
        if index is None:
            index = 0

        fragment: Any = None
        for key in FRAGMENT_KEYS:
            if payload.get(key) is not None:
                fragment = payload[key]
                break
        if isinstance(fragment, (dict, list)):
            fragment = json_dumps_compact(fragment)
        elif fragment is None:
            fragment = ""
        elif not isinstance(fragment, str):
            fragment = str(fragment)

        if not fragment:
            return []
        self._tool_calls.setdefault(index, []).append(fragment)
        return self._emit(ToolCallDelta(index=index, fragment=fragment))

    def _on_complete(self, payload: dict[str, Any]) -> list[StreamEvent]:
        return self._emit(RunComplete())

    def _on_error(self, payload: dict[str, Any]) -> list[StreamEvent]:
        kind = ErrorKind.parse(payload.get("kind"), ErrorKind.UPSTREAM)
        detail = _as_int(payload.get("detail"))
        if detail is None:
            detail = _as_int(payload.get("status"))
        event = self._classifier.error_event(
            kind,
            detail=detail,
            retry_after=_as_seconds(payload.get("retry_after")),
        )
        return self._emit(event)

    def _malformed(self, line: str) -> list[StreamEvent]:
        self._consecutive_malformed += 1
        self._malformed_total += 1
        framing = self._framing.value if self._framing else "unknown"
        decoder_malformed_lines_total.labels(framing=framing).inc()
        logger.warning(
            "Malformed stream line",
            framing=framing,
            length=len(line),
            consecutive=self._consecutive_malformed,
        )
        if self._consecutive_malformed >= self._max_consecutive_malformed:
            return self._emit(self._classifier.error_event(ErrorKind.PROTOCOL))
        return []

    def _emit(self, event: StreamEvent) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        if not self._started:
            self._started = True
            if not isinstance(event, RunStart):
                events.append(RunStart())
        events.append(event)
        if is_terminal(event):
            self._finished = True
            self._tail = ""
            self._data_lines = []
            self._document_lines = []
        return events


async def decode_stream(
    chunks: AsyncIterable[bytes],
    *,
    content_type: str | None = None,
    decoder: ChunkDecoder | None = None,
) -> AsyncIterator[StreamEvent]:
    """Decode an async byte stream; stops reading once a terminal event is seen."""
    decoder = decoder or ChunkDecoder(content_type)
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
        if decoder.finished:
            return
    for event in decoder.finish():
        yield event
