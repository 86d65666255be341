"""
Transport Client

Client-side adapter between a UI runtime and the relay. One TransportClient
belongs to one conversation: it owns the session id and drives at most one
run at a time. Each run posts the latest user turn and exposes the reply as
an async iterator of StreamEvents.
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable

import httpx
import structlog

from flowchat.chat.classifier import ErrorClassifier
from flowchat.chat.context import ContextSupplier, empty_context
from flowchat.chat.decoder import ChunkDecoder
from flowchat.chat.events import (
    RunComplete,
    RunError,
    RunStart,
    RunState,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
    is_terminal,
)
from flowchat.chat.formatter import MessageFormatter
from flowchat.chat.models import Attachment, ClientProfile, Thread
from flowchat.kernel.errors import ConcurrentRunError
from flowchat.kernel.ids import new_session_id

logger = structlog.get_logger()

STREAMING_ACCEPT = "text/event-stream, application/x-ndjson, application/json"
BUFFERED_ACCEPT = "application/json"

DEFAULT_QUEUE_SIZE = 256

_END = object()


class Run:
    """One request/response exchange, consumed as an async iterator.

    Single consumer. Events arrive in order: RunStart, deltas, then exactly
    one RunComplete or RunError, unless the run is cancelled, in which case
    iteration simply stops.
    """

    def __init__(self, *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._state = RunState.SENDING
        self._task: asyncio.Task[None] | None = None
        self._started = False
        self._terminal_published = False
        self._terminal_delivered = False
        self._text: list[str] = []
        self._tool_calls: dict[int, list[str]] = {}
        self._error: RunError | None = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def text(self) -> str:
        """Text delivered to the consumer so far."""
        return "".join(self._text)

    @property
    def tool_calls(self) -> dict[int, str]:
        return {index: "".join(parts) for index, parts in sorted(self._tool_calls.items())}

    @property
    def error(self) -> RunError | None:
        return self._error

    def __aiter__(self) -> "Run":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._state is RunState.CANCELLED or self._terminal_delivered:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END or self._state is RunState.CANCELLED:
            raise StopAsyncIteration

        if isinstance(item, TextDelta):
            self._text.append(item.text)
        elif isinstance(item, ToolCallDelta):
            self._tool_calls.setdefault(item.index, []).append(item.fragment)
        elif isinstance(item, RunError):
            self._error = item
        if is_terminal(item):
            self._terminal_delivered = True
        return item

    async def cancel(self) -> None:
        """Abort the exchange; no events are delivered after this returns."""
        if not self._state.is_active:
            return
        self._state = RunState.CANCELLED
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._discard()

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    def _mark_streaming(self) -> None:
        if self._state is RunState.SENDING:
            self._state = RunState.STREAMING

    async def _publish(self, event: StreamEvent) -> None:
        if self._terminal_published or self._state is RunState.CANCELLED:
            return
        if isinstance(event, RunStart):
            if self._started:
                return
            self._started = True
        elif not self._started:
            self._started = True
            await self._queue.put(RunStart())

        if is_terminal(event):
            self._terminal_published = True
            self._state = RunState.COMPLETED if isinstance(event, RunComplete) else RunState.ERRORED
        await self._queue.put(event)

    def _abandon(self) -> None:
        """Producer stopped without a terminal event (cancelled from outside)."""
        if self._terminal_published:
            return
        self._state = RunState.CANCELLED
        self._discard()

    def _discard(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(_END)


class TransportClient:
    def __init__(
        self,
        profile: ClientProfile,
        *,
        session_id: str | None = None,
        context_supplier: ContextSupplier | None = None,
        formatter: MessageFormatter | None = None,
        classifier: ErrorClassifier | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.profile = profile
        self._session_id = session_id or new_session_id()
        self._context_supplier = context_supplier or empty_context
        self._formatter = formatter or MessageFormatter(max_input_length=profile.max_input_length)
        self._classifier = classifier or ErrorClassifier()
        self._transport = transport
        self._queue_size = queue_size
        self._run: Run | None = None

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def current_run(self) -> Run | None:
        return self._run

    @property
    def state(self) -> RunState:
        return self._run.state if self._run is not None else RunState.IDLE

    def reset_session(self) -> str:
        if self.state.is_active:
            raise ConcurrentRunError(message="Cannot start a new conversation while a run is in progress")
        previous = self._session_id
        self._session_id = new_session_id()
        logger.info(
            "Chat session reset",
            instance_id=self.profile.instance_id,
            previous_session_id=previous,
            session_id=self._session_id,
        )
        return self._session_id

    def run(self, thread: Thread, attachments: Iterable[Attachment] = ()) -> Run:
        """Start a run for the latest user message in `thread`.

        Must be called from inside a running event loop. Validation failures
        raise here, before any request is made.
        """
        if self.state.is_active:
            raise ConcurrentRunError()
        loop = asyncio.get_running_loop()

        request = self._formatter.format(
            thread,
            session_id=self._session_id,
            input_key_name=self.profile.input_key_name,
            session_key_name=self.profile.session_key_name,
            context=self._context_supplier(),
            attachments=attachments,
        )

        run = Run(queue_size=self._queue_size)
        run._task = loop.create_task(self._produce(run, request.to_payload()))
        self._run = run
        return run

    async def cancel(self) -> None:
        if self._run is not None:
            await self._run.cancel()

    # -------------------------------------------------------------------------
    # Producer
    # -------------------------------------------------------------------------

    async def _produce(self, run: Run, payload: dict[str, Any]) -> None:
        log = logger.bind(
            instance_id=self.profile.instance_id,
            session_id=self._session_id,
            streaming=self.profile.streaming_enabled,
        )
        log.info("Chat run started")
        try:
            await run._publish(RunStart())
            if self.profile.timeout_seconds:
                await asyncio.wait_for(self._exchange(run, payload), self.profile.timeout_seconds)
            else:
                await self._exchange(run, payload)
        except asyncio.CancelledError:
            log.info("Chat run cancelled")
            raise
        except Exception as exc:
            classified = self._classifier.classify_exception(exc)
            log.warning("Chat run failed", error_type=type(exc).__name__, kind=classified.kind.value)
            await run._publish(self._classifier.to_event(classified))
        finally:
            run._abandon()
        log.info("Chat run finished", state=run.state.value)

    async def _exchange(self, run: Run, payload: dict[str, Any]) -> None:
        streaming = self.profile.streaming_enabled
        headers = {"Accept": STREAMING_ACCEPT if streaming else BUFFERED_ACCEPT}
        timeout = httpx.Timeout(self.profile.timeout_seconds)

        async with httpx.AsyncClient(transport=self._transport, timeout=timeout) as client:
            async with client.stream(
                "POST",
                self.profile.chat_url(),
                json=payload,
                headers=headers,
            ) as response:
                if response.status_code >= 300:
                    body = await response.aread()
                    classified = self._classifier.classify_response(
                        response.status_code, response.headers, body
                    )
                    logger.info(
                        "Chat request rejected",
                        instance_id=self.profile.instance_id,
                        status_code=response.status_code,
                        kind=classified.kind.value,
                        body_length=len(body),
                    )
                    await run._publish(self._classifier.to_event(classified))
                    return

                decoder = ChunkDecoder(
                    response.headers.get("content-type"),
                    classifier=self._classifier,
                )
                if streaming:
                    async for chunk in response.aiter_bytes():
                        if not chunk:
                            continue
                        run._mark_streaming()
                        for event in decoder.feed(chunk):
                            await run._publish(event)
                        if decoder.finished:
                            return
                else:
                    body = await response.aread()
                    if body:
                        run._mark_streaming()
                    for event in decoder.feed(body):
                        await run._publish(event)

                for event in decoder.finish():
                    await run._publish(event)
