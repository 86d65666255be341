"""
Relay Proxy

Forwards a widget's chat request to the instance's automation endpoint with
server-held credentials, and hands the upstream body back as it arrives.

Every request gets its own httpx client and upstream connection
(ProxyConnection). A single deadline, derived from the profile timeout,
bounds the connect, the response headers and every chunk read.
"""

from __future__ import annotations

import asyncio
import math
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping

import httpx
import structlog

from flowchat.chat.classifier import ClassifiedError, ErrorClassifier, parse_retry_after
from flowchat.chat.decoder import Framing, framing_for_content_type
from flowchat.chat.events import ErrorKind
from flowchat.chat.models import ClientProfile
from flowchat.config import Settings, get_settings
from flowchat.kernel.errors import (
    ForbiddenError,
    NotFoundError,
    ServiceUnavailableError,
    UpstreamError,
    ValidationError,
)
from flowchat.kernel.serialization import json_dumps_compact
from flowchat.metrics import relay_requests_total, relay_upstream_duration_seconds
from flowchat.relay.auth import authorization_header, build_upstream_headers
from flowchat.relay.profiles import ConnectionProfile
from flowchat.relay.store import ConfigurationStore

logger = structlog.get_logger()

# Routing and credential fields a client must not be able to set.
ROUTING_KEYS = frozenset(
    {
        "instance_id",
        "endpointUrl",
        "webhookUrl",
        "authType",
        "authKind",
        "credentials",
        "username",
        "password",
        "token",
        "apiKey",
        "headers",
    }
)

_SSE_PREFIXES = (b"data:", b":", b"event:", b"id:", b"retry:")
# Longest SSE prefix; a partial first line this long already decides framing
_SNIFF_BYTES = max(len(prefix) for prefix in _SSE_PREFIXES)

IsDisconnected = Callable[[], Awaitable[bool]]


def status_for_kind(kind: ErrorKind) -> int:
    if kind is ErrorKind.TIMEOUT:
        return 504
    if kind is ErrorKind.RATE_LIMIT:
        return 429
    return 502


class RelayFailure(UpstreamError):
    """Upstream could not be reached or refused the request."""

    def __init__(self, classified: ClassifiedError) -> None:
        headers = {}
        if classified.retry_after is not None:
            headers["Retry-After"] = str(math.ceil(classified.retry_after))
        super().__init__(
            message=classified.message,
            code=f"relay.{classified.kind.value.lower()}",
            meta=classified.to_meta(),
            status_code=status_for_kind(classified.kind),
            headers=headers,
        )
        self.classified = classified


class ClientDisconnected(Exception):
    """The inbound client went away before the upstream answered."""


async def _unless_disconnected(
    awaitable: Awaitable[Any],
    disconnected: asyncio.Future[Any] | None,
) -> Any:
    """Await `awaitable` unless `disconnected` resolves first (ClientDisconnected)."""
    if disconnected is None:
        return await awaitable

    work = asyncio.ensure_future(awaitable)
    try:
        await asyncio.wait({work, disconnected}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise

    if work.done():
        return work.result()

    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    raise ClientDisconnected()


def _host(url: str) -> str:
    try:
        return httpx.URL(url).host
    except httpx.InvalidURL:
        return "invalid"


class ProxyConnection:
    """One upstream exchange. Closed exactly once, never reused."""

    def __init__(
        self,
        profile: ConnectionProfile,
        *,
        classifier: ErrorClassifier,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.profile = profile
        self.streaming = profile.streaming_enabled
        self.mode = "streaming" if self.streaming else "buffered"
        self.timeout_seconds = timeout_seconds
        self._classifier = classifier
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(timeout_seconds),
        )
        self._response: httpx.Response | None = None
        self._started_at: float | None = None
        self._deadline: float | None = None
        self._event_stream: bool | None = None
        self._sniff = b""
        self._closed = False
        self._log = logger.bind(
            instance_id=profile.instance_id,
            upstream_host=_host(profile.endpoint_url or ""),
            mode=self.mode,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def status_code(self) -> int | None:
        return self._response.status_code if self._response is not None else None

    @property
    def media_type(self) -> str:
        if self._response is None:
            return "application/json"
        return self._response.headers.get("content-type") or "application/octet-stream"

    def remaining(self) -> float:
        if self._deadline is None:
            return self.timeout_seconds
        return max(0.0, self._deadline - asyncio.get_running_loop().time())

    async def open(
        self,
        body: Mapping[str, Any],
        *,
        disconnected: asyncio.Future[Any] | None = None,
    ) -> None:
        """Send the request and wait for upstream headers.

        Raises RelayFailure when the upstream is unreachable, too slow, or
        answers with anything but a 2xx; redirects are not followed. Raises
        ClientDisconnected if `disconnected` resolves while waiting. The connection
        is closed in every failure case.
        """
        loop = asyncio.get_running_loop()
        self._started_at = loop.time()
        self._deadline = self._started_at + self.timeout_seconds

        self._log.info("Relaying chat request", timeout_seconds=self.timeout_seconds)
        try:
            request = self._client.build_request(
                "POST",
                self.profile.endpoint_url,
                json=dict(body),
                headers=build_upstream_headers(self.profile, streaming=self.streaming),
            )
            response = await _unless_disconnected(
                asyncio.wait_for(self._client.send(request, stream=True), self.remaining()),
                disconnected,
            )
        except (asyncio.CancelledError, ClientDisconnected):
            self._log.info("Client disconnected before upstream headers")
            await self.aclose(outcome="client_disconnected")
            raise
        except Exception as exc:
            classified = self._classifier.classify_exception(exc)
            self._log.warning(
                "Upstream request failed",
                error_type=type(exc).__name__,
                kind=classified.kind.value,
            )
            await self.aclose(outcome=classified.kind.value.lower())
            raise RelayFailure(classified) from exc

        self._response = response
        if response.status_code >= 300:
            try:
                content = await asyncio.wait_for(response.aread(), self.remaining())
            except Exception:
                content = b""
            classified = self._classifier.classify_status(
                response.status_code,
                retry_after=_retry_after(response),
            )
            self._log.warning(
                "Upstream rejected chat request",
                status_code=response.status_code,
                body_length=len(content),
                kind=classified.kind.value,
            )
            await self.aclose(outcome=classified.kind.value.lower())
            raise RelayFailure(classified)

        framing = framing_for_content_type(response.headers.get("content-type"))
        if framing is not None:
            self._event_stream = framing is Framing.EVENT_STREAM

    async def iter_bytes(
        self,
        is_disconnected: IsDisconnected | None = None,
    ) -> AsyncIterator[bytes]:
        """Upstream body chunks in arrival order.

        A timeout or transport error after headers cannot change the status
        code any more, so it is reported in-band as a final error frame.
        """
        if self._response is None:
            raise RuntimeError("ProxyConnection.open() must succeed before reading")

        chunks = self._response.aiter_bytes().__aiter__()
        outcome = "completed"
        try:
            while True:
                if is_disconnected is not None and await is_disconnected():
                    outcome = "client_disconnected"
                    self._log.info("Client disconnected, aborting upstream")
                    return
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), self.remaining())
                except StopAsyncIteration:
                    return
                except Exception as exc:
                    classified = self._classifier.classify_exception(exc)
                    outcome = classified.kind.value.lower()
                    self._log.warning(
                        "Upstream stream interrupted",
                        error_type=type(exc).__name__,
                        kind=classified.kind.value,
                    )
                    yield self._error_frame(classified)
                    return
                if not chunk:
                    continue
                if self._event_stream is None:
                    self._sniff_framing(chunk)
                yield chunk
        except (asyncio.CancelledError, GeneratorExit):
            outcome = "client_disconnected"
            raise
        finally:
            await self.aclose(outcome=outcome)

    async def read(self, disconnected: asyncio.Future[Any] | None = None) -> bytes:
        """Whole upstream body, for profiles with streaming disabled.

        Raises ClientDisconnected, with upstream already closed, if
        `disconnected` resolves before the body is complete.
        """
        if self._response is None:
            raise RuntimeError("ProxyConnection.open() must succeed before reading")
        outcome = "completed"
        try:
            return await _unless_disconnected(
                asyncio.wait_for(self._response.aread(), self.remaining()),
                disconnected,
            )
        except (asyncio.CancelledError, ClientDisconnected):
            outcome = "client_disconnected"
            self._log.info("Client disconnected, aborting upstream")
            raise
        except Exception as exc:
            classified = self._classifier.classify_exception(exc)
            outcome = classified.kind.value.lower()
            self._log.warning(
                "Upstream body read failed",
                error_type=type(exc).__name__,
                kind=classified.kind.value,
            )
            raise RelayFailure(classified) from exc
        finally:
            await self.aclose(outcome=outcome)

    async def aclose(self, *, outcome: str = "closed") -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self._response is not None:
                await self._response.aclose()
        finally:
            await self._client.aclose()

        duration = None
        if self._started_at is not None:
            duration = asyncio.get_running_loop().time() - self._started_at
            relay_upstream_duration_seconds.labels(mode=self.mode).observe(duration)
        relay_requests_total.labels(mode=self.mode, outcome=outcome).inc()
        self._log.info("Upstream connection closed", outcome=outcome, duration_seconds=duration)

    def _sniff_framing(self, chunk: bytes) -> None:
        # Decided on the first non-blank line, as the client decoder does,
        # so the chunk boundaries of the upstream do not matter.
        self._sniff += chunk
        while True:
            line, newline, rest = self._sniff.partition(b"\n")
            if not line.strip():
                if not newline:
                    return
                self._sniff = rest
                continue
            if newline or len(line) >= _SNIFF_BYTES:
                self._event_stream = line.rstrip(b"\r").startswith(_SSE_PREFIXES)
                self._sniff = b""
            return

    def _error_frame(self, classified: ClassifiedError) -> bytes:
        if self._event_stream is None:
            # Body ended mid first line; the frame completes that line
            self._event_stream = self._sniff.startswith(_SSE_PREFIXES)
        payload = json_dumps_compact(self._classifier.to_event(classified).to_dict()).encode("utf-8")
        if self._event_stream:
            return b"\n\ndata: " + payload + b"\n\n"
        return b"\n" + payload + b"\n"


def _retry_after(response: httpx.Response) -> float | None:
    return parse_retry_after(response.headers.get("retry-after"))


class RelayProxy:
    def __init__(
        self,
        store: ConfigurationStore,
        settings: Settings | None = None,
        *,
        classifier: ErrorClassifier | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.classifier = classifier or ErrorClassifier(self.settings.error_messages)
        self._transport = transport

    async def resolve(self, instance_id: str) -> ConnectionProfile:
        profile = await self.store.get_profile(instance_id)
        if profile is None:
            raise NotFoundError(message="Chat instance not found", code="instance.not_found")
        if not profile.enabled:
            raise ForbiddenError(message="Chat instance is disabled", code="instance.disabled")
        if not profile.endpoint_url:
            raise ServiceUnavailableError(
                message="Chat instance is not configured",
                code="instance.webhook_not_configured",
            )
        if profile.requires_secret and authorization_header(profile) is None:
            logger.error(
                "Instance credentials missing",
                instance_id=instance_id,
                auth_kind=profile.auth_kind.value,
            )
            raise ServiceUnavailableError(
                message="Chat instance is not configured",
                code="instance.credentials_missing",
            )
        return profile

    async def client_profile(self, instance_id: str) -> ClientProfile:
        profile = await self.resolve(instance_id)
        return profile.to_client_profile(
            self.settings.public_base_url,
            max_input_length=self.settings.max_message_length,
            timeout_seconds=self.settings.clamp_timeout(profile.timeout_seconds),
        )

    def sanitize_payload(
        self,
        profile: ConnectionProfile,
        payload: Mapping[str, Any],
    ) -> dict[str, Any]:
        ignored = sorted(key for key in payload if key in ROUTING_KEYS)
        if ignored:
            logger.warning(
                "Ignoring routing fields in chat request",
                instance_id=profile.instance_id,
                fields=ignored,
            )
        body = {key: value for key, value in payload.items() if key not in ROUTING_KEYS}

        text = body.get(profile.input_key_name)
        limit = self.settings.max_message_length
        if isinstance(text, str) and len(text) > limit:
            raise ValidationError(
                message="Your message is too long. Please shorten it.",
                code="message.too_long",
                meta={"kind": ErrorKind.VALIDATION.value, "length": len(text), "max_length": limit},
            )
        return body

    async def open_stream(
        self,
        instance_id: str,
        payload: Mapping[str, Any],
        *,
        disconnected: asyncio.Future[Any] | None = None,
    ) -> ProxyConnection:
        """Resolve the instance and open its upstream exchange.

        Raises a FlowChatError for unknown, disabled or unconfigured instances,
        oversize input, and upstream failures before the first body byte.
        Raises ClientDisconnected if `disconnected` resolves while waiting for
        the upstream headers.
        """
        profile = await self.resolve(instance_id)
        body = self.sanitize_payload(profile, payload)

        connection = ProxyConnection(
            profile,
            classifier=self.classifier,
            timeout_seconds=self.settings.clamp_timeout(profile.timeout_seconds),
            transport=self._transport,
        )
        await connection.open(body, disconnected=disconnected)
        return connection
