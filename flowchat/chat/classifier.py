"""
Error Classifier

Maps low-level failures from either side of the transport into the bounded
ErrorKind taxonomy, each with a user-facing message and a retryable flag.
The UI decides whether to offer a retry; nothing here retries on its own.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from flowchat.chat.events import ErrorKind, RunError
from flowchat.kernel.errors import ConcurrentRunError, FlowChatError, ValidationError

DEFAULT_TEMPLATES: dict[ErrorKind, str] = {
    ErrorKind.CONNECTION: "We're having trouble connecting. Please try again in a moment.",
    ErrorKind.TIMEOUT: "The request timed out. Please try again.",
    ErrorKind.UPSTREAM: "The chat service encountered an error. Please try again later.",
    ErrorKind.PROTOCOL: "Received an invalid response from the chat service.",
    ErrorKind.RATE_LIMIT: "Too many messages. Please wait a moment before sending another.",
    ErrorKind.VALIDATION: "Invalid input. Please check and try again.",
    ErrorKind.UNKNOWN: "An unexpected error occurred. Please try again.",
}


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str
    retryable: bool
    detail: int | None = None
    retry_after: float | None = None

    def to_meta(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "status": self.detail,
            "retryable": self.retryable,
            "retry_after": self.retry_after,
        }


class _Placeholders(dict):
    def __missing__(self, key: str) -> str:
        return ""


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After in delta-seconds form; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class ErrorClassifier:
    def __init__(self, templates: Mapping[ErrorKind | str, str] | None = None) -> None:
        self.templates = dict(DEFAULT_TEMPLATES)
        for key, template in (templates or {}).items():
            try:
                kind = ErrorKind(key.upper() if isinstance(key, str) else key)
            except ValueError:
                continue
            self.templates[kind] = template

    # -------------------------------------------------------------------------
    # Core mapping
    # -------------------------------------------------------------------------

    def is_retryable(
        self,
        kind: ErrorKind,
        *,
        detail: int | None = None,
        retry_after: float | None = None,
    ) -> bool:
        if kind in (ErrorKind.CONNECTION, ErrorKind.TIMEOUT):
            return True
        if kind is ErrorKind.RATE_LIMIT:
            return retry_after is not None
        if kind is ErrorKind.UPSTREAM:
            # 4xx means the request itself was refused; 5xx may clear up
            return detail is not None and detail >= 500
        return False

    def classify(
        self,
        kind: ErrorKind,
        *,
        detail: int | None = None,
        retry_after: float | None = None,
    ) -> ClassifiedError:
        template = self.templates.get(kind) or DEFAULT_TEMPLATES[kind]
        message = template.format_map(
            _Placeholders(
                detail="" if detail is None else detail,
                retry_after="" if retry_after is None else f"{retry_after:g}",
            )
        )
        return ClassifiedError(
            kind=kind,
            message=message,
            retryable=self.is_retryable(kind, detail=detail, retry_after=retry_after),
            detail=detail,
            retry_after=retry_after,
        )

    def classify_status(self, status: int, *, retry_after: float | None = None) -> ClassifiedError:
        if status == 429:
            return self.classify(ErrorKind.RATE_LIMIT, detail=status, retry_after=retry_after)
        return self.classify(ErrorKind.UPSTREAM, detail=status)

    def classify_exception(self, exc: BaseException) -> ClassifiedError:
        if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
            return self.classify(ErrorKind.TIMEOUT)
        if isinstance(exc, (httpx.ConnectError, httpx.NetworkError, httpx.RemoteProtocolError)):
            return self.classify(ErrorKind.CONNECTION)
        if isinstance(exc, httpx.HTTPStatusError):
            return self.classify_status(
                exc.response.status_code,
                retry_after=parse_retry_after(exc.response.headers.get("Retry-After")),
            )
        if isinstance(exc, (ValidationError, ConcurrentRunError)):
            return self.classify(ErrorKind.VALIDATION)
        if isinstance(exc, FlowChatError) and exc.meta.get("kind"):
            return self.classify(
                ErrorKind.parse(exc.meta["kind"], ErrorKind.UNKNOWN),
                detail=exc.meta.get("status"),
                retry_after=exc.meta.get("retry_after"),
            )
        return self.classify(ErrorKind.UNKNOWN)

    def classify_response(
        self,
        status: int,
        headers: Mapping[str, str],
        body: bytes,
    ) -> ClassifiedError:
        """Classify a non-2xx response from the relay or a direct endpoint.

        The relay's error envelope carries `meta.kind`; anything else is judged
        by status alone. The body is never surfaced to the user.
        """
        retry_after = parse_retry_after(headers.get("retry-after") or headers.get("Retry-After"))
        meta = _envelope_meta(body)
        if meta and meta.get("kind"):
            kind = ErrorKind.parse(meta["kind"], ErrorKind.UNKNOWN)
            detail = meta.get("status")
            if not isinstance(detail, int):
                detail = status if kind is ErrorKind.UPSTREAM else None
            hint = meta.get("retry_after")
            if isinstance(hint, (int, float)):
                retry_after = float(hint)
            return self.classify(kind, detail=detail, retry_after=retry_after)
        return self.classify_status(status, retry_after=retry_after)

    def to_event(self, classified: ClassifiedError) -> RunError:
        return RunError(
            kind=classified.kind,
            message=classified.message,
            detail=classified.detail,
            retryable=classified.retryable,
            retry_after=classified.retry_after,
        )

    def error_event(
        self,
        kind: ErrorKind,
        *,
        detail: int | None = None,
        retry_after: float | None = None,
    ) -> RunError:
        return self.to_event(self.classify(kind, detail=detail, retry_after=retry_after))


def _envelope_meta(body: bytes) -> dict[str, Any] | None:
    if not body:
        return None
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    meta = payload.get("meta")
    return meta if isinstance(meta, dict) else None
