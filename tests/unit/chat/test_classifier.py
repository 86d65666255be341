from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from flowchat.chat.classifier import DEFAULT_TEMPLATES, ErrorClassifier, parse_retry_after
from flowchat.chat.events import ErrorKind
from flowchat.kernel.errors import ConcurrentRunError, ValidationError

pytestmark = pytest.mark.unit


class TestRetryable:
    @pytest.mark.parametrize(
        ("kind", "detail", "retry_after", "expected"),
        [
            (ErrorKind.CONNECTION, None, None, True),
            (ErrorKind.TIMEOUT, None, None, True),
            (ErrorKind.PROTOCOL, None, None, False),
            (ErrorKind.VALIDATION, None, None, False),
            (ErrorKind.UPSTREAM, 404, None, False),
            (ErrorKind.UPSTREAM, 503, None, True),
            (ErrorKind.RATE_LIMIT, 429, None, False),
            (ErrorKind.RATE_LIMIT, 429, 5.0, True),
            (ErrorKind.UNKNOWN, None, None, False),
        ],
    )
    def test_retryable_rules(self, kind, detail, retry_after, expected):
        classified = ErrorClassifier().classify(kind, detail=detail, retry_after=retry_after)
        assert classified.retryable is expected


class TestTemplates:
    def test_default_message_per_kind(self):
        classified = ErrorClassifier().classify(ErrorKind.TIMEOUT)
        assert classified.message == DEFAULT_TEMPLATES[ErrorKind.TIMEOUT]

    def test_overrides_accept_kind_names_and_placeholders(self):
        classifier = ErrorClassifier(
            {
                "rate_limit": "Wait {retry_after}s please.",
                "upstream": "Workflow failed ({detail}).",
                "NOT_A_KIND": "ignored",
            }
        )

        assert classifier.classify(ErrorKind.RATE_LIMIT, retry_after=2.5).message == "Wait 2.5s please."
        assert classifier.classify(ErrorKind.UPSTREAM, detail=500).message == "Workflow failed (500)."
        assert classifier.classify(ErrorKind.RATE_LIMIT).message == "Wait s please."


class TestExceptions:
    @pytest.mark.parametrize(
        ("exc", "kind"),
        [
            (httpx.ReadTimeout("slow"), ErrorKind.TIMEOUT),
            (asyncio.TimeoutError(), ErrorKind.TIMEOUT),
            (httpx.ConnectError("refused"), ErrorKind.CONNECTION),
            (httpx.RemoteProtocolError("peer closed"), ErrorKind.CONNECTION),
            (ValidationError(), ErrorKind.VALIDATION),
            (ConcurrentRunError(), ErrorKind.VALIDATION),
            (RuntimeError("boom"), ErrorKind.UNKNOWN),
        ],
    )
    def test_exception_kinds(self, exc, kind):
        assert ErrorClassifier().classify_exception(exc).kind is kind

    def test_http_status_error_uses_status(self):
        request = httpx.Request("POST", "https://hooks.example.com/chat")
        response = httpx.Response(429, headers={"Retry-After": "12"}, request=request)
        exc = httpx.HTTPStatusError("limited", request=request, response=response)

        classified = ErrorClassifier().classify_exception(exc)

        assert classified.kind is ErrorKind.RATE_LIMIT
        assert classified.retry_after == 12.0
        assert classified.retryable is True


class TestResponses:
    def test_relay_envelope_kind_wins_over_status(self):
        body = json.dumps(
            {
                "detail": "The request timed out.",
                "code": "relay.timeout",
                "meta": {"kind": "TIMEOUT", "status": None, "retryable": True, "retry_after": None},
            }
        ).encode()

        classified = ErrorClassifier().classify_response(504, {}, body)

        assert classified.kind is ErrorKind.TIMEOUT
        assert classified.detail is None

    def test_envelope_upstream_status_is_detail(self):
        body = json.dumps({"meta": {"kind": "UPSTREAM", "status": 500}}).encode()

        classified = ErrorClassifier().classify_response(502, {}, body)

        assert classified.kind is ErrorKind.UPSTREAM
        assert classified.detail == 500
        assert classified.retryable is True

    def test_plain_status_without_envelope(self):
        classified = ErrorClassifier().classify_response(500, {}, b"<html>Internal error</html>")

        assert classified.kind is ErrorKind.UPSTREAM
        assert classified.detail == 500
        assert "html" not in classified.message

    def test_rate_limit_with_retry_after_header(self):
        classified = ErrorClassifier().classify_response(429, {"retry-after": "30"}, b"")

        assert classified.kind is ErrorKind.RATE_LIMIT
        assert classified.retry_after == 30.0

    def test_to_event_copies_fields(self):
        classifier = ErrorClassifier()
        event = classifier.to_event(classifier.classify(ErrorKind.UPSTREAM, detail=502))

        assert event.to_dict() == {
            "type": "error",
            "kind": "UPSTREAM",
            "message": DEFAULT_TEMPLATES[ErrorKind.UPSTREAM],
            "detail": 502,
            "retryable": True,
            "retry_after": None,
        }


@pytest.mark.parametrize(
    ("value", "expected"),
    [("5", 5.0), (" 1.5 ", 1.5), ("-1", None), ("Wed, 21 Oct 2026 07:28:00 GMT", None), (None, None)],
)
def test_parse_retry_after(value, expected):
    assert parse_retry_after(value) == expected
