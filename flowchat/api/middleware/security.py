"""
Security Middleware for the Relay

Provides:
- Security headers on every response
- Request ID tracking (bound into structlog context)
- Rate limiting by client IP
"""

import json
import secrets
import time
from typing import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from flowchat.chat.events import ErrorKind
from flowchat.config import get_settings

logger = structlog.get_logger()

# =============================================================================
# Security Headers
# =============================================================================


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add security headers to all responses.

    Headers:
    - X-Content-Type-Options: nosniff
    - X-Frame-Options: DENY
    - Referrer-Policy: strict-origin-when-cross-origin
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response


# =============================================================================
# Request ID Tracking
# =============================================================================


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Add unique request ID to all requests for tracing.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or secrets.token_hex(8)

        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        structlog.contextvars.unbind_contextvars("request_id")

        return response


# =============================================================================
# Rate Limiting by IP
# =============================================================================


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Simple in-memory rate limiting by IP.

    Per process only; put a shared limiter in front of the relay when running
    more than one worker.
    """

    def __init__(
        self,
        app: ASGIApp,
        requests_per_minute: int = 60,
        burst_limit: int = 10,
    ):
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.burst_limit = burst_limit
        self._requests: dict[str, list[float]] = {}

    def _get_client_ip(self, request: Request) -> str:
        """Get client IP from request, handling proxies."""
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def _is_rate_limited(self, client_ip: str, now: float | None = None) -> tuple[bool, int]:
        now = time.time() if now is None else now
        window_start = now - 60

        history = [t for t in self._requests.get(client_ip, []) if t > window_start]
        self._requests[client_ip] = history

        # Burst limit: requests in the last second
        if sum(1 for t in history if t > now - 1) >= self.burst_limit:
            return True, 1

        if len(history) >= self.requests_per_minute:
            retry_after = int(min(history) + 60 - now) + 1
            return True, retry_after

        history.append(now)
        return False, 0

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in ["/health", "/metrics"] or request.method == "OPTIONS":
            return await call_next(request)

        client_ip = self._get_client_ip(request)
        is_limited, retry_after = self._is_rate_limited(client_ip)

        if is_limited:
            logger.warning(
                "Rate limit exceeded",
                client_ip=client_ip,
                path=request.url.path,
                retry_after=retry_after,
            )
            # Same envelope as relay errors so widgets classify it as RATE_LIMIT
            content = {
                "detail": "Rate limit exceeded",
                "code": "http.rate_limited",
                "meta": {
                    "kind": ErrorKind.RATE_LIMIT.value,
                    "status": 429,
                    "retryable": True,
                    "retry_after": retry_after,
                },
            }
            return Response(
                content=json.dumps(content),
                status_code=429,
                media_type="application/json",
                headers={"Retry-After": str(retry_after)},
            )

        return await call_next(request)


# =============================================================================
# CORS Configuration
# =============================================================================


def get_cors_origins() -> list[str]:
    """
    Get allowed CORS origins based on environment.

    Production: only the configured widget host origins
    Development: also allow localhost
    """
    settings = get_settings()

    if settings.environment == "production":
        return settings.cors_origins

    dev_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8080",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:8080",
    ]

    return sorted(set(settings.cors_origins + dev_origins))
