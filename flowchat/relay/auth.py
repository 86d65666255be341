"""Upstream request headers, including server-held credentials."""

import base64

from flowchat.relay.profiles import AuthKind, ConnectionProfile

STREAMING_ACCEPT = "text/event-stream, application/x-ndjson, application/json"
BUFFERED_ACCEPT = "application/json"

# Never taken from custom headers
RESERVED_HEADERS = frozenset(
    {
        "content-type",
        "content-length",
        "accept",
        "host",
        "connection",
        "transfer-encoding",
        "cookie",
    }
)


def build_upstream_headers(profile: ConnectionProfile, *, streaming: bool) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "Accept": STREAMING_ACCEPT if streaming else BUFFERED_ACCEPT,
    }

    reserved = set(RESERVED_HEADERS)
    if profile.auth_kind is not AuthKind.NONE:
        reserved.add("authorization")

    for name, value in profile.custom_headers.items():
        if name.lower() in reserved:
            continue
        headers[name] = value

    authorization = authorization_header(profile)
    if authorization:
        headers["Authorization"] = authorization
    return headers


def authorization_header(profile: ConnectionProfile) -> str | None:
    credentials = profile.credentials
    if profile.auth_kind is AuthKind.BASIC:
        password = credentials.password.get_secret_value() if credentials.password else ""
        token = base64.b64encode(f"{credentials.username or ''}:{password}".encode()).decode("ascii")
        return f"Basic {token}"
    if profile.auth_kind is AuthKind.BEARER:
        if credentials.token is None:
            return None
        return f"Bearer {credentials.token.get_secret_value()}"
    return None
