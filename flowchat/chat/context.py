"""Per-turn context records handed to the automation endpoint.

The transport never interprets the record; it only asks for a fresh one per
run and forwards it under `context`.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Protocol

from flowchat.kernel.time import isoformat_z, utc_now


class ContextSupplier(Protocol):
    def __call__(self) -> Mapping[str, Any]: ...


class StaticContextSupplier:
    """Fixed context (page, site, user info) plus a per-turn timestamp."""

    def __init__(
        self,
        context: Mapping[str, Any] | None = None,
        *,
        clock: Callable[[], Any] = utc_now,
    ) -> None:
        self._context = dict(context or {})
        self._clock = clock

    def __call__(self) -> Mapping[str, Any]:
        record = dict(self._context)
        record["timestamp"] = isoformat_z(self._clock())
        return record


def empty_context() -> Mapping[str, Any]:
    return {}
