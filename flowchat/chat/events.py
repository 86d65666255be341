"""
Stream Events

Typed units of the chat response protocol, as delivered to the UI runtime.
For one run the sequence is always: one RunStart, zero or more deltas,
exactly one terminal event (RunComplete or RunError).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union


class ErrorKind(str, Enum):
    """Bounded failure taxonomy shared by the client and the relay."""

    CONNECTION = "CONNECTION"
    TIMEOUT = "TIMEOUT"
    UPSTREAM = "UPSTREAM"
    PROTOCOL = "PROTOCOL"
    RATE_LIMIT = "RATE_LIMIT"
    VALIDATION = "VALIDATION"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any, default: "ErrorKind") -> "ErrorKind":
        """Lenient lookup for kinds arriving over the wire."""
        if isinstance(value, str):
            try:
                return cls(value.upper())
            except ValueError:
                pass
        return default


class RunState(str, Enum):
    """Lifecycle of a single run."""

    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (RunState.SENDING, RunState.STREAMING)


@dataclass(frozen=True)
class RunStart:
    type = "run_start"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type}


@dataclass(frozen=True)
class TextDelta:
    text: str
    type = "text_delta"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ToolCallDelta:
    index: int
    fragment: str
    type = "tool_call_delta"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "index": self.index, "fragment": self.fragment}


@dataclass(frozen=True)
class RunComplete:
    type = "run_complete"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type}


@dataclass(frozen=True)
class RunError:
    kind: ErrorKind
    message: str
    detail: int | None = None  # upstream HTTP status, when there was one
    retryable: bool = False
    retry_after: float | None = None
    type = "error"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "kind": self.kind.value,
            "message": self.message,
            "detail": self.detail,
            "retryable": self.retryable,
            "retry_after": self.retry_after,
        }


StreamEvent = Union[RunStart, TextDelta, ToolCallDelta, RunComplete, RunError]

TERMINAL_EVENTS = (RunComplete, RunError)


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, TERMINAL_EVENTS)
