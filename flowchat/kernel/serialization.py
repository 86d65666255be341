from __future__ import annotations

import dataclasses
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any
from uuid import UUID


def to_jsonable(value: Any) -> Any:
    """Coerce common Python types into JSON-compatible primitives.

    Context records are opaque to the transport, so anything the UI runtime
    hands over has to survive `json.dumps` unchanged in meaning.
    """
    if value is None:
        return None

    if isinstance(value, Enum):
        return to_jsonable(value.value)

    if isinstance(value, (str, int, float, bool)):
        return value

    if isinstance(value, datetime):
        return value.isoformat()

    if isinstance(value, date):
        return value.isoformat()

    if isinstance(value, UUID):
        return str(value)

    if isinstance(value, Decimal):
        return str(value)

    if isinstance(value, Path):
        return str(value)

    if isinstance(value, MappingProxyType):
        return {str(k): to_jsonable(v) for (k, v) in dict(value).items()}

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {str(k): to_jsonable(v) for (k, v) in dataclasses.asdict(value).items()}

    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for (k, v) in value.items()}

    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]

    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        return to_jsonable(model_dump())

    raise TypeError(f"Unsupported type for JSON serialization: {type(value)!r}")


def json_dumps_compact(value: Any) -> str:
    """Single-line JSON for wire frames (one object per line)."""
    return json.dumps(to_jsonable(value), ensure_ascii=False, separators=(",", ":"))
