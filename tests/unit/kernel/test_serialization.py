from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

import pytest

from flowchat.kernel.serialization import json_dumps_compact, to_jsonable
from flowchat.kernel.time import isoformat_z


class Color(str, Enum):
    RED = "red"


@dataclass
class Page:
    url: str
    visited_at: datetime


@pytest.mark.unit
def test_to_jsonable_handles_context_values():
    visited = datetime(2026, 2, 10, 12, 0, 0, tzinfo=timezone.utc)
    value = {"page": Page(url="/pricing", visited_at=visited), "color": Color.RED, "price": Decimal("10.50")}
    assert to_jsonable(value) == {
        "page": {"url": "/pricing", "visited_at": "2026-02-10T12:00:00+00:00"},
        "color": "red",
        "price": "10.50",
    }


@pytest.mark.unit
def test_to_jsonable_rejects_unknown_types():
    with pytest.raises(TypeError):
        to_jsonable(object())


@pytest.mark.unit
def test_json_dumps_compact_is_single_line():
    assert json_dumps_compact({"type": "error", "text": "héllo"}) == '{"type":"error","text":"héllo"}'


@pytest.mark.unit
def test_isoformat_z_treats_naive_as_utc():
    assert isoformat_z(datetime(2026, 1, 1, 8, 30)) == "2026-01-01T08:30:00Z"
