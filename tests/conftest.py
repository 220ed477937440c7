from __future__ import annotations

import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

import requests  # type: ignore

from disruption_etl.db import Database, initialize
from disruption_etl.etl.models import DisruptionRecord, SegmentRecord
from disruption_etl.etl.segments import SegmentStore
from disruption_etl.etl.sources import DisruptionSource
from disruption_etl.etl.store import DisruptionStore

T0 = datetime(2024, 3, 1, 12, 0, 0)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class StubSource(DisruptionSource):
    """Source returning canned rows, or raising when ``error`` is set."""

    def __init__(self, name: str = "stub", rows: list[dict[str, Any]] | None = None):
        self.NAME = name
        self.rows = rows or []
        self.error: Exception | None = None
        self.calls = 0

    def fetch_rows(self) -> list[dict[str, Any]]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.rows)


class StubResponse:
    def __init__(self, payload: Any = None, status_code: int = 200, text: str | None = None):
        self.payload = payload
        self.status_code = status_code
        self.text = text if text is not None else ""

    def json(self) -> Any:
        if self.payload is None:
            raise ValueError("No JSON object could be decoded")
        return self.payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


class StubSession:
    """Stands in for requests.Session; ``handler(url, params)`` builds each response."""

    def __init__(self, handler: Callable[[str, dict | None], StubResponse]):
        self.handler = handler
        self.calls: list[tuple[str, dict | None]] = []

    def get(self, url: str, params: dict | None = None, timeout: float | None = None) -> StubResponse:
        self.calls.append((url, dict(params) if params else None))
        return self.handler(url, params)


def record_row(external_id: str = "road-1", **overrides: Any) -> dict[str, Any]:
    row = {
        "external_id": external_id,
        "category": "road",
        "severity": "moderate",
        "title": f"Lane closure {external_id}",
        "description": "Watermain repairs on Bloor Street West near Jane",
        "affected_lines": [],
        "source_name": "stub",
        "source_url": "https://example.test/feed",
        "raw_data": {"id": external_id},
    }
    row.update(overrides)
    return row


def line(*coords: tuple[float, float]) -> dict[str, Any]:
    """GeoJSON LineString from (lon, lat) pairs."""
    return {"type": "LineString", "coordinates": [list(c) for c in coords]}


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def db():
    database = initialize(Database.in_memory())
    yield database
    database.close()


@pytest.fixture
def store(db, clock) -> DisruptionStore:
    return DisruptionStore(db, clock=clock)


@pytest.fixture
def segment_store(db, clock) -> SegmentStore:
    return SegmentStore(db, precision=7, clock=clock)


@pytest.fixture
def make_record() -> Callable[..., DisruptionRecord]:
    def _make(external_id: str = "road-1", **overrides: Any) -> DisruptionRecord:
        return DisruptionRecord.model_validate(record_row(external_id, **overrides))
    return _make


@pytest.fixture
def make_segment() -> Callable[..., SegmentRecord]:
    def _make(centreline_id: int, street_name: str, *coords: tuple[float, float]) -> SegmentRecord:
        return SegmentRecord(centreline_id=centreline_id, street_name=street_name, geometry=line(*coords))
    return _make
