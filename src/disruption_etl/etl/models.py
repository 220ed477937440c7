"""
Data models for the disruption pipeline.

Pydantic models describe data crossing a boundary (upstream records,
stored rows); plain dataclasses carry per-run bookkeeping.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..streets.models import CachedMatch, MatchType


class Severity(StrEnum):
    MINOR = "minor"
    MODERATE = "moderate"
    SEVERE = "severe"


class CoordinateSource(StrEnum):
    """Where a disruption's coordinate came from."""
    DECLARED = "declared"
    DERIVED = "derived"
    FALLBACK = "fallback"


class DisruptionRecord(BaseModel):
    """One disruption as returned by an upstream source."""
    model_config = ConfigDict(str_strip_whitespace=True)

    external_id: str = Field(min_length=1)
    category: str = Field(min_length=1)
    severity: Severity
    title: str = Field(min_length=1)
    description: Optional[str] = None
    affected_lines: list[str] = Field(default_factory=list)
    source_name: str
    source_url: Optional[str] = None
    raw_data: dict[str, Any] = Field(default_factory=dict)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)

    @field_validator('severity', mode='before')
    @classmethod
    def _lower_severity(cls, v):
        return v.lower().strip() if isinstance(v, str) else v

    @model_validator(mode='after')
    def _coordinates_paired(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError('latitude and longitude must be given together')
        return self

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class StoredDisruption(BaseModel):
    """A row of the ``disruptions`` table."""
    external_id: str
    category: str
    severity: str
    title: str
    description: Optional[str] = None
    affected_lines: list[str] = Field(default_factory=list)
    raw_data: dict[str, Any] = Field(default_factory=dict)
    source_name: Optional[str] = None
    source_url: Optional[str] = None
    content_hash: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    geohash: Optional[str] = None
    geohash_neighbors: list[str] = Field(default_factory=list)
    coordinate_source: Optional[CoordinateSource] = None
    matched_street: Optional[str] = None
    match_confidence: Optional[float] = None
    match_type: Optional[MatchType] = None
    match_hash: Optional[str] = None
    last_matched_at: Optional[datetime] = None
    is_active: bool = True
    last_fetched_at: datetime
    created_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None

    # JSON text columns
    @field_validator('affected_lines', 'geohash_neighbors', 'raw_data', mode='before')
    @classmethod
    def _parse_json(cls, v, info):
        if v is None:
            return {} if info.field_name == 'raw_data' else []
        if isinstance(v, str):
            return json.loads(v)
        return v

    @classmethod
    def from_row(cls, columns: list[str], row: tuple) -> "StoredDisruption":
        return cls.model_validate(dict(zip(columns, row)))

    def cached_match(self) -> CachedMatch:
        return CachedMatch(
            matched_street=self.matched_street,
            match_hash=self.match_hash,
            last_matched_at=self.last_matched_at,
            confidence=self.match_confidence or 0.0,
            match_type=self.match_type or MatchType.NONE,
        )


class SegmentRecord(BaseModel):
    """One street centreline segment from the reference dataset."""
    centreline_id: int
    street_name: str = Field(min_length=1)
    feature_code: Optional[int] = None
    feature_code_desc: Optional[str] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    geometry: Optional[dict[str, Any]] = None

    @field_validator('geometry', mode='before')
    @classmethod
    def _parse_geometry(cls, v):
        if isinstance(v, str):
            return json.loads(v) if v.strip() else None
        return v


@dataclass(frozen=True)
class UpsertResult:
    external_id: str
    inserted: bool


@dataclass
class FetchResult:
    """Records from every source that answered, and the errors of those that did not."""
    records: list[DisruptionRecord] = field(default_factory=list)
    succeeded_sources: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    invalid_records: int = 0

    @property
    def failed_sources(self) -> list[str]:
        return list(self.errors)


@dataclass
class RunResult:
    """Counters for one completed ETL run."""
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    duplicates_skipped: int = 0
    matched: int = 0
    archived: int = 0
    cleaned_up: int = 0
    resolve_errors: int = 0

    @property
    def processed(self) -> int:
        return self.inserted + self.updated


@dataclass
class SchedulerStats:
    """Process-lifetime counters of an ETL scheduler."""
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    disruptions_processed: int = 0
    disruptions_archived: int = 0
    disruptions_matched: int = 0
    duplicates_skipped: int = 0

    @property
    def success_rate(self) -> float:
        """Percentage of successful runs (0 before the first run)."""
        if self.total_runs == 0:
            return 0.0
        return self.successful_runs / self.total_runs * 100


@dataclass(frozen=True)
class ArchiveStats:
    total: int
    by_severity: dict[str, int]
    avg_duration_minutes: Optional[float]
    latest_resolved_at: Optional[datetime]
