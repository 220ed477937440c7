"""
Links disruptions to street centreline segments.

For each disruption the street names mentioned in its title and
description are matched against the reference street list. A stored match
is reused while the text is unchanged and the match is younger than the
refresh window.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..settings import Settings
from ..streets.cache import can_use_cached_match, compute_match_hash
from ..streets.matching import find_best_match
from ..streets.models import MatchType, StreetMatch
from ..streets.normalizers import extract_street_names
from ..utils import geohash
from .models import CoordinateSource, StoredDisruption
from .segments import Segment, SegmentStore
from .store import DisruptionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatcherConfig:
    max_fuzzy_distance: int = 3
    cache_max_age_days: float = 30
    geohash_precision: int = 7
    fallback_latitude: Optional[float] = None
    fallback_longitude: Optional[float] = None

    def __post_init__(self):
        if self.max_fuzzy_distance < 0:
            raise ValueError("max_fuzzy_distance must be >= 0")
        if self.cache_max_age_days <= 0:
            raise ValueError("cache_max_age_days must be > 0")
        if not 1 <= self.geohash_precision <= geohash.MAX_PRECISION:
            raise ValueError(f"geohash_precision must be between 1 and {geohash.MAX_PRECISION}")
        if (self.fallback_latitude is None) != (self.fallback_longitude is None):
            raise ValueError("fallback_latitude and fallback_longitude must be set together")

    @classmethod
    def from_settings(cls, settings: Settings) -> "MatcherConfig":
        return cls(
            max_fuzzy_distance=settings.max_fuzzy_distance,
            cache_max_age_days=settings.match_cache_max_age_days,
            geohash_precision=settings.geohash_precision,
            fallback_latitude=settings.fallback_latitude,
            fallback_longitude=settings.fallback_longitude,
        )

    @property
    def fallback(self) -> Optional[tuple[float, float]]:
        if self.fallback_latitude is None or self.fallback_longitude is None:
            return None
        return self.fallback_latitude, self.fallback_longitude


@dataclass(frozen=True)
class MatchOutcome:
    external_id: str
    match: StreetMatch
    segment_ids: tuple[int, ...] = ()
    cached: bool = False

    @property
    def matched(self) -> bool:
        return self.match.is_match() and bool(self.segment_ids)


class DisruptionMatcher:
    """
    Computes and stores street matches, segment links and coordinates.

    Args:
        store: Disruption store the results are written to
        segments: Reference segment store
        config: Matching thresholds
    """

    def __init__(self, store: DisruptionStore, segments: SegmentStore, config: Optional[MatcherConfig] = None):
        self.store = store
        self.segments = segments
        self.config = config or MatcherConfig()

    def match_text(self, title: str, description: Optional[str]) -> StreetMatch:
        """Best reference match among the street names found in the text."""
        text = f"{title} {description or ''}"
        candidates = extract_street_names(text)
        if not candidates:
            return StreetMatch(query=title)

        reference = self.segments.street_names()
        best = StreetMatch(query=candidates[0])
        for name in candidates:
            result = find_best_match(name, reference, self.config.max_fuzzy_distance)
            if result.confidence > best.confidence:
                best = result
            if best.match_type is MatchType.EXACT:
                break
        return best

    def _select_segments(self, street: str, disruption: StoredDisruption) -> list[Segment]:
        segments = self.segments.segments_for_street(street)
        if disruption.coordinate_source != CoordinateSource.DECLARED or disruption.latitude is None:
            return segments

        near = self.segments.segments_near(disruption.latitude, disruption.longitude)
        nearby_ids = {s.centreline_id for s in near}
        nearby = [s for s in segments if s.centreline_id in nearby_ids]
        return nearby or segments

    def _locate(self, disruption: StoredDisruption, segments: list[Segment]) -> None:
        if disruption.coordinate_source == CoordinateSource.DECLARED and disruption.latitude is not None:
            lat, lon, source = disruption.latitude, disruption.longitude, CoordinateSource.DECLARED
        else:
            centres = [(s.center_lat, s.center_lon) for s in segments if s.center_lat is not None]
            if centres:
                lat = sum(c[0] for c in centres) / len(centres)
                lon = sum(c[1] for c in centres) / len(centres)
                source = CoordinateSource.DERIVED
            elif self.config.fallback:
                lat, lon = self.config.fallback
                source = CoordinateSource.FALLBACK
            else:
                self.store.update_location(disruption.external_id, None, None, None, None, [])
                return

        cells = geohash.with_neighbors(lat, lon, self.config.geohash_precision)
        self.store.update_location(disruption.external_id, lat, lon, source, cells[0], cells[1:])

    def match_disruption(self, disruption: StoredDisruption, now: datetime) -> MatchOutcome:
        """
        Match one stored disruption, reusing its cached match when allowed.

        Any error while matching is logged and reported as no match.
        """
        try:
            cached = disruption.cached_match()
            if can_use_cached_match(
                cached, disruption.title, disruption.description, now, self.config.cache_max_age_days
            ):
                logger.debug(f"Using cached match for {disruption.external_id}: {cached.matched_street}")
                match = StreetMatch(
                    query=cached.matched_street or '',
                    matched_name=cached.matched_street,
                    match_type=cached.match_type,
                    confidence=cached.confidence,
                )
                links = self.store.links_for(disruption.external_id)
                return MatchOutcome(disruption.external_id, match, tuple(r[0] for r in links), cached=True)

            match = self.match_text(disruption.title, disruption.description)
            segments = self._select_segments(match.matched_name, disruption) if match.is_match() else []

            with self.store.db.transaction():
                self.store.replace_links(
                    disruption.external_id,
                    [(s.centreline_id, match.matched_name, match.match_type, match.confidence) for s in segments],
                    now=now,
                )
                self.store.update_match(
                    disruption.external_id,
                    match.matched_name,
                    match.confidence,
                    match.match_type,
                    compute_match_hash(disruption.title, disruption.description),
                    now,
                )
                self._locate(disruption, segments)
        except Exception as e:
            logger.warning(f"Matching failed for {disruption.external_id}: {e}")
            return MatchOutcome(disruption.external_id, StreetMatch(query=disruption.title))

        if match.is_match():
            logger.debug(
                f"Matched {disruption.external_id} to '{match.matched_name}' "
                f"({match.match_type}, {match.confidence:.2f}, {len(segments)} segments)"
            )
        return MatchOutcome(disruption.external_id, match, tuple(s.centreline_id for s in segments))

    def match_all(self, external_ids: list[str], now: datetime) -> list[MatchOutcome]:
        """Match every id; unknown ids are skipped and unreadable ones count as no match."""
        outcomes = []
        for external_id in external_ids:
            try:
                disruption = self.store.get(external_id)
            except Exception as e:
                logger.warning(f"Could not load {external_id} for matching: {e}")
                outcomes.append(MatchOutcome(external_id, StreetMatch(query=external_id)))
                continue
            if disruption is None:
                continue
            outcomes.append(self.match_disruption(disruption, now))
        return outcomes
