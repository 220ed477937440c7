"""
Value objects passed between the street matcher, the match cache and the
persistence layer.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Optional


class MatchType(StrEnum):
    """How a street name was paired with a reference name."""
    EXACT = "exact"
    FUZZY = "fuzzy"
    NONE = "none"


@dataclass(frozen=True)
class StreetMatch:
    """
    Result of matching one extracted street name against the reference list.

    ``score`` is the edit distance between the normalised forms (0 for an
    exact match, None when there was nothing to compare against).
    """
    query: str
    matched_name: Optional[str] = None
    match_type: MatchType = MatchType.NONE
    score: Optional[int] = None
    confidence: float = 0.0

    def is_match(self) -> bool:
        return self.match_type is not MatchType.NONE and self.matched_name is not None


@dataclass(frozen=True)
class CachedMatch:
    """Match columns previously stored on a disruption row."""
    matched_street: Optional[str] = None
    match_hash: Optional[str] = None
    last_matched_at: Optional[datetime] = None
    confidence: float = 0.0
    match_type: MatchType = MatchType.NONE
