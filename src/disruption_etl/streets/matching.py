"""
Fuzzy street name matching against the reference street list.
"""

import logging
from typing import Iterable, Optional

from .models import MatchType, StreetMatch
from .normalizers import normalize_street_name

logger = logging.getLogger(__name__)

DEFAULT_MAX_FUZZY_DISTANCE = 3


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance with unit-cost substitution, insertion and deletion."""
    rows = len(a) + 1
    cols = len(b) + 1
    dp = [[0] * cols for _ in range(rows)]

    for i in range(rows):
        dp[i][0] = i
    for j in range(cols):
        dp[0][j] = j

    for i in range(1, rows):
        for j in range(1, cols):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            dp[i][j] = min(
                dp[i - 1][j] + 1,        # deletion
                dp[i][j - 1] + 1,        # insertion
                dp[i - 1][j - 1] + cost,  # substitution
            )

    return dp[-1][-1]


def find_best_match(
    name: str,
    reference_names: Iterable[str],
    max_fuzzy_distance: int = DEFAULT_MAX_FUZZY_DISTANCE,
) -> StreetMatch:
    """
    Pair ``name`` with the closest reference street name.

    An exact match of the normalized forms always wins. Otherwise the
    reference name with the smallest edit distance is kept (the first one
    encountered on ties) and accepted as fuzzy if the distance is within
    ``max_fuzzy_distance``.

    Args:
        name: Street name extracted from disruption text
        reference_names: Display names of the reference streets
        max_fuzzy_distance: Largest edit distance accepted as a fuzzy match

    Returns:
        StreetMatch with matched_name set to the reference display name
    """
    normalized = normalize_street_name(name)
    candidates = [(ref, normalize_street_name(ref)) for ref in reference_names]

    for ref, ref_normalized in candidates:
        if ref_normalized == normalized:
            return StreetMatch(
                query=name,
                matched_name=ref,
                match_type=MatchType.EXACT,
                score=0,
                confidence=1.0,
            )

    best_name: Optional[str] = None
    best_distance: Optional[int] = None
    for ref, ref_normalized in candidates:
        distance = levenshtein_distance(normalized, ref_normalized)
        if best_distance is None or distance < best_distance:
            best_distance = distance
            best_name = ref

    if best_distance is not None and best_distance <= max_fuzzy_distance:
        logger.debug(f"Fuzzy match '{name}' -> '{best_name}' (distance {best_distance})")
        return StreetMatch(
            query=name,
            matched_name=best_name,
            match_type=MatchType.FUZZY,
            score=best_distance,
            confidence=max(0.0, 1 - best_distance / 10),
        )

    return StreetMatch(query=name, score=best_distance)
