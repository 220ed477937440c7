"""
- Models: match value objects (MatchType, StreetMatch, CachedMatch)
- Normalizers: street name extraction and normalization
- Matching: edit distance and best-match selection
- Cache: reuse rules for stored matches
"""

from .models import (
    MatchType,
    StreetMatch,
    CachedMatch,
)

from .base import Normalizer

from .normalizers import (
    StreetNormalizer,
    extract_street_names,
    normalize_street_name,
)

from .matching import (
    levenshtein_distance,
    find_best_match,
)

from .cache import (
    compute_match_hash,
    is_cache_valid,
    can_use_cached_match,
    should_refresh_match,
)

__all__ = [
    # Models
    "MatchType",
    "StreetMatch",
    "CachedMatch",
    # Base classes
    "Normalizer",
    # Normalizers
    "StreetNormalizer",
    "extract_street_names",
    "normalize_street_name",
    # Matching
    "levenshtein_distance",
    "find_best_match",
    # Cache
    "compute_match_hash",
    "is_cache_valid",
    "can_use_cached_match",
    "should_refresh_match",
]
