"""
Reuse rules for previously computed street matches.

A stored match is trusted only while the disruption text that produced it
is unchanged and the match is younger than the refresh window. The window
also bounds how long a match survives a reference geometry update.
"""

from datetime import datetime, timedelta
from hashlib import sha256
from typing import Optional

from .models import CachedMatch

DEFAULT_MAX_AGE_DAYS = 30


def compute_match_hash(title: str, description: Optional[str] = None) -> str:
    """
    Hash of the text a street match is computed from.

    Examples:
        compute_match_hash("Closure", None) == compute_match_hash("  closure ", "")
    """
    key = f"{(title or '').lower().strip()}|{(description or '').lower().strip()}"
    return sha256(key.encode()).hexdigest()


def is_cache_valid(
    last_matched_at: Optional[datetime],
    now: datetime,
    max_age_days: int = DEFAULT_MAX_AGE_DAYS,
) -> bool:
    """True if a match made at ``last_matched_at`` is still within the refresh window."""
    if last_matched_at is None:
        return False
    return now - last_matched_at <= timedelta(days=max_age_days)


def can_use_cached_match(
    cached: CachedMatch,
    title: str,
    description: Optional[str],
    now: datetime,
    max_age_days: int = DEFAULT_MAX_AGE_DAYS,
) -> bool:
    """
    Decide whether ``cached`` can stand in for a fresh match.

    Requires a previously matched street, a stored hash equal to the hash
    of the current title/description, and an age within ``max_age_days``.
    """
    if not cached.matched_street:
        return False
    if not cached.match_hash or cached.match_hash != compute_match_hash(title, description):
        return False
    return is_cache_valid(cached.last_matched_at, now, max_age_days)


def should_refresh_match(
    cached: CachedMatch,
    title: str,
    description: Optional[str],
    now: datetime,
    max_age_days: int = DEFAULT_MAX_AGE_DAYS,
) -> bool:
    return not can_use_cached_match(cached, title, description, now, max_age_days)
