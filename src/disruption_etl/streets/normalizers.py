"""
Street name extraction and normalization.

Reference centreline names use abbreviated street types and single-letter
directions ("Bloor St W"); free-text disruption descriptions usually spell
them out ("Bloor Street West"). Both sides are brought to the same
lower-case abbreviated form before comparison.
"""

import re
from typing import Dict, List, Mapping

import pandas as pd

from .base import Normalizer

# Capitalised words that commonly precede a street type in disruption text
# but are never part of a street name.
STOP_WORDS: List[str] = [
    "Toronto", "Hydro", "Emergency", "Repairs", "Construction", "Road",
    "Closure", "Watermain", "Repair", "Lane", "Sidewalk", "TTC", "Work",
    "Major", "Project", "from", "between", "near", "and", "at", "on", "to",
    "affecting", "closed",
]

# Street type spellings recognised in free text → display abbreviation
_SUFFIX_DISPLAY: Mapping[str, str] = {
    "st": "St", "street": "St",
    "ave": "Ave", "avenue": "Ave",
    "rd": "Rd", "road": "Rd",
    "blvd": "Blvd", "boulevard": "Blvd",
    "dr": "Dr", "drive": "Dr",
    "cres": "Cres", "crescent": "Cres",
    "crt": "Crt", "court": "Crt",
    "pl": "Pl", "place": "Pl",
    "lane": "Lane",
    "way": "Way",
    "line": "Line",
    "pkwy": "Pkwy", "parkway": "Pkwy",
}

_DIRECTION_DISPLAY: Mapping[str, str] = {
    "w": "W", "west": "W",
    "e": "E", "east": "E",
    "n": "N", "north": "N",
    "s": "S", "south": "S",
}

_SUFFIX_RE = (
    r"St(?:reet)?|Ave(?:nue)?|Rd|Road|Blvd|Boulevard|Dr(?:ive)?|Cres(?:cent)?"
    r"|Crt|Court|Pl(?:ace)?|Lane|Way|Line|Pkwy|Parkway"
)
_DIRECTION_RE = r"W(?:est)?|E(?:ast)?|N(?:orth)?|S(?:outh)?"

# Name words must be capitalised; stop words, street types and directions
# are matched case-insensitively.
_RE_STREET = re.compile(
    r"\b(?!(?i:" + "|".join(STOP_WORDS) + r")\b)"
    r"(?P<name>[A-Z][a-z]+(?:\s+[A-Z][a-z]+){0,2}?)"
    r"\s+(?P<suffix>(?i:" + _SUFFIX_RE + r"))\b"
    r"(?:\s+(?P<direction>(?i:" + _DIRECTION_RE + r"))\b)?"
)

# Full word → reference abbreviation, applied after lower-casing
_NORMALIZE_WORDS: Dict[str, str] = {
    "street": "st",
    "avenue": "ave",
    "road": "rd",
    "drive": "dr",
    "boulevard": "blvd",
    "parkway": "pkwy",
    "crescent": "cres",
    "place": "pl",
    "lane": "lane",
    "court": "crt",
    "west": "w",
    "east": "e",
    "north": "n",
    "south": "s",
}

_RE_NORMALIZE_WORDS = re.compile(r"\b(" + "|".join(_NORMALIZE_WORDS) + r")\b")
_RE_WHITESPACE = re.compile(r"\s+")


def extract_street_names(text: str) -> List[str]:
    """
    Find street names mentioned in free text.

    A street name is one to three capitalised words followed by a street
    type and an optional direction. Matches are rebuilt with abbreviated
    street types and directions, and returned once each in order of first
    appearance.

    Examples:
        extract_street_names("Major watermain repairs on Bloor Street West near Jane")
        → ["Bloor St W"]
    """
    if not text:
        return []

    found: List[str] = []
    for match in _RE_STREET.finditer(text):
        name = _RE_WHITESPACE.sub(" ", match.group("name"))
        parts = [name, _SUFFIX_DISPLAY[match.group("suffix").lower()]]
        direction = match.group("direction")
        if direction:
            parts.append(_DIRECTION_DISPLAY[direction.lower()])
        street = " ".join(parts)
        if street not in found:
            found.append(street)
    return found


def normalize_street_name(name: str) -> str:
    """
    Lower-case, abbreviate street types and directions, collapse whitespace.

    Normalizing an already normalized name returns it unchanged.
    """
    if not name:
        return ""
    value = name.lower().strip()
    value = _RE_NORMALIZE_WORDS.sub(lambda m: _NORMALIZE_WORDS[m.group(1)], value)
    return _RE_WHITESPACE.sub(" ", value).strip()


class StreetNormalizer(Normalizer):
    """
    Normalizes street names to the reference centreline convention.

    Handles:
    - Street type abbreviations (Street → st, Avenue → ave, etc.)
    - Directions (West → w, East → e, etc.)
    - Whitespace normalization
    - Case standardization
    """

    def normalize(self, value: str) -> str:
        return normalize_street_name(value)

    def normalize_series(self, values: pd.Series) -> pd.Series:
        """Vectorised normalization of a column of names (nulls become '')."""
        series = values.fillna("").astype(str).str.lower().str.strip()
        series = series.str.replace(
            _RE_NORMALIZE_WORDS, lambda m: _NORMALIZE_WORDS[m.group(1)], regex=True
        )
        return series.str.replace(_RE_WHITESPACE, " ", regex=True).str.strip()
