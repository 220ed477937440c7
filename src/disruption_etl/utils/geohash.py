"""
Geohash encoding for proximity lookups without a spatial index extension.

Precision levels (approximate cell half-size):
- 5: 2.4km  (city-level)
- 6: 610m   (neighbourhood)
- 7: 76m    (street-level, default)
- 8: 19m    (building-level)
- 9: 2.4m
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

from shapely.errors import ShapelyError
from shapely.geometry import shape, Point, LineString, MultiLineString, Polygon

from .errors import InvalidGeohashError

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
_BASE32_INDEX = {c: i for i, c in enumerate(BASE32)}

MAX_PRECISION = 12


@dataclass(frozen=True)
class GeohashBox:
    """Bounding box of a geohash cell and its centroid."""
    lat_min: float
    lat_max: float
    lon_min: float
    lon_max: float

    @property
    def lat(self) -> float:
        return (self.lat_min + self.lat_max) / 2

    @property
    def lon(self) -> float:
        return (self.lon_min + self.lon_max) / 2

    @property
    def height(self) -> float:
        return self.lat_max - self.lat_min

    @property
    def width(self) -> float:
        return self.lon_max - self.lon_min

    def contains(self, lat: float, lon: float) -> bool:
        return self.lat_min <= lat <= self.lat_max and self.lon_min <= lon <= self.lon_max


def _validate_precision(precision: int) -> None:
    if not 1 <= precision <= MAX_PRECISION:
        raise ValueError(f"precision must be between 1 and {MAX_PRECISION}, got {precision}")


def _encode(lat: float, lon: float, precision: int) -> str:
    lat_min, lat_max = -90.0, 90.0
    lon_min, lon_max = -180.0, 180.0
    idx = 0
    bit = 0
    even_bit = True
    chars = []

    while len(chars) < precision:
        if even_bit:
            lon_mid = (lon_min + lon_max) / 2
            if lon > lon_mid:
                idx = (idx << 1) + 1
                lon_min = lon_mid
            else:
                idx = idx << 1
                lon_max = lon_mid
        else:
            lat_mid = (lat_min + lat_max) / 2
            if lat > lat_mid:
                idx = (idx << 1) + 1
                lat_min = lat_mid
            else:
                idx = idx << 1
                lat_max = lat_mid

        even_bit = not even_bit
        bit += 1
        if bit == 5:
            chars.append(BASE32[idx])
            bit = 0
            idx = 0

    return "".join(chars)


def encode(lat: float, lon: float, precision: int = 7) -> str:
    """
    Encode a coordinate into a geohash string.

    Args:
        lat: Latitude in [-90, 90]
        lon: Longitude in [-180, 180]
        precision: Number of base-32 characters (1-12)

    Returns:
        Geohash of ``precision`` characters
    """
    if not -90 <= lat <= 90:
        raise ValueError(f"latitude out of range: {lat}")
    if not -180 <= lon <= 180:
        raise ValueError(f"longitude out of range: {lon}")
    _validate_precision(precision)
    return _encode(lat, lon, precision)


def decode(geohash: str) -> GeohashBox:
    """
    Decode a geohash into its bounding box.

    Raises:
        InvalidGeohashError: if a character is outside the base-32 alphabet
    """
    lat_min, lat_max = -90.0, 90.0
    lon_min, lon_max = -180.0, 180.0
    even_bit = True

    for char in geohash.lower():
        idx = _BASE32_INDEX.get(char)
        if idx is None:
            raise InvalidGeohashError(char, geohash)

        for n in range(4, -1, -1):
            bit_n = (idx >> n) & 1
            if even_bit:
                lon_mid = (lon_min + lon_max) / 2
                if bit_n:
                    lon_min = lon_mid
                else:
                    lon_max = lon_mid
            else:
                lat_mid = (lat_min + lat_max) / 2
                if bit_n:
                    lat_min = lat_mid
                else:
                    lat_max = lat_mid
            even_bit = not even_bit

    return GeohashBox(lat_min=lat_min, lat_max=lat_max, lon_min=lon_min, lon_max=lon_max)


def neighbors(geohash: str) -> list[str]:
    """
    Return the compass-adjacent cells of ``geohash`` (N, NE, E, SE, S, SW, W, NW).

    Cells identical to the input or to an earlier neighbour are dropped, so
    fewer than eight cells come back near the poles.
    """
    box = decode(geohash)
    precision = len(geohash)
    dlat = box.height
    dlon = box.width

    offsets = [
        (dlat, 0), (dlat, dlon), (0, dlon), (-dlat, dlon),
        (-dlat, 0), (-dlat, -dlon), (0, -dlon), (dlat, -dlon),
    ]

    center = geohash.lower()
    result: list[str] = []
    for lat_offset, lon_offset in offsets:
        lat = min(90.0, max(-90.0, box.lat + lat_offset))
        lon = (box.lon + lon_offset + 180.0) % 360.0 - 180.0
        cell = _encode(lat, lon, precision)
        if cell != center and cell not in result:
            result.append(cell)
    return result


def with_neighbors(lat: float, lon: float, precision: int = 7) -> list[str]:
    """Cell containing the point followed by its neighbours."""
    center = encode(lat, lon, precision)
    return [center, *neighbors(center)]


def extract_center(geometry: Any) -> Optional[tuple[float, float]]:
    """
    Representative point of a GeoJSON geometry as ``(lat, lon)``.

    Lines use their middle vertex (first line for multi-lines), polygons the
    mean of their outer ring. Returns None for empty or unsupported input.
    """
    if geometry is None:
        return None
    if isinstance(geometry, str):
        try:
            geometry = json.loads(geometry)
        except json.JSONDecodeError:
            return None

    try:
        geom = shape(geometry)
    except (ShapelyError, ValueError, TypeError, AttributeError, KeyError, IndexError):
        return None

    if geom.is_empty:
        return None

    if isinstance(geom, Point):
        return geom.y, geom.x
    if isinstance(geom, LineString):
        x, y = geom.coords[len(geom.coords) // 2][:2]
        return y, x
    if isinstance(geom, MultiLineString):
        first = geom.geoms[0]
        x, y = first.coords[len(first.coords) // 2][:2]
        return y, x
    if isinstance(geom, Polygon):
        ring = list(geom.exterior.coords)
        return (
            sum(c[1] for c in ring) / len(ring),
            sum(c[0] for c in ring) / len(ring),
        )
    return None
