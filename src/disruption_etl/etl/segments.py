"""
Street centreline reference data.

Segments are stored with their normalized name, a representative centre
point and its geohash so the matcher can look them up by name or by
proximity without a spatial extension.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

import pandas as pd
import geopandas as gpd
from shapely.geometry import shape

from ..db.db import Database, load_wkt_gdf
from ..streets.normalizers import StreetNormalizer
from ..utils import geohash
from ..utils.data_utils import utcnow
from ..utils.pipeline_mixin import PipelineMixin
from .models import SegmentRecord
from .sources import CentrelineSource

logger = logging.getLogger(__name__)

SEGMENT_COLUMNS = [
    'centreline_id', 'street_name', 'normalized_name', 'feature_code',
    'feature_code_desc', 'from_address', 'to_address', 'geometry',
    'center_lat', 'center_lon', 'geohash', 'geohash_coarse', 'updated_at',
]


@dataclass(frozen=True)
class Segment:
    centreline_id: int
    street_name: str
    center_lat: Optional[float]
    center_lon: Optional[float]
    geohash: Optional[str]


class SegmentStore:
    """
    Reads and replaces the ``street_segments`` table.

    ``street_names()`` is cached in memory; call ``clear_cache()`` after the
    table changes.
    """

    def __init__(
        self,
        db: Database,
        precision: int = 7,
        normalizer: Optional[StreetNormalizer] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not 1 <= precision <= geohash.MAX_PRECISION:
            raise ValueError(f"precision must be between 1 and {geohash.MAX_PRECISION}, got {precision}")
        self.db = db
        self.precision = precision
        self.normalizer = normalizer or StreetNormalizer()
        self._clock = clock
        self._names: Optional[list[str]] = None
        self._lock = threading.Lock()

    def build_frame(self, segments: Iterable[SegmentRecord]) -> pd.DataFrame:
        """One row per segment, with WKT geometry, centre point and geohashes."""
        coarse_precision = max(1, self.precision - 1)
        now = self._clock()
        rows = []
        for seg in segments:
            center = geohash.extract_center(seg.geometry) if seg.geometry else None
            geometry_wkt = shape(seg.geometry).wkt if center else None
            lat, lon = center if center else (None, None)
            rows.append({
                'centreline_id': seg.centreline_id,
                'street_name': seg.street_name,
                'feature_code': seg.feature_code,
                'feature_code_desc': seg.feature_code_desc,
                'from_address': seg.from_address,
                'to_address': seg.to_address,
                'geometry': geometry_wkt,
                'center_lat': lat,
                'center_lon': lon,
                'geohash': geohash.encode(lat, lon, self.precision) if center else None,
                'geohash_coarse': geohash.encode(lat, lon, coarse_precision) if center else None,
                'updated_at': now,
            })

        df = pd.DataFrame(rows, columns=[c for c in SEGMENT_COLUMNS if c != 'normalized_name'])
        df['normalized_name'] = self.normalizer.normalize_series(df['street_name'])
        df = df[SEGMENT_COLUMNS]
        # NaN → NULL
        return df.astype(object).where(df.notna(), None)

    def store_frame(self, df: pd.DataFrame) -> int:
        """Replace the whole table with ``df`` in one transaction."""
        with self.db.transaction() as con:
            con.execute("DELETE FROM street_segments")
            if len(df):
                con.register('segment_batch', df)
                try:
                    con.execute(
                        """
                        INSERT INTO street_segments
                        SELECT
                            CAST(centreline_id AS BIGINT), street_name, normalized_name,
                            CAST(feature_code AS INTEGER), feature_code_desc,
                            from_address, to_address, geometry,
                            CAST(center_lat AS DOUBLE), CAST(center_lon AS DOUBLE),
                            geohash, geohash_coarse, CAST(updated_at AS TIMESTAMP)
                        FROM segment_batch
                        """
                    )
                finally:
                    con.unregister('segment_batch')
        self.clear_cache()
        logger.info(f"Stored {len(df)} street segments")
        return len(df)

    def replace_segments(self, segments: Iterable[SegmentRecord]) -> int:
        return self.store_frame(self.build_frame(segments))

    def clear_cache(self) -> None:
        with self._lock:
            self._names = None

    def street_names(self) -> list[str]:
        """Distinct display names of all segments."""
        with self._lock:
            if self._names is None:
                rows = self.db.fetchall(
                    "SELECT DISTINCT street_name FROM street_segments ORDER BY street_name"
                )
                self._names = [r[0] for r in rows]
                logger.debug(f"Loaded {len(self._names)} street names")
            return list(self._names)

    def count(self) -> int:
        row = self.db.fetchone("SELECT COUNT(*) FROM street_segments")
        return int(row[0]) if row else 0

    def _segments(self, where: str, params: list) -> list[Segment]:
        rows = self.db.fetchall(
            f"""
            SELECT centreline_id, street_name, center_lat, center_lon, geohash
            FROM street_segments
            WHERE {where}
            ORDER BY centreline_id
            """,
            params,
        )
        return [Segment(*r) for r in rows]

    def segments_for_street(self, street_name: str) -> list[Segment]:
        return self._segments("street_name = ?", [street_name])

    def segments_near(self, lat: float, lon: float) -> list[Segment]:
        """Segments whose centre falls in the point's geohash cell or a neighbouring one."""
        cells = geohash.with_neighbors(lat, lon, self.precision)
        placeholders = ", ".join("?" for _ in cells)
        return self._segments(f"geohash IN ({placeholders})", cells)

    def to_geodataframe(self) -> gpd.GeoDataFrame:
        return load_wkt_gdf(
            self.db,
            "SELECT centreline_id, street_name, normalized_name, feature_code_desc, geohash, geometry FROM street_segments",
        )


class SegmentLoader(PipelineMixin):
    """Fetch the centreline dataset and replace the stored segments."""

    NAME = 'segments'

    def __init__(self, source: CentrelineSource, store: SegmentStore):
        self.source = source
        self.store = store

    def _load_pipeline(self):
        return [
            ('Fetch Centreline', self.source.fetch_segments, {}),
            ('Build Segment Records', self.store.build_frame, {}),
            ('Store Segments', self.store.store_frame, {}),
        ]

    def run(self, progress: bool = True) -> int:
        """Returns the number of segments stored."""
        return self._execute_pipeline(progress=progress)
