"""
Deduplication and archive store for disruptions.

Live records are keyed by the upstream external id. Every record also has a
content hash (normalised category, severity, title and description) kept in
``disruption_hashes`` so a new id carrying exactly the content of an active
record can be rejected. Resolved and duplicate records are copied into the
append-only ``disruptions_archive`` before leaving the live set.
"""

import logging
from datetime import datetime, timedelta
from hashlib import sha256
from itertools import groupby
from typing import Callable, Iterable, Optional, Sequence

import duckdb

from ..db.db import Database
from ..streets.models import MatchType
from ..utils.data_utils import utcnow, to_json
from ..utils.errors import DisruptionNotFoundError
from .models import (
    ArchiveStats,
    CoordinateSource,
    DisruptionRecord,
    StoredDisruption,
    UpsertResult,
)

logger = logging.getLogger(__name__)

COLUMNS = [
    "external_id", "category", "severity", "title", "description",
    "affected_lines", "raw_data", "source_name", "source_url", "content_hash",
    "latitude", "longitude", "geohash", "geohash_neighbors", "coordinate_source",
    "matched_street", "match_confidence", "match_type", "match_hash",
    "last_matched_at", "is_active", "last_fetched_at", "created_at",
    "updated_at", "resolved_at",
]
_SELECT = f"SELECT {', '.join(COLUMNS)} FROM disruptions"

_ARCHIVE_INSERT = """
INSERT INTO disruptions_archive (
    external_id, category, severity, title, description, affected_lines,
    raw_data, source_name, source_url, matched_street, latitude, longitude,
    created_at, resolved_at, archived_at, archived_reason, duration_minutes
)
SELECT
    external_id, category, severity, title, description, affected_lines,
    raw_data, source_name, source_url, matched_street, latitude, longitude,
    created_at, ?, ?, ?, ?
FROM disruptions
WHERE external_id = ?
"""


def compute_content_hash(category: str, severity: str, title: str, description: Optional[str] = None) -> str:
    """
    SHA-256 of the lower-cased, trimmed ``category|severity|title|description``.

    Two records with the same visible content hash identically regardless
    of their external ids.
    """
    parts = [category, severity, title, description]
    key = "|".join((p or "").lower().strip() for p in parts)
    return sha256(key.encode()).hexdigest()


def record_content_hash(record: DisruptionRecord) -> str:
    return compute_content_hash(record.category, record.severity, record.title, record.description)


def deduplicate_records(records: Iterable[DisruptionRecord]) -> list[DisruptionRecord]:
    """Drop records whose external id or content already appeared earlier in the batch."""
    seen_ids: set[str] = set()
    seen_hashes: set[str] = set()
    unique = []
    for record in records:
        content_hash = record_content_hash(record)
        if record.external_id in seen_ids or content_hash in seen_hashes:
            logger.debug(f"Dropping in-batch duplicate {record.external_id}")
            continue
        seen_ids.add(record.external_id)
        seen_hashes.add(content_hash)
        unique.append(record)
    return unique


def duration_minutes(created_at: datetime, resolved_at: datetime) -> int:
    return int((resolved_at - created_at).total_seconds() // 60)


class DisruptionStore:
    """
    DuckDB-backed store of live and archived disruptions.

    Args:
        db: Shared database (schema must be initialized)
        clock: Returns the current naive-UTC time; replaced in tests
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, record: DisruptionRecord, now: Optional[datetime] = None) -> UpsertResult:
        """
        Insert a new disruption or overwrite the mutable fields of an existing one.

        The record is (re)activated and its last-fetched/updated timestamps
        set to ``now``. ``created_at`` is only written on insert. A declared
        coordinate replaces the stored one; otherwise a previously derived
        coordinate is kept.
        """
        now = now or self.now()
        content_hash = record_content_hash(record)
        coordinate_source = CoordinateSource.DECLARED.value if record.has_coordinates else None

        with self.db.transaction() as con:
            exists = con.execute(
                "SELECT 1 FROM disruptions WHERE external_id = ?", [record.external_id]
            ).fetchone() is not None

            con.execute(
                """
                INSERT INTO disruptions (
                    external_id, category, severity, title, description,
                    affected_lines, raw_data, source_name, source_url, content_hash,
                    latitude, longitude, coordinate_source,
                    is_active, last_fetched_at, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, TRUE, ?, ?, ?)
                ON CONFLICT (external_id) DO UPDATE SET
                    category = excluded.category,
                    severity = excluded.severity,
                    title = excluded.title,
                    description = excluded.description,
                    affected_lines = excluded.affected_lines,
                    raw_data = excluded.raw_data,
                    source_name = excluded.source_name,
                    source_url = excluded.source_url,
                    content_hash = excluded.content_hash,
                    latitude = COALESCE(excluded.latitude, latitude),
                    longitude = COALESCE(excluded.longitude, longitude),
                    coordinate_source = COALESCE(excluded.coordinate_source, coordinate_source),
                    is_active = TRUE,
                    resolved_at = NULL,
                    last_fetched_at = excluded.last_fetched_at,
                    updated_at = excluded.updated_at
                """,
                [
                    record.external_id,
                    record.category,
                    record.severity.value,
                    record.title,
                    record.description,
                    to_json(record.affected_lines),
                    to_json(record.raw_data),
                    record.source_name,
                    record.source_url,
                    content_hash,
                    record.latitude,
                    record.longitude,
                    coordinate_source,
                    now,
                    now,
                    now,
                ],
            )

            con.execute(
                """
                INSERT INTO disruption_hashes (external_id, content_hash, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT (external_id) DO UPDATE SET
                    content_hash = excluded.content_hash
                """,
                [record.external_id, content_hash, now],
            )

        logger.debug(f"{'Updated' if exists else 'Inserted'} disruption {record.external_id}")
        return UpsertResult(external_id=record.external_id, inserted=not exists)

    def resolve(self, external_id: str, now: Optional[datetime] = None, reason: str = "resolved") -> int:
        """
        Archive an active disruption and mark it inactive, as one transaction.

        Returns:
            Minutes between creation and resolution

        Raises:
            DisruptionNotFoundError: no active record has this id
        """
        now = now or self.now()
        with self.db.transaction() as con:
            row = con.execute(
                "SELECT created_at FROM disruptions WHERE external_id = ? AND is_active",
                [external_id],
            ).fetchone()
            if row is None:
                raise DisruptionNotFoundError(external_id)

            duration = duration_minutes(row[0], now)
            con.execute(_ARCHIVE_INSERT, [now, now, reason, duration, external_id])
            con.execute(
                """
                UPDATE disruptions
                SET is_active = FALSE, resolved_at = ?, updated_at = ?
                WHERE external_id = ?
                """,
                [now, now, external_id],
            )

        logger.info(f"Resolved disruption {external_id} after {duration} minutes")
        return duration

    def update_match(
        self,
        external_id: str,
        matched_street: Optional[str],
        confidence: float,
        match_type: MatchType,
        match_hash: str,
        matched_at: datetime,
    ) -> None:
        self.db.execute(
            """
            UPDATE disruptions
            SET matched_street = ?, match_confidence = ?, match_type = ?,
                match_hash = ?, last_matched_at = ?
            WHERE external_id = ?
            """,
            [matched_street, confidence, match_type.value, match_hash, matched_at, external_id],
        )

    def update_location(
        self,
        external_id: str,
        latitude: Optional[float],
        longitude: Optional[float],
        source: Optional[CoordinateSource],
        geohash: Optional[str],
        geohash_neighbors: Sequence[str],
    ) -> None:
        self.db.execute(
            """
            UPDATE disruptions
            SET latitude = ?, longitude = ?, coordinate_source = ?,
                geohash = ?, geohash_neighbors = ?
            WHERE external_id = ?
            """,
            [
                latitude,
                longitude,
                source.value if source else None,
                geohash,
                to_json(list(geohash_neighbors)),
                external_id,
            ],
        )

    def replace_links(
        self,
        external_id: str,
        links: Iterable[tuple[int, Optional[str], MatchType, float]],
        now: Optional[datetime] = None,
    ) -> int:
        """
        Replace every segment link of a disruption.

        Args:
            links: (centreline_id, matched_name, match_type, confidence) tuples

        Returns:
            Number of links written
        """
        now = now or self.now()
        rows = [
            (external_id, centreline_id, matched_name, match_type.value, confidence, now)
            for centreline_id, matched_name, match_type, confidence in links
        ]
        with self.db.transaction() as con:
            con.execute("DELETE FROM disruption_segment_links WHERE external_id = ?", [external_id])
            if rows:
                con.executemany(
                    """
                    INSERT INTO disruption_segment_links
                    (external_id, centreline_id, matched_name, match_type, confidence, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        return len(rows)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _rows(self, sql: str, params: Sequence = ()) -> list[StoredDisruption]:
        return [StoredDisruption.from_row(COLUMNS, r) for r in self.db.fetchall(sql, params)]

    def get(self, external_id: str) -> Optional[StoredDisruption]:
        rows = self._rows(f"{_SELECT} WHERE external_id = ?", [external_id])
        return rows[0] if rows else None

    def get_active(self) -> list[StoredDisruption]:
        return self._rows(f"{_SELECT} WHERE is_active ORDER BY severity DESC, updated_at DESC")

    def count_active(self) -> int:
        row = self.db.fetchone("SELECT COUNT(*) FROM disruptions WHERE is_active")
        return int(row[0]) if row else 0

    def exists(self, external_id: str) -> bool:
        return self.db.fetchone(
            "SELECT 1 FROM disruptions WHERE external_id = ?", [external_id]
        ) is not None

    def is_duplicate(self, content_hash: str, exclude_external_id: Optional[str] = None) -> bool:
        """True if another active disruption already carries ``content_hash``."""
        row = self.db.fetchone(
            """
            SELECT 1
            FROM disruption_hashes h
            JOIN disruptions d ON d.external_id = h.external_id
            WHERE h.content_hash = ?
              AND d.is_active
              AND h.external_id IS DISTINCT FROM ?
            LIMIT 1
            """,
            [content_hash, exclude_external_id],
        )
        return row is not None

    def find_stale(
        self,
        current_ids: Iterable[str],
        threshold_minutes: float,
        now: Optional[datetime] = None,
        exclude_sources: Iterable[str] = (),
    ) -> list[str]:
        """
        Active ids missing from the current fetch and not fetched for ``threshold_minutes``.

        Records from ``exclude_sources`` are never reported.
        """
        now = now or self.now()
        cutoff = now - timedelta(minutes=threshold_minutes)
        current = set(current_ids)
        excluded = set(exclude_sources)
        rows = self.db.fetchall(
            """
            SELECT external_id, source_name
            FROM disruptions
            WHERE is_active AND last_fetched_at <= ?
            ORDER BY last_fetched_at, external_id
            """,
            [cutoff],
        )
        return [
            external_id
            for external_id, source_name in rows
            if external_id not in current and source_name not in excluded
        ]

    def links_for(self, external_id: str) -> list[tuple]:
        return self.db.fetchall(
            """
            SELECT centreline_id, matched_name, match_type, confidence
            FROM disruption_segment_links
            WHERE external_id = ?
            ORDER BY centreline_id
            """,
            [external_id],
        )

    def archived(self, external_id: str) -> list[tuple]:
        return self.db.fetchall(
            """
            SELECT external_id, archived_reason, duration_minutes, resolved_at
            FROM disruptions_archive
            WHERE external_id = ?
            ORDER BY archive_id
            """,
            [external_id],
        )

    # ------------------------------------------------------------------
    # Remediation and retention
    # ------------------------------------------------------------------

    def find_duplicate_groups(self) -> list[list[StoredDisruption]]:
        """
        Active disruptions sharing an identical title, oldest first in each group.

        Only useful for cleaning up after an upstream source changed its ids;
        identical titles are not proof of the same event.
        """
        rows = self._rows(
            f"""
            {_SELECT}
            WHERE is_active AND title IN (
                SELECT title FROM disruptions
                WHERE is_active
                GROUP BY title
                HAVING COUNT(*) > 1
            )
            ORDER BY title, created_at, external_id
            """
        )
        return [list(group) for _, group in groupby(rows, key=lambda r: r.title)]

    def remove_duplicates(self, dry_run: bool = True, now: Optional[datetime] = None) -> int:
        """
        Keep the oldest record of each duplicate group; archive and delete the rest.

        Returns:
            Number of records removed (or that would be removed on a dry run)
        """
        now = now or self.now()
        groups = self.find_duplicate_groups()
        victims = [r for group in groups for r in group[1:]]

        for group in groups:
            logger.info(
                f"Duplicate group '{group[0].title}': keeping {group[0].external_id}, "
                f"removing {len(group) - 1}"
            )
        if dry_run or not victims:
            return len(victims)

        with self.db.transaction() as con:
            for record in victims:
                con.execute(
                    _ARCHIVE_INSERT,
                    [now, now, "duplicate", duration_minutes(record.created_at, now), record.external_id],
                )
                self._delete(con, record.external_id)

        logger.info(f"Removed {len(victims)} duplicate disruptions")
        return len(victims)

    @staticmethod
    def _delete(con: duckdb.DuckDBPyConnection, external_id: str) -> None:
        con.execute("DELETE FROM disruption_hashes WHERE external_id = ?", [external_id])
        con.execute("DELETE FROM disruption_segment_links WHERE external_id = ?", [external_id])
        con.execute("DELETE FROM disruptions WHERE external_id = ?", [external_id])

    def cleanup_old_resolved(self, days_old: int = 30, now: Optional[datetime] = None) -> int:
        """
        Permanently delete inactive records resolved more than ``days_old`` days ago.

        Archive rows are left untouched.
        """
        now = now or self.now()
        cutoff = now - timedelta(days=days_old)
        with self.db.transaction() as con:
            ids = [
                r[0]
                for r in con.execute(
                    "SELECT external_id FROM disruptions WHERE NOT is_active AND resolved_at < ?",
                    [cutoff],
                ).fetchall()
            ]
            for external_id in ids:
                self._delete(con, external_id)

        if ids:
            logger.info(f"Cleaned up {len(ids)} disruptions resolved before {cutoff:%Y-%m-%d %H:%M}")
        return len(ids)

    def archive_stats(self, days: int = 7, now: Optional[datetime] = None) -> ArchiveStats:
        """Counts by severity, mean duration and latest resolution of archive rows within ``days``."""
        now = now or self.now()
        since = now - timedelta(days=days)
        by_severity = dict(
            self.db.fetchall(
                """
                SELECT severity, COUNT(*)
                FROM disruptions_archive
                WHERE archived_at >= ?
                GROUP BY severity
                ORDER BY severity
                """,
                [since],
            )
        )
        total, avg_duration, latest = self.db.fetchone(
            """
            SELECT COUNT(*), AVG(duration_minutes), MAX(resolved_at)
            FROM disruptions_archive
            WHERE archived_at >= ?
            """,
            [since],
        )
        return ArchiveStats(
            total=int(total),
            by_severity={k: int(v) for k, v in by_severity.items()},
            avg_duration_minutes=float(avg_duration) if avg_duration is not None else None,
            latest_resolved_at=latest,
        )
