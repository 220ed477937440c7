"""
Table definitions for the disruption store.

DuckDB refuses ``ON CONFLICT DO UPDATE`` on indexed columns and has no
cascading foreign keys, so the only index is the primary key on
``disruptions.external_id``; dependent rows are deleted explicitly by the
store in the same transaction as their parent.
"""

import logging

from .db import Database

logger = logging.getLogger(__name__)

DDL_DISRUPTIONS = """
CREATE TABLE IF NOT EXISTS disruptions (
    external_id VARCHAR PRIMARY KEY,
    category VARCHAR NOT NULL,
    severity VARCHAR NOT NULL,
    title VARCHAR NOT NULL,
    description VARCHAR,
    affected_lines VARCHAR,          -- JSON array
    raw_data VARCHAR,                -- JSON object
    source_name VARCHAR,
    source_url VARCHAR,
    content_hash VARCHAR,
    latitude DOUBLE,
    longitude DOUBLE,
    geohash VARCHAR,
    geohash_neighbors VARCHAR,       -- JSON array
    coordinate_source VARCHAR,
    matched_street VARCHAR,
    match_confidence DOUBLE,
    match_type VARCHAR,
    match_hash VARCHAR,
    last_matched_at TIMESTAMP,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    last_fetched_at TIMESTAMP NOT NULL,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    resolved_at TIMESTAMP
);
"""

DDL_ARCHIVE_SEQ = "CREATE SEQUENCE IF NOT EXISTS disruptions_archive_seq START 1;"

DDL_ARCHIVE = """
CREATE TABLE IF NOT EXISTS disruptions_archive (
    archive_id BIGINT DEFAULT nextval('disruptions_archive_seq'),
    external_id VARCHAR NOT NULL,
    category VARCHAR,
    severity VARCHAR,
    title VARCHAR,
    description VARCHAR,
    affected_lines VARCHAR,
    raw_data VARCHAR,
    source_name VARCHAR,
    source_url VARCHAR,
    matched_street VARCHAR,
    latitude DOUBLE,
    longitude DOUBLE,
    created_at TIMESTAMP,
    resolved_at TIMESTAMP,
    archived_at TIMESTAMP NOT NULL,
    archived_reason VARCHAR NOT NULL,
    duration_minutes INTEGER
);
"""

DDL_HASHES = """
CREATE TABLE IF NOT EXISTS disruption_hashes (
    external_id VARCHAR PRIMARY KEY,
    content_hash VARCHAR NOT NULL,
    created_at TIMESTAMP NOT NULL
);
"""

DDL_SEGMENTS = """
CREATE TABLE IF NOT EXISTS street_segments (
    centreline_id BIGINT NOT NULL,
    street_name VARCHAR NOT NULL,
    normalized_name VARCHAR NOT NULL,
    feature_code INTEGER,
    feature_code_desc VARCHAR,
    from_address VARCHAR,
    to_address VARCHAR,
    geometry VARCHAR,                -- WKT, EPSG:4326
    center_lat DOUBLE,
    center_lon DOUBLE,
    geohash VARCHAR,
    geohash_coarse VARCHAR,
    updated_at TIMESTAMP NOT NULL
);
"""

DDL_LINKS = """
CREATE TABLE IF NOT EXISTS disruption_segment_links (
    external_id VARCHAR NOT NULL,
    centreline_id BIGINT NOT NULL,
    matched_name VARCHAR,
    match_type VARCHAR NOT NULL,
    confidence DOUBLE NOT NULL,
    created_at TIMESTAMP NOT NULL
);
"""

DDL_REFRESH_LOG = """
CREATE TABLE IF NOT EXISTS geometry_refresh_log (
    refresh_date DATE NOT NULL,
    completed_at TIMESTAMP NOT NULL,
    segment_count INTEGER NOT NULL
);
"""

ALL_DDL = [
    DDL_DISRUPTIONS,
    DDL_ARCHIVE_SEQ,
    DDL_ARCHIVE,
    DDL_HASHES,
    DDL_SEGMENTS,
    DDL_LINKS,
    DDL_REFRESH_LOG,
]


def initialize(db: Database) -> Database:
    """Create every table that does not exist yet."""
    with db.transaction() as con:
        for ddl in ALL_DDL:
            con.execute(ddl)
    logger.info(f"Initialized DuckDB schema: {db.path}")
    return db
