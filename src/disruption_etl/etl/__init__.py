"""
- Models: fetch contract, stored rows, run statistics
- Sources: CKAN client and upstream feeds
- Store: deduplication and archive store
- Segments: street centreline reference data
- Matcher: links disruptions to segments
- Scheduler: periodic ETL runs with retry/backoff
- Geometry scheduler: daily reference data refresh
"""

from .models import (
    Severity,
    CoordinateSource,
    DisruptionRecord,
    StoredDisruption,
    SegmentRecord,
    FetchResult,
    RunResult,
    SchedulerStats,
    ArchiveStats,
)

from .sources import (
    CKANClient,
    DisruptionSource,
    RoadRestrictionsSource,
    TransitAlertsSource,
    CentrelineSource,
    DisruptionFetcher,
)

from .store import (
    DisruptionStore,
    compute_content_hash,
    deduplicate_records,
)

from .segments import Segment, SegmentStore, SegmentLoader
from .matcher import DisruptionMatcher, MatcherConfig
from .scheduler import ETLScheduler, SchedulerConfig
from .geometry_scheduler import GeometryRefreshScheduler, GeometrySchedulerConfig

__all__ = [
    "Severity",
    "CoordinateSource",
    "DisruptionRecord",
    "StoredDisruption",
    "SegmentRecord",
    "FetchResult",
    "RunResult",
    "SchedulerStats",
    "ArchiveStats",
    "CKANClient",
    "DisruptionSource",
    "RoadRestrictionsSource",
    "TransitAlertsSource",
    "CentrelineSource",
    "DisruptionFetcher",
    "DisruptionStore",
    "compute_content_hash",
    "deduplicate_records",
    "Segment",
    "SegmentStore",
    "SegmentLoader",
    "DisruptionMatcher",
    "MatcherConfig",
    "ETLScheduler",
    "SchedulerConfig",
    "GeometryRefreshScheduler",
    "GeometrySchedulerConfig",
]
