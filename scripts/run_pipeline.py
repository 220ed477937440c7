# Script that runs the disruption ETL and the daily centreline refresh until interrupted
from argparse import ArgumentParser
import logging
import signal
import threading
from pathlib import Path

from disruption_etl.settings import settings
from disruption_etl.db import Database, initialize
from disruption_etl.utils.throttling import MinDelayRateLimiter, RateLimiterConfig
from disruption_etl.etl import (
    CKANClient,
    RoadRestrictionsSource,
    TransitAlertsSource,
    CentrelineSource,
    DisruptionFetcher,
    DisruptionStore,
    SegmentStore,
    SegmentLoader,
    DisruptionMatcher,
    MatcherConfig,
    ETLScheduler,
    SchedulerConfig,
    GeometryRefreshScheduler,
    GeometrySchedulerConfig,
)

if __name__ == '__main__':
    parser = ArgumentParser()
    parser.add_argument('--db', type=Path, default=settings.db_path)
    parser.add_argument('--once', action='store_true', help='run a single ETL cycle and exit')
    parser.add_argument('--refresh-geometry', '-g', action='store_true', help='force a centreline refresh first')
    parser.add_argument('--remove-duplicates', action='store_true', help='archive active disruptions with duplicate titles and exit')
    parser.add_argument('--dry-run', action='store_true')
    parser.add_argument('--log-level', default=settings.log_level)
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    logger = logging.getLogger('run_pipeline')

    db = initialize(Database(args.db))
    store = DisruptionStore(db)

    if args.remove_duplicates:
        removed = store.remove_duplicates(dry_run=args.dry_run)
        print(f"{'Would remove' if args.dry_run else 'Removed'} {removed} duplicate disruptions")
        db.close()
        raise SystemExit(0)

    # One limiter for every request to the CKAN portal
    rate_limiter = MinDelayRateLimiter(RateLimiterConfig.from_settings(settings))
    client = CKANClient.from_settings(settings, rate_limiter=rate_limiter)

    segment_store = SegmentStore(db, precision=settings.geohash_precision)
    loader = SegmentLoader(CentrelineSource(client), segment_store)
    geometry_scheduler = GeometryRefreshScheduler(loader, db, GeometrySchedulerConfig.from_settings(settings))

    etl_scheduler = ETLScheduler(
        fetcher=DisruptionFetcher([TransitAlertsSource(client), RoadRestrictionsSource(client)]),
        store=store,
        matcher=DisruptionMatcher(store, segment_store, MatcherConfig.from_settings(settings)),
        config=SchedulerConfig.from_settings(settings),
    )

    if args.refresh_geometry:
        geometry_scheduler.run_now()

    if args.once:
        result = etl_scheduler.run_once()
        etl_scheduler.log_stats()
        db.close()
        raise SystemExit(0 if result is not None else 1)

    stopped = threading.Event()

    def _shutdown(signum, frame):
        logger.info(f'Received signal {signum}, shutting down')
        stopped.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    geometry_scheduler.start()
    etl_scheduler.start()
    try:
        stopped.wait()
    finally:
        etl_scheduler.stop()
        geometry_scheduler.stop()
        etl_scheduler.wait_until_idle()
        geometry_scheduler.wait_until_idle()
        db.close()
