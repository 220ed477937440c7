"""
ETL scheduler: polls the upstream sources on a randomised interval.

Each run fetches every source, upserts the records, matches them to street
segments, archives records that have been missing from the feed for longer
than the inactivity threshold and purges old resolved records. A failed run
is retried with exponential backoff; once the retries are exhausted the
scheduler simply waits for the next regular run.

Only one run is ever in flight: the timer for the next run is created after
the previous run (including its retries) has settled.
"""

import logging
import random
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional

from ..settings import Settings
from ..utils.data_utils import utcnow
from ..utils.errors import DisruptionNotFoundError
from .matcher import DisruptionMatcher
from .models import RunResult, SchedulerStats
from .sources import DisruptionFetcher
from .store import DisruptionStore, deduplicate_records, record_content_hash

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerConfig:
    """Timing of the ETL scheduler (intervals in seconds)."""
    min_interval: float = 5
    max_interval: float = 30
    max_retries: int = 3
    backoff_multiplier: float = 2.0
    inactivity_threshold_minutes: float = 30
    resolved_retention_days: int = 30

    def __post_init__(self):
        if self.min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        if self.min_interval > self.max_interval:
            raise ValueError("min_interval must not exceed max_interval")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("backoff_multiplier must be > 0")
        if self.inactivity_threshold_minutes < 0:
            raise ValueError("inactivity_threshold_minutes must be >= 0")
        if self.resolved_retention_days < 0:
            raise ValueError("resolved_retention_days must be >= 0")

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulerConfig":
        return cls(
            min_interval=settings.min_interval,
            max_interval=settings.max_interval,
            max_retries=settings.max_retries,
            backoff_multiplier=settings.backoff_multiplier,
            inactivity_threshold_minutes=settings.inactivity_threshold_minutes,
            resolved_retention_days=settings.resolved_retention_days,
        )


class ETLScheduler:
    """
    Drives the disruption pipeline on a background timer.

    Args:
        fetcher: Aggregated upstream sources
        store: Disruption store
        matcher: Street matcher (optional; runs skip matching without one)
        config: Timing configuration
        clock: Naive-UTC clock used for every timestamp of a run
        wait: Blocks for the given seconds, returning True if the scheduler
            was stopped meanwhile. Defaults to waiting on the stop event.
        rng: Random source for the next-run interval
    """

    def __init__(
        self,
        fetcher: DisruptionFetcher,
        store: DisruptionStore,
        matcher: Optional[DisruptionMatcher] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        wait: Optional[Callable[[float], bool]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.fetcher = fetcher
        self.store = store
        self.matcher = matcher
        self.config = config or SchedulerConfig()
        self._clock = clock
        self._stop_event = threading.Event()
        self._wait = wait or self._stop_event.wait
        self._rng = rng or random.Random()

        self._stats = SchedulerStats()
        self._stats_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()
        self._running = False
        # Bumped by start() and stop(); timers of an older generation do nothing
        self._generation = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Run immediately in the background, then keep polling until stop()."""
        if self._running:
            logger.warning("ETL scheduler already running")
            return
        logger.info(
            f"Starting ETL scheduler (interval {self.config.min_interval}-{self.config.max_interval}s, "
            f"max retries {self.config.max_retries})"
        )
        self._stop_event.clear()
        with self._timer_lock:
            self._generation += 1
            generation = self._generation
            self._running = True
        self._schedule(0, generation)

    def stop(self) -> None:
        """Cancel the pending run. A run already in progress is allowed to finish."""
        if not self._running:
            return
        self._stop_event.set()
        with self._timer_lock:
            self._running = False
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        logger.info("ETL scheduler stopped")
        self.log_stats()

    def wait_until_idle(self, timeout: float = -1) -> bool:
        """Block until no run is in progress. Returns False on timeout."""
        if self._run_lock.acquire(timeout=timeout):
            self._run_lock.release()
            return True
        return False

    def next_interval(self) -> float:
        """Seconds until the next regular run, uniform in [min_interval, max_interval]."""
        return self._rng.uniform(self.config.min_interval, self.config.max_interval)

    def backoff_delay(self, attempt: int) -> float:
        return self.config.max_interval * self.config.backoff_multiplier ** attempt

    def _schedule(self, delay: float, generation: int) -> None:
        with self._timer_lock:
            if not self._running or generation != self._generation:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(delay, self._tick, args=(generation,))
            self._timer.daemon = True
            self._timer.start()
        if delay:
            logger.info(f"Next ETL run in {delay:.0f}s")

    def _tick(self, generation: int) -> None:
        try:
            with self._run_lock:
                if generation != self._generation:
                    return
                self._run_with_retries()
        finally:
            self._schedule(self.next_interval(), generation)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def run_once(self) -> Optional[RunResult]:
        """
        Execute one run with its retry chain.

        Returns:
            The RunResult of the successful attempt, or None when every
            attempt failed (or the scheduler was stopped during backoff)
        """
        with self._run_lock:
            return self._run_with_retries()

    def _run_with_retries(self) -> Optional[RunResult]:
        attempt = 0
        while True:
            try:
                result = self._run()
                self._record_success(result)
                return result
            except Exception as e:
                self._record_failure(e)
                if attempt >= self.config.max_retries:
                    logger.error(
                        f"ETL run failed after {attempt} retries, deferring to next cycle: {e}"
                    )
                    return None
                delay = self.backoff_delay(attempt)
                attempt += 1
                logger.warning(
                    f"ETL run failed ({e}); retry {attempt}/{self.config.max_retries} in {delay:.0f}s"
                )
                if self._wait(delay):
                    logger.info("ETL scheduler stopped during backoff")
                    return None

    def _run(self) -> RunResult:
        now = self._clock()
        logger.info("ETL run starting")
        fetched = self.fetcher.fetch()
        records = deduplicate_records(fetched.records)
        result = RunResult(fetched=len(fetched.records))

        current_ids = {r.external_id for r in fetched.records}
        upserted: list[str] = []

        for record in records:
            try:
                is_new = not self.store.exists(record.external_id)
                if is_new and self.store.is_duplicate(record_content_hash(record), record.external_id):
                    logger.debug(f"Skipping {record.external_id}: same content as an active disruption")
                    result.duplicates_skipped += 1
                    continue
                outcome = self.store.upsert(record, now=now)
            except Exception as e:
                logger.warning(f"Failed to store {record.external_id}: {e}")
                result.failed += 1
                continue

            upserted.append(record.external_id)
            if outcome.inserted:
                result.inserted += 1
            else:
                result.updated += 1

        if self.matcher is not None:
            outcomes = self.matcher.match_all(upserted, now)
            result.matched = sum(1 for o in outcomes if o.matched)

        for external_id in self.store.find_stale(
            current_ids,
            self.config.inactivity_threshold_minutes,
            now=now,
            exclude_sources=fetched.failed_sources,
        ):
            try:
                self.store.resolve(external_id, now=now)
                result.archived += 1
            except DisruptionNotFoundError as e:
                logger.warning(str(e))
                result.resolve_errors += 1

        result.cleaned_up = self.store.cleanup_old_resolved(self.config.resolved_retention_days, now=now)

        logger.info(
            f"ETL run complete: {result.fetched} fetched, {result.inserted} new, "
            f"{result.updated} updated, {result.failed} failed, "
            f"{result.duplicates_skipped} duplicates skipped, {result.matched} matched, "
            f"{result.archived} archived"
        )
        return result

    def _record_success(self, result: RunResult) -> None:
        now = self._clock()
        with self._stats_lock:
            self._stats.total_runs += 1
            self._stats.successful_runs += 1
            self._stats.last_run_at = now
            self._stats.last_success_at = now
            self._stats.disruptions_processed += result.processed
            self._stats.disruptions_archived += result.archived
            self._stats.disruptions_matched += result.matched
            self._stats.duplicates_skipped += result.duplicates_skipped

    def _record_failure(self, error: Exception) -> None:
        with self._stats_lock:
            self._stats.total_runs += 1
            self._stats.failed_runs += 1
            self._stats.last_run_at = self._clock()
            self._stats.last_error = str(error)

    def stats(self) -> SchedulerStats:
        with self._stats_lock:
            return replace(self._stats)

    def log_stats(self) -> None:
        s = self.stats()
        logger.info(
            f"ETL stats: {s.total_runs} runs ({s.successful_runs} ok, {s.failed_runs} failed, "
            f"{s.success_rate:.1f}% success), {s.disruptions_processed} processed, "
            f"{s.disruptions_archived} archived, {s.disruptions_matched} matched, "
            f"{s.duplicates_skipped} duplicates skipped"
            + (f", last error: {s.last_error}" if s.last_error else "")
        )
