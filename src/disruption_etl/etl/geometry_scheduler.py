"""
Daily refresh of the street centreline reference data.

The centreline changes rarely and is large, so it is refreshed at most once
per calendar day, at a fixed local hour. Each successful refresh is recorded
in ``geometry_refresh_log`` so a restart later the same day does not fetch
it again.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from ..db.db import Database
from ..settings import Settings
from .segments import SegmentLoader

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeometrySchedulerConfig:
    run_at_hour: int = 7
    enabled: bool = True

    def __post_init__(self):
        if not 0 <= self.run_at_hour <= 23:
            raise ValueError(f"run_at_hour must be between 0 and 23, got {self.run_at_hour}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeometrySchedulerConfig":
        return cls(
            run_at_hour=settings.geometry_refresh_hour,
            enabled=settings.geometry_refresh_enabled,
        )


def seconds_until(hour: int, now: datetime) -> float:
    """Seconds from ``now`` to the next occurrence of ``hour``:00 (tomorrow if already past)."""
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class GeometryRefreshScheduler:
    """
    Runs the segment loader once a day.

    Args:
        loader: Fetches and stores the centreline segments
        db: Database holding ``geometry_refresh_log``
        config: Refresh hour and on/off switch
        clock: Local wall-clock time (the refresh hour is a local hour)
    """

    def __init__(
        self,
        loader: SegmentLoader,
        db: Database,
        config: Optional[GeometrySchedulerConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.loader = loader
        self.db = db
        self.config = config or GeometrySchedulerConfig()
        self._clock = clock
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def has_run_on(self, day: date) -> bool:
        return self.db.fetchone(
            "SELECT 1 FROM geometry_refresh_log WHERE refresh_date = ? LIMIT 1", [day]
        ) is not None

    def has_run_today(self) -> bool:
        return self.has_run_on(self._clock().date())

    def last_refresh(self) -> Optional[datetime]:
        row = self.db.fetchone("SELECT MAX(completed_at) FROM geometry_refresh_log")
        return row[0] if row else None

    def run_now(self) -> int:
        """
        Refresh the segments regardless of whether today's refresh already happened.

        Returns:
            Number of segments stored
        """
        with self._refresh_lock:
            logger.info("Refreshing street centreline segments")
            count = self.loader.run()
            now = self._clock()
            self.db.execute(
                "INSERT INTO geometry_refresh_log (refresh_date, completed_at, segment_count) VALUES (?, ?, ?)",
                [now.date(), now, count],
            )
            self.loader.store.clear_cache()
            logger.info(f"Street centreline refresh complete: {count} segments")
            return count

    def wait_until_idle(self, timeout: float = -1) -> bool:
        """Block until no refresh is in progress. Returns False on timeout."""
        if self._refresh_lock.acquire(timeout=timeout):
            self._refresh_lock.release()
            return True
        return False

    def run_if_due(self) -> Optional[int]:
        """Refresh unless today's refresh is already recorded."""
        if self.has_run_today():
            logger.info("Street centreline already refreshed today, skipping")
            return None
        return self.run_now()

    def start(self) -> None:
        """Refresh now if today's refresh is missing, then every day at ``run_at_hour``."""
        if not self.config.enabled:
            logger.info("Geometry refresh disabled")
            return
        if self._running:
            return
        self._running = True
        if self.has_run_today():
            self._schedule(seconds_until(self.config.run_at_hour, self._clock()))
        else:
            self._schedule(0)

    def stop(self) -> None:
        self._running = False
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        logger.info("Geometry refresh scheduler stopped")

    def _schedule(self, delay: float) -> None:
        with self._lock:
            if not self._running:
                return
            self._timer = threading.Timer(delay, self._tick)
            self._timer.daemon = True
            self._timer.start()
        if delay:
            logger.info(f"Next street centreline refresh in {delay / 3600:.1f}h")

    def _tick(self) -> None:
        try:
            self.run_if_due()
        except Exception as e:
            logger.error(f"Street centreline refresh failed: {e}")
        finally:
            self._schedule(seconds_until(self.config.run_at_hour, self._clock()))
