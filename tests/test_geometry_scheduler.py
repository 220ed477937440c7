import threading
from datetime import datetime

import pytest

from disruption_etl.etl.geometry_scheduler import (
    GeometryRefreshScheduler,
    GeometrySchedulerConfig,
    seconds_until,
)

from conftest import FixedClock


class StubSegmentStore:
    def __init__(self):
        self.cleared = threading.Event()
        self.clear_calls = 0

    def clear_cache(self):
        self.clear_calls += 1
        self.cleared.set()


class StubLoader:
    def __init__(self, count=3):
        self.store = StubSegmentStore()
        self.count = count
        self.calls = 0
        self.error = None

    def run(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.count


@pytest.fixture
def local_clock():
    return FixedClock(datetime(2024, 3, 1, 6, 0))


@pytest.fixture
def loader():
    return StubLoader()


@pytest.fixture
def refresher(loader, db, local_clock):
    return GeometryRefreshScheduler(loader, db, clock=local_clock)


@pytest.mark.parametrize("now, expected", [
    (datetime(2024, 3, 1, 6, 0), 3600),
    (datetime(2024, 3, 1, 7, 0), 86400),
    (datetime(2024, 3, 1, 8, 30), 81000),
    (datetime(2024, 3, 1, 6, 59, 30), 30),
])
def test_seconds_until(now, expected):
    assert seconds_until(7, now) == expected


def test_run_now_records_refresh_and_clears_cache(refresher, loader, local_clock):
    assert refresher.last_refresh() is None

    assert refresher.run_now() == 3

    assert loader.calls == 1
    assert loader.store.clear_calls == 1
    assert refresher.has_run_today()
    assert refresher.last_refresh() == local_clock.now


def test_run_now_failure_is_not_recorded(refresher, loader):
    loader.error = RuntimeError("portal down")

    with pytest.raises(RuntimeError):
        refresher.run_now()

    assert not refresher.has_run_today()
    assert loader.store.clear_calls == 0


def test_run_if_due_runs_once_per_day(refresher, loader, local_clock):
    assert refresher.run_if_due() == 3
    local_clock.advance(hours=10)
    assert refresher.run_if_due() is None
    assert loader.calls == 1

    local_clock.advance(hours=14)
    assert refresher.run_if_due() == 3
    assert loader.calls == 2


def test_restart_on_same_day_does_not_refresh_again(refresher, loader, db, local_clock):
    refresher.run_now()

    restarted = GeometryRefreshScheduler(loader, db, clock=local_clock)
    restarted.start()
    try:
        assert restarted.is_running
    finally:
        restarted.stop()

    assert loader.calls == 1


def test_start_refreshes_immediately_when_due(refresher, loader):
    refresher.start()
    try:
        assert loader.store.cleared.wait(timeout=5)
    finally:
        refresher.stop()

    assert loader.calls == 1
    assert refresher.has_run_today()


def test_disabled_scheduler_does_not_start(loader, db, local_clock):
    refresher = GeometryRefreshScheduler(
        loader, db, GeometrySchedulerConfig(enabled=False), clock=local_clock
    )

    refresher.start()

    assert not refresher.is_running
    assert loader.calls == 0


@pytest.mark.parametrize("hour", [-1, 24])
def test_invalid_refresh_hour(hour):
    with pytest.raises(ValueError):
        GeometrySchedulerConfig(run_at_hour=hour)


def test_wait_until_idle_blocks_during_refresh(refresher, loader):
    started = threading.Event()
    release = threading.Event()
    run = loader.run

    def slow_run():
        started.set()
        release.wait(timeout=5)
        return run()

    loader.run = slow_run
    worker = threading.Thread(target=refresher.run_now)
    worker.start()
    try:
        assert started.wait(timeout=5)
        assert not refresher.wait_until_idle(timeout=0.05)
    finally:
        release.set()
        worker.join(timeout=5)

    assert refresher.wait_until_idle(timeout=5)
    assert refresher.has_run_today()
