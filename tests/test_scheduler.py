import random
import threading

import pytest

from disruption_etl.etl.matcher import DisruptionMatcher
from disruption_etl.etl.scheduler import ETLScheduler, SchedulerConfig
from disruption_etl.etl.sources import DisruptionFetcher
from disruption_etl.utils.errors import FetchError

from conftest import T0, StubSource, record_row


class RecordingWait:
    """Backoff wait that returns at once and remembers the requested delays."""

    def __init__(self, stop_after=None, on_wait=None):
        self.delays = []
        self.stop_after = stop_after
        self.on_wait = on_wait

    def __call__(self, seconds):
        self.delays.append(seconds)
        if self.on_wait is not None:
            self.on_wait(len(self.delays))
        return self.stop_after is not None and len(self.delays) >= self.stop_after


@pytest.fixture
def source():
    return StubSource("stub", [record_row("road-1"), record_row("road-2")])


@pytest.fixture
def wait():
    return RecordingWait()


@pytest.fixture
def scheduler(source, store, clock, wait):
    return ETLScheduler(DisruptionFetcher([source]), store, clock=clock, wait=wait)


def test_run_stores_records(scheduler, store):
    result = scheduler.run_once()

    assert result.fetched == 2
    assert result.inserted == 2
    assert result.updated == 0
    assert store.count_active() == 2

    stats = scheduler.stats()
    assert stats.total_runs == 1
    assert stats.successful_runs == 1
    assert stats.disruptions_processed == 2
    assert stats.last_success_at == T0


def test_second_run_updates(scheduler, clock):
    scheduler.run_once()
    clock.advance(minutes=1)

    result = scheduler.run_once()

    assert result.inserted == 0
    assert result.updated == 2
    assert scheduler.stats().disruptions_processed == 4


def test_failing_fetch_retries_with_backoff_then_defers(scheduler, source, wait):
    source.error = FetchError("portal down")

    assert scheduler.run_once() is None

    assert wait.delays == [30, 60, 120]
    assert source.calls == 4
    stats = scheduler.stats()
    assert stats.total_runs == 4
    assert stats.failed_runs == 4
    assert stats.successful_runs == 0
    assert "portal down" in stats.last_error
    assert stats.success_rate == 0.0


def test_retry_succeeds_after_two_failures(source, store, clock):
    source.error = FetchError("portal down")

    def recover(waits):
        if waits == 2:
            source.error = None

    wait = RecordingWait(on_wait=recover)
    scheduler = ETLScheduler(DisruptionFetcher([source]), store, clock=clock, wait=wait)

    result = scheduler.run_once()

    assert result is not None
    assert result.inserted == 2
    assert wait.delays == [30, 60]
    stats = scheduler.stats()
    assert (stats.successful_runs, stats.failed_runs) == (1, 2)
    assert stats.success_rate == pytest.approx(100 / 3)


def test_stop_during_backoff_abandons_run(source, store, clock):
    source.error = FetchError("portal down")
    wait = RecordingWait(stop_after=1)
    scheduler = ETLScheduler(DisruptionFetcher([source]), store, clock=clock, wait=wait)

    assert scheduler.run_once() is None
    assert wait.delays == [30]
    assert source.calls == 1


def test_backoff_uses_configured_multiplier(store, clock):
    config = SchedulerConfig(min_interval=1, max_interval=10, backoff_multiplier=3.0)
    scheduler = ETLScheduler(DisruptionFetcher([]), store, config=config, clock=clock)

    assert [scheduler.backoff_delay(n) for n in range(3)] == [10, 30, 90]


def test_records_missing_for_threshold_are_archived(scheduler, source, store, clock):
    scheduler.run_once()

    source.rows = [record_row("road-1")]
    clock.advance(minutes=10)
    assert scheduler.run_once().archived == 0
    assert store.get("road-2").is_active

    clock.advance(minutes=20)
    result = scheduler.run_once()

    assert result.archived == 1
    assert not store.get("road-2").is_active
    assert store.get("road-1").is_active
    assert store.archived("road-2")[0][2] == 30


def test_failed_source_records_are_not_archived(store, clock, wait):
    a = StubSource("a", [record_row("a-1", source_name="a")])
    b = StubSource("b", [record_row("b-1", source_name="b")])
    scheduler = ETLScheduler(DisruptionFetcher([a, b]), store, clock=clock, wait=wait)
    scheduler.run_once()

    b.error = FetchError("b is down")
    clock.advance(minutes=45)
    result = scheduler.run_once()

    assert result is not None
    assert result.archived == 0
    assert store.get("b-1").is_active
    assert wait.delays == []


def test_all_sources_failing_fails_the_run(store, clock, wait):
    a = StubSource("a")
    b = StubSource("b")
    a.error = FetchError("a is down")
    b.error = FetchError("b is down")
    scheduler = ETLScheduler(
        DisruptionFetcher([a, b]), store, config=SchedulerConfig(max_retries=0), clock=clock, wait=wait
    )

    assert scheduler.run_once() is None
    assert scheduler.stats().failed_runs == 1


def test_new_id_with_active_content_is_skipped(scheduler, source, store, clock):
    source.rows = [record_row("road-1", title="Bridge work")]
    scheduler.run_once()

    source.rows = [record_row("road-1", title="Bridge work"), record_row("road-9", title="Bridge work")]
    clock.advance(minutes=1)
    result = scheduler.run_once()

    assert result.fetched == 2
    assert result.updated == 1
    assert result.inserted == 0
    assert store.get("road-9") is None

    source.rows = [record_row("road-9", title="Bridge work")]
    clock.advance(minutes=1)
    result = scheduler.run_once()

    assert result.duplicates_skipped == 1
    assert store.get("road-9") is None
    assert scheduler.stats().duplicates_skipped == 1


def test_failed_record_does_not_stop_the_run(scheduler, store, monkeypatch):
    upsert = store.upsert

    def flaky(record, now=None):
        if record.external_id == "road-1":
            raise RuntimeError("disk full")
        return upsert(record, now=now)

    monkeypatch.setattr(store, "upsert", flaky)
    result = scheduler.run_once()

    assert result.failed == 1
    assert result.inserted == 1
    assert store.get("road-2") is not None


def test_invalid_rows_are_dropped(store, clock, wait):
    source = StubSource("stub", [record_row("road-1"), record_row("", title="No id")])
    scheduler = ETLScheduler(DisruptionFetcher([source]), store, clock=clock, wait=wait)

    result = scheduler.run_once()

    assert result.fetched == 1
    assert store.count_active() == 1


def test_old_resolved_records_are_cleaned_up(scheduler, source, store, clock):
    scheduler.run_once()
    source.rows = []
    clock.advance(minutes=30)
    assert scheduler.run_once().archived == 2

    clock.advance(days=31)
    result = scheduler.run_once()

    assert result.cleaned_up == 2
    assert store.get("road-1") is None
    assert len(store.archived("road-1")) == 1


def test_run_matches_stored_records(source, store, segment_store, make_segment, clock, wait):
    segment_store.replace_segments([
        make_segment(1, "Bloor St W", (-79.400, 43.665), (-79.401, 43.6652)),
    ])
    matcher = DisruptionMatcher(store, segment_store)
    scheduler = ETLScheduler(DisruptionFetcher([source]), store, matcher=matcher, clock=clock, wait=wait)

    result = scheduler.run_once()

    assert result.matched == 2
    assert store.get("road-1").matched_street == "Bloor St W"
    assert scheduler.stats().disruptions_matched == 2


def test_next_interval_within_bounds(store):
    config = SchedulerConfig(min_interval=5, max_interval=30)
    scheduler = ETLScheduler(DisruptionFetcher([]), store, config=config, rng=random.Random(7))

    intervals = [scheduler.next_interval() for _ in range(200)]

    assert all(5 <= i <= 30 for i in intervals)
    assert len(set(intervals)) > 1


@pytest.mark.parametrize("kwargs", [
    {"min_interval": -1},
    {"min_interval": 40, "max_interval": 30},
    {"max_retries": -1},
    {"backoff_multiplier": 0},
    {"inactivity_threshold_minutes": -5},
    {"resolved_retention_days": -1},
])
def test_invalid_scheduler_config(kwargs):
    with pytest.raises(ValueError):
        SchedulerConfig(**kwargs)


def test_start_runs_in_background_until_stopped(store, clock):
    fetched = threading.Event()

    class SignallingSource(StubSource):
        def fetch_rows(self):
            rows = super().fetch_rows()
            fetched.set()
            return rows

    source = SignallingSource("stub", [record_row("road-1")])
    scheduler = ETLScheduler(
        DisruptionFetcher([source]),
        store,
        config=SchedulerConfig(min_interval=60, max_interval=60),
        clock=clock,
    )

    scheduler.start()
    try:
        assert fetched.wait(timeout=5)
    finally:
        scheduler.stop()

    assert scheduler.wait_until_idle(timeout=5)
    assert not scheduler.is_running
    assert source.calls == 1
    assert scheduler.stats().total_runs == 1
    assert store.get("road-1") is not None


def test_restart_during_run_leaves_a_single_timer_chain(store, clock):
    first_started = threading.Event()
    release_first = threading.Event()
    second_started = threading.Event()

    class BlockingSource(StubSource):
        def fetch_rows(self):
            rows = super().fetch_rows()
            if self.calls == 1:
                first_started.set()
                release_first.wait(timeout=5)
            elif self.calls == 2:
                second_started.set()
            return rows

    source = BlockingSource("stub", [record_row("road-1")])
    scheduler = ETLScheduler(
        DisruptionFetcher([source]),
        store,
        config=SchedulerConfig(min_interval=0.2, max_interval=0.2),
        clock=clock,
    )

    scheduler.start()
    try:
        assert first_started.wait(timeout=5)
        scheduler.stop()
        scheduler.start()
        release_first.set()
        assert second_started.wait(timeout=5)
    finally:
        scheduler.stop()
    assert scheduler.wait_until_idle(timeout=5)

    calls_at_stop = source.calls
    threading.Event().wait(0.8)

    assert source.calls == calls_at_stop
    assert not scheduler.is_running
