import threading
from datetime import datetime, timedelta, timezone

from feedloom.errors import FetchError
from feedloom.models import Config, Schedule, Source
from feedloom.scheduling import RefreshScheduler

NOW = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
ALL_DAY = Schedule(start_time="00:00:00", end_time="23:59:59", base_refresh=10, default_count=1)


def make_scheduler(update, *sources, retries=3):
    config = Config(sources=list(sources), schedules=[ALL_DAY])
    return RefreshScheduler(
        lambda: config,
        update,
        retries=retries,
        retry_delay=0,
        clock=lambda: NOW,
        local_clock=lambda dt: dt,
    )


class TestTick:
    def test_due_sources_are_dispatched_once_per_interval(self):
        calls = []
        scheduler = make_scheduler(lambda url, as_of: calls.append((url, as_of)), Source(url="https://a.example/feed"))

        assert scheduler.tick(NOW) == ["https://a.example/feed"]
        assert scheduler.wait_idle()
        assert scheduler.tick(NOW + timedelta(minutes=5)) == []
        assert scheduler.tick(NOW + timedelta(minutes=10)) == ["https://a.example/feed"]
        assert scheduler.wait_idle()
        assert [c[0] for c in calls] == ["https://a.example/feed"] * 2

    def test_dispatch_time_recorded_before_fetch_finishes(self):
        release = threading.Event()
        started = threading.Event()

        def slow_update(url, as_of):
            started.set()
            release.wait(5)

        scheduler = make_scheduler(slow_update, Source(url="https://a.example/feed"))
        scheduler.tick(NOW)
        assert started.wait(5)
        # Still running, yet not due again on the next tick
        assert scheduler.last_dispatch("https://a.example/feed") == NOW
        assert scheduler.tick(NOW + timedelta(seconds=10)) == []
        release.set()
        assert scheduler.wait_idle()

    def test_sources_without_matching_window_are_skipped(self):
        config = Config(
            sources=[Source(url="https://a.example/feed")],
            schedules=[Schedule(start_time="20:00", end_time="21:00", base_refresh=10, default_count=1)],
        )
        scheduler = RefreshScheduler(lambda: config, lambda *a: None, clock=lambda: NOW, local_clock=lambda dt: dt)
        assert scheduler.tick(NOW) == []
        assert scheduler.next_update_time() is None

    def test_next_update_time_is_earliest_due(self):
        fast = Source(url="https://fast.example/feed", refresh_count=1)
        slow = Source(url="https://slow.example/feed", refresh_count=6)
        scheduler = make_scheduler(lambda *a: None, fast, slow)
        scheduler.tick(NOW)
        assert scheduler.wait_idle()
        assert scheduler.next_update_time() == NOW + timedelta(minutes=10)


class TestRetries:
    def test_fetch_errors_are_retried_up_to_limit(self):
        attempts = []

        def failing(url, as_of):
            attempts.append(url)
            raise FetchError(url, "timeout")

        scheduler = make_scheduler(failing, Source(url="https://a.example/feed"), retries=3)
        scheduler.tick(NOW)
        assert scheduler.wait_idle()
        assert len(attempts) == 3

    def test_success_after_transient_failure_stops_retrying(self):
        attempts = []

        def flaky(url, as_of):
            attempts.append(url)
            if len(attempts) == 1:
                raise FetchError(url, "reset")

        scheduler = make_scheduler(flaky, Source(url="https://a.example/feed"))
        scheduler.tick(NOW)
        assert scheduler.wait_idle()
        assert len(attempts) == 2

    def test_other_errors_are_not_retried(self):
        attempts = []

        def broken(url, as_of):
            attempts.append(url)
            raise RuntimeError("bug")

        scheduler = make_scheduler(broken, Source(url="https://a.example/feed"))
        scheduler.tick(NOW)
        assert scheduler.wait_idle()
        assert len(attempts) == 1
