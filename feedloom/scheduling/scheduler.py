from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set

from ..errors import FetchError
from ..models import Config
from ..utils.logging import get_logger
from .interval import effective_interval

logger = get_logger("fl.scheduling.scheduler")

UpdateFn = Callable[[str, datetime], object]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefreshScheduler:
    """Cooperative tick loop that dispatches due sources to the update engine.

    Each tick evaluates every configured source. A due source gets its
    dispatch time recorded before the fetch starts and is updated on its own
    thread, retried on ``FetchError`` with a fixed delay. Updates for the
    same source are not serialized: a fetch slower than the interval can
    overlap with the next dispatch.
    """

    def __init__(
        self,
        config_provider: Callable[[], Config],
        update: UpdateFn,
        *,
        tick_seconds: float = 10.0,
        retries: int = 3,
        retry_delay: float = 1.0,
        clock: Callable[[], datetime] = _utcnow,
        local_clock: Optional[Callable[[datetime], datetime]] = None,
    ) -> None:
        self._config_provider = config_provider
        self._update = update
        self.tick_seconds = tick_seconds
        self.retries = max(1, retries)
        self.retry_delay = retry_delay
        self._clock = clock
        # Schedule windows are wall-clock times in the operator's timezone
        self._local_clock = local_clock or (lambda dt: dt.astimezone())

        self._last_dispatch: Dict[str, datetime] = {}
        self._dispatch_lock = threading.Lock()
        self._next_update: Optional[datetime] = None
        self._next_lock = threading.Lock()

        self._workers: Set[threading.Thread] = set()
        self._workers_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------------- Loop -----------------
    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="refresh-scheduler", daemon=True)
        self._thread.start()
        logger.info("Refresh scheduler started (tick=%.1fs, retries=%d)", self.tick_seconds, self.retries)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:  # noqa: BLE001 - the loop must survive a bad tick
                logger.exception("Scheduler tick failed")
            self._stop.wait(self.tick_seconds)

    # ---------------- Tick -----------------
    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Dispatch every due source; return the URLs dispatched on this tick."""
        now = now or self._clock()
        config = self._config_provider()
        local_now = self._local_clock(now)
        dispatched: List[str] = []
        next_global: Optional[datetime] = None

        for source in config.sources:
            if not source.url:
                continue
            minutes, _ = effective_interval(source, local_now, config.schedules)
            if minutes <= 0:
                continue
            interval = timedelta(minutes=minutes)

            with self._dispatch_lock:
                last = self._last_dispatch.get(source.url)
                due = last is None or now - last >= interval
                if due:
                    self._last_dispatch[source.url] = now

            if due:
                self._dispatch(source.url, now)
                dispatched.append(source.url)
                next_due = now + interval
            else:
                next_due = last + interval  # type: ignore[operator]
            if next_global is None or next_due < next_global:
                next_global = next_due

        with self._next_lock:
            self._next_update = next_global
        return dispatched

    def next_update_time(self) -> Optional[datetime]:
        """Earliest upcoming due time across sources; display only."""
        with self._next_lock:
            return self._next_update

    def last_dispatch(self, url: str) -> Optional[datetime]:
        with self._dispatch_lock:
            return self._last_dispatch.get(url)

    # ---------------- Dispatch -----------------
    def _dispatch(self, url: str, as_of: datetime) -> None:
        worker = threading.Thread(
            target=self._run_with_retries,
            args=(url, as_of),
            name=f"fetch:{url}",
            daemon=True,
        )
        worker.start()
        with self._workers_lock:
            self._workers.add(worker)

    def _run_with_retries(self, url: str, as_of: datetime) -> None:
        try:
            for attempt in range(1, self.retries + 1):
                try:
                    self._update(url, as_of)
                    return
                except FetchError as exc:
                    if attempt >= self.retries:
                        logger.error("Giving up on %s after %d attempts: %s", url, self.retries, exc)
                        return
                    logger.warning(
                        "Update of %s failed (attempt %d/%d): %s; retrying in %.1fs",
                        url,
                        attempt,
                        self.retries,
                        exc,
                        self.retry_delay,
                    )
                    time.sleep(self.retry_delay)
                except Exception:  # noqa: BLE001 - only fetch failures are retried
                    logger.exception("Update of %s failed", url)
                    return
        finally:
            with self._workers_lock:
                self._workers.discard(threading.current_thread())

    def wait_idle(self, timeout: float = 10.0) -> bool:
        """Join dispatched update threads; True if all finished in time."""
        deadline = time.monotonic() + timeout
        while True:
            with self._workers_lock:
                self._workers = {w for w in self._workers if w.is_alive()}
                workers = list(self._workers)
            if not workers:
                return True
            for worker in workers:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                worker.join(remaining)
