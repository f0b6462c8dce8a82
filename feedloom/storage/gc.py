from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Iterable, Mapping, Optional, Set

from ..models import Config, FeedSnapshot, Item
from ..utils.logging import get_logger
from .caches import CacheStore

logger = get_logger("fl.storage.gc")

SnapshotsFn = Callable[[], Mapping[str, FeedSnapshot]]

# Fraction of configured sources that must have a snapshot before a periodic sweep may run.
WARM_NUMERATOR = 4
WARM_DENOMINATOR = 5


def _item_keys(items: Iterable[Item]) -> Set[str]:
    keys: Set[str] = set()
    for item in items:
        keys.add(item.link)
        if item.original_link:
            keys.add(item.original_link)
    return keys


class CacheCollector:
    """Validity-based garbage collection over the link-keyed caches.

    A link is valid while some configured source reaches it, either through
    its published snapshot (full pre-filter links and displayed items) or
    through its retained-items cache.
    """

    def __init__(
        self,
        caches: CacheStore,
        config_provider: Callable[[], Config],
        snapshots: SnapshotsFn,
        *,
        read_grace_seconds: int = 24 * 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.caches = caches
        self._config_provider = config_provider
        self._snapshots = snapshots
        self.read_grace_seconds = read_grace_seconds
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------------- Validity -----------------
    def _collect(self, urls: Set[str]) -> Set[str]:
        valid: Set[str] = set()
        snapshots = self._snapshots()
        for url in urls:
            snapshot = snapshots.get(url)
            if snapshot is not None:
                valid.update(snapshot.all_links)
                valid.update(_item_keys(snapshot.items))
        for url, items in self.caches.retained_snapshot().items():
            if url in urls:
                valid.update(_item_keys(items))
        return valid

    def valid_links(self) -> Set[str]:
        return self._collect(set(self._config_provider().all_urls()))

    def post_process_valid_links(self) -> Set[str]:
        config = self._config_provider()
        return self._collect({s.url for s in config.sources if s.url and s.post_process_enabled})

    def is_warm(self) -> bool:
        """True once at least 80% of configured sources have a snapshot."""
        urls = self._config_provider().all_urls()
        if not urls:
            return True
        snapshots = self._snapshots()
        loaded = sum(1 for url in urls if url in snapshots)
        return loaded >= len(urls) or loaded >= len(urls) * WARM_NUMERATOR // WARM_DENOMINATOR

    # ---------------- Individual sweeps -----------------
    def sweep_classifications(self, valid: Set[str]) -> int:
        return self.caches.prune_categories(lambda link, _: link in valid)

    def sweep_post_process(self, valid: Optional[Set[str]] = None) -> int:
        valid = self.post_process_valid_links() if valid is None else valid
        return self.caches.prune_post_process(lambda link, _: link in valid)

    def sweep_read_state(self, valid: Set[str]) -> int:
        now = self._clock()
        grace = self.read_grace_seconds
        return self.caches.prune_read_state(lambda link, read_at: link in valid or now - read_at < grace)

    def sweep_retained(self) -> int:
        """Drop retained lists of sources that are gone or no longer retain items."""
        config = self._config_provider()
        retaining = {s.url for s in config.sources if s.url and s.retains_items}
        return self.caches.prune_retained(lambda url, _: url in retaining)

    # ---------------- Triggers -----------------
    def full_sweep(self) -> Dict[str, int]:
        """Sweep every cache against the current valid-links set."""
        valid = self.valid_links()
        if not valid:
            logger.info("Cache sweep skipped: no valid links (snapshots may still be empty)")
            return {}
        counts = {
            "classification": self.sweep_classifications(valid),
            "read_state": self.sweep_read_state(valid),
            "post_process": self.sweep_post_process(),
            "retained": self.sweep_retained(),
        }
        if any(counts.values()):
            logger.info(
                "Cache sweep removed classification=%d, read-state=%d, post-process=%d, retained sources=%d",
                counts["classification"],
                counts["read_state"],
                counts["post_process"],
                counts["retained"],
            )
        else:
            logger.info("Cache sweep finished: nothing to remove")
        return counts

    def on_config_reload(self) -> Dict[str, int]:
        """Sweeps run right after a configuration reload.

        Retained lists follow the configuration directly. The link-keyed
        sweeps wait for a warm cache.
        """
        counts = {"retained": self.sweep_retained()}
        if self.is_warm():
            counts["post_process"] = self.sweep_post_process()
            counts["read_state"] = self.sweep_read_state(self.valid_links())
        else:
            logger.info("Skipping post-process and read-state sweeps: cache not warm yet")
        if any(counts.values()):
            logger.info("Config reload sweep removed %s", counts)
        return counts

    def reconcile_source(
        self,
        old: Optional[FeedSnapshot],
        new: FeedSnapshot,
        retained: Iterable[Item] = (),
        *,
        post_process: bool = False,
    ) -> int:
        """Forget cached results for links that dropped out of one source."""
        if old is None:
            return 0
        old_links = set(old.all_links) or set(old.item_links)
        if not old_links:
            return 0
        current = set(new.all_links) | _item_keys(new.items) | _item_keys(old.items) | _item_keys(retained)
        stale = old_links - current
        if not stale:
            return 0
        removed = self.caches.delete_categories(stale)
        if post_process:
            removed += self.caches.delete_post_process(stale)
        if removed:
            logger.info("Removed %d stale cache entries for %s", removed, new.url)
        return removed

    # ---------------- Periodic loop -----------------
    def start(self, interval: float) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, args=(interval,), name="cache-gc", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                if self.is_warm():
                    self.full_sweep()
                else:
                    logger.info("Skipping periodic cache sweep: fewer than 80% of sources loaded")
            except Exception:  # noqa: BLE001 - keep the loop alive
                logger.exception("Periodic cache sweep failed")

    def run_when_warm(self, poll_seconds: float = 5.0, max_wait: float = 60.0) -> Optional[threading.Thread]:
        """Start a one-shot post-startup sweep that waits for a warm cache."""

        def _delayed() -> None:
            deadline = time.monotonic() + max_wait
            while not self._stop.wait(poll_seconds):
                if self.is_warm():
                    try:
                        self.on_config_reload()
                    except Exception:  # noqa: BLE001
                        logger.exception("Startup cache sweep failed")
                    return
                if time.monotonic() >= deadline:
                    logger.info("Startup cache sweep abandoned: cache never warmed up")
                    return

        thread = threading.Thread(target=_delayed, name="cache-gc-startup", daemon=True)
        thread.start()
        return thread
