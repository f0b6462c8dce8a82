from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .engine import FeedUpdater, SnapshotRegistry
from .errors import FetchError, SourceNotFoundError
from .fetchers import ParsedFeed
from .models import Config, FeedSnapshot
from .processors import ClassificationPipeline, PostProcessor
from .reconcile import ConfigReconciler
from .scheduling import RefreshScheduler
from .storage import CacheCollector, CacheStore, JsonFileStore, Store
from .utils.config_loader import load_config, save_config, set_source_name
from .utils.logging import get_logger
from .utils.settings import RuntimeSettings

logger = get_logger("fl.orchestrator")

FOLDER_PREFIX = "folder:"


class Orchestrator:
    """Wires config, caches, the update engine, the scheduler and the config watcher.

    ``start`` restores persisted caches and begins background work; ``refresh``
    and ``get_snapshot`` are the calls a presentation layer makes.
    """

    def __init__(
        self,
        config_path: Path | str,
        *,
        config: Optional[Config] = None,
        settings: Optional[RuntimeSettings] = None,
        store: Optional[Store] = None,
        fetcher: Optional[Callable[[str], ParsedFeed]] = None,
        watch_config: bool = True,
    ) -> None:
        self.config_path = Path(config_path)
        self.settings = settings or RuntimeSettings()
        self._config = config if config is not None else load_config(self.config_path)
        self._config_lock = threading.RLock()
        self.watch_config = watch_config

        self.caches = CacheStore(store or JsonFileStore(self.settings.data_dir))
        self.snapshots = SnapshotRegistry()
        self.collector = CacheCollector(
            self.caches,
            self.get_config,
            self.snapshots.all,
            read_grace_seconds=self.settings.read_grace_seconds,
        )
        self.updater = FeedUpdater(
            self.get_config,
            self.caches,
            self.snapshots,
            pipeline=ClassificationPipeline(self.caches),
            post_processor=PostProcessor(self.caches),
            collector=self.collector,
            fetcher=fetcher,
            fetch_gate=threading.Semaphore(max(1, self.settings.fetch_concurrency)),
            fetch_timeout=self.settings.fetch_timeout,
            on_name_discovered=self._adopt_name,
        )
        self.scheduler = RefreshScheduler(
            self.get_config,
            self.updater.update,
            tick_seconds=self.settings.tick_seconds,
            retries=self.settings.fetch_retries,
            retry_delay=self.settings.fetch_retry_delay,
        )
        self.reconciler = ConfigReconciler(
            self.config_path,
            self.replace_config,
            self._reprocess,
            collector=self.collector,
            debounce_seconds=self.settings.debounce_ms / 1000,
        )
        self._started = False

    # ---------------- Config -----------------
    def get_config(self) -> Config:
        with self._config_lock:
            return self._config

    def replace_config(self, config: Config) -> Config:
        """Install a new configuration and return the previous one."""
        with self._config_lock:
            previous = self._config
            self._config = config
        removed = set(previous.all_urls()) - set(config.all_urls())
        if removed:
            dropped = self.snapshots.discard(removed)
            logger.info("Dropped %d snapshots of removed sources", dropped)
        return previous

    def _adopt_name(self, url: str, title: str) -> None:
        with self._config_lock:
            config = self._config
            if not set_source_name(config, url, title):
                return
        save_config(config, self.config_path)
        logger.info("Named source %s after its feed title: %s", url, title)

    # ---------------- Lifecycle -----------------
    def restore(self) -> int:
        """Load persisted caches and seed placeholder snapshots; return how many were seeded."""
        self.caches.load()
        config = self.get_config()
        seeded = 0
        for url, items in self.caches.retained_snapshot().items():
            source = config.source_by_url(url)
            if source is None or not items:
                continue
            if self.snapshots.seed_placeholder(url, items, title=source.name):
                seeded += 1
        logger.info("Seeded %d snapshots from retained items", seeded)
        return seeded

    def start(self) -> None:
        if self._started:
            return
        self.restore()
        self.caches.start_flush_loop(self.settings.flush_seconds)
        self.collector.start(self.settings.gc_seconds)
        self.collector.run_when_warm()
        self.scheduler.start()
        if self.watch_config:
            self.reconciler.start()
        self._started = True
        logger.info("Started with %d sources", len(self.get_config().sources))

    def stop(self) -> None:
        if not self._started:
            return
        self.reconciler.stop()
        self.scheduler.stop()
        self.scheduler.wait_idle(self.settings.fetch_timeout)
        self.collector.stop()
        self.updater.close()
        self.caches.shutdown()
        self._started = False
        logger.info("Stopped; caches flushed")

    # ---------------- Refresh -----------------
    def refresh(self, target: str, forced: bool = False) -> None:
        """Refresh one source URL now, or every source of ``folder:<id>``.

        Raises ``SourceNotFoundError`` for unknown targets and ``FetchError``
        when a single source cannot be fetched. Folder refreshes only log
        per-source failures.
        """
        if target.startswith(FOLDER_PREFIX):
            self._refresh_folder(target[len(FOLDER_PREFIX) :], forced)
            return

        if self.get_config().source_by_url(target) is None:
            raise SourceNotFoundError(f"No source or folder matches {target!r}")
        started = time.monotonic()
        try:
            self.updater.update(target, self._now(), is_manual=True, force_reprocess=forced)
        except FetchError as exc:
            logger.error("Manual refresh of %s failed after %.1fs: %s", target, time.monotonic() - started, exc)
            raise
        logger.info("Manual refresh of %s finished in %.1fs", target, time.monotonic() - started)

    def _refresh_folder(self, folder_id: str, forced: bool) -> None:
        config = self.get_config()
        folder = config.folder_by_id(folder_id)
        if folder is None:
            raise SourceNotFoundError(f"No folder with id {folder_id!r}")

        urls = list(dict.fromkeys(config.folder_source_urls(folder)))
        if not urls:
            logger.info("Folder %s references no sources", folder.name or folder_id)
            return

        as_of = self._now()
        started = time.monotonic()
        errors = 0
        with ThreadPoolExecutor(max_workers=len(urls), thread_name_prefix="folder-refresh") as pool:
            futures = {
                pool.submit(self.updater.update, url, as_of, is_manual=True, force_reprocess=forced): url
                for url in urls
            }
            for future in as_completed(futures):
                try:
                    future.result()
                except Exception as exc:  # noqa: BLE001 - counted and logged per source
                    errors += 1
                    logger.warning("Refreshing %s in folder %s failed: %s", futures[future], folder_id, exc)

        elapsed = time.monotonic() - started
        if errors:
            logger.warning("Folder %s refreshed in %.1fs: %d/%d sources failed", folder.name or folder_id, elapsed, errors, len(urls))
        else:
            logger.info("Folder %s refreshed in %.1fs: %d sources", folder.name or folder_id, elapsed, len(urls))

    def refresh_all(self, forced: bool = False) -> int:
        """Refresh every configured source once; return the number of failures."""
        urls = self.get_config().all_urls()
        as_of = self._now()
        errors = 0
        if not urls:
            return 0
        with ThreadPoolExecutor(max_workers=len(urls), thread_name_prefix="refresh-all") as pool:
            futures = {
                pool.submit(self.updater.update, url, as_of, is_manual=True, force_reprocess=forced): url
                for url in urls
            }
            for future in as_completed(futures):
                try:
                    future.result()
                except Exception as exc:  # noqa: BLE001
                    errors += 1
                    logger.warning("Refreshing %s failed: %s", futures[future], exc)
        return errors

    def _reprocess(self, url: str) -> None:
        self.updater.update(url, self._now(), is_manual=True, force_reprocess=True)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # ---------------- Queries -----------------
    def get_snapshot(self, url: str) -> Optional[FeedSnapshot]:
        return self.snapshots.get(url)

    def snapshots_by_url(self) -> Dict[str, FeedSnapshot]:
        return self.snapshots.all()

    def next_update_time(self) -> Optional[datetime]:
        return self.scheduler.next_update_time()

    # ---------------- Read state -----------------
    def mark_read(self, link: str) -> None:
        self.caches.mark_read(link)

    def mark_read_batch(self, links: List[str]) -> None:
        self.caches.mark_read_batch(links)

    def mark_unread(self, link: str) -> None:
        self.caches.mark_unread(link)

    def is_read(self, link: str) -> bool:
        return self.caches.is_read(link)

    def read_state(self) -> Dict[str, int]:
        return self.caches.read_state()

    def clear_read_state(self) -> None:
        self.caches.clear_read_state()
