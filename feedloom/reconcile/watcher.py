from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..errors import ConfigError
from ..models import Config
from ..storage.gc import CacheCollector
from ..utils.config_loader import load_config
from ..utils.logging import get_logger
from .diff import affected_sources

logger = get_logger("fl.reconcile")

ApplyFn = Callable[[Config], Config]
ReprocessFn = Callable[[str], object]


class _ConfigFileHandler(FileSystemEventHandler):
    """Forwards write/create/rename events that touch the config file."""

    def __init__(self, path: Path, on_change: Callable[[], None]) -> None:
        self._path = path
        self._on_change = on_change

    def _matches(self, raw: object) -> bool:
        if not raw:
            return False
        if isinstance(raw, bytes):
            raw = raw.decode(errors="replace")
        return Path(str(raw)).resolve() == self._path

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.src_path):
            self._on_change()

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.src_path):
            self._on_change()

    def on_moved(self, event: FileSystemEvent) -> None:
        # Editors and atomic writers replace the file through a rename
        if not event.is_directory and (
            self._matches(getattr(event, "dest_path", "")) or self._matches(event.src_path)
        ):
            self._on_change()


class ConfigReconciler:
    """Reloads the configuration on file changes and reconciles caches and snapshots.

    Bursts of notifications are debounced into one reload. A reload that
    keeps failing leaves the previous configuration in place. After a
    successful reload the GC sweeps run, then every affected source gets a
    forced reprocess on its own thread.
    """

    def __init__(
        self,
        path: Path | str,
        apply: ApplyFn,
        reprocess: ReprocessFn,
        *,
        collector: Optional[CacheCollector] = None,
        loader: Callable[[Path], Config] = load_config,
        debounce_seconds: float = 0.5,
        retries: int = 3,
        retry_delay: float = 0.1,
    ) -> None:
        self.path = Path(path).resolve()
        self._apply = apply
        self._reprocess = reprocess
        self._collector = collector
        self._loader = loader
        self.debounce_seconds = debounce_seconds
        self.retries = max(1, retries)
        self.retry_delay = retry_delay

        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()
        self._observer: Optional[Observer] = None
        self._workers: List[threading.Thread] = []

    # ---------------- Watching -----------------
    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        # Watch the directory: the file itself may be replaced by rename
        observer.schedule(_ConfigFileHandler(self.path, self.notify), str(self.path.parent), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watching %s for changes", self.path)

    def stop(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(5)
            self._observer = None

    def notify(self) -> None:
        """Record one change notification; the reload fires once the burst settles."""
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(self.debounce_seconds, self._reload_safely)
            timer.daemon = True
            timer.name = "config-reload"
            self._timer = timer
            timer.start()

    def _reload_safely(self) -> None:
        try:
            self.reload()
        except Exception:  # noqa: BLE001 - keep watching after a bad reload
            logger.exception("Config reload failed")

    # ---------------- Reload -----------------
    def _load_with_retries(self) -> Optional[Config]:
        for attempt in range(1, self.retries + 1):
            if attempt > 1:
                time.sleep(self.retry_delay)
            try:
                return self._loader(self.path)
            except ConfigError as exc:
                logger.warning("Reloading config failed (attempt %d/%d): %s", attempt, self.retries, exc)
        return None

    def reload(self) -> Optional[List[str]]:
        """Reload now; return the URLs scheduled for reprocessing, or None on failure."""
        logger.info("Config file changed, reloading %s", self.path)
        new_config = self._load_with_retries()
        if new_config is None:
            logger.error("Config reload gave up; keeping the previous configuration")
            return None

        old_config = self._apply(new_config)
        logger.info("Config reloaded: %d sources", len(new_config.sources))

        if self._collector is not None:
            try:
                self._collector.on_config_reload()
            except Exception:  # noqa: BLE001
                logger.exception("Cache sweep after config reload failed")

        affected = affected_sources(old_config, new_config)
        if not affected:
            logger.info("Config reload affects no sources")
            return []

        logger.info("Config reload affects %d sources; reprocessing", len(affected))
        self._workers = [w for w in self._workers if w.is_alive()]
        for url in affected:
            worker = threading.Thread(target=self._reprocess_one, args=(url,), name=f"reprocess:{url}", daemon=True)
            worker.start()
            self._workers.append(worker)
        return affected

    def _reprocess_one(self, url: str) -> None:
        try:
            self._reprocess(url)
        except Exception as exc:  # noqa: BLE001 - logged, next scheduled refresh retries
            logger.error("Reprocessing %s after config reload failed: %s", url, exc)

    def wait_idle(self, timeout: float = 10.0) -> None:
        deadline = time.monotonic() + timeout
        for worker in list(self._workers):
            worker.join(max(0.0, deadline - time.monotonic()))
