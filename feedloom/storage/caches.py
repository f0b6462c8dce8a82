from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, TypeVar

from ..models import Item, PostProcessEntry
from ..utils.logging import get_logger
from .base import CLASSIFY_TABLE, ITEMS_TABLE, POSTPROCESS_TABLE, READ_STATE_TABLE, Store

logger = get_logger("fl.storage.caches")

V = TypeVar("V")
KeepFn = Callable[[str, Any], bool]


class CacheStore:
    """The four in-memory caches, each mirrored to a durable ``Store``.

    - classification: link -> category id
    - post-process: original link -> rewritten fields
    - retained items: source URL -> capped list of item projections
    - read state: link -> unix time the item was read

    Every mutation updates memory under the cache's own lock, then queues
    the matching store write on a single background writer (eventually
    persisted, best effort). A periodic flush rewrites every table when
    the data-changed flag is set. Locks are never held across store I/O.
    """

    def __init__(self, store: Store, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self._clock = clock

        self._classify: Dict[str, str] = {}
        self._classify_lock = threading.RLock()
        self._post: Dict[str, PostProcessEntry] = {}
        self._post_lock = threading.RLock()
        self._items: Dict[str, List[Item]] = {}
        self._items_lock = threading.RLock()
        self._read: Dict[str, int] = {}
        self._read_lock = threading.RLock()

        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cache-writer")
        self._dirty = False
        self._dirty_lock = threading.Lock()
        self._stop = threading.Event()
        self._flush_thread: Optional[threading.Thread] = None

    # ---------------- Loading -----------------
    def load(self) -> None:
        """Load every table from the durable store, replacing memory."""
        classify = {str(k): str(v) for k, v in self.store.load_table(CLASSIFY_TABLE).items() if v}
        post = {
            str(k): PostProcessEntry.from_record(v)
            for k, v in self.store.load_table(POSTPROCESS_TABLE).items()
            if isinstance(v, dict)
        }
        read = {}
        for link, read_at in self.store.load_table(READ_STATE_TABLE).items():
            try:
                read[str(link)] = int(read_at)
            except (TypeError, ValueError):
                logger.warning("Dropping malformed read-state row for %s", link)

        items: Dict[str, List[Item]] = {}
        for url, rows in self.store.load_table(ITEMS_TABLE).items():
            if not isinstance(rows, list):
                continue
            restored = []
            for row in rows:
                if not isinstance(row, dict):
                    continue
                item = Item.from_record(row)
                # Folder views filter on category, so recover it from the classification cache
                item.category = classify.get(item.link) or classify.get(item.original_link) or item.category
                restored.append(item)
            items[str(url)] = restored

        with self._classify_lock:
            self._classify = classify
        with self._post_lock:
            self._post = post
        with self._read_lock:
            self._read = read
        with self._items_lock:
            self._items = items
        logger.info(
            "Loaded caches: classification=%d, post-process=%d, read-state=%d, retained sources=%d",
            len(classify),
            len(post),
            len(read),
            len(items),
        )

    # ---------------- Persistence plumbing -----------------
    def mark_changed(self) -> None:
        """Signal that memory holds data the next periodic flush should write."""
        with self._dirty_lock:
            self._dirty = True

    def _submit(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            future = self._writer.submit(fn, *args)
        except RuntimeError:
            logger.warning("Cache writer is shut down; dropping %s", getattr(fn, "__name__", fn))
            return
        future.add_done_callback(self._log_write_failure)

    @staticmethod
    def _log_write_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Cache write failed: %s", exc)

    def wait_persisted(self, timeout: Optional[float] = 10.0) -> None:
        """Block until every queued write has been attempted."""
        try:
            self._writer.submit(lambda: None).result(timeout)
        except RuntimeError:
            return

    def save_all(self) -> None:
        """Rewrite every table from memory. Failures are logged, memory stays authoritative."""
        with self._classify_lock:
            classify = dict(self._classify)
        with self._post_lock:
            post = {k: v.to_record() for k, v in self._post.items()}
        with self._read_lock:
            read = dict(self._read)
        with self._items_lock:
            items = {url: [i.to_record() for i in rows] for url, rows in self._items.items()}
        for table, rows in (
            (CLASSIFY_TABLE, classify),
            (POSTPROCESS_TABLE, post),
            (READ_STATE_TABLE, read),
            (ITEMS_TABLE, items),
        ):
            try:
                self.store.replace_table(table, rows)
            except Exception as exc:  # noqa: BLE001 - keep flushing the other tables
                logger.error("Saving %s failed: %s", table, exc)
                self.mark_changed()

    def flush_if_dirty(self) -> bool:
        with self._dirty_lock:
            dirty = self._dirty
            self._dirty = False
        if dirty:
            self.save_all()
        return dirty

    def start_flush_loop(self, interval: float) -> None:
        if self._flush_thread is not None and self._flush_thread.is_alive():
            return
        self._stop.clear()

        def _loop() -> None:
            while not self._stop.wait(interval):
                try:
                    self.flush_if_dirty()
                except Exception:  # noqa: BLE001 - keep the loop alive
                    logger.exception("Periodic cache flush failed")

        self._flush_thread = threading.Thread(target=_loop, name="cache-flush", daemon=True)
        self._flush_thread.start()

    def shutdown(self) -> None:
        """Stop the flush loop, drain queued writes, save everything and close the store."""
        self._stop.set()
        if self._flush_thread is not None:
            self._flush_thread.join(5)
            self._flush_thread = None
        self._writer.shutdown(wait=True)
        self.save_all()
        self.store.close()

    @staticmethod
    def _prune(data: Dict[str, V], keep: Callable[[str, V], bool]) -> List[str]:
        doomed = [key for key, value in data.items() if not keep(key, value)]
        for key in doomed:
            del data[key]
        return doomed

    # ---------------- Classification cache -----------------
    def get_category(self, link: str) -> Optional[str]:
        with self._classify_lock:
            return self._classify.get(link) or None

    def categories_for(self, links: Iterable[str]) -> Dict[str, str]:
        with self._classify_lock:
            return {link: self._classify[link] for link in links if self._classify.get(link)}

    def set_category(self, link: str, category: str) -> None:
        self.set_categories({link: category})

    def set_categories(self, mapping: Mapping[str, str]) -> None:
        rows = {k: v for k, v in mapping.items() if k}
        if not rows:
            return
        with self._classify_lock:
            self._classify.update(rows)
        self._submit(self.store.put_many, CLASSIFY_TABLE, rows)
        self.mark_changed()

    def delete_categories(self, links: Iterable[str]) -> int:
        with self._classify_lock:
            removed = [link for link in set(links) if self._classify.pop(link, None) is not None]
        if removed:
            self._submit(self.store.delete_many, CLASSIFY_TABLE, removed)
            self.mark_changed()
        return len(removed)

    def prune_categories(self, keep: Callable[[str, str], bool]) -> int:
        with self._classify_lock:
            removed = self._prune(self._classify, keep)
        if removed:
            self._submit(self.store.delete_many, CLASSIFY_TABLE, removed)
            self.mark_changed()
        return len(removed)

    def classification_links(self) -> Set[str]:
        with self._classify_lock:
            return set(self._classify)

    # ---------------- Post-process cache -----------------
    def get_post_process(self, key: str) -> Optional[PostProcessEntry]:
        with self._post_lock:
            return self._post.get(key)

    def set_post_process(self, key: str, entry: PostProcessEntry) -> None:
        with self._post_lock:
            self._post[key] = entry
        self._submit(self.store.put, POSTPROCESS_TABLE, key, entry.to_record())
        self.mark_changed()

    def delete_post_process(self, keys: Iterable[str]) -> int:
        with self._post_lock:
            removed = [key for key in set(keys) if self._post.pop(key, None) is not None]
        if removed:
            self._submit(self.store.delete_many, POSTPROCESS_TABLE, removed)
            self.mark_changed()
        return len(removed)

    def prune_post_process(self, keep: Callable[[str, PostProcessEntry], bool]) -> int:
        with self._post_lock:
            removed = self._prune(self._post, keep)
        if removed:
            self._submit(self.store.delete_many, POSTPROCESS_TABLE, removed)
            self.mark_changed()
        return len(removed)

    def post_process_keys(self) -> Set[str]:
        with self._post_lock:
            return set(self._post)

    # ---------------- Retained items cache -----------------
    def get_retained(self, url: str) -> Optional[List[Item]]:
        with self._items_lock:
            items = self._items.get(url)
            return list(items) if items is not None else None

    def set_retained(self, url: str, items: Iterable[Item]) -> None:
        projected = [item.projection() for item in items]
        with self._items_lock:
            self._items[url] = projected
        self._submit(self.store.put, ITEMS_TABLE, url, [i.to_record() for i in projected])
        self.mark_changed()

    def delete_retained(self, urls: Iterable[str]) -> int:
        with self._items_lock:
            removed = [url for url in set(urls) if self._items.pop(url, None) is not None]
        if removed:
            self._submit(self.store.delete_many, ITEMS_TABLE, removed)
            self.mark_changed()
        return len(removed)

    def prune_retained(self, keep: Callable[[str, List[Item]], bool]) -> int:
        with self._items_lock:
            removed = self._prune(self._items, keep)
        if removed:
            self._submit(self.store.delete_many, ITEMS_TABLE, removed)
            self.mark_changed()
        return len(removed)

    def retained_snapshot(self) -> Dict[str, List[Item]]:
        with self._items_lock:
            return {url: list(items) for url, items in self._items.items()}

    # ---------------- Read state -----------------
    def is_read(self, link: str) -> bool:
        with self._read_lock:
            return link in self._read

    def read_state(self) -> Dict[str, int]:
        with self._read_lock:
            return dict(self._read)

    def mark_read(self, link: str, read_at: Optional[int] = None) -> None:
        self.mark_read_batch([link], read_at)

    def mark_read_batch(self, links: Iterable[str], read_at: Optional[int] = None) -> None:
        stamp = int(read_at if read_at is not None else self._clock())
        rows = {link: stamp for link in links if link}
        if not rows:
            return
        with self._read_lock:
            self._read.update(rows)
        self._submit(self.store.put_many, READ_STATE_TABLE, rows)
        self.mark_changed()

    def mark_unread(self, link: str) -> None:
        with self._read_lock:
            existed = self._read.pop(link, None) is not None
        if existed:
            self._submit(self.store.delete, READ_STATE_TABLE, link)
            self.mark_changed()

    def clear_read_state(self) -> None:
        with self._read_lock:
            self._read = {}
        self._submit(self.store.replace_table, READ_STATE_TABLE, {})
        self.mark_changed()

    def prune_read_state(self, keep: Callable[[str, int], bool]) -> int:
        with self._read_lock:
            removed = self._prune(self._read, keep)
        if removed:
            self._submit(self.store.delete_many, READ_STATE_TABLE, removed)
            self.mark_changed()
        return len(removed)
