from __future__ import annotations

import functools
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set

from ..errors import FetchError, SourceNotFoundError
from ..fetchers import ParsedFeed, RawItem, fetch_feed
from ..models import Config, FeedSnapshot, Item, Source
from ..processors.classify import ClassificationPipeline, should_filter
from ..processors.postprocess import PostProcessor
from ..storage.caches import CacheStore
from ..storage.gc import CacheCollector
from ..utils.logging import get_logger, update_prefix
from .icons import favicon_url, proxy_icon_url, resolve_icon
from .snapshots import SnapshotRegistry

logger = get_logger("fl.engine.updater")

Fetcher = Callable[[str], ParsedFeed]
NameCallback = Callable[[str, str], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def merge_retained(new_items: Sequence[Item], retained: Sequence[Item], cap: int) -> List[Item]:
    """New items first (deduplicated by link), then older retained items, up to ``cap``."""
    seen: Set[str] = set()
    merged: List[Item] = []
    for item in new_items:
        if item.link and item.link not in seen:
            seen.add(item.link)
            merged.append(item)
    for item in retained:
        if len(merged) >= cap:
            break
        if item.link and item.link not in seen:
            seen.add(item.link)
            merged.append(item)
    return merged[:cap]


def canonical_order(items: Sequence[Item]) -> List[Item]:
    """Newest first by reconciled timestamp; ties keep the feed's own order."""
    return sorted(items, key=lambda i: (-i.pub_date.timestamp() if i.pub_date else 0.0, i.original_index))


class FeedUpdater:
    """Fetch, reconcile, classify, merge and publish one source at a time.

    ``update`` blocks on the shared fetch gate, so at most ``gate`` updates
    run at once across all sources. Only a failed fetch raises; every later
    step degrades and logs instead of failing the call.
    """

    def __init__(
        self,
        config_provider: Callable[[], Config],
        caches: CacheStore,
        snapshots: SnapshotRegistry,
        *,
        pipeline: Optional[ClassificationPipeline] = None,
        post_processor: Optional[PostProcessor] = None,
        collector: Optional[CacheCollector] = None,
        fetcher: Optional[Fetcher] = None,
        fetch_gate: Optional[threading.Semaphore] = None,
        fetch_timeout: float = 30.0,
        on_name_discovered: Optional[NameCallback] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config_provider = config_provider
        self.caches = caches
        self.snapshots = snapshots
        self.pipeline = pipeline or ClassificationPipeline(caches)
        self.post_processor = post_processor or PostProcessor(caches)
        self.collector = collector
        self._fetch = fetcher or functools.partial(fetch_feed, timeout=fetch_timeout)
        self._gate = fetch_gate or threading.Semaphore(5)
        self._on_name_discovered = on_name_discovered
        self._clock = clock
        self._background = ThreadPoolExecutor(max_workers=2, thread_name_prefix="source-reconcile")
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    # ---------------- Public API -----------------
    def update(
        self,
        url: str,
        as_of: Optional[datetime] = None,
        *,
        is_manual: bool = False,
        force_reprocess: bool = False,
    ) -> bool:
        """Refresh one source. Returns True when a new snapshot was published.

        Raises ``FetchError`` when the feed cannot be fetched or parsed and
        ``SourceNotFoundError`` when ``url`` is not configured.
        """
        config = self._config_provider()
        source = config.source_by_url(url)
        if source is None:
            raise SourceNotFoundError(f"No configured source for {url}")
        as_of = as_of or self._clock()
        prefix = update_prefix(is_manual=is_manual, force_reprocess=force_reprocess)

        with self._gate:
            return self._update(source, config, as_of, prefix, is_manual, force_reprocess)

    def wait_background(self, timeout: Optional[float] = 10.0) -> None:
        """Block until queued per-source cache reconciliations have run."""
        with self._pending_lock:
            pending = list(self._pending)
        for future in pending:
            future.result(timeout)

    def close(self) -> None:
        self._background.shutdown(wait=True)

    # ---------------- Steps -----------------
    def _update(
        self,
        source: Source,
        config: Config,
        as_of: datetime,
        prefix: str,
        is_manual: bool,
        force_reprocess: bool,
    ) -> bool:
        url = source.url
        try:
            parsed = self._fetch(url)
        except FetchError as exc:
            logger.error("%s Fetch failed for %s: %s", prefix, url, exc)
            raise
        logger.info("%s Fetched %s (%s): %d entries", prefix, url, parsed.title or "untitled", len(parsed.items))

        if not source.name and parsed.title:
            self._adopt_name(url, parsed.title)

        raw_items = parsed.items
        if source.max_items > 0:
            raw_items = raw_items[: source.max_items]

        previous = self.snapshots.get(url)
        keep_display_time = False
        if previous is not None and raw_items and not force_reprocess:
            has_new, changed = self._detect_changes(raw_items, previous)
            if not changed:
                if is_manual:
                    logger.info("%s No changes for %s: same items in the same order", prefix, url)
                self.snapshots.settle_placeholder(url, as_of)
                return False
            # Reordering alone must not move the display time of pinned-timestamp sources
            keep_display_time = source.ignore_original_pub_date and not has_new

        items = self._reconcile_timestamps(raw_items, source, parsed.title, as_of, previous)
        icon = self._icon(source, parsed)

        passed: Dict[int, Item]
        if should_filter(source, config):
            logger.info("%s Classifying %d items of %s", prefix, len(items), url)
            outcome = self.pipeline.classify_and_filter(items, source, config)
            passed = {item.original_index: item for item in outcome.items}
        else:
            passed = {item.original_index: item for item in items}

        ordered = canonical_order(items)
        filtered = [passed[item.original_index] for item in ordered if item.original_index in passed]
        filtered_count = len(items) - len(filtered)

        if source.post_process_enabled:
            try:
                filtered = self.post_processor.process(filtered, source, config)
                logger.info("%s Post-processed %d items of %s", prefix, len(filtered), url)
            except Exception:  # noqa: BLE001 - keep the pre-post-process items
                logger.exception("%s Post-processing failed for %s", prefix, url)

        if source.retains_items:
            cap = source.cache_items or len(filtered)
            if cap > 0:
                before = len(filtered)
                filtered = self._merge(url, filtered, cap)
                logger.info("%s Merged retained items for %s: %d -> %d", prefix, url, before, len(filtered))

        last_updated = max((i.fetch_time for i in filtered if i.fetch_time), default=None)
        if last_updated is None:
            last_updated = as_of
            if keep_display_time and previous is not None and not previous.from_cache and previous.last_updated:
                last_updated = previous.last_updated

        snapshot = FeedSnapshot(
            url=url,
            title=parsed.title,
            icon=icon,
            items=tuple(filtered),
            all_links=tuple(item.link for item in ordered),
            source_links=tuple(item.link for item in raw_items),
            source_titles=tuple(item.title for item in raw_items),
            filtered_count=filtered_count,
            last_updated=last_updated,
            published_at=self._clock(),
        )
        replaced = self.snapshots.publish(snapshot)
        logger.info("%s Updated %s: %d items shown, %d filtered", prefix, url, len(filtered), filtered_count)

        self._schedule_reconcile(source, replaced, snapshot)
        return True

    @staticmethod
    def _detect_changes(raw_items: Sequence[RawItem], previous: FeedSnapshot) -> tuple[bool, bool]:
        """Return (has_new_links, changed) against the previous fetch."""
        old_links = set(previous.source_links)
        if any(item.link not in old_links for item in raw_items):
            return True, True
        if len(raw_items) != len(previous.source_links) or len(raw_items) != len(previous.source_titles):
            return False, True
        for item, link, title in zip(raw_items, previous.source_links, previous.source_titles):
            if item.link != link or item.title != title:
                return False, True
        return False, False

    def _reconcile_timestamps(
        self,
        raw_items: Sequence[RawItem],
        source: Source,
        feed_title: str,
        as_of: datetime,
        previous: Optional[FeedSnapshot],
    ) -> List[Item]:
        cached_pub: Dict[str, datetime] = {}
        cached_fetch: Dict[str, datetime] = {}
        known = list(previous.items) if previous is not None else []
        known.extend(self.caches.get_retained(source.url) or [])
        # Keyed by the pre-rewrite link, which is what the feed serves
        for item in known:
            key = item.cache_key
            if item.pub_date and key not in cached_pub:
                cached_pub[key] = item.pub_date
            if item.fetch_time and key not in cached_fetch:
                cached_fetch[key] = item.fetch_time

        items: List[Item] = []
        for idx, raw in enumerate(raw_items):
            if source.ranking_mode:
                pub_date = as_of - timedelta(seconds=idx)
            elif source.ignore_original_pub_date:
                pub_date = cached_pub.get(raw.link, as_of)
            else:
                pub_date = raw.published or raw.updated or cached_pub.get(raw.link, as_of)
            items.append(
                Item(
                    title=raw.title,
                    link=raw.link,
                    description=raw.description,
                    source=feed_title,
                    pub_date=pub_date,
                    fetch_time=cached_fetch.get(raw.link, as_of),
                    original_index=idx,
                )
            )
        return items

    def _icon(self, source: Source, parsed: ParsedFeed) -> str:
        try:
            return resolve_icon(source, parsed.image_url)
        except Exception:  # noqa: BLE001 - an icon never fails the update
            logger.exception("Icon resolution failed for %s", source.url)
            return proxy_icon_url(favicon_url(source.url))

    def _merge(self, url: str, filtered: List[Item], cap: int) -> List[Item]:
        try:
            merged = merge_retained(filtered, self.caches.get_retained(url) or [], cap)
            self.caches.set_retained(url, merged)
            return merged
        except Exception:  # noqa: BLE001 - fall back to the unmerged list
            logger.exception("Merging retained items failed for %s", url)
            return filtered

    def _adopt_name(self, url: str, title: str) -> None:
        if self._on_name_discovered is None:
            return
        try:
            self._on_name_discovered(url, title)
        except Exception:  # noqa: BLE001 - naming is best effort
            logger.exception("Saving discovered name %r for %s failed", title, url)

    def _schedule_reconcile(self, source: Source, old: Optional[FeedSnapshot], new: FeedSnapshot) -> None:
        if self.collector is None or old is None:
            return
        retained = self.caches.get_retained(source.url) or []
        try:
            future = self._background.submit(
                self.collector.reconcile_source,
                old,
                new,
                retained,
                post_process=source.post_process_enabled,
            )
        except RuntimeError:
            logger.warning("Updater is closed; skipping cache reconcile for %s", source.url)
            return
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._reconcile_done)

    def _reconcile_done(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        exc = future.exception()
        if exc is not None:
            logger.error("Cache reconcile failed: %s", exc)
