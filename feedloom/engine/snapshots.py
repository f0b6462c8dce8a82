from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..models import FeedSnapshot, Item


class SnapshotRegistry:
    """Source URL -> published ``FeedSnapshot``.

    Snapshots are immutable; every change swaps the whole entry under the
    lock, so readers always see either the old or the new state.
    """

    def __init__(self) -> None:
        self._snapshots: Dict[str, FeedSnapshot] = {}
        self._lock = threading.RLock()

    def get(self, url: str) -> Optional[FeedSnapshot]:
        with self._lock:
            return self._snapshots.get(url)

    def all(self) -> Dict[str, FeedSnapshot]:
        with self._lock:
            return dict(self._snapshots)

    def __contains__(self, url: object) -> bool:
        with self._lock:
            return url in self._snapshots

    def __len__(self) -> int:
        with self._lock:
            return len(self._snapshots)

    def publish(self, snapshot: FeedSnapshot) -> Optional[FeedSnapshot]:
        """Replace the snapshot for ``snapshot.url``; return the one it replaced."""
        with self._lock:
            previous = self._snapshots.get(snapshot.url)
            self._snapshots[snapshot.url] = snapshot
            return previous

    def seed_placeholder(self, url: str, items: List[Item], title: str = "") -> bool:
        """Publish retained items as a cold-start snapshot unless one already exists."""
        links = tuple(item.link for item in items)
        placeholder = FeedSnapshot(
            url=url,
            title=title or (items[0].source if items else ""),
            items=tuple(items),
            all_links=links,
            source_links=links,
            source_titles=tuple(item.title for item in items),
            from_cache=True,
        )
        with self._lock:
            if url in self._snapshots:
                return False
            self._snapshots[url] = placeholder
            return True

    def settle_placeholder(self, url: str, when: datetime) -> bool:
        """Give a cold-start snapshot a real display time once its source answered."""
        with self._lock:
            snapshot = self._snapshots.get(url)
            if snapshot is None or not snapshot.from_cache:
                return False
            self._snapshots[url] = replace(snapshot, last_updated=when, from_cache=False)
            return True

    def discard(self, urls: Iterable[str]) -> int:
        with self._lock:
            return sum(1 for url in urls if self._snapshots.pop(url, None) is not None)
