from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple

from .article import Item


@dataclass(frozen=True, slots=True)
class FeedSnapshot:
    """Published state of one source. Replaced wholesale, never mutated."""

    url: str
    title: str
    icon: str = ""
    items: Tuple[Item, ...] = ()
    # Canonically ordered links of every item before filtering.
    all_links: Tuple[str, ...] = ()
    # Capped feed-order links and titles, compared on the next fetch.
    source_links: Tuple[str, ...] = ()
    source_titles: Tuple[str, ...] = ()
    filtered_count: int = 0
    last_updated: Optional[datetime] = None
    # True while the snapshot only holds items restored from the retained cache.
    from_cache: bool = False
    published_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def item_links(self) -> Tuple[str, ...]:
        return tuple(item.link for item in self.items)
