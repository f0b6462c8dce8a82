from __future__ import annotations

from typing import Dict, List, Tuple

from ..models import Config, Source

# Source fields whose change alters what gets fetched, classified or cached.
CACHE_AFFECTING_FIELDS: Tuple[str, ...] = (
    "max_items",
    "cache_items",
    "ignore_original_pub_date",
    "ranking_mode",
    "classify",
    "post_process",
)


def source_changed(old: Source, new: Source) -> bool:
    return any(getattr(old, name) != getattr(new, name) for name in CACHE_AFFECTING_FIELDS)


def affected_sources(old: Config, new: Config) -> List[str]:
    """URLs in ``new`` that are new or differ from ``old`` on a cache-affecting field.

    Display-only edits (name, icon, refresh count) do not count.
    """
    previous: Dict[str, Source] = {s.url: s for s in old.sources if s.url}
    affected: List[str] = []
    for source in new.sources:
        if not source.url:
            continue
        before = previous.get(source.url)
        if before is None or source_changed(before, source):
            affected.append(source.url)
    return affected
