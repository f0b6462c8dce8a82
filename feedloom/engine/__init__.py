"""Feed update engine: snapshot registry, icon resolution and the per-source updater."""

from .icons import favicon_url, proxy_icon_url, resolve_icon
from .snapshots import SnapshotRegistry
from .updater import FeedUpdater, canonical_order, merge_retained

__all__ = [
    "favicon_url",
    "proxy_icon_url",
    "resolve_icon",
    "SnapshotRegistry",
    "FeedUpdater",
    "canonical_order",
    "merge_retained",
]
