"""Remote feed fetching and parsing."""

from .rss import ParsedFeed, RawItem, fetch_feed

__all__ = ["ParsedFeed", "RawItem", "fetch_feed"]
