from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import feedparser
import requests

from ..errors import FetchError
from ..utils.logging import get_logger

logger = get_logger("fl.fetchers.rss")


@dataclass(slots=True)
class RawItem:
    title: str
    link: str
    description: str
    published: Optional[datetime]
    updated: Optional[datetime]


@dataclass(slots=True)
class ParsedFeed:
    title: str
    image_url: str = ""
    items: List[RawItem] = field(default_factory=list)


_DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/127.0.0.0 Safari/537.36"
    ),
    "Accept": "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8",
}


def _parse_struct_time(entry: dict, key: str) -> Optional[datetime]:
    # feedparser normalizes parsed dates to UTC struct_time
    tm = entry.get(key)
    if not tm:
        return None
    try:
        return datetime(*tm[:6], tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None


def _entry_description(entry: dict) -> str:
    summary = entry.get("summary")
    if summary:
        return str(summary)
    contents = entry.get("content")
    if contents and isinstance(contents, list):
        return str(contents[0].get("value") or "")
    return ""


def _feed_image(parsed) -> str:
    feed = getattr(parsed, "feed", {}) or {}
    image = feed.get("image") or {}
    href = image.get("href") or image.get("url") if isinstance(image, dict) else None
    return str(href or feed.get("logo") or "")


def parse_feed_document(url: str, content: bytes) -> ParsedFeed:
    """Parse an RSS/Atom document into a title and an ordered item list."""
    parsed = feedparser.parse(content)
    entries = getattr(parsed, "entries", []) or []
    feed_meta = getattr(parsed, "feed", {}) or {}

    if getattr(parsed, "bozo", False):
        # feedparser sets bozo on malformed input but may still recover entries
        if not entries and not feed_meta.get("title"):
            raise FetchError(url, f"unparseable feed: {getattr(parsed, 'bozo_exception', 'unknown error')}")
        logger.debug("Feed 'bozo' flagged for %s: %s", url, getattr(parsed, "bozo_exception", None))

    items: List[RawItem] = []
    for entry in entries:
        items.append(
            RawItem(
                title=str(entry.get("title") or ""),
                link=str(entry.get("link") or ""),
                description=_entry_description(entry),
                published=_parse_struct_time(entry, "published_parsed"),
                updated=_parse_struct_time(entry, "updated_parsed"),
            )
        )
    return ParsedFeed(title=str(feed_meta.get("title") or ""), image_url=_feed_image(parsed), items=items)


def fetch_feed(url: str, *, timeout: float = 30) -> ParsedFeed:
    """Download and parse one feed.

    The request goes through ``requests`` for consistent timeouts and headers;
    ``feedparser`` handles the document formats. Any network or parse failure
    surfaces as ``FetchError``.
    """
    logger.debug("Fetching feed %s", url)
    try:
        resp = requests.get(url, headers=_DEFAULT_HEADERS, timeout=timeout)
        if resp.status_code >= 400:
            logger.warning("Feed fetch failed (%s): %s", resp.status_code, url)
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise FetchError(url, str(exc)) from exc

    parsed = parse_feed_document(url, resp.content)
    logger.debug("Fetched %d entries from %s", len(parsed.items), url)
    return parsed
