from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def _from_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


@dataclass(slots=True)
class Item:
    title: str
    link: str
    description: str = ""
    source: str = ""
    pub_date: Optional[datetime] = None
    # First time this link was observed; drives the display "last updated".
    fetch_time: Optional[datetime] = None
    original_index: int = 0
    category: str = ""
    # Pre-rewrite link when post-processing replaced ``link``.
    original_link: str = ""

    @property
    def cache_key(self) -> str:
        return self.original_link or self.link

    def projection(self) -> "Item":
        """Minimal copy kept in the retained-items cache (no description/source)."""
        return Item(
            title=self.title,
            link=self.link,
            original_link=self.original_link,
            pub_date=self.pub_date,
            fetch_time=self.fetch_time,
            category=self.category,
        )

    def to_json(self) -> Dict[str, Any]:
        """Shape handed to filter and post-process scripts."""
        return {
            "title": self.title,
            "link": self.link,
            "description": self.description,
            "source": self.source,
            "pubDate": _iso(self.pub_date),
            "category": self.category,
        }

    def to_record(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "link": self.link,
            "originalLink": self.original_link,
            "pubDate": _iso(self.pub_date),
            "fetchTime": _iso(self.fetch_time),
            "category": self.category,
        }

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "Item":
        return cls(
            title=str(row.get("title") or ""),
            link=str(row.get("link") or ""),
            original_link=str(row.get("originalLink") or ""),
            pub_date=_from_iso(row.get("pubDate")),
            fetch_time=_from_iso(row.get("fetchTime")),
            category=str(row.get("category") or ""),
        )


@dataclass(slots=True)
class PostProcessEntry:
    """Cached post-processing result for one original link."""

    title: str = ""
    link: str = ""
    pub_date: str = ""
    processed_at: str = ""

    def to_record(self) -> Dict[str, Any]:
        return {"title": self.title, "link": self.link, "pubDate": self.pub_date, "processedAt": self.processed_at}

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "PostProcessEntry":
        return cls(
            title=str(row.get("title") or ""),
            link=str(row.get("link") or ""),
            pub_date=str(row.get("pubDate") or ""),
            processed_at=str(row.get("processedAt") or ""),
        )
