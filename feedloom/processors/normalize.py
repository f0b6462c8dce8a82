from __future__ import annotations

import html
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

from bs4 import BeautifulSoup

from ..utils.logging import get_logger

_whitespace_re = re.compile(r"\s+")

_logger = get_logger("fl.processors.normalize")


def clean_html_to_text(raw_html: str | None) -> str:
    """Clean HTML to normalized plain text.

    - Strip tags
    - Unescape HTML entities
    - Collapse whitespace
    """
    if not raw_html:
        return ""

    soup = BeautifulSoup(raw_html, "html.parser")
    text = soup.get_text(" ")
    text = html.unescape(text)
    text = _whitespace_re.sub(" ", text)
    return text.strip()


def truncate_text(text: str, max_chars: int) -> str:
    """Cut ``text`` to ``max_chars`` characters, marking the cut with an ellipsis."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def contains_keyword(text: str, keyword: str) -> bool:
    """Case-insensitive substring match."""
    return keyword.casefold() in text.casefold()


def parse_timestamp(value: str | datetime | None) -> Optional[datetime]:
    """Parse an ISO 8601 or RFC 822 timestamp into an aware UTC datetime.

    Naive values are taken as UTC. Returns None when nothing parses.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = parsedate_to_datetime(text)
            except (TypeError, ValueError, IndexError):
                _logger.debug("Unparseable timestamp %r", text)
                return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
