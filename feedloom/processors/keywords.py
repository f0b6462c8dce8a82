from __future__ import annotations

from typing import Optional

from ..models import ClassifyStrategy, Item
from ..models.source import FILTERED_CATEGORY, KEEP_CATEGORY
from .normalize import contains_keyword


def keyword_category(item: Item, strategy: ClassifyStrategy) -> Optional[str]:
    """Resolve an item by keywords alone, or return None to leave it open.

    Keep keywords are checked first and win over everything else. In
    whitelist mode anything without a keep match is filtered; otherwise a
    filter keyword match filters the item.
    """
    text = f"{item.title}\n{item.description}"
    if any(contains_keyword(text, kw) for kw in strategy.keep_keywords):
        return KEEP_CATEGORY
    if strategy.whitelist_mode:
        return FILTERED_CATEGORY
    if strategy.keyword_enabled and any(contains_keyword(text, kw) for kw in strategy.filter_keywords):
        return FILTERED_CATEGORY
    return None
