from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence

from ..errors import ScriptError
from ..models import AIConfig, Category, ClassifyStrategy, Config, Item, Source
from ..models.source import FILTERED_CATEGORY, KEEP_CATEGORY
from ..storage.caches import CacheStore
from ..utils.logging import get_logger
from .ai import AIClient, create_ai_client
from .ai.parsing import parse_batch_response
from .ai.retry import with_retries
from .keywords import keyword_category
from .normalize import clean_html_to_text, truncate_text
from .script_filter import apply_script_filter

logger = get_logger("fl.processors.classify")

DEFAULT_SYSTEM_PROMPT = (
    "You are a news article classifier. Assign every article the single category id that fits it best."
)
JSON_ONLY_SUFFIX = "\n\nYou must reply with strict JSON. Do not include markdown."

ClientFactory = Callable[[AIConfig], AIClient]


@dataclass(slots=True)
class ClassifyOutcome:
    """Items surviving the pipeline plus per-run counters."""

    items: List[Item] = field(default_factory=list)
    cache_hits: int = 0
    keyword_hits: int = 0
    classified: int = 0
    failed: int = 0
    dropped_by_keyword: int = 0
    dropped_by_category: int = 0
    dropped_by_script: int = 0
    script_error: Optional[str] = None


def should_filter(source: Source, config: Config) -> bool:
    """True when any pipeline stage is active for ``source``."""
    strategy = source.classify
    if strategy is None:
        return False
    if strategy.keyword_enabled or strategy.script_filter_enabled:
        return True
    return uses_ai(source, config)


def uses_ai(source: Source, config: Config) -> bool:
    strategy = source.classify
    return strategy is not None and strategy.ai_enabled and config.ai.available


def categories_for(source: Source, config: Config) -> List[Category]:
    """Taxonomy offered to the AI, restricted to the source's bound categories if any match."""
    categories = config.ai_categories()
    strategy = source.classify
    if strategy is None or not strategy.bound_categories:
        return categories
    bound = set(strategy.bound_categories)
    restricted = [c for c in categories if c.id in bound]
    if restricted:
        return restricted
    logger.warning("Bound categories of %s match no known category; using all categories", source.url)
    return categories


def build_item_content(item: Item, max_desc_length: int) -> str:
    content = f"Title: {item.title}\n"
    if item.description:
        desc = truncate_text(clean_html_to_text(item.description), max_desc_length)
        content += f"Content: {desc}"
    return content


def build_batch_prompt(
    batch: Dict[int, Item],
    categories: Sequence[Category],
    ai: AIConfig,
    strategy: Optional[ClassifyStrategy],
) -> tuple[str, str]:
    """Return (system, user) messages for one batch keyed by item index."""
    system = (strategy.custom_prompt if strategy and strategy.custom_prompt else ai.system_prompt) or DEFAULT_SYSTEM_PROMPT
    category_lines = "".join(f"- {c.id} ({c.name}): {c.description}\n" for c in categories)
    system = f"{system}{JSON_ONLY_SUFFIX}\n\nAvailable categories:\n{category_lines}"

    parts = [
        "Classify the following articles.\n",
        "Return a JSON object whose keys are the article ids (strings) "
        "and whose values are the best matching category id (string).\n",
        "Articles:\n\n",
    ]
    for idx in sorted(batch):
        parts.append(f"--- Article ID: {idx} ---\n")
        parts.append(build_item_content(batch[idx], ai.max_desc_length))
        parts.append("\n\n")
    return system, "".join(parts)


def apply_category_filter(items: List[Item], strategy: ClassifyStrategy) -> List[Item]:
    """Whitelist wins over blacklist; ``_keep`` items always pass."""
    whitelist = set(strategy.category_whitelist)
    blacklist = set(strategy.category_blacklist)
    if not whitelist and not blacklist:
        return items
    kept: List[Item] = []
    for item in items:
        if item.category == KEEP_CATEGORY:
            kept.append(item)
        elif whitelist:
            if item.category in whitelist:
                kept.append(item)
        elif item.category not in blacklist:
            kept.append(item)
    return kept


class ClassificationPipeline:
    """Cache, keyword, AI batch, category and script stages over one source's items.

    Each stage only sees items the earlier stages left unresolved. The output
    keeps the input's relative order; items are copied, never mutated.
    """

    def __init__(
        self,
        caches: CacheStore,
        *,
        client_factory: ClientFactory = create_ai_client,
        script_filter: Callable[..., List[Item]] = apply_script_filter,
    ) -> None:
        self.caches = caches
        self._client_factory = client_factory
        self._script_filter = script_filter

    def classify_and_filter(self, items: Sequence[Item], source: Source, config: Config) -> ClassifyOutcome:
        outcome = ClassifyOutcome()
        strategy = source.classify
        resolved = [replace(item) for item in items]
        pending: List[int] = []

        # 1. cache lookup, 2. keywords
        cached = self.caches.categories_for(item.link for item in resolved)
        for idx, item in enumerate(resolved):
            category = cached.get(item.link)
            if category:
                item.category = category
                outcome.cache_hits += 1
                continue
            if strategy is not None and strategy.uses_keywords:
                category = keyword_category(item, strategy)
                if category is not None:
                    item.category = category
                    outcome.keyword_hits += 1
                    continue
            pending.append(idx)

        if outcome.keyword_hits:
            logger.info("Keywords resolved %d items of %s", outcome.keyword_hits, source.url)

        # 3. AI batches
        if pending and uses_ai(source, config):
            categories = categories_for(source, config)
            if categories:
                self._classify_with_ai(resolved, pending, categories, source, config.ai, outcome)
            else:
                logger.error("No categories configured; skipping AI classification for %s", source.url)

        if outcome.classified or outcome.failed:
            logger.info(
                "Classified %s: new=%d, failed=%d, cache hits=%d",
                source.url,
                outcome.classified,
                outcome.failed,
                outcome.cache_hits,
            )

        survivors = [item for item in resolved if item.category != FILTERED_CATEGORY]
        outcome.dropped_by_keyword = len(resolved) - len(survivors)
        if outcome.dropped_by_keyword:
            logger.info("Keywords filtered %d items of %s", outcome.dropped_by_keyword, source.url)

        # 4. category allow/deny
        if strategy is not None:
            before = len(survivors)
            survivors = apply_category_filter(survivors, strategy)
            outcome.dropped_by_category = before - len(survivors)
            if outcome.dropped_by_category:
                logger.info("Category filter dropped %d items of %s", outcome.dropped_by_category, source.url)

        # 5. script filter, fail open
        if strategy is not None and strategy.uses_script:
            before = len(survivors)
            try:
                survivors = self._script_filter(
                    survivors, strategy.script_filter_content, timeout=float(config.ai.timeout)
                )
            except ScriptError as exc:
                outcome.script_error = str(exc)
                logger.warning("Script filter failed for %s, keeping items: %s", source.url, exc)
            else:
                outcome.dropped_by_script = before - len(survivors)
                if outcome.dropped_by_script:
                    logger.info("Script filter dropped %d of %d items of %s", outcome.dropped_by_script, before, source.url)

        outcome.items = survivors
        return outcome

    def _classify_with_ai(
        self,
        resolved: List[Item],
        pending: List[int],
        categories: List[Category],
        source: Source,
        ai: AIConfig,
        outcome: ClassifyOutcome,
    ) -> None:
        try:
            client = self._client_factory(ai)
        except ValueError as exc:
            logger.error("Cannot create AI client for %s: %s", source.url, exc)
            outcome.failed += len(pending)
            return

        batch_size = max(1, ai.batch_size)
        batches = [pending[i : i + batch_size] for i in range(0, len(pending), batch_size)]
        lock = threading.Lock()

        def _run(indices: List[int]) -> None:
            batch = {idx: resolved[idx] for idx in indices}
            system, user = build_batch_prompt(batch, categories, ai, source.classify)
            try:
                results = with_retries(
                    lambda: parse_batch_response(client.complete(system, user, max_tokens=ai.max_tokens * 2)),
                    attempts=ai.retry_count,
                    wait=ai.retry_wait,
                    label=f"Batch classification for {source.url}",
                )
            except Exception as exc:  # noqa: BLE001 - a failed batch leaves its items unclassified
                logger.error("Batch of %d items for %s failed: %s", len(indices), source.url, exc)
                with lock:
                    outcome.failed += len(indices)
                return

            learned: Dict[str, str] = {}
            with lock:
                for idx in indices:
                    category = results.get(str(idx))
                    if category is None:
                        outcome.failed += 1
                        continue
                    resolved[idx].category = category
                    outcome.classified += 1
                    learned[resolved[idx].link] = category
                    if category and category not in (KEEP_CATEGORY, FILTERED_CATEGORY):
                        logger.debug("Classified %r as %s", resolved[idx].title, category)
            self.caches.set_categories(learned)

        workers = max(1, ai.concurrency)
        with ThreadPoolExecutor(max_workers=min(workers, len(batches)), thread_name_prefix="ai-batch") as pool:
            for future in [pool.submit(_run, indices) for indices in batches]:
                future.result()
