from __future__ import annotations

import json
import shlex
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..errors import AIResponseError, ScriptError
from ..models import AIConfig, Config, Item, PostProcessConfig, PostProcessEntry, Source
from ..storage.caches import CacheStore
from ..utils.logging import get_logger
from .ai import AIClient, create_ai_client
from .ai.parsing import parse_object_response
from .ai.retry import with_retries
from .normalize import parse_timestamp
from .script_filter import run_shell

logger = get_logger("fl.processors.postprocess")

DEFAULT_POSTPROCESS_PROMPT = (
    "You rewrite feed articles. You receive one article as a JSON object and reply with a JSON "
    "object containing any of the keys title, link, pubDate that should be replaced."
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def apply_entry(item: Item, entry: PostProcessEntry, settings: PostProcessConfig) -> Item:
    """Return a copy of ``item`` with the fields ``settings`` allows overridden."""
    updated = replace(item)
    if settings.modify_title and entry.title:
        updated.title = entry.title
    if settings.modify_link and entry.link and entry.link != item.link:
        updated.original_link = item.original_link or item.link
        updated.link = entry.link
    if settings.modify_pub_date and entry.pub_date:
        parsed = parse_timestamp(entry.pub_date)
        if parsed is not None:
            updated.pub_date = parsed
        else:
            logger.warning("Ignoring unparseable pubDate %r for %s", entry.pub_date, item.link)
    return updated


class PostProcessor:
    """Per-item rewrite of title, link and publish date by the AI backend or a script.

    Results are cached by the item's original link, so an article is only
    sent out once while it stays valid.
    """

    def __init__(
        self,
        caches: CacheStore,
        *,
        client_factory: Callable[[AIConfig], AIClient] = create_ai_client,
        shell: Callable[..., str] = run_shell,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.caches = caches
        self._client_factory = client_factory
        self._shell = shell
        self._clock = clock

    def process(self, items: Sequence[Item], source: Source, config: Config) -> List[Item]:
        settings = source.post_process
        if settings is None or not settings.enabled or not items:
            return list(items)

        client: Optional[AIClient] = None
        if settings.mode == "ai":
            try:
                client = self._client_factory(config.ai)
            except ValueError as exc:
                logger.error("Post-processing for %s needs the AI backend: %s", source.url, exc)
                return list(items)

        def _one(item: Item) -> Item:
            return self._process_item(item, settings, config.ai, client, source.url)

        workers = max(1, min(config.ai.concurrency, len(items)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="post-process") as pool:
            return list(pool.map(_one, items))

    def _process_item(
        self,
        item: Item,
        settings: PostProcessConfig,
        ai: AIConfig,
        client: Optional[AIClient],
        url: str,
    ) -> Item:
        key = item.cache_key
        entry = self.caches.get_post_process(key)
        if entry is None:
            try:
                reply = self._ask(item, settings, ai, client)
            except (AIResponseError, ScriptError) as exc:
                logger.warning("Post-processing %s from %s failed, keeping it: %s", item.link, url, exc)
                return item
            entry = PostProcessEntry(
                title=str(reply.get("title") or ""),
                link=str(reply.get("link") or ""),
                pub_date=str(reply.get("pubDate") or ""),
                processed_at=self._clock().isoformat(),
            )
            self.caches.set_post_process(key, entry)
        return apply_entry(item, entry, settings)

    def _ask(
        self,
        item: Item,
        settings: PostProcessConfig,
        ai: AIConfig,
        client: Optional[AIClient],
    ) -> Dict[str, Any]:
        payload = json.dumps(item.to_json(), ensure_ascii=False)
        if settings.mode == "script":
            script = settings.script_content or (shlex.quote(settings.script_path) if settings.script_path else "")
            if not script:
                raise ScriptError("postProcess.mode is 'script' but no script is configured")
            return parse_object_response(self._shell(script, payload, timeout=float(ai.timeout)))

        assert client is not None
        system = settings.prompt or DEFAULT_POSTPROCESS_PROMPT
        return with_retries(
            lambda: parse_object_response(client.complete(system, payload)),
            attempts=ai.retry_count,
            wait=ai.retry_wait,
            label="Post-processing",
        )
