import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import pytest

from feedloom.engine import FeedUpdater, SnapshotRegistry
from feedloom.errors import FetchError
from feedloom.fetchers import ParsedFeed, RawItem
from feedloom.models import AIConfig, Category, ClassifyStrategy, Config, Source
from feedloom.processors import ClassificationPipeline, PostProcessor
from feedloom.processors.ai import AIClient
from feedloom.storage import CacheCollector, CacheStore, MemoryStore

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll until ``predicate`` holds; background writes are only eventually visible."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def raw(link: str, title: Optional[str] = None, *, minutes_ago: Optional[int] = None, description: str = "") -> RawItem:
    published = BASE_TIME - timedelta(minutes=minutes_ago) if minutes_ago is not None else None
    return RawItem(title=title or link, link=link, description=description, published=published, updated=None)


class PeakCounter:
    """Records the highest number of callers inside ``track`` at once."""

    def __init__(self, hold: float = 0.05) -> None:
        self.hold = hold
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    @contextmanager
    def track(self):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(self.hold)
            yield
        finally:
            with self._lock:
                self.active -= 1


class FakeFetcher:
    """Serves canned ParsedFeed documents by URL; raises FetchError for unknown URLs."""

    def __init__(self) -> None:
        self.feeds: Dict[str, ParsedFeed] = {}
        self.calls: List[str] = []
        self.failures: Dict[str, int] = {}
        self.counter: Optional[PeakCounter] = None

    def set(self, url: str, items: List[RawItem], title: str = "Example Feed", image_url: str = "") -> None:
        self.feeds[url] = ParsedFeed(title=title, image_url=image_url, items=list(items))

    def __call__(self, url: str) -> ParsedFeed:
        self.calls.append(url)
        if self.counter is not None:
            with self.counter.track():
                return self._serve(url)
        return self._serve(url)

    def _serve(self, url: str) -> ParsedFeed:
        if self.failures.get(url, 0) > 0:
            self.failures[url] -= 1
            raise FetchError(url, "connection reset")
        if url not in self.feeds:
            raise FetchError(url, "404 Not Found")
        return self.feeds[url]


class FakeAIClient(AIClient):
    """Answers every request through ``reply(system, user)`` and records the calls."""

    def __init__(self, reply: Callable[[str, str], str]) -> None:
        self.reply = reply
        self.calls: List[tuple] = []

    def complete(self, system, user, *, json_mode=True, max_tokens=None):
        self.calls.append((system, user))
        return self.reply(system, user)


class ConfigHolder:
    def __init__(self, config: Config) -> None:
        self.config = config

    def __call__(self) -> Config:
        return self.config


def make_config(*sources: Source, ai: Optional[AIConfig] = None, categories=None, **kwargs) -> Config:
    return Config(
        sources=list(sources),
        ai=ai or AIConfig(),
        categories=categories if categories is not None else [],
        **kwargs,
    )


def ai_config(**kwargs) -> AIConfig:
    defaults = {"enabled": True, "api_key": "sk-test", "retry_wait": 0.0, "retry_count": 1}
    defaults.update(kwargs)
    return AIConfig(**defaults)


CATEGORIES = [
    Category(id="tech", name="Technology", description="Software and hardware"),
    Category(id="sports", name="Sports", description="Games and athletes"),
    Category(id="ads", name="Advertising", description="Promotions"),
]


def ai_source(url: str = "https://example.com/feed.xml", **classify) -> Source:
    return Source(url=url, classify=ClassifyStrategy(ai_enabled=True, **classify))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def caches():
    store = CacheStore(MemoryStore())
    yield store
    store.wait_persisted()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def build_updater(caches, fetcher):
    """Factory wiring a FeedUpdater over in-memory caches and the fake fetcher."""
    created = []

    def _build(config: Config, *, client: Optional[AIClient] = None, clock=lambda: BASE_TIME, **kwargs):
        holder = ConfigHolder(config)
        snapshots = SnapshotRegistry()
        factory = (lambda _cfg: client) if client is not None else None
        pipeline = ClassificationPipeline(caches, **({"client_factory": factory} if factory else {}))
        post = PostProcessor(caches, **({"client_factory": factory} if factory else {}))
        collector = CacheCollector(caches, holder, snapshots.all)
        updater = FeedUpdater(
            holder,
            caches,
            snapshots,
            pipeline=pipeline,
            post_processor=post,
            collector=collector,
            fetcher=fetcher,
            clock=clock,
            **kwargs,
        )
        created.append(updater)
        return updater, holder

    yield _build
    for updater in created:
        updater.close()
