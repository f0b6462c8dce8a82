import json
import re

from conftest import CATEGORIES, FakeAIClient, PeakCounter, ai_config, ai_source, make_config

from feedloom.errors import AIResponseError, ScriptError
from feedloom.models import ClassifyStrategy, Item, Source
from feedloom.models.source import KEEP_CATEGORY
from feedloom.processors.classify import (
    ClassificationPipeline,
    apply_category_filter,
    build_batch_prompt,
    categories_for,
    should_filter,
)
from feedloom.storage import CacheStore, MemoryStore

_article_id_re = re.compile(r"Article ID: (\d+)")


def items(*titles):
    return [Item(title=t, link=f"https://example.com/{i}", description=f"About {t}") for i, t in enumerate(titles)]


def answer_all(category):
    """Reply that assigns ``category`` to every article id found in the prompt."""

    def _reply(system, user):
        return json.dumps({str(idx): category for idx in _article_id_re.findall(user)})

    return _reply


def pipeline_with(client, **kwargs):
    caches = CacheStore(MemoryStore())
    return ClassificationPipeline(caches, client_factory=lambda _cfg: client, **kwargs), caches


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestShouldFilter:
    def test_inactive_without_strategy(self):
        assert not should_filter(Source(url="https://a.example/f"), make_config())

    def test_ai_requires_available_backend(self):
        source = ai_source()
        assert not should_filter(source, make_config(source))
        assert should_filter(source, make_config(source, ai=ai_config()))

    def test_keywords_or_script_activate(self):
        keyword = Source(url="https://a.example/f", classify=ClassifyStrategy(keyword_enabled=True))
        script = Source(url="https://b.example/f", classify=ClassifyStrategy(script_filter_enabled=True))
        assert should_filter(keyword, make_config())
        assert should_filter(script, make_config())


class TestCategoriesFor:
    def test_bound_categories_restrict_taxonomy(self):
        source = ai_source(bound_categories=["tech"])
        config = make_config(source, ai=ai_config(), categories=CATEGORIES)
        assert [c.id for c in categories_for(source, config)] == ["tech"]

    def test_unknown_bound_categories_fall_back_to_all(self):
        source = ai_source(bound_categories=["cooking"])
        config = make_config(source, ai=ai_config(), categories=CATEGORIES)
        assert len(categories_for(source, config)) == 3


class TestBatchPrompt:
    def test_prompt_lists_categories_and_articles(self):
        batch = {3: Item(title="GPU prices", link="x", description="<p>Cheaper <b>cards</b></p>")}
        system, user = build_batch_prompt(batch, CATEGORIES, ai_config(), None)
        assert "- tech (Technology): Software and hardware" in system
        assert "strict JSON" in system
        assert "--- Article ID: 3 ---" in user
        assert "Content: Cheaper cards" in user

    def test_custom_prompt_overrides_global(self):
        strategy = ClassifyStrategy(ai_enabled=True, custom_prompt="Sort gadgets.")
        system, _ = build_batch_prompt({0: Item(title="a", link="a")}, CATEGORIES, ai_config(system_prompt="G"), strategy)
        assert system.startswith("Sort gadgets.")


class TestCategoryFilter:
    def test_whitelist_wins_over_blacklist(self):
        strategy = ClassifyStrategy(category_whitelist=["tech"], category_blacklist=["tech", "ads"])
        rows = [Item(title="a", link="a", category="tech"), Item(title="b", link="b", category="sports")]
        assert [i.link for i in apply_category_filter(rows, strategy)] == ["a"]

    def test_blacklist_and_keep_bypass(self):
        strategy = ClassifyStrategy(category_blacklist=["ads"])
        rows = [
            Item(title="a", link="a", category="ads"),
            Item(title="b", link="b", category=KEEP_CATEGORY),
            Item(title="c", link="c", category=""),
        ]
        assert [i.link for i in apply_category_filter(rows, strategy)] == ["b", "c"]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TestPipeline:
    def test_missing_indices_count_as_failed(self):
        client = FakeAIClient(lambda s, u: '{"results": {"0": "tech", "1": "sports", "2": "ads"}}')
        pipeline, caches = pipeline_with(client)
        source = ai_source()
        config = make_config(source, ai=ai_config(batch_size=5), categories=CATEGORIES)

        outcome = pipeline.classify_and_filter(items("a", "b", "c", "d", "e"), source, config)

        assert outcome.classified == 3
        assert outcome.failed == 2
        assert [i.category for i in outcome.items] == ["tech", "sports", "ads", "", ""]
        assert len(client.calls) == 1
        assert caches.get_category("https://example.com/0") == "tech"
        assert caches.get_category("https://example.com/3") is None

    def test_unclassified_items_only_dropped_by_whitelist(self):
        client = FakeAIClient(lambda s, u: '{"0": "tech"}')
        pipeline, _ = pipeline_with(client)
        source = ai_source(category_whitelist=["tech"])
        config = make_config(source, ai=ai_config(), categories=CATEGORIES)

        outcome = pipeline.classify_and_filter(items("a", "b"), source, config)

        assert [i.link for i in outcome.items] == ["https://example.com/0"]
        assert outcome.dropped_by_category == 1

    def test_cache_hits_skip_the_backend(self):
        client = FakeAIClient(answer_all("sports"))
        pipeline, caches = pipeline_with(client)
        caches.set_categories({"https://example.com/0": "tech", "https://example.com/1": "tech"})
        source = ai_source()
        config = make_config(source, ai=ai_config(), categories=CATEGORIES)

        outcome = pipeline.classify_and_filter(items("a", "b"), source, config)

        assert outcome.cache_hits == 2
        assert client.calls == []
        assert [i.category for i in outcome.items] == ["tech", "tech"]

    def test_exhausted_retries_fail_open(self):
        def _broken(system, user):
            raise AIResponseError("HTTP 503")

        client = FakeAIClient(_broken)
        pipeline, _ = pipeline_with(client)
        source = ai_source(category_blacklist=["ads"])
        config = make_config(source, ai=ai_config(retry_count=2), categories=CATEGORIES)

        outcome = pipeline.classify_and_filter(items("a", "b", "c"), source, config)

        assert outcome.failed == 3
        assert len(outcome.items) == 3
        assert len(client.calls) == 2

    def test_batches_are_split_and_indices_stay_global(self):
        client = FakeAIClient(answer_all("tech"))
        pipeline, _ = pipeline_with(client)
        source = ai_source()
        config = make_config(source, ai=ai_config(batch_size=2, concurrency=1), categories=CATEGORIES)

        outcome = pipeline.classify_and_filter(items("a", "b", "c", "d", "e"), source, config)

        assert outcome.classified == 5
        assert len(client.calls) == 3
        ids = sorted(int(i) for _, user in client.calls for i in _article_id_re.findall(user))
        assert ids == [0, 1, 2, 3, 4]

    def test_batches_never_exceed_ai_concurrency(self):
        counter = PeakCounter()
        answer = answer_all("tech")

        def _reply(system, user):
            with counter.track():
                return answer(system, user)

        client = FakeAIClient(_reply)
        pipeline, _ = pipeline_with(client)
        source = ai_source()
        config = make_config(source, ai=ai_config(batch_size=1, concurrency=2), categories=CATEGORIES)

        outcome = pipeline.classify_and_filter(items("a", "b", "c", "d", "e", "f"), source, config)

        assert outcome.classified == 6
        assert len(client.calls) == 6
        assert 1 <= counter.peak <= 2

    def test_keywords_resolve_before_ai(self):
        client = FakeAIClient(answer_all("tech"))
        pipeline, _ = pipeline_with(client)
        source = ai_source(keyword_enabled=True, filter_keywords=["广告"], keep_keywords=["开源"])
        config = make_config(source, ai=ai_config(), categories=CATEGORIES)

        outcome = pipeline.classify_and_filter(items("开源项目的广告", "限时广告", "新闻"), source, config)

        assert [i.category for i in outcome.items] == [KEEP_CATEGORY, "tech"]
        assert outcome.keyword_hits == 2
        assert outcome.dropped_by_keyword == 1
        assert "Article ID: 2" in client.calls[0][1]
        assert "Article ID: 0" not in client.calls[0][1]

    def test_input_items_are_not_mutated(self):
        client = FakeAIClient(answer_all("tech"))
        pipeline, _ = pipeline_with(client)
        source = ai_source()
        original = items("a")
        pipeline.classify_and_filter(original, source, make_config(source, ai=ai_config(), categories=CATEGORIES))
        assert original[0].category == ""

    def test_no_categories_skips_ai_only(self):
        client = FakeAIClient(answer_all("tech"))
        pipeline, _ = pipeline_with(client)
        source = ai_source(keyword_enabled=True, filter_keywords=["spam"])
        config = make_config(source, ai=ai_config(), categories=[])

        outcome = pipeline.classify_and_filter(items("spam offer", "real news"), source, config)

        assert client.calls == []
        assert [i.title for i in outcome.items] == ["real news"]

    def test_script_failure_keeps_items(self):
        def _failing_script(rows, script, *, timeout):
            raise ScriptError("script exited with 2")

        pipeline, _ = pipeline_with(None, script_filter=_failing_script)
        source = Source(
            url="https://a.example/f",
            classify=ClassifyStrategy(script_filter_enabled=True, script_filter_content="exit 2"),
        )
        outcome = pipeline.classify_and_filter(items("a", "b"), source, make_config(source))

        assert len(outcome.items) == 2
        assert outcome.script_error == "script exited with 2"

    def test_script_filter_runs_last(self):
        seen = []

        def _keep_first(rows, script, *, timeout):
            seen.extend(r.title for r in rows)
            return rows[:1]

        pipeline, _ = pipeline_with(None, script_filter=_keep_first)
        source = Source(
            url="https://a.example/f",
            classify=ClassifyStrategy(
                keyword_enabled=True,
                filter_keywords=["drop"],
                script_filter_enabled=True,
                script_filter_content="head -c 0",
            ),
        )
        outcome = pipeline.classify_and_filter(items("drop me", "b", "c"), source, make_config(source))

        assert seen == ["b", "c"]
        assert [i.title for i in outcome.items] == ["b"]
        assert outcome.dropped_by_script == 1
