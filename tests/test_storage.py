import json
from datetime import datetime, timezone

from conftest import wait_for

from feedloom.models import Item, PostProcessEntry
from feedloom.storage import (
    CLASSIFY_TABLE,
    ITEMS_TABLE,
    POSTPROCESS_TABLE,
    READ_STATE_TABLE,
    CacheStore,
    JsonFileStore,
    MemoryStore,
)

PUB = datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Durable stores
# ---------------------------------------------------------------------------

class TestJsonFileStore:
    def test_rows_survive_a_new_instance(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.put(CLASSIFY_TABLE, "https://example.com/1", "tech")
        store.put_many(CLASSIFY_TABLE, {"https://example.com/2": "ads", "https://example.com/3": "sports"})
        store.delete(CLASSIFY_TABLE, "https://example.com/3")

        reopened = JsonFileStore(tmp_path)
        assert reopened.load_table(CLASSIFY_TABLE) == {"https://example.com/1": "tech", "https://example.com/2": "ads"}
        assert not list(tmp_path.glob("*.tmp"))

    def test_corrupt_file_starts_empty(self, tmp_path):
        (tmp_path / f"{READ_STATE_TABLE}.json").write_text("{broken", encoding="utf-8")
        assert JsonFileStore(tmp_path).load_table(READ_STATE_TABLE) == {}

    def test_replace_table(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.put(READ_STATE_TABLE, "a", 1)
        store.replace_table(READ_STATE_TABLE, {"b": 2})
        saved = json.loads((tmp_path / f"{READ_STATE_TABLE}.json").read_text(encoding="utf-8"))
        assert saved == {"b": 2}

    def test_loaded_tables_are_copies(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.put(ITEMS_TABLE, "u", [{"link": "a"}])
        store.load_table(ITEMS_TABLE)["u"].append({"link": "b"})
        assert store.load_table(ITEMS_TABLE) == {"u": [{"link": "a"}]}


# ---------------------------------------------------------------------------
# Cache store
# ---------------------------------------------------------------------------

class TestCacheStore:
    def test_writes_reach_the_store_eventually(self):
        store = MemoryStore()
        caches = CacheStore(store)
        caches.set_category("https://example.com/1", "tech")
        caches.set_post_process("https://example.com/1", PostProcessEntry(title="T"))
        caches.mark_read("https://example.com/1", read_at=100)

        assert caches.get_category("https://example.com/1") == "tech"
        assert wait_for(lambda: store.load_table(CLASSIFY_TABLE) == {"https://example.com/1": "tech"})
        assert wait_for(lambda: store.load_table(READ_STATE_TABLE) == {"https://example.com/1": 100})
        assert wait_for(lambda: store.load_table(POSTPROCESS_TABLE)["https://example.com/1"]["title"] == "T")

    def test_retained_items_keep_only_the_projection(self):
        caches = CacheStore(MemoryStore())
        item = Item(title="A", link="a", description="long body", source="Feed", pub_date=PUB, category="tech")
        caches.set_retained("https://example.com/feed", [item])
        stored = caches.get_retained("https://example.com/feed")[0]
        assert stored.description == ""
        assert stored.source == ""
        assert stored.pub_date == PUB
        assert stored.category == "tech"

    def test_load_restores_categories_on_retained_items(self):
        store = MemoryStore()
        store.put(CLASSIFY_TABLE, "b", "sports")
        store.put(ITEMS_TABLE, "https://example.com/feed", [
            {"title": "A", "link": "a", "pubDate": PUB.isoformat(), "category": "tech"},
            {"title": "B", "link": "b", "pubDate": ""},
            "garbage",
        ])
        store.put(READ_STATE_TABLE, "a", "not-a-number")

        caches = CacheStore(store)
        caches.load()

        restored = caches.get_retained("https://example.com/feed")
        assert [(i.link, i.category) for i in restored] == [("a", "tech"), ("b", "sports")]
        assert restored[0].pub_date == PUB
        assert caches.read_state() == {}

    def test_flush_only_when_dirty(self):
        store = MemoryStore()
        caches = CacheStore(store)
        assert caches.flush_if_dirty() is False
        caches.mark_read_batch(["a", "b"], read_at=5)
        assert caches.flush_if_dirty() is True
        assert store.load_table(READ_STATE_TABLE) == {"a": 5, "b": 5}
        assert caches.flush_if_dirty() is False

    def test_prune_and_delete(self):
        caches = CacheStore(MemoryStore())
        caches.set_categories({"a": "tech", "b": "ads", "c": "tech"})
        assert caches.prune_categories(lambda link, category: category == "tech") == 1
        assert caches.delete_categories(["a", "missing"]) == 1
        assert caches.classification_links() == {"c"}

    def test_mark_unread_and_clear(self):
        caches = CacheStore(MemoryStore(), clock=lambda: 42.0)
        caches.mark_read("a")
        caches.mark_read("b")
        assert caches.read_state() == {"a": 42, "b": 42}
        caches.mark_unread("a")
        assert not caches.is_read("a")
        caches.clear_read_state()
        assert caches.read_state() == {}

    def test_shutdown_saves_everything(self, tmp_path):
        caches = CacheStore(JsonFileStore(tmp_path))
        caches.set_categories({"a": "tech"})
        caches.set_retained("https://example.com/feed", [Item(title="A", link="a")])
        caches.shutdown()

        reopened = CacheStore(JsonFileStore(tmp_path))
        reopened.load()
        assert reopened.get_category("a") == "tech"
        assert [i.link for i in reopened.get_retained("https://example.com/feed")] == ["a"]

    def test_delete_retained(self):
        caches = CacheStore(MemoryStore())
        caches.set_retained("u1", [Item(title="a", link="a")])
        caches.set_retained("u2", [Item(title="b", link="b")])
        assert caches.delete_retained(["u1", "missing"]) == 1
        assert set(caches.retained_snapshot()) == {"u2"}

    def test_writes_after_shutdown_stay_in_memory(self):
        caches = CacheStore(MemoryStore())
        caches.shutdown()
        caches.set_category("a", "tech")
        assert caches.get_category("a") == "tech"

    def test_deletions_mark_the_store_dirty(self):
        store = MemoryStore()
        caches = CacheStore(store)
        caches.set_categories({"a": "tech", "b": "ads"})
        caches.mark_read_batch(["a"], read_at=5)
        assert caches.flush_if_dirty() is True

        caches.delete_categories(["a"])
        assert caches.flush_if_dirty() is True
        assert store.load_table(CLASSIFY_TABLE) == {"b": "ads"}

        caches.prune_categories(lambda link, category: False)
        caches.mark_unread("a")
        assert caches.flush_if_dirty() is True
        assert store.load_table(CLASSIFY_TABLE) == {}
        assert store.load_table(READ_STATE_TABLE) == {}

    def test_missing_keys_leave_the_store_clean(self):
        caches = CacheStore(MemoryStore())
        caches.delete_categories(["nope"])
        caches.delete_retained(["nope"])
        caches.prune_post_process(lambda key, entry: True)
        assert caches.flush_if_dirty() is False
