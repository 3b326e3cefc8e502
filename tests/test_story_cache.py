"""
Unit tests for the two-tier StoryCache.

Run with: python -m pytest tests/test_story_cache.py -v
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from codeweaver.models import CacheTier
from codeweaver.services.blob_storage import InMemoryBlobStore, LocalFileBlobStore
from codeweaver.services.story_cache import StoryCache, tier_for_key, payload_path, meta_path

from conftest import make_story, make_branch, FailingBlobStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class TestFifoEviction:
    """Memory tier bounds and strict insertion order"""

    def setup_method(self):
        self.cache = StoryCache(max_story_entries=3, max_branch_entries=2)

    async def test_evicts_oldest_at_capacity_plus_one(self):
        for i in range(4):
            await self.cache.put(f"fresh_{i}", make_story(f"story_{i}"))

        assert self.cache.keys(CacheTier.STORIES) == ["fresh_1", "fresh_2", "fresh_3"]
        assert await self.cache.get("fresh_0") is None
        assert self.cache.evictions == 1

    async def test_reads_do_not_reorder(self):
        for i in range(3):
            await self.cache.put(f"fresh_{i}", make_story(f"story_{i}"))

        # Reading the oldest entry must not protect it from eviction
        assert (await self.cache.get("fresh_0")).id == "story_0"
        await self.cache.put("fresh_3", make_story("story_3"))

        assert self.cache.peek("fresh_0") is None
        assert self.cache.keys(CacheTier.STORIES) == ["fresh_1", "fresh_2", "fresh_3"]

    async def test_reput_moves_key_to_newest(self):
        for i in range(3):
            await self.cache.put(f"fresh_{i}", make_story(f"story_{i}"))
        await self.cache.put("fresh_0", make_story("story_0b"))

        assert self.cache.keys(CacheTier.STORIES) == ["fresh_1", "fresh_2", "fresh_0"]
        assert self.cache.peek("fresh_0").payload.id == "story_0b"

    async def test_sequence_numbers_increase(self):
        first = await self.cache.put("fresh_a", make_story("a"))
        second = await self.cache.put("fresh_b", make_story("b"))
        assert second.sequence > first.sequence

    async def test_tiers_are_independent(self):
        for i in range(3):
            await self.cache.put(f"branch_set_{i}", [make_branch()])
        await self.cache.put("fresh_a", make_story("a"))

        assert self.cache.keys(CacheTier.BRANCHES) == ["branch_set_1", "branch_set_2"]
        assert self.cache.keys(CacheTier.STORIES) == ["fresh_a"]

    async def test_payload_must_match_key_tier(self):
        with pytest.raises(ValueError):
            await self.cache.put("fresh_a", [make_branch()])

    def test_tier_for_key(self):
        assert tier_for_key("branch_set_abc") == CacheTier.BRANCHES
        assert tier_for_key("fresh_abc") == CacheTier.STORIES
        assert tier_for_key("continuation_abc") == CacheTier.STORIES

    def test_rejects_empty_tiers(self):
        with pytest.raises(ValueError):
            StoryCache(max_story_entries=0)


class TestDurableTier:
    """Background durable writes, promotion and purging"""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = InMemoryBlobStore()
        self.cache = StoryCache(blob_store=self.store, max_story_entries=2, clock=self.clock)

    async def test_put_writes_payload_and_sidecar(self):
        await self.cache.put("fresh_a", make_story("a"))
        await self.cache.flush()

        assert await self.store.get(payload_path(CacheTier.STORIES, "fresh_a")) is not None
        meta = json.loads(await self.store.get(meta_path(CacheTier.STORIES, "fresh_a")))
        assert meta["tier"] == "stories"
        assert meta["key"] == "fresh_a"
        assert datetime.fromisoformat(meta["inserted_at"]) == self.clock.now

    async def test_durable_hit_is_promoted(self):
        await self.cache.put("fresh_a", make_story("a"))
        await self.cache.flush()

        restarted = StoryCache(blob_store=self.store, clock=self.clock)
        story = await restarted.get("fresh_a")

        assert story is not None and story.id == "a"
        assert restarted.durable_hits == 1
        assert restarted.peek("fresh_a") is not None
        # Promotion keeps the original insertion time
        assert restarted.peek("fresh_a").inserted_at == self.clock.now

    async def test_branch_sets_round_trip_through_durable_tier(self):
        await self.cache.put("branch_set_a", [make_branch("p_branch_1"), make_branch("p_branch_2")])
        await self.cache.flush()

        restarted = StoryCache(blob_store=self.store)
        branches = await restarted.get("branch_set_a")
        assert [b.id for b in branches] == ["p_branch_1", "p_branch_2"]

    async def test_evicted_entries_stay_durable(self):
        for key in ("fresh_a", "fresh_b", "fresh_c"):
            await self.cache.put(key, make_story(key))
        await self.cache.flush()

        assert self.cache.peek("fresh_a") is None
        assert (await self.cache.get("fresh_a")).id == "fresh_a"

    async def test_purge_removes_old_entries_everywhere(self):
        await self.cache.put("fresh_old", make_story("old"))
        self.clock.advance(days=10)
        await self.cache.put("fresh_new", make_story("new"))

        removed = await self.cache.purge_older_than(timedelta(days=5))

        assert removed == 1
        assert self.cache.peek("fresh_old") is None
        assert self.cache.peek("fresh_new") is not None
        assert await self.store.get(payload_path(CacheTier.STORIES, "fresh_old")) is None
        assert await self.store.get(payload_path(CacheTier.STORIES, "fresh_new")) is not None

    async def test_clear_empties_both_tiers(self):
        await self.cache.put("fresh_a", make_story("a"))
        await self.cache.put("branch_set_a", [make_branch()])

        removed = await self.cache.clear()

        assert removed == 2
        assert await self.cache.get("fresh_a") is None
        assert await self.store.list_keys() == []

    async def test_durable_failures_are_swallowed(self):
        cache = StoryCache(blob_store=FailingBlobStore())
        await cache.put("fresh_a", make_story("a"))
        await cache.flush()

        assert cache.durable_failures == 1
        assert (await cache.get("fresh_a")).id == "a"

    async def test_local_file_store(self, tmp_path):
        cache = StoryCache(blob_store=LocalFileBlobStore(str(tmp_path)))
        await cache.put("fresh_a", make_story("a"))
        await cache.flush()

        assert (tmp_path / "stories" / "fresh_a.json").exists()
        restarted = StoryCache(blob_store=LocalFileBlobStore(str(tmp_path)))
        assert (await restarted.get("fresh_a")).id == "a"


class TestLastGoodLookup:
    """latest_story() scans newest first"""

    async def test_newest_match_wins(self):
        cache = StoryCache()
        await cache.put("fresh_a", make_story("a", concepts=["loops"]))
        await cache.put("fresh_b", make_story("b", concepts=["loops", "variables"]))
        await cache.put("fresh_c", make_story("c", concepts=["functions"]))

        found = cache.latest_story(lambda s: "loops" in s.learning_concepts)
        assert found.id == "b"
        assert cache.latest_story(lambda s: "debugging" in s.learning_concepts) is None


class TestPayloadIsolation:
    """Callers never share objects with the cache"""

    def setup_method(self):
        self.cache = StoryCache()

    async def test_mutating_returned_story_leaves_cache_intact(self):
        await self.cache.put("fresh_a", make_story("a", concepts=["loops"]))

        served = await self.cache.get("fresh_a")
        served.title = "Vandalised"
        served.learning_concepts.clear()

        again = await self.cache.get("fresh_a")
        assert again.title == "The Loom of Many Rows"
        assert again.learning_concepts == ["loops"]

    async def test_mutating_stored_story_after_put_leaves_cache_intact(self):
        story = make_story("a", concepts=["loops"])
        await self.cache.put("fresh_a", story)

        story.learning_concepts.append("recursion")

        assert self.cache.peek("fresh_a").payload.learning_concepts == ["loops"]

    async def test_clearing_returned_branch_list_leaves_cache_intact(self):
        await self.cache.put("branch_set_a", [make_branch("p_branch_1"), make_branch("p_branch_2")])

        branches = await self.cache.get("branch_set_a")
        branches[0].choice_text = "Changed"
        branches.clear()

        again = await self.cache.get("branch_set_a")
        assert [b.id for b in again] == ["p_branch_1", "p_branch_2"]
        assert again[0].choice_text == "Weave a new pattern"

    async def test_last_good_lookup_returns_a_copy(self):
        await self.cache.put("fresh_a", make_story("a", concepts=["loops"]))

        found = self.cache.latest_story(lambda s: True)
        found.learning_concepts.clear()

        assert self.cache.peek("fresh_a").payload.learning_concepts == ["loops"]

    async def test_promoted_durable_entry_is_copied(self):
        store = InMemoryBlobStore()
        writer = StoryCache(blob_store=store)
        await writer.put("fresh_a", make_story("a", concepts=["loops"]))
        await writer.flush()

        reader = StoryCache(blob_store=store)
        promoted = await reader.get("fresh_a")
        promoted.learning_concepts.clear()

        assert reader.peek("fresh_a").payload.learning_concepts == ["loops"]
