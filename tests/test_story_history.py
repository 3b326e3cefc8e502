"""
Unit tests for per-learner StoryHistory.

Run with: python -m pytest tests/test_story_history.py -v
"""

import pytest

from codeweaver.services.blob_storage import InMemoryBlobStore
from codeweaver.services.story_history import StoryHistory, format_history, history_path

from conftest import make_story, FailingBlobStore


class TestStoryHistory:
    """Newest-last summaries, capped per learner"""

    def setup_method(self):
        self.history = StoryHistory(max_stories=3)

    async def test_new_learner_has_no_history(self):
        assert await self.history.recent("ama") == []
        assert format_history(await self.history.recent("ama")) is None

    async def test_keeps_most_recent_stories(self):
        for i in range(5):
            await self.history.record("ama", make_story(f"story_{i}", title=f"Story {i}"))

        summaries = await self.history.recent("ama")
        assert [s.id for s in summaries] == ["story_2", "story_3", "story_4"]

    async def test_learners_are_separate(self):
        await self.history.record("ama", make_story("a"))
        assert await self.history.recent("kofi") == []

    async def test_story_served_again_moves_to_newest(self):
        await self.history.record("ama", make_story("a"))
        await self.history.record("ama", make_story("b"))
        await self.history.record("ama", make_story("a"))

        assert [s.id for s in await self.history.recent("ama")] == ["b", "a"]

    async def test_returned_summaries_are_copies(self):
        await self.history.record("ama", make_story("a", concepts=["loops"]))

        (summary,) = await self.history.recent("ama")
        summary.learning_concepts.clear()

        assert (await self.history.recent("ama"))[0].learning_concepts == ["loops"]

    async def test_malformed_learner_ids_rejected(self):
        with pytest.raises(ValueError):
            await self.history.recent("../secrets")
        with pytest.raises(ValueError):
            history_path("")

    def test_format_lists_titles_and_concepts(self):
        from codeweaver.models import StorySummary
        text = format_history([
            StorySummary(id="a", title="The Loom of Many Rows", learning_concepts=["loops", "conditionals"]),
            StorySummary(id="b", title="Market Day", learning_concepts=[]),
        ])
        assert text == (
            "Previous stories:\n"
            "- The Loom of Many Rows (concepts: loops, conditionals)\n"
            "- Market Day (concepts: none)"
        )


class TestDurableHistory:
    """History survives restarts through the blob store"""

    async def test_reloaded_after_restart(self):
        store = InMemoryBlobStore()
        await StoryHistory(blob_store=store).record("ama", make_story("a", title="First Weave"))

        restarted = StoryHistory(blob_store=store)
        summaries = await restarted.recent("ama")

        assert [s.title for s in summaries] == ["First Weave"]
        assert await store.get(history_path("ama")) is not None

    async def test_storage_failures_do_not_raise(self):
        history = StoryHistory(blob_store=FailingBlobStore())
        await history.record("ama", make_story("a"))

        assert [s.id for s in await history.recent("ama")] == ["a"]

    async def test_corrupt_history_is_ignored(self):
        store = InMemoryBlobStore()
        await store.put(history_path("ama"), b"not json")

        assert await StoryHistory(blob_store=store).recent("ama") == []
