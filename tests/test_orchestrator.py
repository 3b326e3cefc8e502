"""
Tests for the NarrativeOrchestrator state machine, using a scripted fake
generator. No network access.

Run with: python -m pytest tests/test_orchestrator.py -v
"""

import asyncio
import json

import pytest

from codeweaver.models import (
    RequestKind,
    EmotionalTone,
    GenerationState,
    ContentSource,
    CacheTier,
)
from codeweaver.services.cache_keys import derive_cache_key
from codeweaver.services.errors import NonRetryableGenerationError
from codeweaver.services.events import EventEmitter, EVENT_NARRATIVE_DIAGNOSTICS
from codeweaver.services.fallback_content import FALLBACK_TITLE_PATTERN, KENTE_STORY_TITLE, GENERIC_STORY_TITLE
from codeweaver.services.orchestrator import branch_request, continuation_request
from codeweaver.services.prompt_builder import FIRST_STORY_TEXT
from codeweaver.services.story_history import StoryHistory

from conftest import (
    FakeGenerator,
    story_json,
    branch_json,
    make_request,
    make_story,
    make_branch,
)


def states(diagnostics):
    return [t.to_state for t in diagnostics.trace]


class TestFreshStories:
    """generate_story() across cache, generation and fallback paths"""

    async def test_valid_story_is_cached_and_served_from_cache(self, make_orchestrator):
        generator = FakeGenerator([story_json(word_count=350)])
        orchestrator = make_orchestrator(generator)
        request = make_request(("loops", "conditionals"), cultural_context="ghana")

        story, diagnostics = await orchestrator.generate_story_with_diagnostics(request)

        assert story.title == "The Loom of Many Rows"
        assert {"loops", "conditionals"}.issubset(story.learning_concepts)
        assert not story.is_fallback
        assert diagnostics.source == ContentSource.GENERATED
        assert not diagnostics.degraded
        assert states(diagnostics) == [
            GenerationState.CHECK_CACHE,
            GenerationState.CHECK_CONNECTIVITY,
            GenerationState.GENERATE,
            GenerationState.VALIDATE,
            GenerationState.STORE_AND_RETURN,
        ]
        assert orchestrator.cache.peek(derive_cache_key(request)) is not None

        again, cached_diagnostics = await orchestrator.generate_story_with_diagnostics(request)

        assert again.id == story.id
        assert generator.calls == 1
        assert cached_diagnostics.source == ContentSource.CACHE
        assert states(cached_diagnostics) == [GenerationState.CHECK_CACHE, GenerationState.HIT]

    async def test_offline_serves_default_without_generating(self, make_orchestrator):
        generator = FakeGenerator()
        orchestrator = make_orchestrator(generator, online=False)

        story, diagnostics = await orchestrator.generate_story_with_diagnostics(
            make_request(("loops",), cultural_context="ghana")
        )

        assert generator.calls == 0
        assert FALLBACK_TITLE_PATTERN.search(story.title)
        assert story.title == KENTE_STORY_TITLE
        assert story.is_fallback
        assert diagnostics.source == ContentSource.STATIC_DEFAULT
        assert diagnostics.degraded
        assert states(diagnostics) == [
            GenerationState.CHECK_CACHE,
            GenerationState.CHECK_CONNECTIVITY,
            GenerationState.OFFLINE,
            GenerationState.RETURN_DEFAULT,
        ]
        # Fallback content is never cached
        assert orchestrator.cache.keys(CacheTier.STORIES) == []

    async def test_fallback_follows_cultural_tag(self, make_orchestrator):
        orchestrator = make_orchestrator(online=False)

        ashanti = await orchestrator.generate_story(make_request(("loops",), cultural_context="Ashanti"))
        generic = await orchestrator.generate_story(make_request(("loops",), cultural_context="japan"))

        assert ashanti.title == KENTE_STORY_TITLE
        assert generic.title == GENERIC_STORY_TITLE

    async def test_identical_concurrent_requests_share_one_generation(self, make_orchestrator):
        generator = FakeGenerator([story_json()], delay=0.05)
        orchestrator = make_orchestrator(generator)
        request = make_request()

        (first, first_diag), (second, second_diag) = await asyncio.gather(
            orchestrator.generate_story_with_diagnostics(request),
            orchestrator.generate_story_with_diagnostics(make_request()),
        )

        assert generator.calls == 1
        assert first.id == second.id
        assert sorted([first_diag.coalesced, second_diag.coalesced]) == [False, True]

    async def test_invalid_response_gets_one_simplified_retry(self, make_orchestrator):
        generator = FakeGenerator(["Sorry, no story today.", story_json(word_count=200)])
        orchestrator = make_orchestrator(generator)

        story, diagnostics = await orchestrator.generate_story_with_diagnostics(make_request())

        assert generator.calls == 2
        assert generator.prompts[0] != generator.prompts[1]
        assert not story.is_fallback
        assert diagnostics.source == ContentSource.GENERATED_SIMPLIFIED
        assert GenerationState.RETRY_SIMPLIFIED in states(diagnostics)
        assert diagnostics.errors[0].code == "parse_error"

    async def test_two_invalid_responses_fall_back(self, make_orchestrator):
        generator = FakeGenerator(["not json"])
        orchestrator = make_orchestrator(generator)

        story, diagnostics = await orchestrator.generate_story_with_diagnostics(make_request())

        assert generator.calls == 2
        assert story.is_fallback
        assert diagnostics.final_state == GenerationState.RETURN_DEFAULT
        assert diagnostics.trace[-1].trigger == "validation_failed"

    async def test_generation_error_skips_simplified_retry(self, make_orchestrator):
        generator = FakeGenerator([NonRetryableGenerationError("bad request", status_code=400)])
        orchestrator = make_orchestrator(generator)

        story, diagnostics = await orchestrator.generate_story_with_diagnostics(make_request())

        assert generator.calls == 1
        assert story.is_fallback
        assert GenerationState.RETRY_SIMPLIFIED not in states(diagnostics)
        assert [e.code for e in diagnostics.errors] == ["rejected"]

    async def test_last_good_story_preferred_over_static_default(self, make_orchestrator):
        generator = FakeGenerator([story_json(), "garbage"])
        orchestrator = make_orchestrator(generator)

        good = await orchestrator.generate_story(make_request(("loops", "conditionals"), cultural_context="ghana"))
        served, diagnostics = await orchestrator.generate_story_with_diagnostics(
            make_request(("loops",), cultural_context="ghana", emotional_tone=EmotionalTone.CALM)
        )

        assert served.id == good.id
        assert diagnostics.source == ContentSource.LAST_GOOD
        assert diagnostics.degraded

    async def test_last_good_requires_same_culture(self, make_orchestrator):
        generator = FakeGenerator([story_json(), "garbage"])
        orchestrator = make_orchestrator(generator)

        await orchestrator.generate_story(make_request(("loops",), cultural_context="ghana"))
        served, diagnostics = await orchestrator.generate_story_with_diagnostics(
            make_request(("loops",), cultural_context="japan")
        )

        assert served.is_fallback
        assert diagnostics.source == ContentSource.STATIC_DEFAULT

    async def test_request_timeout_returns_default(self, make_orchestrator):
        generator = FakeGenerator([story_json()], delay=1.0)
        orchestrator = make_orchestrator(generator, request_timeout=0.05)

        story, diagnostics = await orchestrator.generate_story_with_diagnostics(make_request())

        assert story.is_fallback
        assert diagnostics.trace[-1].trigger == "request_timeout"
        assert diagnostics.errors[-1].code == "timeout"

    async def test_rejects_non_fresh_requests(self, make_orchestrator):
        orchestrator = make_orchestrator()
        with pytest.raises(ValueError):
            await orchestrator.generate_story(make_request(kind=RequestKind.BRANCH_SET))

    async def test_diagnostics_are_published(self, make_orchestrator):
        events = EventEmitter()
        received = []
        events.on(EVENT_NARRATIVE_DIAGNOSTICS, received.append)
        orchestrator = make_orchestrator(events=events)

        await orchestrator.generate_story(make_request())

        assert len(received) == 1
        assert received[0].data["source"] == "generated"
        assert events.recent(EVENT_NARRATIVE_DIAGNOSTICS)[0]["cache_key"].startswith("fresh_")


class TestBranches:
    """generate_branches() from a parent story"""

    async def test_branches_are_assembled_and_cached(self, make_orchestrator):
        generator = FakeGenerator([branch_json(3)])
        orchestrator = make_orchestrator(generator)
        parent = make_story("story_42")

        branches = await orchestrator.generate_branches(parent, count=3)

        assert [b.id for b in branches] == ["story_42_branch_1", "story_42_branch_2", "story_42_branch_3"]
        assert all(b.parent_story_id == "story_42" for b in branches)
        assert all(b.emotional_tone == EmotionalTone.CURIOUS for b in branches)
        assert orchestrator.cache.keys(CacheTier.BRANCHES) == [derive_cache_key(branch_request(parent, 3))]

        again = await orchestrator.generate_branches(parent, count=3)
        assert [b.id for b in again] == [b.id for b in branches]
        assert generator.calls == 1

    async def test_unknown_tone_becomes_neutral(self, make_orchestrator):
        items = json.loads(branch_json(2))
        items[0]["emotionalTone"] = "bewildered"
        orchestrator = make_orchestrator(FakeGenerator([json.dumps(items)]))

        branches = await orchestrator.generate_branches(make_story(), count=2)

        assert branches[0].emotional_tone == EmotionalTone.NEUTRAL

    async def test_offline_branches_fall_back(self, make_orchestrator):
        orchestrator = make_orchestrator(online=False)
        parent = make_story("story_7")

        branches, diagnostics = await orchestrator.generate_branches_with_diagnostics(parent, count=3)

        assert len(branches) == 3
        assert branches[0].id == "story_7_branch_1"
        assert diagnostics.source == ContentSource.STATIC_DEFAULT

    def test_branch_request_carries_parent(self):
        parent = make_story("story_9")
        request = branch_request(parent, 2)
        assert request.kind == RequestKind.BRANCH_SET
        assert request.parent_story_id == "story_9"
        assert request.narrative_history.startswith(f"Parent story title: {parent.title}")


class TestContinuations:
    """continue_from_branch() keys on the branch and never overwrites the parent"""

    async def test_continuation_is_cached_under_branch_key(self, make_orchestrator):
        generator = FakeGenerator([story_json(), story_json(word_count=250, title="The Next Row")])
        orchestrator = make_orchestrator(generator)

        parent_request = make_request(("loops",), cultural_context="ghana")
        parent = await orchestrator.generate_story(parent_request)
        branch = make_branch(f"{parent.id}_branch_1", parent.id)

        continuation = await orchestrator.continue_from_branch(branch)

        assert continuation.kind == RequestKind.CONTINUATION
        assert continuation.branch_id == branch.id
        assert continuation.parent_story_id == parent.id
        assert continuation.title == "The Next Row"

        parent_key = derive_cache_key(parent_request)
        continuation_key = derive_cache_key(continuation_request(branch))
        assert continuation_key != parent_key
        assert orchestrator.cache.peek(parent_key).payload.id == parent.id
        assert orchestrator.cache.peek(continuation_key).payload.id == continuation.id

    async def test_challenge_difficulty_is_clamped(self, make_orchestrator):
        text = story_json(word_count=250, challenge={
            "title": "Repeat the stripe",
            "description": "Use a repeat block to weave five stripes.",
            "difficulty": 9,
            "availableBlockTypes": ["move", "repeat"],
        })
        orchestrator = make_orchestrator(FakeGenerator([text]))

        continuation = await orchestrator.continue_from_branch(make_branch(), introduce_challenge=True)

        assert continuation.challenge is not None
        assert continuation.challenge.difficulty == 5
        assert continuation.challenge.available_block_types == ["move", "repeat"]

    async def test_offline_continuation_falls_back(self, make_orchestrator):
        orchestrator = make_orchestrator(online=False)
        branch = make_branch()

        continuation = await orchestrator.continue_from_branch(branch)

        assert continuation.is_fallback
        assert continuation.branch_id == branch.id
        assert FALLBACK_TITLE_PATTERN.search(continuation.title)
        assert branch.content in continuation.text

    async def test_infinite_difficulty_falls_back_instead_of_raising(self, make_orchestrator):
        text = story_json(word_count=250, challenge={
            "title": "Repeat the stripe",
            "description": "Use a repeat block to weave five stripes.",
            "difficulty": float("inf"),
            "availableBlockTypes": ["move", "repeat"],
        })
        generator = FakeGenerator([text])
        orchestrator = make_orchestrator(generator)
        branch = make_branch()

        continuation, diagnostics = await orchestrator.continue_from_branch_with_diagnostics(
            branch, introduce_challenge=True
        )

        assert generator.calls == 2
        assert continuation.is_fallback
        assert continuation.branch_id == branch.id
        assert diagnostics.final_state == GenerationState.RETURN_DEFAULT
        assert "schema_error" in [e.code for e in diagnostics.errors]

    async def test_offline_continuation_of_conceptless_branch_keeps_focus_concept(self, make_orchestrator):
        orchestrator = make_orchestrator(online=False)
        branch = make_branch().model_copy(update={"learning_concepts": [], "focus_concept": "conditionals"})

        continuation = await orchestrator.continue_from_branch(branch)

        assert continuation.is_fallback
        assert continuation.learning_concepts == ["conditionals"]


class TestPayloadIsolation:
    """Served payloads are copies; callers cannot corrupt the cache"""

    async def test_mutating_served_story_does_not_change_cache(self, make_orchestrator):
        generator = FakeGenerator([story_json()])
        orchestrator = make_orchestrator(generator)
        request = make_request(("loops", "conditionals"), cultural_context="ghana")

        story = await orchestrator.generate_story(request)
        story.title = "Edited by the caller"
        story.learning_concepts.clear()

        again = await orchestrator.generate_story(request)

        assert generator.calls == 1
        assert again.id == story.id
        assert again.title == "The Loom of Many Rows"
        assert {"loops", "conditionals"}.issubset(again.learning_concepts)

    async def test_clearing_served_branches_does_not_change_cache(self, make_orchestrator):
        generator = FakeGenerator([branch_json(2)])
        orchestrator = make_orchestrator(generator)
        parent = make_story("story_42")

        branches = await orchestrator.generate_branches(parent, count=2)
        branches.clear()

        again = await orchestrator.generate_branches(parent, count=2)
        assert len(again) == 2
        assert generator.calls == 1

    async def test_coalesced_callers_get_distinct_objects(self, make_orchestrator):
        generator = FakeGenerator([story_json()], delay=0.05)
        orchestrator = make_orchestrator(generator)

        first, second = await asyncio.gather(
            orchestrator.generate_story(make_request()),
            orchestrator.generate_story(make_request()),
        )
        first.learning_concepts.clear()

        assert generator.calls == 1
        assert first is not second
        assert second.learning_concepts


class TestLearnerHistory:
    """Previous stories of a learner flow into later prompts"""

    async def test_previous_story_titles_reach_the_next_prompt(self, make_orchestrator):
        generator = FakeGenerator([story_json(), story_json(title="The Market Pattern")])
        history = StoryHistory()
        orchestrator = make_orchestrator(generator, history=history)

        first = await orchestrator.generate_story(make_request(("loops",)), learner_id="ama")
        await orchestrator.generate_story(make_request(("conditionals",)), learner_id="ama")

        assert FIRST_STORY_TEXT in generator.prompts[0]
        assert "Previous stories:" in generator.prompts[1]
        assert f"- {first.title} (concepts: " in generator.prompts[1]
        assert [s.title for s in await history.recent("ama")] == ["The Loom of Many Rows", "The Market Pattern"]

    async def test_history_is_part_of_the_cache_key(self, make_orchestrator):
        generator = FakeGenerator([story_json()])
        orchestrator = make_orchestrator(generator, history=StoryHistory())

        await orchestrator.generate_story(make_request(("loops",)), learner_id="ama")
        _, diagnostics = await orchestrator.generate_story_with_diagnostics(
            make_request(("conditionals",)), learner_id="ama"
        )

        assert diagnostics.cache_key != derive_cache_key(make_request(("conditionals",)))

    async def test_anonymous_requests_are_unaffected(self, make_orchestrator):
        generator = FakeGenerator([story_json()])
        orchestrator = make_orchestrator(generator, history=StoryHistory())

        await orchestrator.generate_story(make_request(("loops",)), learner_id="ama")
        _, diagnostics = await orchestrator.generate_story_with_diagnostics(make_request(("conditionals",)))

        assert FIRST_STORY_TEXT in generator.prompts[1]
        assert diagnostics.cache_key == derive_cache_key(make_request(("conditionals",)))

    async def test_caller_history_wins(self, make_orchestrator):
        generator = FakeGenerator([story_json()])
        orchestrator = make_orchestrator(generator, history=StoryHistory())

        await orchestrator.generate_story(make_request(("loops",)), learner_id="ama")
        await orchestrator.generate_story(
            make_request(("conditionals",), narrative_history="Kofi met a weaver at dawn."),
            learner_id="ama",
        )

        assert "Kofi met a weaver at dawn." in generator.prompts[1]
        assert "Previous stories:" not in generator.prompts[1]

    async def test_fallback_stories_are_not_remembered(self, make_orchestrator):
        history = StoryHistory()
        orchestrator = make_orchestrator(online=False, history=history)

        story = await orchestrator.generate_story(make_request(("loops",)), learner_id="ama")

        assert story.is_fallback
        assert await history.recent("ama") == []
