"""
Shared fixtures for Codeweaver tests.

Fakes stand in for the text generator, connectivity and durable storage so
no test touches the network.
"""

import asyncio
import json
from typing import List, Optional

import pytest

from codeweaver.models import (
    StoryRequest,
    StoryArtifact,
    BranchStub,
    RequestKind,
    GenerationOptions,
)
from codeweaver.services.blob_storage import InMemoryBlobStore
from codeweaver.services.concept_vocabulary import ConceptVocabulary
from codeweaver.services.connectivity import StaticConnectivity
from codeweaver.services.errors import DurableStorageError
from codeweaver.services.events import EventEmitter
from codeweaver.services.foundry import Completion
from codeweaver.services.generation_client import GenerationClient
from codeweaver.services.orchestrator import NarrativeOrchestrator
from codeweaver.services.prompt_builder import PromptBuilder
from codeweaver.services.story_cache import StoryCache
from codeweaver.services.story_history import StoryHistory
from codeweaver.services.validation_service import ContentValidator


# Mentions loops ("again", "loop") and conditionals ("if", "choose")
LOOPS_AND_CONDITIONALS_SENTENCE = (
    "Kofi wove the golden thread again and again in a steady loop, and if the "
    "row was the third one he would choose a bright red thread instead."
)


def words_of(sentence: str, count: int) -> str:
    """Exactly `count` words, cycling through the sentence"""
    words = sentence.split()
    return " ".join(words[i % len(words)] for i in range(count))


def story_json(
    content: Optional[str] = None,
    word_count: int = 350,
    title: str = "The Loom of Many Rows",
    **overrides
) -> str:
    payload = {
        "title": title,
        "theme": "loops",
        "region": "Ashanti",
        "characterName": "Kofi",
        "content": content if content is not None else words_of(LOOPS_AND_CONDITIONALS_SENTENCE, word_count),
        "hasChoices": True,
        "choicePrompt": "What should Kofi weave next?",
        "culturalNotes": {"kente": "Kente cloth is woven in narrow strips."},
    }
    payload.update(overrides)
    return json.dumps(payload)


def branch_json(count: int, word_count: int = 40) -> str:
    branches = [
        {
            "choiceText": f"Weave pattern {i + 1}",
            "description": f"Branch {i + 1}",
            "content": words_of(LOOPS_AND_CONDITIONALS_SENTENCE, word_count),
            "emotionalTone": "curious",
            "focusConcept": "loops",
        }
        for i in range(count)
    ]
    return json.dumps(branches)


def make_request(concepts=("loops", "conditionals"), **kwargs) -> StoryRequest:
    return StoryRequest(learning_concepts=list(concepts), **kwargs)


def make_story(
    story_id: str = "story_parent",
    concepts: List[str] = None,
    cultural_context: Optional[str] = "ghana",
    is_fallback: bool = False,
    title: str = "The Loom of Many Rows",
) -> StoryArtifact:
    return StoryArtifact(
        id=story_id,
        kind=RequestKind.FRESH,
        title=title,
        content=words_of(LOOPS_AND_CONDITIONALS_SENTENCE, 60),
        learning_concepts=concepts or ["loops", "conditionals"],
        cultural_context=cultural_context,
        is_fallback=is_fallback,
    )


def make_branch(branch_id: str = "story_parent_branch_1", parent_id: str = "story_parent") -> BranchStub:
    return BranchStub(
        id=branch_id,
        parent_story_id=parent_id,
        choice_text="Weave a new pattern",
        content="Kofi decides to repeat the pattern with a twist.",
        focus_concept="loops",
        learning_concepts=["loops"],
        cultural_context="ghana",
    )


class FakeGenerator:
    """
    Scripted text generator.

    Each call consumes the next scripted item; the last item repeats once
    the script runs out. Items may be strings, Completions or exceptions.
    """

    provider = "fake"

    def __init__(self, responses=None, delay: float = 0.0):
        self.responses = list(responses or [story_json()])
        self.delay = delay
        self.calls = 0
        self.prompts: List[str] = []

    async def complete(self, prompt: str, max_tokens: int, temperature: float) -> Completion:
        self.calls += 1
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)

        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, Completion):
            return item
        return Completion(text=item, finish_reason="stop", model="fake-model")


class FailingBlobStore(InMemoryBlobStore):
    """Blob store whose writes always fail"""

    async def put(self, path: str, data: bytes) -> None:
        raise DurableStorageError(f"disk full: {path}")


class RecordingSleep:
    """Async sleep replacement that records requested delays"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(scope="session")
def vocabulary() -> ConceptVocabulary:
    return ConceptVocabulary.load()


@pytest.fixture
def make_orchestrator(vocabulary):
    """Factory for an orchestrator wired to fakes"""

    def _make(
        generator: Optional[FakeGenerator] = None,
        online: bool = True,
        cache: Optional[StoryCache] = None,
        options: Optional[GenerationOptions] = None,
        request_timeout: Optional[float] = None,
        events: Optional[EventEmitter] = None,
        history: Optional[StoryHistory] = None,
    ) -> NarrativeOrchestrator:
        connectivity = StaticConnectivity(online=online)
        client = GenerationClient(
            generator or FakeGenerator(),
            connectivity,
            options=options or GenerationOptions(timeout=5.0, max_retries=0, total_budget=10.0),
            sleep=RecordingSleep(),
        )
        return NarrativeOrchestrator(
            prompt_builder=PromptBuilder(),
            client=client,
            validator=ContentValidator(vocabulary),
            cache=cache or StoryCache(),
            connectivity=connectivity,
            events=events,
            request_timeout=request_timeout,
            history=history,
        )

    return _make
