"""
Narrative Orchestrator

Drives every request through the generation state machine:

    CHECK_CACHE ─ hit ──────────────────────────────────────────► HIT
        │ miss
        ▼
    CHECK_CONNECTIVITY ─ offline ─► OFFLINE ─────────────────────► RETURN_DEFAULT
        │ online
        ▼
    GENERATE ─► VALIDATE ─ valid ────────────────────────────────► STORE_AND_RETURN
                    │ invalid
                    ▼
              RETRY_SIMPLIFIED ─► VALIDATE ─ valid ──────────────► STORE_AND_RETURN
                                      │ invalid / generation error
                                      ▼
                                RETURN_DEFAULT

Generation errors (timeout after retries, rejection, offline mid-request) go
straight to RETURN_DEFAULT; only invalid content earns the simplified retry.

RETURN_DEFAULT prefers the newest non-fallback cached story that covers the
requested concepts in the same cultural context (fresh stories only), then
the static default for the cultural tag.

Public methods never raise for generation or validation failures; how a
request was served is reported through GenerationDiagnostics.
"""

import asyncio
import logging
import time
from typing import Optional, List, Tuple, Callable, Any, Dict

from codeweaver.config.limits import (
    DEFAULT_BRANCH_COUNT,
    MAX_LEARNING_CONCEPTS,
    NARRATIVE_HISTORY_MAX_LENGTH,
    CHALLENGE_MIN_DIFFICULTY,
    CHALLENGE_MAX_DIFFICULTY,
)
from codeweaver.models import (
    StoryRequest,
    RequestKind,
    StoryArtifact,
    BranchStub,
    StoryChallenge,
    StoryDraft,
    BranchSetDraft,
    ChallengeDraft,
    EmotionalTone,
    GenerationOptions,
    GenerationState,
    GenerationDiagnostics,
    StateTransition,
    ContentSource,
    ValidationIssue,
)
from codeweaver.services.cache_keys import derive_cache_key
from codeweaver.services.connectivity import ConnectivityChecker
from codeweaver.services.errors import NarrativeError, GenerationError, OfflineError, GenerationTimeoutError
from codeweaver.services.events import EventEmitter
from codeweaver.services.fallback_content import (
    default_story,
    default_branches,
    default_continuation,
    is_ghanaian_context,
)
from codeweaver.services.generation_client import GenerationClient
from codeweaver.services.prompt_builder import PromptBuilder, DEFAULT_CULTURAL_CONTEXT
from codeweaver.services.single_flight import SingleFlight
from codeweaver.services.story_cache import StoryCache, copy_payload
from codeweaver.services.story_history import StoryHistory, format_history
from codeweaver.services.validation_service import ContentValidator

logger = logging.getLogger(__name__)

DEFAULT_CHALLENGE_BLOCKS = ["move", "turn", "repeat"]

# Leaves room for the "Parent story title" header inside the history limit
PARENT_CONTENT_CHARS = NARRATIVE_HISTORY_MAX_LENGTH - 500

Draft = Any  # StoryDraft or BranchSetDraft


def _same_culture(a: Optional[str], b: Optional[str]) -> bool:
    return (a or DEFAULT_CULTURAL_CONTEXT).lower() == (b or DEFAULT_CULTURAL_CONTEXT).lower()


def branch_request(parent: StoryArtifact, count: int = DEFAULT_BRANCH_COUNT) -> StoryRequest:
    """Build the branch-set request for a parent story"""
    return StoryRequest(
        kind=RequestKind.BRANCH_SET,
        learning_concepts=parent.learning_concepts[:MAX_LEARNING_CONCEPTS],
        skill_level=parent.skill_level,
        emotional_tone=parent.emotional_tone,
        cultural_context=parent.cultural_context,
        parent_story_id=parent.id,
        narrative_history=(
            f"Parent story title: {parent.title}\n"
            f"Parent story content: {parent.text[-PARENT_CONTENT_CHARS:]}"
        ),
        branch_count=count,
    )


def continuation_request(branch: BranchStub, introduce_challenge: bool = False) -> StoryRequest:
    """Build the continuation request for a chosen branch"""
    concepts = branch.learning_concepts[:MAX_LEARNING_CONCEPTS] or [branch.focus_concept]
    return StoryRequest(
        kind=RequestKind.CONTINUATION,
        learning_concepts=concepts,
        skill_level=branch.skill_level,
        emotional_tone=branch.emotional_tone,
        cultural_context=branch.cultural_context,
        parent_story_id=branch.parent_story_id,
        branch_id=branch.id,
        narrative_history=(
            f"Selected choice: {branch.choice_text}\n"
            f"Selected branch content: {branch.content}"
        ),
        introduce_challenge=introduce_challenge,
    )


class NarrativeOrchestrator:
    """
    Coordinates prompt building, generation, validation and caching.

    Attributes:
        prompt_builder: Request -> PromptSpec
        client: Reliable generator wrapper
        validator: Response checker
        cache: Two-tier story cache
        connectivity: Online/offline capability
        events: Optional diagnostics publisher
        request_timeout: Upper bound (seconds) on a whole request, None = unbounded
        history: Optional per-learner story history for continuity
    """

    def __init__(
        self,
        prompt_builder: PromptBuilder,
        client: GenerationClient,
        validator: ContentValidator,
        cache: StoryCache,
        connectivity: ConnectivityChecker,
        events: Optional[EventEmitter] = None,
        narrative_logger=None,
        options: Optional[GenerationOptions] = None,
        request_timeout: Optional[float] = None,
        history: Optional[StoryHistory] = None,
    ):
        self.prompt_builder = prompt_builder
        self.client = client
        self.validator = validator
        self.cache = cache
        self.connectivity = connectivity
        self.events = events
        self.narrative_logger = narrative_logger
        self.options = options
        self.request_timeout = request_timeout
        self.history = history
        self._flight = SingleFlight()
        self.served: Dict[str, int] = {source.value: 0 for source in ContentSource}

    # =========================================================================
    # Public API
    # =========================================================================

    async def generate_story(
        self,
        request: StoryRequest,
        timeout: Optional[float] = None,
        learner_id: Optional[str] = None
    ) -> StoryArtifact:
        artifact, _ = await self.generate_story_with_diagnostics(request, timeout, learner_id)
        return artifact

    async def generate_story_with_diagnostics(
        self,
        request: StoryRequest,
        timeout: Optional[float] = None,
        learner_id: Optional[str] = None
    ) -> Tuple[StoryArtifact, GenerationDiagnostics]:
        """
        Serve a fresh story.

        With a learner_id (and a configured history), the learner's previous
        stories become the narrative history when the request carries none,
        and every non-fallback story served is remembered for them. The
        history is part of the request, so it also feeds the cache key.

        Returns:
            (artifact, diagnostics); the artifact is always valid, possibly
            last-good or static fallback content
        """
        if request.kind != RequestKind.FRESH:
            raise ValueError(f"generate_story expects a fresh request, got {request.kind.value}")

        if learner_id is not None:
            request = await self._with_learner_history(request, learner_id)

        story, diagnostics = await self._serve(
            request,
            assemble=lambda draft: self._assemble_story(request, draft),
            fallback=lambda diag: self._story_fallback(request, diag),
            timeout=timeout,
        )

        if learner_id is not None and self.history is not None and not story.is_fallback:
            await self.history.record(learner_id, story)
        return story, diagnostics

    async def generate_branches(
        self,
        parent_story: StoryArtifact,
        count: int = DEFAULT_BRANCH_COUNT,
        timeout: Optional[float] = None
    ) -> List[BranchStub]:
        branches, _ = await self.generate_branches_with_diagnostics(parent_story, count, timeout)
        return branches

    async def generate_branches_with_diagnostics(
        self,
        parent_story: StoryArtifact,
        count: int = DEFAULT_BRANCH_COUNT,
        timeout: Optional[float] = None
    ) -> Tuple[List[BranchStub], GenerationDiagnostics]:
        """Serve `count` branch stubs continuing parent_story"""
        request = branch_request(parent_story, count)
        return await self._serve(
            request,
            assemble=lambda draft: self._assemble_branches(request, parent_story, draft),
            fallback=lambda diag: self._static_fallback(
                diag, default_branches(parent_story, request.branch_count)
            ),
            timeout=timeout,
        )

    async def continue_from_branch(
        self,
        branch: BranchStub,
        introduce_challenge: bool = False,
        timeout: Optional[float] = None
    ) -> StoryArtifact:
        artifact, _ = await self.continue_from_branch_with_diagnostics(branch, introduce_challenge, timeout)
        return artifact

    async def continue_from_branch_with_diagnostics(
        self,
        branch: BranchStub,
        introduce_challenge: bool = False,
        timeout: Optional[float] = None
    ) -> Tuple[StoryArtifact, GenerationDiagnostics]:
        """
        Expand a chosen branch into a full continuation.

        The continuation is cached under a key derived from the branch, so
        the parent story's entry is never overwritten.
        """
        request = continuation_request(branch, introduce_challenge)
        return await self._serve(
            request,
            assemble=lambda draft: self._assemble_continuation(request, branch, draft),
            fallback=lambda diag: self._static_fallback(diag, default_continuation(branch, request)),
            timeout=timeout,
        )

    def stats(self) -> Dict[str, Any]:
        return {
            "served": dict(self.served),
            "coalesced": self._flight.coalesced,
            "cache": self.cache.stats(),
        }

    # =========================================================================
    # Learner history
    # =========================================================================

    async def _with_learner_history(self, request: StoryRequest, learner_id: str) -> StoryRequest:
        if self.history is None or request.narrative_history:
            return request
        history_text = format_history(await self.history.recent(learner_id))
        if history_text is None:
            return request
        return StoryRequest(**{**request.model_dump(), "narrative_history": history_text})

    # =========================================================================
    # State machine
    # =========================================================================

    async def _serve(
        self,
        request: StoryRequest,
        assemble: Callable[[Draft], Any],
        fallback: Callable[[GenerationDiagnostics], Any],
        timeout: Optional[float],
    ) -> Tuple[Any, GenerationDiagnostics]:
        key = derive_cache_key(request)
        start = time.perf_counter()
        diag = GenerationDiagnostics(cache_key=key, kind=request.kind)
        timeout = timeout if timeout is not None else self.request_timeout

        if self.narrative_logger:
            self.narrative_logger.request_received(request.kind.value, key)
        if self.events:
            await self.events.emit_request_started(key, request.kind.value)

        try:
            payload, result_diag = await asyncio.wait_for(
                self._flight.run(key, lambda: self._run(request, key, diag, assemble, fallback)),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, GenerationTimeoutError) as e:
            diag.errors.append(ValidationIssue(code=GenerationTimeoutError.code, message=str(e) or "Request timed out"))
            self._transition(diag, GenerationState.RETURN_DEFAULT, "request_timeout")
            payload, result_diag = await fallback(diag), diag
        except NarrativeError as e:
            diag.errors.append(ValidationIssue(code=e.code, message=str(e)))
            self._transition(diag, GenerationState.RETURN_DEFAULT, e.code)
            payload, result_diag = await fallback(diag), diag

        if result_diag is not diag:
            # Joined another caller's in-flight generation
            result_diag = result_diag.model_copy(update={"coalesced": True})
            payload = copy_payload(payload)
        result_diag.duration_seconds = time.perf_counter() - start

        source = result_diag.source.value if result_diag.source else "unknown"
        self.served[source] = self.served.get(source, 0) + 1
        if self.narrative_logger:
            self.narrative_logger.request_completed(
                request.kind.value, key, source, result_diag.duration_seconds
            )
        if self.events:
            await self.events.emit_diagnostics(result_diag)
        return payload, result_diag

    async def _run(
        self,
        request: StoryRequest,
        key: str,
        diag: GenerationDiagnostics,
        assemble: Callable[[Draft], Any],
        fallback: Callable[[GenerationDiagnostics], Any],
    ) -> Tuple[Any, GenerationDiagnostics]:
        self._transition(diag, GenerationState.CHECK_CACHE, "request")
        cached = await self.cache.get(key)
        if cached is not None:
            self._transition(diag, GenerationState.HIT, "cache_hit")
            diag.source = ContentSource.CACHE
            if self.events:
                await self.events.emit_cache_hit(key, request.kind.value)
            return cached, diag

        self._transition(diag, GenerationState.CHECK_CONNECTIVITY, "cache_miss")
        if not await self.connectivity.is_online():
            self._transition(diag, GenerationState.OFFLINE, "offline")
            self._transition(diag, GenerationState.RETURN_DEFAULT, "offline")
            return await fallback(diag), diag

        self._transition(diag, GenerationState.GENERATE, "online")
        draft, failure = await self._generate_once(request, key, diag, simplified=False)

        if draft is None and failure is None:
            self._transition(diag, GenerationState.RETRY_SIMPLIFIED, "validation_failed")
            draft, failure = await self._generate_once(request, key, diag, simplified=True)
            source = ContentSource.GENERATED_SIMPLIFIED
        else:
            source = ContentSource.GENERATED

        if draft is None:
            trigger = failure.code if failure is not None else "validation_failed"
            self._transition(diag, GenerationState.RETURN_DEFAULT, trigger)
            return await fallback(diag), diag

        payload = assemble(draft)
        self._transition(diag, GenerationState.STORE_AND_RETURN, "valid")
        await self.cache.put(key, payload)
        diag.source = source
        return payload, diag

    async def _generate_once(
        self,
        request: StoryRequest,
        key: str,
        diag: GenerationDiagnostics,
        simplified: bool
    ) -> Tuple[Optional[Draft], Optional[GenerationError]]:
        """
        One prompt -> generate -> validate pass.

        Returns:
            (draft, None) when valid, (None, None) when the content was
            invalid, (None, error) when generation itself failed
        """
        prompt = self.prompt_builder.build(request, simplified=simplified)
        try:
            raw = await self.client.generate(prompt, self.options)
        except GenerationError as e:
            diag.errors.append(ValidationIssue(code=e.code, message=str(e)))
            if isinstance(e, OfflineError):
                self._transition(diag, GenerationState.OFFLINE, "offline")
            logger.warning(f"Generation failed for {key}: {e}")
            if self.events:
                await self.events.emit_generation_failed(key, e.code, str(e))
            return None, e

        diag.attempts += raw.attempts
        self._transition(diag, GenerationState.VALIDATE, "response_received")
        result = self.validator.validate(raw, prompt.contract, request)
        diag.errors.extend(result.errors)

        if not result.is_valid:
            codes = [issue.code for issue in result.hard_errors]
            if self.narrative_logger:
                self.narrative_logger.validation_rejected(prompt.template.value, codes, simplified)
            if self.events:
                await self.events.emit_validation_rejected(key, codes, simplified)
            return None, None

        return result.extracted, None

    @staticmethod
    def _transition(diag: GenerationDiagnostics, to_state: GenerationState, trigger: str) -> None:
        diag.trace.append(StateTransition(
            from_state=diag.final_state,
            to_state=to_state,
            trigger=trigger,
        ))
        logger.debug(f"{diag.cache_key}: -> {to_state.value} ({trigger})")

    # =========================================================================
    # Fallbacks
    # =========================================================================

    async def _story_fallback(self, request: StoryRequest, diag: GenerationDiagnostics) -> StoryArtifact:
        requested = set(request.learning_concepts)

        def fits(story: StoryArtifact) -> bool:
            return (
                not story.is_fallback
                and story.kind == RequestKind.FRESH
                and _same_culture(story.cultural_context, request.cultural_context)
                and requested.issubset(story.learning_concepts)
            )

        last_good = self.cache.latest_story(fits)
        if last_good is not None:
            diag.source = ContentSource.LAST_GOOD
            diag.degraded = True
            logger.info(f"Serving last-good story {last_good.id} for {diag.cache_key}")
            if self.events:
                await self.events.emit_fallback_served(diag.cache_key, ContentSource.LAST_GOOD.value)
            return last_good

        return await self._static_fallback(diag, default_story(request))

    async def _static_fallback(self, diag: GenerationDiagnostics, payload: Any) -> Any:
        diag.source = ContentSource.STATIC_DEFAULT
        diag.degraded = True
        logger.info(f"Serving static default content for {diag.cache_key}")
        if self.events:
            await self.events.emit_fallback_served(diag.cache_key, ContentSource.STATIC_DEFAULT.value)
        return payload

    # =========================================================================
    # Artifact assembly
    # =========================================================================

    @staticmethod
    def _challenge_from_draft(draft: Optional[ChallengeDraft], request: StoryRequest) -> Optional[StoryChallenge]:
        if draft is None or not draft.title:
            return None
        difficulty = draft.difficulty if draft.difficulty is not None else request.skill_level.difficulty
        difficulty = min(max(difficulty, CHALLENGE_MIN_DIFFICULTY), CHALLENGE_MAX_DIFFICULTY)
        return StoryChallenge(
            title=draft.title,
            description=draft.description or "",
            difficulty=difficulty,
            available_block_types=draft.available_block_types or list(DEFAULT_CHALLENGE_BLOCKS),
            success_criteria=draft.success_criteria,
        )

    @staticmethod
    def _story_fields(request: StoryRequest, draft: StoryDraft) -> Dict[str, Any]:
        ghanaian = is_ghanaian_context(request.cultural_context)
        return {
            "title": draft.title,
            "theme": draft.theme or request.theme or "cultural",
            "region": draft.region or ("Ghana" if ghanaian else "General"),
            "character_name": draft.character_name or request.character_name or ("Kofi" if ghanaian else "Ama"),
            "content": draft.content or "",
            "cultural_notes": draft.cultural_notes,
            "learning_concepts": draft.concepts_covered or list(request.learning_concepts),
            "skill_level": request.skill_level,
            "emotional_tone": request.emotional_tone or EmotionalTone.NEUTRAL,
            "cultural_context": request.cultural_context,
            "has_choices": draft.has_choices,
            "choice_prompt": draft.choice_prompt,
        }

    def _assemble_story(self, request: StoryRequest, draft: StoryDraft) -> StoryArtifact:
        return StoryArtifact(kind=RequestKind.FRESH, **self._story_fields(request, draft))

    def _assemble_continuation(self, request: StoryRequest, branch: BranchStub, draft: StoryDraft) -> StoryArtifact:
        return StoryArtifact(
            kind=RequestKind.CONTINUATION,
            parent_story_id=branch.parent_story_id,
            branch_id=branch.id,
            challenge=self._challenge_from_draft(draft.challenge, request),
            **self._story_fields(request, draft),
        )

    @staticmethod
    def _assemble_branches(request: StoryRequest, parent: StoryArtifact, draft: BranchSetDraft) -> List[BranchStub]:
        concepts = list(request.learning_concepts)
        branches = []
        for i, item in enumerate(draft.branches):
            focus = (item.focus_concept or "").strip() or concepts[i % len(concepts)]
            branches.append(BranchStub(
                id=f"{parent.id}_branch_{i + 1}",
                parent_story_id=parent.id,
                choice_text=item.choice_text,
                description=item.description,
                content=item.content,
                emotional_tone=EmotionalTone.parse(item.emotional_tone),
                focus_concept=focus,
                learning_concepts=concepts,
                skill_level=request.skill_level,
                cultural_context=request.cultural_context,
            ))
        return branches
