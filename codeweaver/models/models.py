"""
Pydantic data models for Codeweaver

Requests, generation drafts, validated artifacts and cache records for the
narrative generation pipeline.

GENERATION LIMITS
=================
Limits live in config/limits.py. When modifying them, also check:
- services/prompt_builder.py (contracts rendered into prompts)
- services/validation_service.py (word bounds, preview length)

| Field                    | Min | Max | Model        | Notes                           |
|--------------------------|-----|-----|--------------|---------------------------------|
| learning_concepts        | 1   | 6   | StoryRequest | De-duplicated, lower-cased      |
| branch_count             | 1   | 5   | StoryRequest | Branch-set requests only        |
| narrative_history        | 0   | 4000| StoryRequest | Trimmed, empty means absent     |
| StoryChallenge.difficulty| 1   | 5   | StoryChallenge | Matches skill level scale     |
"""

from pydantic import BaseModel, Field, validator, root_validator
from typing import List, Optional, Dict, Any, Tuple, Union
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import uuid

from codeweaver.config.limits import (
    DEFAULT_BRANCH_COUNT,
    MIN_BRANCH_COUNT,
    MAX_BRANCH_COUNT,
    MAX_LEARNING_CONCEPTS,
    NARRATIVE_HISTORY_MAX_LENGTH,
    CHALLENGE_MIN_DIFFICULTY,
    CHALLENGE_MAX_DIFFICULTY,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Enums
# ============================================================================

class RequestKind(str, Enum):
    FRESH = "fresh"
    BRANCH_SET = "branch_set"
    CONTINUATION = "continuation"


class TemplateKind(str, Enum):
    """Prompt template (and response schema) selected for a request"""
    STORY = "story"
    BRANCHES = "branches"
    CONTINUATION = "continuation"
    CHALLENGE = "challenge"


class SkillLevel(str, Enum):
    BEGINNER = "beginner"
    BASIC = "basic"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"

    @property
    def difficulty(self) -> int:
        """Difficulty on the 1-5 scale used by embedded challenges"""
        return list(SkillLevel).index(self) + 1


class EmotionalTone(str, Enum):
    NEUTRAL = "neutral"
    HAPPY = "happy"
    EXCITED = "excited"
    CALM = "calm"
    ENCOURAGING = "encouraging"
    DRAMATIC = "dramatic"
    CURIOUS = "curious"
    CONCERNED = "concerned"
    SAD = "sad"
    PROUD = "proud"
    THOUGHTFUL = "thoughtful"
    WISE = "wise"
    MYSTERIOUS = "mysterious"
    PLAYFUL = "playful"
    SERIOUS = "serious"
    SURPRISED = "surprised"
    INSPIRED = "inspired"
    DETERMINED = "determined"
    REFLECTIVE = "reflective"
    CELEBRATORY = "celebratory"

    @classmethod
    def parse(cls, value: Any) -> "EmotionalTone":
        """Lenient parse for generator output; unknown tones become neutral"""
        if isinstance(value, cls):
            return value
        if not value:
            return cls.NEUTRAL
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.NEUTRAL


class IssueSeverity(str, Enum):
    HARD = "hard"  # Invalidates the result
    SOFT = "soft"  # Recorded as a warning only


class CacheTier(str, Enum):
    STORIES = "stories"
    BRANCHES = "branches"


# ============================================================================
# Request
# ============================================================================

class StoryRequest(BaseModel):
    """
    Immutable generation request.

    Created per call and discarded afterwards. Its semantic content is the
    sole input to the cache key (see services/cache_keys.py).
    """
    kind: RequestKind = RequestKind.FRESH
    learning_concepts: Tuple[str, ...] = Field(..., description="Ordered set of concept identifiers")
    skill_level: SkillLevel = SkillLevel.BEGINNER
    emotional_tone: Optional[EmotionalTone] = None
    cultural_context: Optional[str] = Field(None, description="Cultural context tag, e.g. 'ghana'")
    parent_story_id: Optional[str] = None
    branch_id: Optional[str] = Field(None, description="Chosen branch (continuation requests)")
    narrative_history: Optional[str] = None
    branch_count: int = Field(default=DEFAULT_BRANCH_COUNT, ge=MIN_BRANCH_COUNT, le=MAX_BRANCH_COUNT)
    character_name: Optional[str] = None
    theme: Optional[str] = None
    introduce_challenge: bool = False

    class Config:
        frozen = True

    @validator('learning_concepts', pre=True)
    def normalize_concepts(cls, v):
        if isinstance(v, str):
            v = [v]
        seen = []
        for concept in v or []:
            normalized = " ".join(str(concept).split()).lower()
            if normalized and normalized not in seen:
                seen.append(normalized)
        if not seen:
            raise ValueError("At least one learning concept is required")
        if len(seen) > MAX_LEARNING_CONCEPTS:
            raise ValueError(f"Maximum {MAX_LEARNING_CONCEPTS} learning concepts allowed")
        return tuple(seen)

    @validator('cultural_context', 'character_name', 'theme', 'parent_story_id', pre=True)
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @validator('narrative_history', pre=True)
    def trim_history(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        if not v:
            return None
        if len(v) > NARRATIVE_HISTORY_MAX_LENGTH:
            # Keep the most recent part of the history
            v = v[-NARRATIVE_HISTORY_MAX_LENGTH:]
        return v

    @validator('branch_id', pre=True, always=True)
    def continuation_needs_branch(cls, v, values):
        if isinstance(v, str):
            v = v.strip() or None
        if values.get('kind') == RequestKind.CONTINUATION and not v:
            raise ValueError("Continuation requests require a branch_id")
        return v


# ============================================================================
# Prompt & Generation
# ============================================================================

class FieldShape(str, Enum):
    STRING = "string"
    LIST = "list"
    NUMBER = "number"
    OBJECT = "object"
    BOOLEAN = "boolean"


class OutputContract(BaseModel):
    """
    Expected shape of a generator response.

    Rendered into the prompt by the PromptBuilder and checked by the
    ContentValidator, so both always agree on the same ground truth.
    Required fields may use dotted paths for nested objects
    (e.g. "challenge.difficulty").
    """
    response_kind: TemplateKind
    root_is_array: bool = False
    required_fields: Dict[str, FieldShape]
    optional_fields: Dict[str, FieldShape] = Field(default_factory=dict)
    narrative_fields: List[str] = Field(default_factory=list)
    min_words: int = 0
    max_words: int = 0
    expected_items: Optional[int] = None


class PromptSpec(BaseModel):
    """Prompt text plus the output contract it promises"""
    template: TemplateKind
    text: str
    contract: OutputContract
    max_output_tokens: int = 2048
    temperature: float = 0.7
    simplified: bool = False


class RawGenerationResponse(BaseModel):
    """Opaque generator output plus call metadata"""
    text: str
    latency_seconds: float = 0.0
    truncated: bool = False
    model: Optional[str] = None
    finish_reason: Optional[str] = None
    attempts: int = 1


@dataclass
class GenerationOptions:
    """Per-call generation limits (seconds)"""
    timeout: float = 10.0
    max_retries: int = 2
    total_budget: float = 20.0


# ============================================================================
# Validation
# ============================================================================

class ValidationIssue(BaseModel):
    code: str
    message: str
    severity: IssueSeverity = IssueSeverity.HARD


class ChallengeDraft(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    difficulty: Optional[int] = None
    available_block_types: List[str] = Field(default_factory=list)
    success_criteria: Dict[str, Any] = Field(default_factory=dict)


class StoryDraft(BaseModel):
    """
    Typed view of a story / continuation / challenge response.

    Fields that were missing or malformed in the payload are left empty;
    the validator reports them separately.
    """
    response_kind: TemplateKind = TemplateKind.STORY
    title: Optional[str] = None
    theme: Optional[str] = None
    region: Optional[str] = None
    character_name: Optional[str] = None
    content: Optional[str] = None
    has_choices: bool = False
    choice_prompt: Optional[str] = None
    cultural_notes: Dict[str, str] = Field(default_factory=dict)
    challenge: Optional[ChallengeDraft] = None
    concepts_covered: List[str] = Field(default_factory=list)


class BranchDraft(BaseModel):
    choice_text: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = None
    emotional_tone: Optional[str] = None
    focus_concept: Optional[str] = None


class BranchSetDraft(BaseModel):
    branches: List[BranchDraft] = Field(default_factory=list)
    concepts_covered: List[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    is_valid: bool
    extracted: Optional[Union[StoryDraft, BranchSetDraft]] = None
    errors: List[ValidationIssue] = Field(default_factory=list)

    @property
    def hard_errors(self) -> List[ValidationIssue]:
        return [e for e in self.errors if e.severity == IssueSeverity.HARD]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [e for e in self.errors if e.severity == IssueSeverity.SOFT]

    def has_error(self, code: str) -> bool:
        return any(e.code == code for e in self.errors)


# ============================================================================
# Artifacts
# ============================================================================

class ContentBlock(BaseModel):
    """One paragraph of narration"""
    text: str
    emotional_tone: Optional[EmotionalTone] = None
    media_ref: Optional[str] = None


class StoryChallenge(BaseModel):
    """Coding challenge embedded in a story"""
    id: str = Field(default_factory=lambda: f"challenge_{uuid.uuid4().hex[:12]}")
    title: str
    description: str
    difficulty: int = Field(default=1, ge=CHALLENGE_MIN_DIFFICULTY, le=CHALLENGE_MAX_DIFFICULTY)
    available_block_types: List[str] = Field(default_factory=lambda: ["move", "turn", "repeat"])
    success_criteria: Dict[str, Any] = Field(default_factory=dict)


class BranchStub(BaseModel):
    """Short, unexpanded narrative choice offered after a story"""
    id: str
    parent_story_id: Optional[str] = None
    choice_text: str
    description: Optional[str] = None
    content: str
    emotional_tone: EmotionalTone = EmotionalTone.NEUTRAL
    focus_concept: str
    learning_concepts: List[str] = Field(default_factory=list)
    skill_level: SkillLevel = SkillLevel.BEGINNER
    cultural_context: Optional[str] = None


class StoryArtifact(BaseModel):
    """
    Validated story output.

    Treated as immutable once cached; continuations produce a new artifact
    under their own cache key.
    """
    id: str = Field(default_factory=lambda: f"story_{uuid.uuid4().hex[:12]}")
    kind: RequestKind = RequestKind.FRESH
    title: str
    theme: str = "cultural"
    region: str = "Ghana"
    character_name: str = "Kofi"
    content: List[ContentBlock] = Field(default_factory=list)
    challenge: Optional[StoryChallenge] = None
    branches: List[BranchStub] = Field(default_factory=list)
    cultural_notes: Dict[str, str] = Field(default_factory=dict)
    learning_concepts: List[str] = Field(default_factory=list, description="Concepts actually covered")
    skill_level: SkillLevel = SkillLevel.BEGINNER
    emotional_tone: EmotionalTone = EmotionalTone.NEUTRAL
    cultural_context: Optional[str] = None
    parent_story_id: Optional[str] = None
    branch_id: Optional[str] = None
    has_choices: bool = False
    choice_prompt: Optional[str] = None
    is_fallback: bool = False
    created_at: datetime = Field(default_factory=_utcnow)

    @root_validator(pre=True)
    def accept_plain_text_content(cls, values):
        """Accept a plain string for content and split it into blocks."""
        if not isinstance(values, dict):
            return values
        content = values.get('content')
        if isinstance(content, str):
            values = dict(values)
            values['content'] = [
                {"text": p.strip()} for p in content.split("\n\n") if p.strip()
            ]
        return values

    @property
    def text(self) -> str:
        return "\n\n".join(block.text for block in self.content)


CachePayload = Union[StoryArtifact, List[BranchStub]]


class StorySummary(BaseModel):
    """Per-learner record of a served story, used for continuity in later prompts"""
    id: str
    title: str
    learning_concepts: List[str] = Field(default_factory=list)
    recorded_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def of(cls, story: StoryArtifact) -> "StorySummary":
        return cls(id=story.id, title=story.title, learning_concepts=list(story.learning_concepts))


@dataclass
class CacheEntry:
    """Cached payload plus FIFO bookkeeping"""
    key: str
    tier: CacheTier
    payload: Any  # StoryArtifact for stories, List[BranchStub] for branch sets
    sequence: int
    inserted_at: datetime = field(default_factory=_utcnow)


# ============================================================================
# Orchestration diagnostics
# ============================================================================

class GenerationState(str, Enum):
    CHECK_CACHE = "check_cache"
    HIT = "hit"
    CHECK_CONNECTIVITY = "check_connectivity"
    OFFLINE = "offline"
    GENERATE = "generate"
    VALIDATE = "validate"
    RETRY_SIMPLIFIED = "retry_simplified"
    STORE_AND_RETURN = "store_and_return"
    RETURN_DEFAULT = "return_default"


class ContentSource(str, Enum):
    CACHE = "cache"
    GENERATED = "generated"
    GENERATED_SIMPLIFIED = "generated_simplified"
    LAST_GOOD = "last_good"
    STATIC_DEFAULT = "static_default"


class StateTransition(BaseModel):
    from_state: Optional[GenerationState] = None
    to_state: GenerationState
    trigger: str
    at: datetime = Field(default_factory=_utcnow)


class GenerationDiagnostics(BaseModel):
    """
    How a request was served.

    Quality degradation (fallback content) is only observable here; the
    caller always receives a valid artifact.
    """
    cache_key: str
    kind: RequestKind
    source: Optional[ContentSource] = None
    degraded: bool = False
    coalesced: bool = False
    attempts: int = 0
    errors: List[ValidationIssue] = Field(default_factory=list)
    trace: List[StateTransition] = Field(default_factory=list)
    duration_seconds: Optional[float] = None

    @property
    def final_state(self) -> Optional[GenerationState]:
        return self.trace[-1].to_state if self.trace else None
