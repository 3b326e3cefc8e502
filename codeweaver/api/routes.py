"""
API routes for Codeweaver

REST endpoints for story generation and cache maintenance. The routes only
map JSON bodies onto the NarrativeOrchestrator; generation failures never
surface here because the orchestrator always returns an artifact.
"""

from fastapi import APIRouter, HTTPException, Path
from typing import Dict, Any, List, Optional
from datetime import timedelta
import logging

from pydantic import BaseModel, Field, ValidationError

from codeweaver.config import get_settings
from codeweaver.config.limits import (
    DEFAULT_BRANCH_COUNT,
    MIN_BRANCH_COUNT,
    MAX_BRANCH_COUNT,
    LEARNER_ID_PATTERN,
)
from codeweaver.models import (
    StoryRequest,
    RequestKind,
    SkillLevel,
    EmotionalTone,
    StoryArtifact,
    BranchStub,
    GenerationDiagnostics,
)
from codeweaver.services.orchestrator import NarrativeOrchestrator
from codeweaver.services.events import EVENT_NARRATIVE_DIAGNOSTICS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["stories"])

# Global orchestrator (set by main app)
_orchestrator: Optional[NarrativeOrchestrator] = None


def set_orchestrator(orchestrator: Optional[NarrativeOrchestrator]):
    """Set the global orchestrator instance"""
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> NarrativeOrchestrator:
    """Get the global orchestrator instance"""
    if _orchestrator is None:
        raise HTTPException(status_code=500, detail="Orchestrator not initialized")
    return _orchestrator


# ============================================================================
# Request / Response Models
# ============================================================================

class StoryCreateRequest(BaseModel):
    learning_concepts: List[str] = Field(..., min_length=1)
    skill_level: SkillLevel = SkillLevel.BEGINNER
    emotional_tone: Optional[EmotionalTone] = None
    cultural_context: Optional[str] = None
    narrative_history: Optional[str] = None
    character_name: Optional[str] = None
    theme: Optional[str] = None
    learner_id: Optional[str] = Field(None, pattern=LEARNER_ID_PATTERN, description="Enables previous-story continuity")
    timeout: Optional[float] = Field(None, gt=0, description="Whole-request deadline in seconds")


class BranchesCreateRequest(BaseModel):
    parent_story: StoryArtifact
    count: int = Field(default=DEFAULT_BRANCH_COUNT, ge=MIN_BRANCH_COUNT, le=MAX_BRANCH_COUNT)
    timeout: Optional[float] = Field(None, gt=0)


class ContinueBranchRequest(BaseModel):
    branch: BranchStub
    introduce_challenge: bool = False
    timeout: Optional[float] = Field(None, gt=0)


class CachePurgeRequest(BaseModel):
    max_age_days: Optional[int] = Field(None, ge=0)


class StoryResponse(BaseModel):
    story: StoryArtifact
    diagnostics: GenerationDiagnostics


class BranchesResponse(BaseModel):
    branches: List[BranchStub]
    diagnostics: GenerationDiagnostics


def _invalid_request(e: ValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))


# ============================================================================
# Story Endpoints
# ============================================================================

@router.post("/stories", response_model=StoryResponse)
async def create_story(request: StoryCreateRequest):
    """
    Generate (or serve from cache) a fresh story.

    The response always carries a story; `diagnostics.degraded` is true when
    last-good or default content was served instead of a fresh generation.
    """
    orchestrator = get_orchestrator()
    try:
        story_request = StoryRequest(
            kind=RequestKind.FRESH,
            **request.model_dump(exclude={"timeout", "learner_id"}),
        )
    except ValidationError as e:
        raise _invalid_request(e)

    story, diagnostics = await orchestrator.generate_story_with_diagnostics(
        story_request, request.timeout, request.learner_id
    )
    return StoryResponse(story=story, diagnostics=diagnostics)


@router.post("/stories/branches", response_model=BranchesResponse)
async def create_branches(request: BranchesCreateRequest):
    """Generate the choices offered after a story"""
    orchestrator = get_orchestrator()
    try:
        branches, diagnostics = await orchestrator.generate_branches_with_diagnostics(
            request.parent_story, request.count, request.timeout
        )
    except ValidationError as e:
        raise _invalid_request(e)
    return BranchesResponse(branches=branches, diagnostics=diagnostics)


@router.post("/branches/continue", response_model=StoryResponse)
async def continue_branch(request: ContinueBranchRequest):
    """Expand a chosen branch into a full continuation, optionally with a challenge"""
    orchestrator = get_orchestrator()
    try:
        story, diagnostics = await orchestrator.continue_from_branch_with_diagnostics(
            request.branch, request.introduce_challenge, request.timeout
        )
    except ValidationError as e:
        raise _invalid_request(e)
    return StoryResponse(story=story, diagnostics=diagnostics)


# ============================================================================
# Cache Maintenance
# ============================================================================

@router.delete("/cache")
async def clear_cache():
    """Drop every cached story and branch set (memory and durable)"""
    orchestrator = get_orchestrator()
    removed = await orchestrator.cache.clear()
    logger.info(f"🧹 Cache cleared via API ({removed} entries)")
    return {"status": "ok", "removed": removed}


@router.post("/cache/purge")
async def purge_cache(request: Optional[CachePurgeRequest] = None):
    """Remove cache entries older than max_age_days (default from settings)"""
    orchestrator = get_orchestrator()
    max_age_days = request.max_age_days if request else None
    if max_age_days is None:
        max_age_days = get_settings().cache_max_age_days

    removed = await orchestrator.cache.purge_older_than(timedelta(days=max_age_days))
    return {"status": "ok", "removed": removed, "max_age_days": max_age_days}


# ============================================================================
# Learner History
# ============================================================================

@router.get("/learners/{learner_id}/history")
async def get_learner_history(learner_id: str = Path(..., pattern=LEARNER_ID_PATTERN)):
    """Previous stories remembered for a learner, oldest first"""
    orchestrator = get_orchestrator()
    if orchestrator.history is None:
        return {"learner_id": learner_id, "stories": []}
    summaries = await orchestrator.history.recent(learner_id)
    return {"learner_id": learner_id, "stories": [s.model_dump(mode="json") for s in summaries]}


# ============================================================================
# Health & Debug
# ============================================================================

@router.get("/health")
async def health_check():
    """Health check endpoint"""
    response: Dict[str, Any] = {
        "status": "healthy",
        "service": "Codeweaver",
        "orchestrator_initialized": _orchestrator is not None,
    }
    if _orchestrator is not None:
        response["online"] = await _orchestrator.connectivity.is_online()
        response["stats"] = _orchestrator.stats()
    return response


@router.get("/debug/rate-limiter")
async def get_rate_limiter_stats():
    """
    Get adaptive rate limiter statistics.

    Returns per-provider concurrency info, success rates, and scaling history.
    """
    orchestrator = get_orchestrator()
    limiter = orchestrator.client.rate_limiter
    stats = limiter.get_stats() if limiter is not None else {}

    return {
        "status": "ok",
        "rate_limiter": {
            "providers": stats,
            "summary": {
                "total_providers": len(stats),
                "total_calls": sum(p.get("total_calls", 0) for p in stats.values()),
                "total_rate_limits": sum(p.get("rate_limited_calls", 0) for p in stats.values()),
            }
        }
    }


@router.get("/debug/diagnostics")
async def get_recent_diagnostics(limit: int = 20):
    """Most recent per-request diagnostics, newest last"""
    orchestrator = get_orchestrator()
    if orchestrator.events is None:
        return {"status": "ok", "diagnostics": []}
    return {
        "status": "ok",
        "diagnostics": orchestrator.events.recent(EVENT_NARRATIVE_DIAGNOSTICS, limit=limit),
    }
