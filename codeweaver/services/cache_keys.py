"""
Cache key derivation for story requests

Keys are a pure function of the request's semantic content:

    "<kind>_<first 32 hex chars of sha256(canonical json)>"

Canonical form:
- defaults applied (missing tone == "neutral", missing cultural context == "general")
- learning concepts sorted (order-insensitive)
- empty strings treated as absent
- JSON keys sorted, compact separators

Continuations key on the chosen branch id, so continuing a story never
overwrites the parent's cache entry.
"""

import hashlib
import json
from typing import Any, Dict

from codeweaver.models import StoryRequest, RequestKind, EmotionalTone

DEFAULT_CULTURAL_CONTEXT = "general"
KEY_DIGEST_LENGTH = 32


def _blank(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


def canonical_request(request: StoryRequest) -> Dict[str, Any]:
    """Build the canonical dict that is hashed into the cache key."""
    tone = request.emotional_tone or EmotionalTone.NEUTRAL
    canonical = {
        "kind": request.kind.value,
        "learning_concepts": sorted(request.learning_concepts),
        "skill_level": request.skill_level.value,
        "emotional_tone": tone.value,
        "cultural_context": (_blank(request.cultural_context) or DEFAULT_CULTURAL_CONTEXT).lower(),
        "parent_story_id": _blank(request.parent_story_id),
        "branch_id": _blank(request.branch_id),
        "narrative_history": _blank(request.narrative_history),
        "character_name": _blank(request.character_name),
        "theme": _blank(request.theme),
    }

    if request.kind == RequestKind.BRANCH_SET:
        canonical["branch_count"] = request.branch_count
    if request.kind == RequestKind.CONTINUATION:
        canonical["introduce_challenge"] = request.introduce_challenge

    return canonical


def derive_cache_key(request: StoryRequest) -> str:
    """
    Derive the cache key for a request.

    Equal requests always produce equal keys, across processes and restarts.
    """
    payload = json.dumps(
        canonical_request(request),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"{request.kind.value}_{digest[:KEY_DIGEST_LENGTH]}"
