"""
Event System for Narrative Diagnostics

Publishes how each request was served (cache, generated, fallback) so that
degradation stays observable while callers always receive an artifact.
"""

from typing import Dict, Callable, Any, List, Optional
from collections import deque
import asyncio
import logging
from datetime import datetime

logger = logging.getLogger(__name__)


# ==================== Event Type Constants ====================
EVENT_REQUEST_STARTED = "request_started"
EVENT_CACHE_HIT = "cache_hit"
EVENT_GENERATION_FAILED = "generation_failed"
EVENT_VALIDATION_REJECTED = "validation_rejected"
EVENT_FALLBACK_SERVED = "fallback_served"
EVENT_NARRATIVE_DIAGNOSTICS = "narrative_diagnostics"


class NarrativeEvent:
    """Represents a narrative pipeline event"""
    def __init__(self, event_type: str, cache_key: str, data: Dict[str, Any]):
        self.event_type = event_type
        self.cache_key = cache_key
        self.data = data
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.event_type,
            "cache_key": self.cache_key,
            "data": self.data,
            "timestamp": self.timestamp.isoformat()
        }


class EventEmitter:
    """
    Event emitter for narrative pipeline events.

    Emits events as a request moves through the pipeline:
    - request_started: Orchestrator accepted a request
    - cache_hit: Served straight from the story cache
    - generation_failed: Generator raised (offline, timeout, rejected)
    - validation_rejected: Generated content failed validation
    - fallback_served: Last-good or static default content returned
    - narrative_diagnostics: Final GenerationDiagnostics for a request
    """

    def __init__(self, history_size: int = 50):
        self._listeners: Dict[str, List[Callable]] = {}
        self._history: deque = deque(maxlen=history_size)

    def on(self, event_type: str, callback: Callable):
        """Register event listener"""
        if event_type not in self._listeners:
            self._listeners[event_type] = []
        self._listeners[event_type].append(callback)

    def off(self, event_type: str, callback: Callable):
        """Remove event listener"""
        if event_type in self._listeners:
            self._listeners[event_type].remove(callback)

    async def emit(self, event_type: str, cache_key: str, data: Dict[str, Any]):
        """Emit event to all registered listeners"""
        event = NarrativeEvent(event_type, cache_key, data)
        self._history.append(event)

        for callback in list(self._listeners.get(event_type, [])):
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(event)
                else:
                    callback(event)
            except Exception as e:
                logger.error(f"Error in event listener for {event_type}: {e}")

    def recent(self, event_type: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent events, newest last"""
        events = [e for e in self._history if event_type is None or e.event_type == event_type]
        return [e.to_dict() for e in events[-limit:]]

    # ==================== Helper Methods ====================

    async def emit_request_started(self, cache_key: str, kind: str):
        await self.emit(EVENT_REQUEST_STARTED, cache_key, {"kind": kind})

    async def emit_cache_hit(self, cache_key: str, kind: str):
        await self.emit(EVENT_CACHE_HIT, cache_key, {"kind": kind})

    async def emit_generation_failed(self, cache_key: str, error_code: str, message: str):
        await self.emit(EVENT_GENERATION_FAILED, cache_key, {
            "code": error_code,
            "message": message
        })

    async def emit_validation_rejected(self, cache_key: str, codes: List[str], simplified: bool):
        await self.emit(EVENT_VALIDATION_REJECTED, cache_key, {
            "codes": codes,
            "simplified": simplified
        })

    async def emit_fallback_served(self, cache_key: str, source: str):
        await self.emit(EVENT_FALLBACK_SERVED, cache_key, {"source": source})

    async def emit_diagnostics(self, diagnostics):
        """Publish a GenerationDiagnostics record"""
        await self.emit(
            EVENT_NARRATIVE_DIAGNOSTICS,
            diagnostics.cache_key,
            diagnostics.model_dump(mode="json")
        )


# Global event emitter instance
narrative_events = EventEmitter()
