"""
Story History

Remembers the stories each learner has been served so that new stories can
build on them. Only a summary is kept (id, title, concepts), newest last,
capped at HISTORY_MAX_STORIES per learner.

Storage:
- Memory: dict of learner id -> summaries
- Durable (optional): history/<learner_id>.json in the cache's blob store,
  loaded on first use after a restart

History is advisory. Storage failures are logged and never fail a request.
"""

import asyncio
import logging
import re
from typing import Dict, List, Optional

from pydantic import TypeAdapter, ValidationError

from codeweaver.config.limits import HISTORY_MAX_STORIES, LEARNER_ID_PATTERN
from codeweaver.models import StoryArtifact, StorySummary
from codeweaver.services.blob_storage import BlobStore
from codeweaver.services.errors import DurableStorageError

logger = logging.getLogger(__name__)

_SUMMARY_LIST = TypeAdapter(List[StorySummary])
_LEARNER_ID = re.compile(LEARNER_ID_PATTERN)

HISTORY_PREFIX = "history/"


def history_path(learner_id: str) -> str:
    if not _LEARNER_ID.match(learner_id or ""):
        raise ValueError(f"Invalid learner id: {learner_id!r}")
    return f"{HISTORY_PREFIX}{learner_id}.json"


def format_history(summaries: List[StorySummary]) -> Optional[str]:
    """
    Render summaries as the narrative history of a fresh story prompt.

    Returns None for a learner with no history, so first stories keep the
    first-story note.
    """
    if not summaries:
        return None
    lines = ["Previous stories:"]
    for summary in summaries:
        concepts = ", ".join(summary.learning_concepts) or "none"
        lines.append(f"- {summary.title} (concepts: {concepts})")
    return "\n".join(lines)


class StoryHistory:
    """
    Per-learner story summaries with optional durable backing.

    Attributes:
        blob_store: Durable backend (None = memory only)
        max_stories: Summaries kept per learner
    """

    def __init__(self, blob_store: Optional[BlobStore] = None, max_stories: int = HISTORY_MAX_STORIES):
        if max_stories < 1:
            raise ValueError("History must keep at least one story")
        self.blob_store = blob_store
        self.max_stories = max_stories
        self._learners: Dict[str, List[StorySummary]] = {}
        self._lock = asyncio.Lock()

    async def _load(self, learner_id: str) -> List[StorySummary]:
        if learner_id in self._learners:
            return self._learners[learner_id]

        summaries: List[StorySummary] = []
        if self.blob_store is not None:
            path = history_path(learner_id)
            try:
                data = await self.blob_store.get(path)
                if data:
                    summaries = _SUMMARY_LIST.validate_json(data)[-self.max_stories:]
            except (DurableStorageError, ValidationError) as e:
                logger.warning(f"⚠️ Could not load story history {path}: {e}")

        self._learners[learner_id] = summaries
        return summaries

    async def recent(self, learner_id: str) -> List[StorySummary]:
        """Summaries for a learner, oldest first"""
        history_path(learner_id)  # rejects malformed ids
        async with self._lock:
            return [s.model_copy(deep=True) for s in await self._load(learner_id)]

    async def record(self, learner_id: str, story: StoryArtifact) -> None:
        """
        Append a served story. Re-serving a story moves it to the newest
        position instead of duplicating it.
        """
        path = history_path(learner_id)
        async with self._lock:
            summaries = [s for s in await self._load(learner_id) if s.id != story.id]
            summaries.append(StorySummary.of(story))
            summaries = summaries[-self.max_stories:]
            self._learners[learner_id] = summaries

            if self.blob_store is not None:
                try:
                    await self.blob_store.put(path, _SUMMARY_LIST.dump_json(summaries))
                except DurableStorageError as e:
                    logger.warning(f"⚠️ Could not save story history {path}: {e}")

        logger.info(f"📚 Recorded '{story.title}' for learner {learner_id} ({len(summaries)} remembered)")
