"""
Story Cache

Two-tier (memory + durable) FIFO cache for generated narratives.

Tiers:
- stories:  StoryArtifact payloads (fresh stories and continuations),
            bounded by max_story_entries (default 20)
- branches: List[BranchStub] payloads, bounded by max_branch_entries
            (default 10)

Memory tier:
- OrderedDict per tier, insertion order == FIFO order
- Reads never reorder; eviction is strictly by insertion sequence
- All mutation happens under a threading.Lock

Durable tier:
- Every put schedules a background write of <tier>/<key>.json plus a
  <tier>/<key>.meta.json sidecar (best-effort; failures are logged)
- Evicted entries stay durable until purged by age
- A durable hit on a memory miss is promoted as a new insertion
"""

import asyncio
import json
import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, List, Callable, Any, Set, Tuple

from pydantic import TypeAdapter, ValidationError

from codeweaver.config.limits import MAX_STORY_ENTRIES_DEFAULT, MAX_BRANCH_ENTRIES_DEFAULT
from codeweaver.models import (
    StoryArtifact,
    BranchStub,
    CacheEntry,
    CacheTier,
    RequestKind,
)
from codeweaver.services.blob_storage import BlobStore
from codeweaver.services.errors import DurableStorageError

logger = logging.getLogger(__name__)

_BRANCH_LIST = TypeAdapter(List[BranchStub])

PAYLOAD_SUFFIX = ".json"
META_SUFFIX = ".meta.json"


def tier_for_key(key: str) -> CacheTier:
    """Cache keys carry their request kind as a prefix"""
    if key.startswith(f"{RequestKind.BRANCH_SET.value}_"):
        return CacheTier.BRANCHES
    return CacheTier.STORIES


def payload_path(tier: CacheTier, key: str) -> str:
    return f"{tier.value}/{key}{PAYLOAD_SUFFIX}"


def meta_path(tier: CacheTier, key: str) -> str:
    return f"{tier.value}/{key}{META_SUFFIX}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def copy_payload(payload: Any) -> Any:
    """Deep copy of a story or branch list; cached payloads are never shared with callers"""
    if isinstance(payload, list):
        return [branch.model_copy(deep=True) for branch in payload]
    return payload.model_copy(deep=True)


class StoryCache:
    """
    Bounded FIFO cache with optional durable backing.

    Attributes:
        blob_store: Durable backend (None = memory only)
        limits: Max memory entries per tier
    """

    def __init__(
        self,
        blob_store: Optional[BlobStore] = None,
        max_story_entries: int = MAX_STORY_ENTRIES_DEFAULT,
        max_branch_entries: int = MAX_BRANCH_ENTRIES_DEFAULT,
        narrative_logger=None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if max_story_entries < 1 or max_branch_entries < 1:
            raise ValueError("Cache tiers must hold at least one entry")

        self.blob_store = blob_store
        self.limits: Dict[CacheTier, int] = {
            CacheTier.STORIES: max_story_entries,
            CacheTier.BRANCHES: max_branch_entries,
        }
        self.narrative_logger = narrative_logger
        self._clock = clock

        self._tiers: Dict[CacheTier, "OrderedDict[str, CacheEntry]"] = {
            CacheTier.STORIES: OrderedDict(),
            CacheTier.BRANCHES: OrderedDict(),
        }
        self._lock = threading.Lock()
        self._sequence = 0
        self._pending: Set[asyncio.Task] = set()

        # Counters
        self.hits = 0
        self.durable_hits = 0
        self.misses = 0
        self.evictions = 0
        self.durable_failures = 0

    # =========================================================================
    # Memory tier (synchronous, lock-guarded)
    # =========================================================================

    def _insert(self, tier: CacheTier, key: str, payload: Any, inserted_at: Optional[datetime] = None) -> Tuple[CacheEntry, List[str]]:
        """Insert as the newest entry and evict FIFO overflow. Returns (entry, evicted keys)."""
        with self._lock:
            entries = self._tiers[tier]
            entries.pop(key, None)

            self._sequence += 1
            entry = CacheEntry(
                key=key,
                tier=tier,
                payload=payload,
                sequence=self._sequence,
                inserted_at=inserted_at or self._clock(),
            )
            entries[key] = entry

            evicted = []
            while len(entries) > self.limits[tier]:
                old_key, _ = entries.popitem(last=False)
                evicted.append(old_key)
            self.evictions += len(evicted)

        if evicted:
            logger.info(f"🗑️ Evicted {len(evicted)} {tier.value} entr{'y' if len(evicted) == 1 else 'ies'} (FIFO): {', '.join(evicted)}")
        return entry, evicted

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Memory-only lookup that does not touch counters"""
        with self._lock:
            return self._tiers[tier_for_key(key)].get(key)

    def keys(self, tier: CacheTier) -> List[str]:
        """Memory keys of a tier, oldest first"""
        with self._lock:
            return list(self._tiers[tier].keys())

    def latest_story(self, predicate: Callable[[StoryArtifact], bool]) -> Optional[StoryArtifact]:
        """Newest in-memory story matching predicate (last-good fallback)"""
        with self._lock:
            candidates = list(self._tiers[CacheTier.STORIES].values())
        for entry in reversed(candidates):
            if predicate(entry.payload):
                return copy_payload(entry.payload)
        return None

    # =========================================================================
    # Public async API
    # =========================================================================

    async def get(self, key: str) -> Optional[Any]:
        """
        Look up a key: memory first, then durable.

        Returns:
            StoryArtifact, List[BranchStub], or None on miss
        """
        tier = tier_for_key(key)
        with self._lock:
            entry = self._tiers[tier].get(key)
            if entry is not None:
                self.hits += 1
                return copy_payload(entry.payload)

        payload, inserted_at = await self._read_durable(tier, key)
        if payload is None:
            with self._lock:
                self.misses += 1
            return None

        with self._lock:
            self.durable_hits += 1
        # Promotion counts as a new insertion; the original timestamp is kept for age purges
        self._insert(tier, key, payload, inserted_at=inserted_at)
        logger.info(f"📖 Promoted durable {tier.value} entry {key} into memory")
        return copy_payload(payload)

    async def put(self, key: str, payload: Any) -> CacheEntry:
        """
        Store a payload. Memory insertion is immediate; the durable write
        runs in the background.
        """
        tier = CacheTier.BRANCHES if isinstance(payload, list) else CacheTier.STORIES
        if tier != tier_for_key(key):
            raise ValueError(f"Key {key} does not belong to the {tier.value} tier")

        entry, _ = self._insert(tier, key, copy_payload(payload))

        if self.blob_store is not None:
            task = asyncio.get_running_loop().create_task(self._write_durable(entry))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return entry

    async def flush(self) -> None:
        """Wait for all scheduled durable writes to finish"""
        while True:
            pending = [task for task in self._pending if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def clear(self) -> int:
        """Drop every entry from memory and durable storage. Returns memory entries removed."""
        await self.flush()
        with self._lock:
            removed = sum(len(entries) for entries in self._tiers.values())
            for entries in self._tiers.values():
                entries.clear()

        if self.blob_store is not None:
            for tier in CacheTier:
                try:
                    for path in await self.blob_store.list_keys(f"{tier.value}/"):
                        await self.blob_store.delete(path)
                except DurableStorageError as e:
                    self._durable_failure("clear", tier.value, e)

        logger.info(f"🧹 Cache cleared ({removed} memory entries)")
        return removed

    async def purge_older_than(self, max_age: timedelta) -> int:
        """
        Remove entries inserted before now - max_age from both tiers.

        Returns:
            Number of distinct keys removed
        """
        await self.flush()
        cutoff = self._clock() - max_age
        removed: Set[str] = set()

        with self._lock:
            for entries in self._tiers.values():
                stale = [k for k, e in entries.items() if e.inserted_at < cutoff]
                for key in stale:
                    del entries[key]
                removed.update(stale)

        if self.blob_store is not None:
            for tier in CacheTier:
                removed.update(await self._purge_durable(tier, cutoff))

        if removed:
            logger.info(f"🧹 Purged {len(removed)} cache entries older than {max_age}")
        return len(removed)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "stories": len(self._tiers[CacheTier.STORIES]),
                "branches": len(self._tiers[CacheTier.BRANCHES]),
                "max_story_entries": self.limits[CacheTier.STORIES],
                "max_branch_entries": self.limits[CacheTier.BRANCHES],
                "hits": self.hits,
                "durable_hits": self.durable_hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "durable_failures": self.durable_failures,
                "pending_writes": len(self._pending),
                "durable": self.blob_store is not None,
            }

    # =========================================================================
    # Durable tier
    # =========================================================================

    @staticmethod
    def _serialize(tier: CacheTier, payload: Any) -> bytes:
        if tier == CacheTier.BRANCHES:
            return _BRANCH_LIST.dump_json(payload)
        return payload.model_dump_json().encode("utf-8")

    @staticmethod
    def _deserialize(tier: CacheTier, data: bytes) -> Any:
        if tier == CacheTier.BRANCHES:
            return _BRANCH_LIST.validate_json(data)
        return StoryArtifact.model_validate_json(data)

    def _durable_failure(self, operation: str, path: str, error: Exception) -> None:
        with self._lock:
            self.durable_failures += 1
        logger.warning(f"⚠️ Durable cache {operation} failed for {path}: {error}")
        if self.narrative_logger:
            self.narrative_logger.cache_operation(operation, path, status=f"failed: {error}")

    async def _write_durable(self, entry: CacheEntry) -> None:
        path = payload_path(entry.tier, entry.key)
        start = time.perf_counter()
        try:
            data = self._serialize(entry.tier, entry.payload)
            meta = json.dumps({
                "key": entry.key,
                "tier": entry.tier.value,
                "sequence": entry.sequence,
                "inserted_at": entry.inserted_at.isoformat(),
            }).encode("utf-8")
            await self.blob_store.put(path, data)
            await self.blob_store.put(meta_path(entry.tier, entry.key), meta)
        except Exception as e:
            self._durable_failure("write", path, e)
            return

        if self.narrative_logger:
            self.narrative_logger.cache_operation(
                "write", path, size_bytes=len(data), duration=time.perf_counter() - start
            )

    async def _read_durable(self, tier: CacheTier, key: str) -> Tuple[Optional[Any], Optional[datetime]]:
        if self.blob_store is None:
            return None, None

        path = payload_path(tier, key)
        start = time.perf_counter()
        try:
            data = await self.blob_store.get(path)
            if data is None:
                return None, None
            payload = self._deserialize(tier, data)
            meta_raw = await self.blob_store.get(meta_path(tier, key))
        except (DurableStorageError, ValidationError) as e:
            self._durable_failure("read", path, e)
            return None, None

        inserted_at = None
        if meta_raw:
            try:
                inserted_at = datetime.fromisoformat(json.loads(meta_raw)["inserted_at"])
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Ignoring malformed cache sidecar for {key}: {e}")

        if self.narrative_logger:
            self.narrative_logger.cache_operation(
                "read", path, size_bytes=len(data), duration=time.perf_counter() - start
            )
        return payload, inserted_at

    async def _purge_durable(self, tier: CacheTier, cutoff: datetime) -> Set[str]:
        removed: Set[str] = set()
        try:
            paths = await self.blob_store.list_keys(f"{tier.value}/")
            for path in paths:
                if not path.endswith(META_SUFFIX):
                    continue
                key = path[len(tier.value) + 1:-len(META_SUFFIX)]
                meta_raw = await self.blob_store.get(path)
                try:
                    inserted_at = datetime.fromisoformat(json.loads(meta_raw)["inserted_at"])
                except (ValueError, KeyError, TypeError):
                    # Unreadable sidecar: treat as stale
                    inserted_at = None
                if inserted_at is None or inserted_at < cutoff:
                    await self.blob_store.delete(payload_path(tier, key))
                    await self.blob_store.delete(path)
                    removed.add(key)
        except DurableStorageError as e:
            self._durable_failure("purge", tier.value, e)
        return removed
