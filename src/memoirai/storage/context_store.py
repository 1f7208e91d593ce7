"""Per-story conversational context with a time-boxed cache.

Reads favour availability over freshness. A cache entry younger than the TTL
is served without touching the backing store. When the store cannot be read,
the last cached value for the story is served even if it has expired; only
when nothing was ever cached does the read return None.

Writes are the opposite: a failed write propagates to the caller, who asked
for the data to be persisted and must learn that it was not.

Example:
    >>> contexts = ContextStore(InMemoryDocumentStore(), MemoryAnalysisEngine())
    >>> asyncio.run(contexts.save("S1", ConversationContext(recent_topics=["school"])))
    >>> asyncio.run(contexts.load("S1")).recent_topics
    ['school']
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from memoirai.analysis.engine import MemoryAnalysisEngine
from memoirai.core.models import (
    AnalysisResult,
    ConversationContext,
    StoredContext,
    sanitize_context,
    utcnow,
)
from memoirai.storage.migrations import CURRENT_CONTEXT_VERSION, migrate, needs_migration
from memoirai.storage.store import DocumentStore

logger = logging.getLogger(__name__)

CONTEXT_COLLECTION = "contexts"
DEFAULT_CACHE_TTL_SECONDS = 300.0


@dataclass
class _CacheEntry:
    record: StoredContext
    cached_at: float


class ContextStore:
    """Persists and caches :class:`ConversationContext` records by story id.

    Args:
        store: Backing document store.
        engine: Analysis engine used when a context is saved or loaded without
            an analysis.
        ttl: Cache freshness window in seconds.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        store: DocumentStore,
        engine: MemoryAnalysisEngine | None = None,
        ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._engine = engine or MemoryAnalysisEngine()
        self._ttl = ttl
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}
        self._logger = logging.getLogger(f"{__name__}.ContextStore")

    # =========================================================================
    # Writes
    # =========================================================================

    async def save(
        self,
        story_id: str,
        context: ConversationContext | dict[str, Any],
        analysis: AnalysisResult | None = None,
    ) -> None:
        """Persist a context for a story.

        When no analysis is given, one is computed from the user-authored text
        held in the context's message history. The cache is updated whether or
        not the write succeeds.

        Raises:
            ValueError: If ``story_id`` is empty.
            StoreError: If the backing store rejects the write.
        """
        if not story_id:
            raise ValueError("story_id is required")

        clean = sanitize_context(context)
        if analysis is None:
            analysis = self._engine.analyze(clean.user_authored_text())

        stored = StoredContext(
            **clean.model_dump(),
            analysis=analysis,
            updated_at=utcnow(),
            version=CURRENT_CONTEXT_VERSION,
        )
        try:
            await self._store.set(CONTEXT_COLLECTION, story_id, stored.model_dump(mode="json"))
        except Exception as e:
            self._logger.error(f"Context save failed for story: {type(e).__name__}")
            raise
        finally:
            self._cache[story_id] = _CacheEntry(stored, self._clock())

    # =========================================================================
    # Reads
    # =========================================================================

    async def load(self, story_id: str) -> ConversationContext | None:
        """Return the sanitized context for a story, or None. Never raises."""
        stored = await self._load_stored(story_id)
        return stored.to_context() if stored is not None else None

    async def get_analysis(self, story_id: str) -> AnalysisResult | None:
        """Return the analysis saved alongside a story's context, if any."""
        stored = await self._load_stored(story_id)
        return stored.analysis if stored is not None else None

    async def _load_stored(self, story_id: str) -> StoredContext | None:
        if not story_id:
            return None

        entry = self._cache.get(story_id)
        if entry is not None and self._is_fresh(entry):
            return entry.record

        try:
            raw = await self._store.get(CONTEXT_COLLECTION, story_id)
            if raw is None:
                self._cache.pop(story_id, None)
                return None
            stored = await self._upgrade(story_id, raw)
        except Exception as e:
            if entry is not None:
                self._logger.warning(
                    f"Context read failed ({type(e).__name__}); serving cached copy"
                )
                return entry.record
            self._logger.warning(f"Context read failed ({type(e).__name__}); no cached copy")
            return None

        self._cache[story_id] = _CacheEntry(stored, self._clock())
        return stored

    async def _upgrade(self, story_id: str, raw: dict[str, Any]) -> StoredContext:
        """Validate a raw record, migrating and re-analyzing as needed.

        Upgraded records are written back on a best-effort basis; a failed
        write-back is logged and the upgraded record is still returned.
        """
        stale = needs_migration(raw)
        stored = StoredContext.model_validate(migrate(raw) if stale else raw)

        if stored.analysis is None:
            stored = stored.model_copy(
                update={"analysis": self._engine.analyze(stored.user_authored_text())}
            )
            stale = True

        if stale:
            try:
                await self._store.set(CONTEXT_COLLECTION, story_id, stored.model_dump(mode="json"))
                self._logger.info(f"Upgraded stored context to version {stored.version}")
            except Exception as e:
                self._logger.warning(f"Could not write back upgraded context: {type(e).__name__}")
        return stored

    # =========================================================================
    # Cache
    # =========================================================================

    def _is_fresh(self, entry: _CacheEntry) -> bool:
        return self._clock() - entry.cached_at < self._ttl

    def clear_cache(self, story_id: str | None = None) -> None:
        """Evict one story's cache entry, or every entry when no id is given."""
        if story_id is None:
            self._cache.clear()
        else:
            self._cache.pop(story_id, None)

    def is_cached(self, story_id: str) -> bool:
        entry = self._cache.get(story_id)
        return entry is not None and self._is_fresh(entry)
