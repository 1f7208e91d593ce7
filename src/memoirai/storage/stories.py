"""Story records in the document store."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from memoirai.core.models import Story, utcnow
from memoirai.storage.store import (
    DocumentNotFoundError,
    DocumentStore,
    Filter,
    IndexMissingError,
    OrderBy,
    StoreUnavailableError,
    sort_documents,
)

logger = logging.getLogger(__name__)

STORY_COLLECTION = "stories"
DEFAULT_PAGE_SIZE = 10


class StoryRepository:
    """Create, read, update and list stories.

    Args:
        store: Backing document store.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self._deleter: Callable[[str], Awaitable[None]] | None = None
        self._logger = logging.getLogger(f"{__name__}.StoryRepository")

    async def create(self, story: Story) -> Story:
        await self._store.set(STORY_COLLECTION, story.id, story.model_dump(mode="json"))
        self._logger.info(f"Created story ({len(story.content)} chars)")
        return story

    async def get(self, story_id: str) -> Story | None:
        """Return a story, or None if it does not exist.

        Raises:
            StoreError: If the store cannot be read.
        """
        raw = await self._store.get(STORY_COLLECTION, story_id)
        return Story.model_validate(raw) if raw is not None else None

    async def update(self, story_id: str, **changes: Any) -> Story:
        """Apply field changes to a story and stamp ``updated_at``.

        Raises:
            DocumentNotFoundError: If the story does not exist.
        """
        current = await self.get(story_id)
        if current is None:
            raise DocumentNotFoundError(STORY_COLLECTION, story_id)
        updated = current.model_copy(update={**changes, "updated_at": utcnow()})
        updated = Story.model_validate(updated.model_dump())
        await self._store.set(STORY_COLLECTION, story_id, updated.model_dump(mode="json"))
        return updated

    async def save(self, story: Story) -> None:
        """Write a story as-is (used by linking code that already holds it)."""
        await self._store.set(STORY_COLLECTION, story.id, story.model_dump(mode="json"))

    def attach_deleter(self, deleter: Callable[[str], Awaitable[None]]) -> None:
        """Route :meth:`delete` through ``deleter``.

        The connection registry attaches itself here so that deleting a
        story also unlinks it from its connections.
        """
        self._deleter = deleter

    async def delete(self, story_id: str) -> None:
        """Delete a story, through the attached deleter if there is one.

        Raises:
            StoreError: If the story or its links could not be updated. The
                story is kept in that case.
        """
        if self._deleter is not None:
            await self._deleter(story_id)
        else:
            await self.remove(story_id)

    async def remove(self, story_id: str) -> None:
        """Delete the story record only."""
        await self._store.delete(STORY_COLLECTION, story_id)

    async def get_user_stories(self, user_id: str, limit: int = DEFAULT_PAGE_SIZE) -> list[Story]:
        """Return a user's most recently updated stories, newest first.

        Without a composite index the store refuses the ordered query; the
        stories are then fetched unordered and sorted here. An unavailable
        store yields an empty list.
        """
        if not user_id:
            return []

        filters = [Filter("user_id", "==", user_id)]
        order = OrderBy("updated_at", descending=True)
        try:
            try:
                documents = await self._store.query(
                    STORY_COLLECTION, filters, order_by=order, limit=limit
                )
            except IndexMissingError:
                self._logger.warning("Index not ready, using fallback story query")
                documents = await self._store.query(STORY_COLLECTION, filters)
                documents = sort_documents(documents, order)[:limit]
        except StoreUnavailableError as e:
            self._logger.warning(f"Story store unavailable, returning no stories: {e.message}")
            return []

        stories = []
        for document in documents:
            try:
                stories.append(Story.model_validate(document))
            except ValidationError:
                self._logger.warning("Skipping malformed story record")
        return stories
