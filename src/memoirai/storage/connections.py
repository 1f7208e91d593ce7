"""Connection registry: people linked across a user's stories.

A link between a story and a connection is stored on both sides: the story
keeps the connection id in ``Story.connections`` and the connection keeps a
:class:`StoryReference` in ``Connection.stories``. Every operation here writes
the two sides as one logical step. When the second write fails the first one
is rolled back, and the operation reports failure, so the caller can simply
retry.

Linking is idempotent: linking an already linked name to the same story
returns the existing connection without writing anything.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import ValidationError

from memoirai.analysis.connections import ConnectionDetector, DetectedPerson
from memoirai.core.models import (
    Connection,
    ConnectionAppearance,
    ConnectionData,
    Story,
    StoryReference,
    normalize_name,
    utcnow,
)
from memoirai.core.result import ErrorCode, Result
from memoirai.storage.store import DocumentStore, Filter, StoreError
from memoirai.storage.stories import StoryRepository

logger = logging.getLogger(__name__)

CONNECTION_COLLECTION = "connections"


class ConnectionRegistry:
    """Creates, links, unlinks and deletes connections.

    Operations for the same user are serialized with a per-user lock, which
    keeps the one-record-per-name rule intact under concurrent calls.

    Args:
        store: Backing document store.
        stories: Story repository. Built on ``store`` if omitted.
        detector: Connection detector used by :meth:`detect_new_connections`.
    """

    def __init__(
        self,
        store: DocumentStore,
        stories: StoryRepository | None = None,
        detector: ConnectionDetector | None = None,
    ) -> None:
        self._store = store
        self._stories = stories or StoryRepository(store)
        self._stories.attach_deleter(self.delete_story)
        self._detector = detector or ConnectionDetector()
        self._locks: dict[str, asyncio.Lock] = {}
        self._logger = logging.getLogger(f"{__name__}.ConnectionRegistry")

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._locks:
            self._locks[user_id] = asyncio.Lock()
        return self._locks[user_id]

    # =========================================================================
    # Linking
    # =========================================================================

    async def add_connection_to_story(
        self,
        user_id: str,
        story_id: str,
        data: ConnectionData | dict[str, Any],
    ) -> Result[Connection]:
        """Link a person to a story, creating the connection if needed.

        Args:
            user_id: Owner of the story and the connection.
            story_id: Story to link.
            data: Person name, relationship and optional notes.

        Returns:
            The linked connection, or a failure with code ``invalid_input``,
            ``not_found`` (story missing or owned by someone else),
            ``store_error`` (nothing was written) or ``link_failed``
            (a write failed and was rolled back).
        """
        if not user_id or not story_id:
            return Result.failure(ErrorCode.INVALID_INPUT)
        try:
            person = ConnectionData.model_validate(data)
        except ValidationError:
            return Result.failure(ErrorCode.INVALID_INPUT)

        async with self._lock_for(user_id):
            try:
                story = await self._stories.get(story_id)
                existing = await self._find_by_name(user_id, person.name)
            except StoreError as e:
                self._logger.warning(f"Cannot link connection, store read failed: {e.message}")
                return Result.failure(ErrorCode.STORE_ERROR)

            if story is None or story.user_id != user_id:
                return Result.failure(ErrorCode.NOT_FOUND)

            if existing is None:
                connection = self._new_connection(user_id, story, person)
                write_connection = True
            else:
                connection = existing.model_copy(deep=True)
                write_connection = not connection.has_story(story_id)
                if write_connection:
                    connection.stories.append(
                        StoryReference(story_id=story.id, title=story.title, year=story.year)
                    )
                    connection.updated_at = utcnow()

            write_story = connection.id not in story.connections
            if not write_connection and not write_story:
                return Result.success(connection)

            if write_connection:
                try:
                    await self._save_connection(connection)
                except StoreError as e:
                    self._logger.warning(f"Connection write failed: {e.message}")
                    return Result.failure(ErrorCode.LINK_FAILED)

            if write_story:
                linked = story.model_copy(update={"connections": [*story.connections, connection.id]})
                try:
                    await self._stories.save(linked)
                except StoreError as e:
                    self._logger.warning(f"Story link write failed, rolling back: {e.message}")
                    if write_connection:
                        await self._restore(existing, connection.id)
                    return Result.failure(ErrorCode.LINK_FAILED)

            self._logger.info(
                "Linked connection to story"
                + (" (new connection)" if existing is None else "")
            )
            return Result.success(connection)

    async def remove_connection_from_story(
        self, story_id: str, connection_id: str
    ) -> Result[Connection]:
        """Unlink a connection from one story.

        The connection record is kept even when no stories remain; only an
        explicit :meth:`delete_connection` removes it.
        """
        if not story_id or not connection_id:
            return Result.failure(ErrorCode.INVALID_INPUT)

        try:
            owner = await self._get_connection(connection_id)
        except StoreError:
            return Result.failure(ErrorCode.STORE_ERROR)
        if owner is None:
            return Result.failure(ErrorCode.NOT_FOUND)

        async with self._lock_for(owner.user_id):
            try:
                connection = await self._get_connection(connection_id)
                story = await self._stories.get(story_id)
            except StoreError:
                return Result.failure(ErrorCode.STORE_ERROR)
            if connection is None:
                return Result.failure(ErrorCode.NOT_FOUND)
            return await self._unlink(connection, story_id, story)

    async def delete_connection(self, connection_id: str) -> Result[None]:
        """Delete a connection and its id from every linked story.

        Stories are unlinked one at a time, each together with its reference
        on the connection, so an interruption never leaves a one-sided link.
        The user's lock is held until the record is gone.
        """
        try:
            owner = await self._get_connection(connection_id)
        except StoreError:
            return Result.failure(ErrorCode.STORE_ERROR)
        if owner is None:
            return Result.failure(ErrorCode.NOT_FOUND)

        async with self._lock_for(owner.user_id):
            try:
                connection = await self._get_connection(connection_id)
            except StoreError:
                return Result.failure(ErrorCode.STORE_ERROR)
            if connection is None:
                return Result.failure(ErrorCode.NOT_FOUND)

            linked = len(connection.stories)
            for ref in list(connection.stories):
                try:
                    story = await self._stories.get(ref.story_id)
                except StoreError:
                    return Result.failure(ErrorCode.STORE_ERROR)
                result = await self._unlink(connection, ref.story_id, story)
                if not result.ok:
                    return Result.failure(result.error)
                connection = result.value

            try:
                await self._store.delete(CONNECTION_COLLECTION, connection_id)
            except StoreError:
                return Result.failure(ErrorCode.STORE_ERROR)

        self._logger.info(f"Deleted connection linked to {linked} stories")
        return Result.success(None)

    async def delete_story(self, story_id: str) -> None:
        """Unlink a story from every connection, then delete it.

        Connection records are kept. Both steps run under the owner's lock,
        so no link can be added to the story in between.

        Raises:
            StoreError: If a read or an unlink fails. The story is kept with
                its remaining links intact on both sides.
        """
        story = await self._stories.get(story_id)
        if story is None:
            return
        async with self._lock_for(story.user_id):
            current = await self._stories.get(story_id)
            if current is None:
                return
            for connection_id in list(current.connections):
                connection = await self._get_connection(connection_id)
                if connection is None:
                    continue
                result = await self._unlink(connection, story_id, current)
                if not result.ok:
                    raise StoreError(
                        f"Could not unlink connection: {result.error.code.value}",
                        collection=CONNECTION_COLLECTION,
                    )
                current = current.model_copy(
                    update={"connections": [c for c in current.connections if c != connection_id]}
                )
            await self._stories.remove(story_id)
        self._logger.info("Deleted story and unlinked its connections")

    async def _unlink(
        self, connection: Connection, story_id: str, story: Story | None
    ) -> Result[Connection]:
        """Remove one story link from both sides. The user's lock must be held."""
        previous = connection.model_copy(deep=True)
        updated = connection.model_copy(deep=True)
        updated.stories = [ref for ref in updated.stories if ref.story_id != story_id]
        updated.updated_at = utcnow()
        try:
            await self._save_connection(updated)
        except StoreError:
            return Result.failure(ErrorCode.LINK_FAILED)

        if story is not None and connection.id in story.connections:
            unlinked = story.model_copy(
                update={"connections": [c for c in story.connections if c != connection.id]}
            )
            try:
                await self._stories.save(unlinked)
            except StoreError as e:
                self._logger.warning(f"Story unlink failed, rolling back: {e.message}")
                await self._restore(previous, connection.id)
                return Result.failure(ErrorCode.LINK_FAILED)

        return Result.success(updated)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_connections_for_story(self, story_id: str) -> list[Connection]:
        """Return the connections referenced by a story. Missing ids are skipped."""
        try:
            story = await self._stories.get(story_id)
            if story is None:
                return []
            connections = []
            for connection_id in story.connections:
                connection = await self._get_connection(connection_id)
                if connection is not None:
                    connections.append(connection)
            return connections
        except StoreError as e:
            self._logger.warning(f"Could not read story connections: {e.message}")
            return []

    async def get_user_connections(self, user_id: str) -> list[Connection]:
        try:
            documents = await self._store.query(
                CONNECTION_COLLECTION, [Filter("user_id", "==", user_id)]
            )
        except StoreError as e:
            self._logger.warning(f"Could not read user connections: {e.message}")
            return []
        connections = []
        for document in documents:
            try:
                connections.append(Connection.model_validate(document))
            except ValidationError:
                self._logger.warning("Skipping malformed connection record")
        return connections

    async def detect_new_connections(self, user_id: str, content: str) -> list[DetectedPerson]:
        """Detect people in content who are not yet connections of the user."""
        if not user_id or not content or not content.strip():
            return []
        known = [connection.name for connection in await self.get_user_connections(user_id)]
        return self._detector.detect_with_relationships(content, known_names=known)

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _new_connection(user_id: str, story: Story, person: ConnectionData) -> Connection:
        return Connection(
            user_id=user_id,
            name=person.name,
            relationship=person.relationship,
            notes=person.notes,
            first_appearance=ConnectionAppearance(
                story_id=story.id,
                story_title=story.title,
                year=story.year,
                phase_id=story.phase_id,
            ),
            stories=[StoryReference(story_id=story.id, title=story.title, year=story.year)],
        )

    async def _find_by_name(self, user_id: str, name: str) -> Connection | None:
        documents = await self._store.query(
            CONNECTION_COLLECTION,
            [
                Filter("user_id", "==", user_id),
                Filter("normalized_name", "==", normalize_name(name)),
            ],
            limit=1,
        )
        return Connection.model_validate(documents[0]) if documents else None

    async def _get_connection(self, connection_id: str) -> Connection | None:
        raw = await self._store.get(CONNECTION_COLLECTION, connection_id)
        return Connection.model_validate(raw) if raw is not None else None

    async def _save_connection(self, connection: Connection) -> None:
        await self._store.set(
            CONNECTION_COLLECTION, connection.id, connection.model_dump(mode="json")
        )

    async def _restore(self, previous: Connection | None, connection_id: str) -> None:
        """Put a connection record back the way it was before a failed link."""
        try:
            if previous is None:
                await self._store.delete(CONNECTION_COLLECTION, connection_id)
            else:
                await self._save_connection(previous)
        except StoreError as e:
            self._logger.error(f"Rollback of connection record failed: {e.message}")
