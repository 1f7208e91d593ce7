"""Document store contract and the two bundled implementations.

Records (stories, connections, stored contexts) are kept as JSON-compatible
dictionaries grouped in named collections. The contract is deliberately small:
get and set by id, delete, and simple filtered and ordered queries. Like hosted
document databases, a store may refuse a filtered and ordered query for which
it has no composite index; callers catch :class:`IndexMissingError` and fall
back to an unordered query.

Two implementations are provided:

- InMemoryDocumentStore: dictionaries in process memory, used by tests and
  the ``memory`` storage backend.
- JsonDocumentStore: one JSON file per document under a data directory,
  written atomically.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import operator
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol, Sequence
from urllib.parse import quote

logger = logging.getLogger(__name__)

Document = dict[str, Any]


# =============================================================================
# Exceptions
# =============================================================================


class StoreError(Exception):
    """Base exception for document store failures.

    Attributes:
        message: Human-readable description (safe to log).
        collection: Collection involved, if known.
        original_error: Underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        collection: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.collection = collection
        self.original_error = original_error


class StoreUnavailableError(StoreError):
    """The backing store could not be reached or read."""


class IndexMissingError(StoreError):
    """A filtered, ordered query needs a composite index the store lacks."""


class DocumentNotFoundError(StoreError):
    """A document expected to exist is absent."""

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"Document not found in '{collection}'", collection=collection)
        self.doc_id = doc_id


# =============================================================================
# Query Types
# =============================================================================

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda value, options: value in options,
    "array-contains": lambda value, item: isinstance(value, list) and item in value,
}


@dataclass(frozen=True)
class Filter:
    """Single-field query condition, e.g. ``Filter("user_id", "==", "u1")``."""

    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, document: Document) -> bool:
        if self.field not in document:
            return False
        try:
            return _OPERATORS[self.op](document[self.field], self.value)
        except TypeError:
            return False


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


def sort_documents(documents: list[Document], order_by: OrderBy) -> list[Document]:
    """Sort documents on one field. Documents lacking the field go last."""
    present = [doc for doc in documents if doc.get(order_by.field) is not None]
    absent = [doc for doc in documents if doc.get(order_by.field) is None]
    present.sort(key=lambda doc: doc[order_by.field], reverse=order_by.descending)
    return present + absent


def apply_query(
    documents: Iterable[Document],
    filters: Sequence[Filter] = (),
    order_by: OrderBy | None = None,
    limit: int | None = None,
) -> list[Document]:
    """Filter, order and truncate documents in memory."""
    selected = [doc for doc in documents if all(f.matches(doc) for f in filters)]
    if order_by is not None:
        selected = sort_documents(selected, order_by)
    if limit is not None:
        selected = selected[:limit]
    return selected


# =============================================================================
# Store Contract
# =============================================================================


class DocumentStore(Protocol):
    """Async key/value document store grouped by collection."""

    async def get(self, collection: str, doc_id: str) -> Document | None:
        """Return a copy of the document, or None if absent."""
        ...

    async def set(self, collection: str, doc_id: str, data: Document, merge: bool = False) -> None:
        """Write a document. With ``merge`` the top-level keys are merged in."""
        ...

    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document. Deleting an absent document is a no-op."""
        ...

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[Document]:
        """Return copies of the matching documents."""
        ...


# =============================================================================
# In-Memory Store
# =============================================================================


class InMemoryDocumentStore:
    """Document store held in process memory.

    Args:
        indexes: Composite indexes as ``(collection, order_field)`` pairs. When
            given, a query combining filters with ordering on a field not in
            this set raises :class:`IndexMissingError`. When None, every query
            is allowed.

    Example:
        >>> store = InMemoryDocumentStore(indexes=set())
        >>> asyncio.run(store.set("stories", "s1", {"user_id": "u1"}))
        >>> asyncio.run(store.query("stories", [Filter("user_id", "==", "u1")]))
        [{'user_id': 'u1'}]
    """

    def __init__(self, indexes: Iterable[tuple[str, str]] | None = None) -> None:
        self._collections: dict[str, dict[str, Document]] = {}
        self._indexes = set(indexes) if indexes is not None else None

    async def get(self, collection: str, doc_id: str) -> Document | None:
        document = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def set(self, collection: str, doc_id: str, data: Document, merge: bool = False) -> None:
        documents = self._collections.setdefault(collection, {})
        if merge and doc_id in documents:
            merged = dict(documents[doc_id])
            merged.update(copy.deepcopy(data))
            documents[doc_id] = merged
        else:
            documents[doc_id] = copy.deepcopy(data)

    async def delete(self, collection: str, doc_id: str) -> None:
        self._collections.get(collection, {}).pop(doc_id, None)

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[Document]:
        if (
            self._indexes is not None
            and filters
            and order_by is not None
            and (collection, order_by.field) not in self._indexes
        ):
            raise IndexMissingError(
                f"Query on '{collection}' ordered by '{order_by.field}' requires an index",
                collection=collection,
            )
        documents = self._collections.get(collection, {}).values()
        return copy.deepcopy(apply_query(documents, filters, order_by, limit))


# =============================================================================
# JSON File Store
# =============================================================================


class JsonDocumentStore:
    """Document store keeping one JSON file per document.

    Layout is ``<root>/<collection>/<quoted id>.json``. File IO runs in a worker
    thread so the event loop is never blocked. Writes go to a temp file in the
    same directory and are renamed into place, so a reader never sees a partial
    document.

    Args:
        root: Data directory. Created on first write.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root).expanduser()
        self._logger = logging.getLogger(f"{__name__}.JsonDocumentStore")

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, collection: str, doc_id: str) -> Path:
        return self._root / quote(collection, safe="") / f"{quote(doc_id, safe='')}.json"

    def _read(self, path: Path) -> Document | None:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreUnavailableError(
                f"Could not read document: {type(e).__name__}", original_error=e
            ) from e

    def _write(self, path: Path, document: Document) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix=".doc_")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2, sort_keys=True)
                Path(temp_path).replace(path)
            except Exception:
                Path(temp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StoreUnavailableError(
                f"Could not write document: {type(e).__name__}", original_error=e
            ) from e

    def _get_sync(self, collection: str, doc_id: str) -> Document | None:
        return self._read(self._path(collection, doc_id))

    def _set_sync(self, collection: str, doc_id: str, data: Document, merge: bool) -> None:
        path = self._path(collection, doc_id)
        document = dict(data)
        if merge:
            existing = self._read(path)
            if existing is not None:
                existing.update(data)
                document = existing
        self._write(path, document)

    def _delete_sync(self, collection: str, doc_id: str) -> None:
        try:
            self._path(collection, doc_id).unlink(missing_ok=True)
        except OSError as e:
            raise StoreUnavailableError(
                f"Could not delete document: {type(e).__name__}", original_error=e
            ) from e

    def _all_sync(self, collection: str) -> list[Document]:
        directory = self._root / quote(collection, safe="")
        if not directory.exists():
            return []
        documents = []
        for path in sorted(directory.glob("*.json")):
            document = self._read(path)
            if document is not None:
                documents.append(document)
        return documents

    async def get(self, collection: str, doc_id: str) -> Document | None:
        return await asyncio.to_thread(self._get_sync, collection, doc_id)

    async def set(self, collection: str, doc_id: str, data: Document, merge: bool = False) -> None:
        await asyncio.to_thread(self._set_sync, collection, doc_id, data, merge)

    async def delete(self, collection: str, doc_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, collection, doc_id)

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[Document]:
        documents = await asyncio.to_thread(self._all_sync, collection)
        return apply_query(documents, filters, order_by, limit)
