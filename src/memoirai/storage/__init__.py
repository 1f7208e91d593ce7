"""Document stores and the repositories built on them."""

from memoirai.storage.connections import ConnectionRegistry
from memoirai.storage.context_store import ContextStore
from memoirai.storage.store import (
    DocumentNotFoundError,
    DocumentStore,
    Filter,
    IndexMissingError,
    InMemoryDocumentStore,
    JsonDocumentStore,
    OrderBy,
    StoreError,
    StoreUnavailableError,
)
from memoirai.storage.stories import StoryRepository

__all__ = [
    "ConnectionRegistry",
    "ContextStore",
    "DocumentNotFoundError",
    "DocumentStore",
    "Filter",
    "IndexMissingError",
    "InMemoryDocumentStore",
    "JsonDocumentStore",
    "OrderBy",
    "StoreError",
    "StoreUnavailableError",
    "StoryRepository",
]
