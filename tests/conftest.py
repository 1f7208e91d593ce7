"""Central Pytest Fixtures for Memoir AI.

Fixtures included:
- Text: rich_story (SCENARIO_A is a module constant)
- Stores: memory_store, json_store, flaky_store
- Time: fake_clock
- AI mocks: mock_config, mock_provider, mock_genai_response
- Services: engine, context_store, story_repository, registry, saved_story, app_config
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from memoirai.ai.client import AIResponse
from memoirai.analysis.engine import MemoryAnalysisEngine
from memoirai.config import AppConfig, reset_config
from memoirai.core.models import Story
from memoirai.storage.connections import ConnectionRegistry
from memoirai.storage.context_store import ContextStore
from memoirai.storage.store import InMemoryDocumentStore, JsonDocumentStore, StoreUnavailableError
from memoirai.storage.stories import StoryRepository

# =============================================================================
# Helper Classes
# =============================================================================


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyStore(InMemoryDocumentStore):
    """In-memory store whose reads and writes can be made to fail.

    ``fail_reads`` and ``fail_writes`` switch failures on for every call;
    ``fail_set_for`` fails writes to the named collections only. With
    ``yield_each_call`` every call first yields to the event loop, so
    concurrent coroutines interleave between store calls.
    """

    def __init__(self, indexes=None) -> None:
        super().__init__(indexes=indexes)
        self.fail_reads = False
        self.fail_writes = False
        self.fail_set_for: set[str] = set()
        self.yield_each_call = False
        self.set_calls: list[tuple[str, str]] = []

    async def _pause(self):
        if self.yield_each_call:
            await asyncio.sleep(0)

    async def get(self, collection, doc_id):
        await self._pause()
        if self.fail_reads:
            raise StoreUnavailableError("store offline", collection=collection)
        return await super().get(collection, doc_id)

    async def query(self, collection, filters=(), order_by=None, limit=None):
        await self._pause()
        if self.fail_reads:
            raise StoreUnavailableError("store offline", collection=collection)
        return await super().query(collection, filters, order_by=order_by, limit=limit)

    async def set(self, collection, doc_id, data, merge=False):
        await self._pause()
        self.set_calls.append((collection, doc_id))
        if self.fail_writes or collection in self.fail_set_for:
            raise StoreUnavailableError("write rejected", collection=collection)
        await super().set(collection, doc_id, data, merge=merge)

    async def delete(self, collection, doc_id):
        await self._pause()
        if self.fail_writes:
            raise StoreUnavailableError("write rejected", collection=collection)
        await super().delete(collection, doc_id)


def run(coro):
    """Run a coroutine to completion in a fresh event loop."""
    return asyncio.run(coro)


# =============================================================================
# Text Fixtures
# =============================================================================


SCENARIO_A = "My mother Sarah took me to the hospital when I was 5."


@pytest.fixture
def rich_story():
    """A longer story that establishes time, place and reaction."""
    return (
        "In 1985 my brother tripped in the kitchen and hit the table. "
        "My father said it looked bad, so we visited the hospital. "
        "He needed stitches, and my friend Tom brought a book."
    )


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def memory_store():
    return InMemoryDocumentStore()


@pytest.fixture
def flaky_store():
    return FlakyStore()


@pytest.fixture
def json_store(tmp_path):
    return JsonDocumentStore(tmp_path / "data")


@pytest.fixture
def fake_clock():
    return FakeClock()


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest.fixture
def engine():
    return MemoryAnalysisEngine()


@pytest.fixture
def context_store(flaky_store, engine, fake_clock):
    return ContextStore(flaky_store, engine, ttl=300.0, clock=fake_clock)


@pytest.fixture
def story_repository(flaky_store):
    return StoryRepository(flaky_store)


@pytest.fixture
def registry(flaky_store, story_repository):
    return ConnectionRegistry(flaky_store, stories=story_repository)


@pytest.fixture
def saved_story(story_repository):
    story = Story(id="S1", user_id="u1", title="Hospital visit", content=SCENARIO_A, year=1990)
    run(story_repository.create(story))
    return story


# =============================================================================
# AI Mocks
# =============================================================================


@pytest.fixture
def app_config(tmp_path, monkeypatch):
    """A real AppConfig rooted in a temporary directory."""
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    reset_config()
    config = AppConfig(paths={"config_dir": str(tmp_path / "memoir")})
    yield config
    reset_config()


@pytest.fixture
def mock_config():
    """Mock AppConfig for client tests."""
    config = MagicMock()
    config.ai.is_enabled.return_value = True
    config.ai.model_name = "gemini-1.5-flash"
    config.ai.transcription_model = "gemini-1.5-flash"
    config.ai.temperature = 0.7
    config.ai.max_output_tokens = 1000
    config.ai.timeout_seconds = 60
    config.ai.max_retries = 3
    config.ai.retry_base_delay = 0.01
    return config


@pytest.fixture
def mock_genai_response():
    """Mock Gemini API response."""
    response = MagicMock()
    response.text = "Generated text"
    response.prompt_feedback = None
    response.usage_metadata.prompt_token_count = 10
    response.usage_metadata.candidates_token_count = 20
    response.usage_metadata.total_token_count = 30
    candidate = MagicMock()
    candidate.finish_reason.name = "STOP"
    response.candidates = [candidate]
    return response


@pytest.fixture
def mock_provider():
    """CompletionProvider mock answering every request with a fixed reply."""
    provider = MagicMock()
    provider.complete = AsyncMock(
        return_value=AIResponse(text="That sounds like a vivid memory.", model="mock-model")
    )
    return provider
