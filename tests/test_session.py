"""Tests for the chat session and the debouncer.

Tests cover:
- Initialization, the welcome message and the change threshold
- Message validation (Scenario C) and duplicate ids
- User turns, conversation context upkeep and persistence
- Debounced re-analysis of edited content
- Revision proposals
"""

import asyncio
import itertools

import pytest

from memoirai.ai.assistant import ConversationalAssistant, RevisionStatus
from memoirai.ai.client import AIRateLimitError, AIResponse
from memoirai.ai.prompts import greeting_message
from memoirai.analysis.connections import DetectedPerson
from memoirai.chat.debounce import Debouncer
from memoirai.chat.session import MAX_TOPICS, ChatSession
from memoirai.config import AppConfig
from memoirai.core.models import ConversationContext, ElementType, Message, Sender
from memoirai.core.result import ErrorCode

from conftest import SCENARIO_A, run

EDITED_STORY = SCENARIO_A + " My father said the doctor was kind."


@pytest.fixture
def chat_config(tmp_path):
    return AppConfig(
        chat={"debounce_seconds": 0.01, "min_analysis_length": 20},
        paths={"config_dir": str(tmp_path / "memoir")},
    )


@pytest.fixture
def session(mock_provider, chat_config, engine, context_store):
    assistant_ids = itertools.count(1)
    session_ids = itertools.count(1)
    assistant = ConversationalAssistant(
        mock_provider, config=chat_config, engine=engine, id_factory=lambda: f"a{next(assistant_ids)}"
    )
    return ChatSession(
        assistant,
        engine=engine,
        context_store=context_store,
        config=chat_config,
        id_factory=lambda: f"s{next(session_ids)}",
    )


@pytest.fixture
def opened(session):
    run(session.initialize("S1", SCENARIO_A, {"title": "Hospital visit", "year": 1990}))
    return session


class TestInitialize:
    """Test opening a story."""

    def test_welcome_message(self, opened):
        [welcome] = opened.messages
        assert welcome.is_greeting
        assert welcome.sender == Sender.AI
        assert welcome.content == (
            greeting_message("Muse")
            + "\n\nLet's continue with your story. "
            + "Can you tell me more about what the hospital was like?"
        )
        assert [r.action for r in welcome.quick_replies] == ["ask_spatial", "ask_personal"]

    def test_story_and_analysis(self, opened):
        assert opened.story_id == "S1"
        assert opened.story.title == "Hospital visit"
        assert opened.story.year == 1990
        assert opened.analysis.values_of(ElementType.LOCATION) == ["hospital"]
        assert opened.detected_people == [DetectedPerson("Sarah", "mother")]

    def test_small_change_skips_reinitialization(self, opened):
        opened.send_message({"id": "u1", "content": "Hello", "sender": "user"})
        assert run(opened.initialize("S1", SCENARIO_A + " More.")) is False
        assert len(opened.messages) == 2

    def test_large_change_reinitializes(self, opened):
        opened.send_message({"id": "u1", "content": "Hello", "sender": "user"})
        assert run(opened.initialize("S1", SCENARIO_A + " x" * 60)) is True
        assert len(opened.messages) == 1

    def test_other_story_reinitializes(self, opened):
        assert run(opened.initialize("S2", "At the park.")) is True
        assert opened.story_id == "S2"

    def test_invalid_input(self, session):
        assert run(session.initialize("", "text")) is False
        assert session.error.code == ErrorCode.INVALID_INPUT
        assert run(session.initialize("S1", None)) is False

    def test_loads_stored_context(self, session, context_store):
        run(context_store.save("S1", ConversationContext(recent_topics=["school"])))
        run(session.initialize("S1", SCENARIO_A))
        assert session.conversation.recent_topics == ["school"]

    def test_store_outage_gives_empty_context(self, session, flaky_store):
        flaky_store.fail_reads = True
        assert run(session.initialize("S1", SCENARIO_A)) is True
        assert session.conversation == ConversationContext()


class TestSendMessage:
    """Test message validation."""

    def test_message_without_sender_rejected(self, opened):
        """Scenario C: the list is unchanged and the error flag set."""
        before = len(opened.messages)
        assert opened.send_message({"id": "x", "content": "hi"}) is False
        assert len(opened.messages) == before
        assert opened.error.code == ErrorCode.INVALID_INPUT

    @pytest.mark.parametrize(
        "raw",
        [
            {"content": "hi", "sender": "user"},
            {"id": "x", "content": "", "sender": "user"},
            {"id": "x", "content": "hi", "sender": "robot"},
            "not a message",
        ],
    )
    def test_malformed_messages_rejected(self, opened, raw):
        assert opened.send_message(raw) is False
        assert len(opened.messages) == 1

    def test_valid_message_clears_error(self, opened):
        opened.send_message({"id": "x", "content": "hi"})
        assert opened.send_message({"id": "x", "content": "hi", "sender": "user"}) is True
        assert opened.error is None

    def test_duplicate_id_rekeyed(self, opened):
        message = Message(id="dup", content="hi", sender=Sender.USER)
        opened.send_message(message)
        opened.send_message(message)
        ids = [m.id for m in opened.messages]
        assert len(ids) == len(set(ids)) == 3
        assert ids[1] == "dup"

    def test_clear_messages(self, opened):
        opened.clear_messages()
        assert opened.messages == []


class TestSendUserMessage:
    """Test user turns."""

    def test_exchange_appended(self, opened):
        result = run(opened.send_user_message("She held my hand in the kitchen."))
        assert result.ok
        senders = [m.sender for m in opened.messages]
        assert senders == [Sender.AI, Sender.USER, Sender.AI]
        assert opened.messages[-1].content == "That sounds like a vivid memory."
        assert not opened.is_loading

    def test_context_updated_and_saved(self, opened, context_store):
        run(opened.send_user_message("We sat in the kitchen."))
        history = opened.conversation.message_history
        assert history.last_user_message == "We sat in the kitchen."
        assert history.last_ai_response == "That sounds like a vivid memory."
        assert opened.conversation.recent_topics == ["kitchen"]

        stored = run(context_store.load("S1"))
        assert stored.recent_topics == ["kitchen"]
        assert stored.message_history.topic_stack == ["kitchen"]

    def test_event_preferred_as_topic(self, opened):
        run(opened.send_user_message("I fell in the kitchen."))
        assert opened.conversation.recent_topics == ["fell"]

    def test_repeated_topic_moves_to_end(self, opened):
        for text in ("In the kitchen.", "At the park.", "Back in the kitchen."):
            run(opened.send_user_message(text))
        assert opened.conversation.recent_topics == ["park", "kitchen"]
        assert opened.conversation.message_history.topic_stack == ["kitchen", "park", "kitchen"]

    def test_topics_bounded(self, opened):
        words = ["tripped", "hit", "born", "stitches", "fell", "broke", "celebrated", "visited", "played", "learned"]
        for word in words + ["kitchen"]:
            run(opened.send_user_message(f"Then I {word}."))
        topics = opened.conversation.recent_topics
        assert len(topics) == MAX_TOPICS
        assert topics[0] == "hit"
        assert topics[-1] == "kitchen"
        assert len(opened.conversation.message_history.topic_stack) == MAX_TOPICS

    def test_save_failure_does_not_fail_send(self, opened, flaky_store):
        flaky_store.fail_writes = True
        result = run(opened.send_user_message("In the kitchen."))
        assert result.ok
        assert opened.conversation.recent_topics == ["kitchen"]

    def test_provider_failure_sets_error(self, opened, mock_provider):
        mock_provider.complete.side_effect = AIRateLimitError()
        result = run(opened.send_user_message("Hello there"))

        assert result.error.code == ErrorCode.RATE_LIMITED
        assert opened.error.code == ErrorCode.RATE_LIMITED
        assert [m.sender for m in opened.messages] == [Sender.AI, Sender.USER]
        assert not opened.is_loading

    def test_requires_open_story(self, session):
        assert run(session.send_user_message("Hi")).error.code == ErrorCode.INVALID_INPUT

    def test_blank_text(self, opened, mock_provider):
        assert run(opened.send_user_message("  ")).error.code == ErrorCode.INVALID_INPUT
        mock_provider.complete.assert_not_called()


class TestContentChanged:
    """Test debounced re-analysis."""

    def test_reanalysis_after_quiet_period(self, opened):
        async def scenario():
            assert opened.content_changed(EDITED_STORY) is True
            assert opened.reanalysis_pending
            await asyncio.sleep(0.1)

        run(scenario())
        assert not opened.reanalysis_pending
        assert opened.story.content == EDITED_STORY
        assert "father" in opened.analysis.values_of(ElementType.PERSON)

    def test_only_latest_edit_applied(self, opened):
        superseded = SCENARIO_A + " We stayed in the kitchen afterwards."

        async def scenario():
            opened.content_changed(superseded)
            opened.content_changed(EDITED_STORY)
            await asyncio.sleep(0.1)

        run(scenario())
        assert opened.story.content == EDITED_STORY
        assert "kitchen" not in opened.analysis.values_of(ElementType.LOCATION)

    def test_short_content_ignored(self, opened):
        async def scenario():
            return opened.content_changed("Too short.")

        assert run(scenario()) is False
        assert not opened.reanalysis_pending

    def test_unchanged_content_ignored(self, opened):
        async def scenario():
            return opened.content_changed(SCENARIO_A)

        assert run(scenario()) is False

    def test_close_cancels_pending(self, opened):
        async def scenario():
            opened.content_changed(EDITED_STORY)
            await opened.close()
            await asyncio.sleep(0.05)
            return opened.content_changed(EDITED_STORY + " More.")

        assert run(scenario()) is False
        assert opened.story.content == SCENARIO_A


class TestDebouncer:
    """Test the debouncer directly."""

    def test_callback_errors_are_contained(self):
        calls = []

        async def failing(value):
            calls.append(value)
            raise RuntimeError("boom")

        async def scenario():
            debouncer = Debouncer(0, failing)
            debouncer.schedule(1)
            await debouncer.flush()
            return debouncer.pending

        assert run(scenario()) is False
        assert calls == [1]

    def test_schedule_after_close_raises(self):
        async def noop():
            pass

        async def scenario():
            debouncer = Debouncer(0, noop)
            await debouncer.aclose()
            with pytest.raises(RuntimeError):
                debouncer.schedule()
            assert debouncer.closed

        run(scenario())


class TestProposeRevision:
    """Test revision proposals from the session."""

    def test_proposal_uses_story_content(self, opened, mock_provider):
        mock_provider.complete.return_value = AIResponse(text="Revised story text.", model="mock-model")
        result = run(opened.propose_revision())
        assert result.ok
        assert result.value.original == SCENARIO_A
        assert result.value.status == RevisionStatus.PROPOSED

    def test_proposal_failure_sets_error(self, opened, mock_provider):
        mock_provider.complete.side_effect = AIRateLimitError()
        assert not run(opened.propose_revision()).ok
        assert opened.error.code == ErrorCode.RATE_LIMITED
