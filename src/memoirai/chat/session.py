"""Chat session state for one open story.

The session owns the visible message list, the latest analysis of the story
and the debounced re-analysis that follows editing. It never raises to its
caller: malformed messages are dropped and logged, failed sends leave an error
flag and the session ready for the next action.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from pydantic import ValidationError

from memoirai.ai.assistant import ConversationalAssistant, StoryRevision
from memoirai.ai.prompts import greeting_message
from memoirai.analysis.connections import ConnectionDetector, DetectedPerson
from memoirai.analysis.engine import MemoryAnalysisEngine
from memoirai.chat.debounce import Debouncer
from memoirai.config import AppConfig
from memoirai.core.models import (
    AnalysisResult,
    ConversationContext,
    ElementType,
    Message,
    MessageIdFactory,
    QuickReply,
    Sender,
    StoryContext,
)
from memoirai.core.result import ErrorCode, ErrorInfo, Result
from memoirai.storage.context_store import ContextStore
from memoirai.storage.store import StoreError

logger = logging.getLogger(__name__)

MAX_TOPICS = 10

# Order in which element types are tried when picking a message's topic
TOPIC_ELEMENT_ORDER = (
    ElementType.EVENT,
    ElementType.LOCATION,
    ElementType.PERSON,
    ElementType.OBJECT,
    ElementType.TIMEFRAME,
)


class ChatSession:
    """Coordinates analysis, the assistant and context persistence for a story.

    Args:
        assistant: Conversational assistant used for replies and revisions.
        engine: Analysis engine.
        context_store: Where conversation context is persisted. Optional.
        detector: Connection detector run on every analysis.
        config: Application configuration.
        id_factory: Message id generator.
    """

    def __init__(
        self,
        assistant: ConversationalAssistant,
        engine: MemoryAnalysisEngine | None = None,
        context_store: ContextStore | None = None,
        detector: ConnectionDetector | None = None,
        config: AppConfig | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._assistant = assistant
        self._engine = engine or MemoryAnalysisEngine()
        self._contexts = context_store
        self._detector = detector or ConnectionDetector()
        self._config = config or AppConfig()
        self._new_id = id_factory or MessageIdFactory()
        self._debouncer = Debouncer(self._config.chat.debounce_seconds, self._reanalyze)

        self._story: StoryContext | None = None
        self._content_length = 0
        self._last_analyzed: str | None = None
        self._analysis: AnalysisResult | None = None
        self._conversation = ConversationContext()
        self._detected: list[DetectedPerson] = []
        self._messages: list[Message] = []
        self._error: ErrorInfo | None = None
        self._is_loading = False
        self._logger = logging.getLogger(f"{__name__}.ChatSession")

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def story_id(self) -> str | None:
        return self._story.story_id if self._story else None

    @property
    def story(self) -> StoryContext | None:
        return self._story

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def analysis(self) -> AnalysisResult | None:
        return self._analysis

    @property
    def conversation(self) -> ConversationContext:
        return self._conversation

    @property
    def detected_people(self) -> list[DetectedPerson]:
        return list(self._detected)

    @property
    def error(self) -> ErrorInfo | None:
        return self._error

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def reanalysis_pending(self) -> bool:
        return self._debouncer.pending

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(
        self, story_id: str, content: str, metadata: dict[str, Any] | None = None
    ) -> bool:
        """Open a story, analyze it and reset the message list to a welcome message.

        Re-opening the same story is skipped while its length differs from the
        last analyzed content by less than ``content_change_threshold``.

        Returns:
            True when the session was (re)initialized.
        """
        if not story_id or not isinstance(content, str):
            self._logger.warning("Chat initialization rejected: missing story id or content")
            self._error = ErrorInfo.from_code(ErrorCode.INVALID_INPUT)
            return False

        threshold = self._config.chat.content_change_threshold
        if self.story_id == story_id and abs(len(content) - self._content_length) < threshold:
            self._logger.debug("Story unchanged since last initialization, skipping")
            return False

        metadata = metadata or {}
        self._debouncer.cancel()
        self._story = StoryContext(
            story_id=story_id,
            title=metadata.get("title") or "",
            content=content,
            year=metadata.get("year"),
            tags=list(metadata.get("tags") or []),
        )
        self._apply_analysis(content)
        self._assistant.clear(story_id)

        self._conversation = ConversationContext()
        if self._contexts is not None:
            stored = await self._contexts.load(story_id)
            if stored is not None:
                self._conversation = stored

        self._messages = [self._welcome_message(content)]
        self._error = None
        self._logger.info(f"Chat initialized for story ({len(content)} chars)")
        return True

    async def close(self) -> None:
        """Cancel pending re-analysis. The session accepts no further edits."""
        await self._debouncer.aclose()

    # =========================================================================
    # Messages
    # =========================================================================

    def send_message(self, message: Message | dict[str, Any]) -> bool:
        """Append a message after validating it.

        Messages missing an id, content or sender are dropped and logged. A
        message whose id is already present is appended under a fresh id.

        Returns:
            True if the message was appended.
        """
        try:
            if isinstance(message, Message):
                valid = Message.model_validate(message.model_dump())
            else:
                valid = Message.model_validate(message)
        except (ValidationError, TypeError) as e:
            count = e.error_count() if isinstance(e, ValidationError) else 1
            self._logger.warning(f"Dropping invalid message ({count} validation errors)")
            self._error = ErrorInfo.from_code(ErrorCode.INVALID_INPUT)
            return False

        if any(existing.id == valid.id for existing in self._messages):
            self._logger.warning("Duplicate message id, assigning a new id")
            valid = valid.model_copy(update={"id": self._new_id()})

        self._messages.append(valid)
        self._error = None
        return True

    async def send_user_message(self, text: str) -> Result[Message]:
        """Send what the writer typed to the assistant and record both sides.

        The user message is shown immediately; the reply is appended only on
        success. A failure sets :attr:`error` and leaves the session idle.
        """
        if self._story is None:
            return Result.failure(ErrorCode.INVALID_INPUT)
        if not text or not text.strip():
            return Result.failure(ErrorCode.INVALID_INPUT)

        self.send_message(Message(id=self._new_id(), content=text, sender=Sender.USER))
        self._is_loading = True
        try:
            result = await self._assistant.send(
                text, self._story, conversation=self._conversation, analysis=self._analysis
            )
        finally:
            self._is_loading = False

        if not result.ok:
            self._error = result.error
            return result

        self.send_message(result.value)
        await self._record_exchange(text, result.value.content)
        return result

    def clear_messages(self) -> None:
        self._messages = []
        self._error = None

    async def propose_revision(self) -> Result[StoryRevision]:
        """Ask the assistant for a revised story from the recent messages."""
        if self._story is None:
            return Result.failure(ErrorCode.INVALID_INPUT)
        result = await self._assistant.update_story(
            self._story.story_id, self._story.content, recent_messages=self._messages
        )
        if not result.ok:
            self._error = result.error
        return result

    # =========================================================================
    # Editing
    # =========================================================================

    def content_changed(self, content: str) -> bool:
        """Schedule re-analysis of edited content after the quiet period.

        Content shorter than ``min_analysis_length`` or identical to the last
        analyzed text is ignored.

        Returns:
            True if a re-analysis was scheduled.
        """
        if self._story is None or self._debouncer.closed:
            return False
        if len(content.strip()) < self._config.chat.min_analysis_length:
            return False
        if content == self._last_analyzed:
            return False
        self._debouncer.schedule(content)
        return True

    async def _reanalyze(self, content: str) -> None:
        self._apply_analysis(content)
        self._story = self._story.model_copy(update={"content": content})
        self._logger.debug(f"Re-analyzed edited story ({len(content)} chars)")

    # =========================================================================
    # Helpers
    # =========================================================================

    def _apply_analysis(self, content: str) -> None:
        self._analysis = self._engine.analyze(content)
        self._detected = self._detector.detect_with_relationships(content)
        self._last_analyzed = content
        self._content_length = len(content)

    def _welcome_message(self, content: str) -> Message:
        intro = greeting_message(self._config.chat.assistant_name)
        observation = self._engine.generate_greeting(content, self._analysis)
        questions = self._engine.generate_follow_up_questions(self._analysis)
        return Message(
            id=self._new_id(),
            content=f"{intro}\n\n{observation}",
            sender=Sender.AI,
            is_greeting=True,
            quick_replies=[
                QuickReply(label=q.text, action=f"ask_{q.context.value}") for q in questions[:3]
            ],
        )

    def _topic_of(self, text: str) -> str | None:
        result = self._engine.analyze(text)
        for element_type in TOPIC_ELEMENT_ORDER:
            value = result.first_value(element_type)
            if value:
                return value
        return None

    async def _record_exchange(self, user_text: str, ai_text: str) -> None:
        context = self._conversation.model_copy(deep=True)
        context.message_history.last_user_message = user_text
        context.message_history.last_ai_response = ai_text

        topic = self._topic_of(user_text)
        if topic:
            context.recent_topics = [t for t in context.recent_topics if t != topic]
            context.recent_topics.append(topic)
            context.recent_topics = context.recent_topics[-MAX_TOPICS:]
            context.message_history.topic_stack.append(topic)
            context.message_history.topic_stack = context.message_history.topic_stack[-MAX_TOPICS:]

        self._conversation = context
        if self._contexts is None:
            return
        try:
            await self._contexts.save(self._story.story_id, context)
        except StoreError as e:
            self._logger.warning(f"Could not persist conversation context: {e.message}")
