"""Conversational writing assistant.

The assistant keeps a message history per story and talks to the provider
through the :class:`~memoirai.ai.client.CompletionProvider` protocol. Each
story moves through ``idle -> sending -> idle | error``; sends for one story
are serialized, so messages are appended in call order even when callers
overlap.

Failures never corrupt the history: the user message appended at the start of
a send stays, and no AI message is added when the provider call fails.

Two special paths exist:
- The greeting is a fixed introduction and never calls the provider.
- ``update_story`` proposes a revised story body built from the last few
  messages. The proposal is returned for review and is never applied
  automatically.
"""

from __future__ import annotations

import asyncio
import logging
import re
from enum import Enum
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from memoirai.ai.client import ChatMessage, CompletionProvider, CompletionRequest, classify_error
from memoirai.ai.prompts import build_chat_prompt, build_update_prompt, greeting_message
from memoirai.analysis.engine import GREETING_FALLBACK, MemoryAnalysisEngine
from memoirai.config import AIMode, AppConfig
from memoirai.core.models import (
    AnalysisResult,
    ConversationContext,
    Message,
    MessageIdFactory,
    QuickReply,
    Sender,
    StoryContext,
)
from memoirai.core.result import ErrorCode, ErrorInfo, Result

logger = logging.getLogger(__name__)

MAX_QUICK_REPLIES = 3
SIGNIFICANT_LENGTH_CHANGE = 10

_SENTENCE_PATTERN = re.compile(r"[^.!?]+[.!?]+")


class AssistantState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    ERROR = "error"


# =============================================================================
# Story Revisions
# =============================================================================


class RevisionStatus(str, Enum):
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


def compare_texts(original: str, revised: str) -> list[str]:
    """Summarize how a revised story differs from the original.

    Reports sentence-count changes, length changes over ten characters and
    word-count changes, in that order.
    """
    changes: list[str] = []

    original_sentences = len(_SENTENCE_PATTERN.findall(original))
    revised_sentences = len(_SENTENCE_PATTERN.findall(revised))
    if original_sentences != revised_sentences:
        changes.append(
            f"Changed number of sentences from {original_sentences} to {revised_sentences}"
        )

    length_diff = len(revised) - len(original)
    if abs(length_diff) > SIGNIFICANT_LENGTH_CHANGE:
        verb = "Added" if length_diff > 0 else "Removed"
        changes.append(f"{verb} {abs(length_diff)} characters")

    original_words = len(original.split())
    revised_words = len(revised.split())
    if original_words != revised_words:
        changes.append(f"Changed word count from {original_words} to {revised_words}")

    return changes


class StoryRevision(BaseModel):
    """A proposed rewrite of a story awaiting the writer's decision.

    Attributes:
        story_id: Story the proposal is for.
        original: Story text the proposal was made from.
        proposed: Revised story text.
        changes: Human-readable summary of differences.
        status: proposed, accepted or rejected.
    """

    model_config = ConfigDict(frozen=True)

    story_id: str
    original: str
    proposed: str
    changes: list[str] = Field(default_factory=list)
    status: RevisionStatus = RevisionStatus.PROPOSED

    def accept(self) -> "StoryRevision":
        return self.model_copy(update={"status": RevisionStatus.ACCEPTED})

    def reject(self) -> "StoryRevision":
        return self.model_copy(update={"status": RevisionStatus.REJECTED})

    @property
    def is_accepted(self) -> bool:
        return self.status == RevisionStatus.ACCEPTED


# =============================================================================
# Assistant
# =============================================================================


class ConversationalAssistant:
    """Chat with the provider about a story.

    Args:
        provider: Completion provider (normally an AIClient).
        config: Application configuration.
        engine: Analysis engine used for quick replies and prompt context.
        id_factory: Message id generator.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        config: AppConfig | None = None,
        engine: MemoryAnalysisEngine | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._provider = provider
        self._config = config or AppConfig()
        self._engine = engine or MemoryAnalysisEngine()
        self._new_id = id_factory or MessageIdFactory()
        self._histories: dict[str, list[Message]] = {}
        self._states: dict[str, AssistantState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._logger = logging.getLogger(f"{__name__}.ConversationalAssistant")

    def _lock_for(self, story_id: str) -> asyncio.Lock:
        if story_id not in self._locks:
            self._locks[story_id] = asyncio.Lock()
        return self._locks[story_id]

    def state(self, story_id: str) -> AssistantState:
        return self._states.get(story_id, AssistantState.IDLE)

    def history(self, story_id: str) -> list[Message]:
        """Return a copy of the story's message history in insertion order."""
        return list(self._histories.get(story_id, []))

    def clear(self, story_id: str) -> None:
        self._histories.pop(story_id, None)
        self._states.pop(story_id, None)

    def _append(self, story_id: str, message: Message) -> None:
        self._histories.setdefault(story_id, []).append(message)

    def greet(self, story_id: str) -> Message:
        """Append and return the fixed introduction. No provider call is made."""
        message = Message(
            id=self._new_id(),
            content=greeting_message(self._config.chat.assistant_name),
            sender=Sender.AI,
            is_greeting=True,
        )
        self._append(story_id, message)
        return message

    async def send(
        self,
        user_text: str,
        story: StoryContext,
        conversation: ConversationContext | None = None,
        analysis: AnalysisResult | None = None,
        is_greeting: bool = False,
    ) -> Result[Message]:
        """Send a user message and return the assistant's reply.

        Args:
            user_text: What the writer typed.
            story: Story the conversation is about.
            conversation: Established conversation context, if any.
            analysis: Analysis of the story; computed from the story content
                when omitted.
            is_greeting: Return the fixed introduction instead of calling the
                provider.

        Returns:
            The AI message, or a failure carrying a fixed user-facing message.
        """
        story_id = story.story_id
        if is_greeting:
            return Result.success(self.greet(story_id))
        if not user_text or not user_text.strip():
            return Result.failure(ErrorCode.INVALID_INPUT)

        async with self._lock_for(story_id):
            self._states[story_id] = AssistantState.SENDING
            self._append(
                story_id, Message(id=self._new_id(), content=user_text, sender=Sender.USER)
            )

            if analysis is None:
                analysis = self._engine.analyze(story.content)
            system, prompt = build_chat_prompt(
                story,
                conversation,
                analysis,
                user_text,
                assistant_name=self._config.chat.assistant_name,
            )
            request = CompletionRequest(
                model=self._config.ai.model_name,
                messages=[
                    ChatMessage(role="system", content=system),
                    ChatMessage(role="user", content=prompt),
                ],
                temperature=self._config.ai.temperature,
                max_tokens=self._config.ai.max_output_tokens,
            )

            try:
                response = await self._provider.complete(request)
            except Exception as e:
                error = classify_error(e)
                self._logger.warning(f"Send failed ({error.code.value}): {type(e).__name__}")
                return self._fail_or_degrade(story_id, error, analysis)

            text = response.text.strip()
            if not text:
                self._logger.warning("Provider returned an empty reply")
                return self._fail_or_degrade(
                    story_id, ErrorInfo.from_code(ErrorCode.UNKNOWN), analysis
                )

            reply = Message(
                id=self._new_id(),
                content=text,
                sender=Sender.AI,
                quick_replies=self._quick_replies(analysis),
            )
            self._append(story_id, reply)
            self._states[story_id] = AssistantState.IDLE
            self._logger.debug(f"Reply received ({len(text)} chars)")
            return Result.success(reply)

    async def update_story(
        self,
        story_id: str,
        story_content: str,
        recent_messages: list[Message] | None = None,
    ) -> Result[StoryRevision]:
        """Propose a revised story body from the most recent messages.

        Only the last ``update_window`` messages are given to the provider.
        Nothing is written anywhere; the caller decides what to do with the
        returned revision.
        """
        if not story_content or not story_content.strip():
            return Result.failure(ErrorCode.INVALID_INPUT)

        messages = recent_messages if recent_messages is not None else self.history(story_id)
        window = messages[-self._config.chat.update_window :]
        system, prompt = build_update_prompt(story_content, window)
        request = CompletionRequest(
            model=self._config.ai.model_name,
            messages=[
                ChatMessage(role="system", content=system),
                ChatMessage(role="user", content=prompt),
            ],
            temperature=self._config.ai.temperature,
        )

        async with self._lock_for(story_id):
            try:
                response = await self._provider.complete(request)
            except Exception as e:
                error = classify_error(e)
                self._logger.warning(f"Story update failed ({error.code.value}): {type(e).__name__}")
                return Result.failure(error)

        proposed = response.text.strip()
        if not proposed:
            return Result.failure(ErrorCode.UNKNOWN)

        revision = StoryRevision(
            story_id=story_id,
            original=story_content,
            proposed=proposed,
            changes=compare_texts(story_content, proposed),
        )
        self._logger.info(f"Story revision proposed with {len(revision.changes)} changes")
        return Result.success(revision)

    def _fail_or_degrade(
        self, story_id: str, error: ErrorInfo, analysis: AnalysisResult | None
    ) -> Result[Message]:
        """Fail the send, or in fallback-only mode reply with a local question.

        The local reply is the first follow-up question for the story, or a
        generic prompt when the story leaves nothing open.
        """
        if self._config.ai.mode != AIMode.FALLBACK_ONLY:
            self._states[story_id] = AssistantState.ERROR
            return Result.failure(error)

        questions = self._engine.generate_follow_up_questions(analysis) if analysis else []
        reply = Message(
            id=self._new_id(),
            content=questions[0].text if questions else GREETING_FALLBACK,
            sender=Sender.AI,
            quick_replies=self._quick_replies(analysis),
            is_fallback=True,
        )
        self._append(story_id, reply)
        self._states[story_id] = AssistantState.IDLE
        self._logger.info(f"Replied locally after provider failure ({error.code.value})")
        return Result.success(reply)

    def _quick_replies(self, analysis: AnalysisResult | None) -> list[QuickReply]:
        if analysis is None:
            return []
        questions = self._engine.generate_follow_up_questions(analysis)
        return [
            QuickReply(label=question.text, action=f"ask_{question.context.value}")
            for question in questions[:MAX_QUICK_REPLIES]
        ]
