"""Prompt templates for the conversational assistant.

Every prompt sent to the provider is built here. A template pairs a system
instruction with a user prompt holding ``$placeholders``; rendering checks that
all required variables are supplied.

Grounding rules are part of every system instruction: the assistant may only
reference details the writer stated, and must never invent people, places or
events.

Example:
    >>> system, user = CHAT_PROMPT.render(
    ...     title="First day of school",
    ...     year="1985",
    ...     tags="school",
    ...     content="I walked to school with my brother.",
    ...     established="(nothing yet)",
    ...     missing="temporal",
    ...     user_message="What should I add?",
    ... )
"""

from __future__ import annotations

import textwrap
from dataclasses import dataclass, field
from string import Template
from typing import Any, Iterable

from memoirai.core.models import AnalysisResult, ConversationContext, Message, Sender, StoryContext


# =============================================================================
# Data Structures
# =============================================================================


@dataclass(frozen=True)
class PromptTemplate:
    """A system instruction plus a user prompt with placeholders.

    Attributes:
        id: Unique identifier (e.g. "chat_v1").
        system_instruction: Role and behavior instructions.
        user_prompt_template: User prompt with ``$placeholder`` variables.
        required_variables: Variables that must be provided to render.
    """

    id: str
    system_instruction: str
    user_prompt_template: str
    required_variables: frozenset[str] = field(default_factory=frozenset)

    def render(self, **variables: Any) -> tuple[str, str]:
        """Render the template.

        Returns:
            Tuple of (system_instruction, rendered_user_prompt).

        Raises:
            ValueError: If required variables are missing.
        """
        missing = sorted(self.required_variables - set(variables))
        if missing:
            raise ValueError(f"Missing required variables for prompt '{self.id}': {missing}")
        rendered = Template(self.user_prompt_template).safe_substitute(
            {key: str(value) for key, value in variables.items()}
        )
        return self.system_instruction, rendered


# =============================================================================
# System Instructions
# =============================================================================


def greeting_message(assistant_name: str = "Muse") -> str:
    """The fixed introduction sent as the first message of a session."""
    return (
        f"Hi! I'm {assistant_name}, your writing companion. I'm here to help you capture "
        "and develop your stories. I love how every memory has its own unique voice and "
        "emotional resonance."
    )


def persona_system(assistant_name: str = "Muse") -> str:
    return textwrap.dedent(
        f"""
        You are {assistant_name}, a supportive writing companion helping someone develop
        a personal story through natural conversation.

        Grounding rules (never break these):
        1. Only reference details the writer explicitly mentioned
        2. Never invent people, places, dates or events
        3. When something is unclear, ask about it instead of assuming

        Your approach:
        - Acknowledge what was shared
        - Build on confirmed details
        - Ask one focused follow-up question at a time
        - Offer gentle, specific suggestions
        - Keep responses concise, warm and encouraging
        """
    ).strip()


REWRITE_SYSTEM: str = textwrap.dedent(
    """
    You are a skilled writing assistant merging new details into an existing story.

    Your task:
    - Preserve the original story's voice, tense and perspective
    - Integrate details from the conversation only where they were explicitly discussed
    - Keep paragraph structure and emotional resonance intact
    - Never add fictional elements or assumptions
    - Avoid redundancy

    Respond with the full revised story text only, without commentary.
    """
).strip()


# =============================================================================
# Prompt Templates
# =============================================================================


CHAT_PROMPT_TEMPLATE = textwrap.dedent(
    """
    Story Context:
    Title: $title
    Year: $year
    Tags: $tags
    Content:
    $content

    Established so far:
    $established

    Context the story is still missing: $missing

    User Message: $user_message
    """
).strip()


UPDATE_PROMPT_TEMPLATE = textwrap.dedent(
    """
    Original Story:
    $story

    Recent Chat Context:
    $recent_messages

    Please rewrite the story incorporating relevant details from our chat while
    maintaining the original voice and style.
    """
).strip()


def build_chat_template(assistant_name: str = "Muse") -> PromptTemplate:
    return PromptTemplate(
        id="chat_v1",
        system_instruction=persona_system(assistant_name),
        user_prompt_template=CHAT_PROMPT_TEMPLATE,
        required_variables=frozenset(
            {"title", "year", "tags", "content", "established", "missing", "user_message"}
        ),
    )


CHAT_PROMPT = build_chat_template()

UPDATE_PROMPT = PromptTemplate(
    id="story_update_v1",
    system_instruction=REWRITE_SYSTEM,
    user_prompt_template=UPDATE_PROMPT_TEMPLATE,
    required_variables=frozenset({"story", "recent_messages"}),
)


# =============================================================================
# Helper Functions
# =============================================================================


def summarize_context(
    conversation: ConversationContext | None, analysis: AnalysisResult | None
) -> str:
    """Describe what the conversation and analysis have established, one fact per line."""
    lines: list[str] = []
    if conversation is not None:
        details = conversation.current_story_details
        if details.main_topic:
            lines.append(f"- Main topic: {details.main_topic}")
        if details.timeframe:
            lines.append(f"- Timeframe: {details.timeframe}")
        if details.locations:
            lines.append(f"- Locations: {', '.join(details.locations)}")
        if details.people:
            lines.append(f"- People: {', '.join(details.people)}")
        if details.emotions:
            lines.append(f"- Emotions: {', '.join(details.emotions)}")
        if conversation.recent_topics:
            lines.append(f"- Recent topics: {', '.join(conversation.recent_topics)}")
        prefs = conversation.user_preferences
        lines.append(f"- Preferred detail: {prefs.detail_level.value}, tone: {prefs.tone.value}")
    if analysis is not None and analysis.verified_details:
        lines.append(f"- Verified details: {', '.join(analysis.verified_details)}")
    return "\n".join(lines) if lines else "(nothing yet)"


def build_chat_prompt(
    story: StoryContext,
    conversation: ConversationContext | None,
    analysis: AnalysisResult | None,
    user_text: str,
    assistant_name: str = "Muse",
) -> tuple[str, str]:
    """Render the single prompt used for a chat turn.

    Returns:
        Tuple of (system_instruction, user_prompt).
    """
    template = CHAT_PROMPT if assistant_name == "Muse" else build_chat_template(assistant_name)
    missing = ", ".join(c.value for c in analysis.missing_contexts) if analysis else ""
    return template.render(
        title=story.title or "(untitled)",
        year=story.year if story.year is not None else "unknown",
        tags=", ".join(story.tags) or "none",
        content=story.content or "(empty)",
        established=summarize_context(conversation, analysis),
        missing=missing or "none",
        user_message=user_text,
    )


def format_transcript(messages: Iterable[Message]) -> str:
    return "\n".join(
        f"{'User' if m.sender == Sender.USER else 'AI'}: {m.content}" for m in messages
    )


def build_update_prompt(story_content: str, window: Iterable[Message]) -> tuple[str, str]:
    """Render the story revision prompt from the story and a message window."""
    return UPDATE_PROMPT.render(
        story=story_content,
        recent_messages=format_transcript(window) or "(no messages)",
    )
