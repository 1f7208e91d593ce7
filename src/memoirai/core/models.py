"""Core data models for Memoir AI.

This module holds every record that flows between the analysis pipeline, the
stores, the conversational assistant and the chat session. All models are
pydantic models so they validate on construction and serialize to plain
JSON-compatible dictionaries for the document store.

Models follow a tiered flow:
1. EXTRACTION (ElementType, MemoryElement, AnalysisResult, FollowUpQuestion)
2. PEOPLE ACROSS STORIES (Connection, ConnectionAppearance, StoryReference)
3. STORIES (Story, StoryContext)
4. CONVERSATION (ConversationContext, StoredContext, Message)
"""

from __future__ import annotations

import itertools
import time
import uuid as uuid_module
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def normalize_name(name: str) -> str:
    """Normalize a person name for identity comparison.

    Collapses internal whitespace and case-folds, so ``"Aunt  Mary"`` and
    ``"aunt mary"`` compare equal.
    """
    return " ".join(name.split()).casefold()


# =============================================================================
# Enums
# =============================================================================


class ElementType(str, Enum):
    """Kinds of facts the pattern extractor recognizes."""

    PERSON = "person"
    LOCATION = "location"
    EVENT = "event"
    TIMEFRAME = "timeframe"
    OBJECT = "object"


class ContextCategory(str, Enum):
    """Categories of context a story may be missing."""

    TEMPORAL = "temporal"
    SPATIAL = "spatial"
    PERSONAL = "personal"


class QuestionType(str, Enum):
    """Tag describing what a follow-up question asks for."""

    TIMEFRAME = "timeframe"
    LOCATION_DETAIL = "location_detail"
    PERSON_DETAIL = "person_detail"


class Sender(str, Enum):
    """Author of a chat message."""

    USER = "user"
    AI = "ai"


class DetailLevel(str, Enum):
    BRIEF = "brief"
    DETAILED = "detailed"


class Tone(str, Enum):
    CASUAL = "casual"
    FORMAL = "formal"


# =============================================================================
# Extraction
# =============================================================================


class MemoryElement(BaseModel):
    """One fact recognized verbatim in story text.

    Elements are immutable. ``verified`` is True only for values taken directly
    from the text; the extractor never produces inferred elements.

    Attributes:
        type: Element category.
        value: Lowercased matched text.
        context: Sentence containing the match, or empty string.
        verified: Whether the value is traceable to the source text.
        confidence: Optional score between 0 and 1.
    """

    model_config = ConfigDict(frozen=True)

    type: ElementType
    value: str = Field(..., min_length=1)
    context: str = Field("", description="Sentence the value was found in")
    verified: bool = Field(True, description="True iff extracted directly from text")
    confidence: float | None = Field(None, ge=0.0, le=1.0)


class AnalysisMetadata(BaseModel):
    """Aggregate figures for one analysis pass."""

    model_config = ConfigDict(frozen=True)

    total_elements: int = Field(0, ge=0)
    processing_time_ms: float = Field(0.0, ge=0.0)
    confidence: float = Field(0.0, ge=0.0, le=1.0)


class AnalysisResult(BaseModel):
    """Outcome of analyzing one piece of story text.

    A fresh result is built on every analysis call; later results supersede
    earlier ones instead of being merged into them.

    Attributes:
        elements: Elements per type, deduplicated by value, in first-seen order.
            An empty result has no keys at all.
        missing_contexts: Context categories the text does not establish.
        verified_details: Values of all verified elements, flattened.
        timestamp: When the analysis ran.
        metadata: Element count, duration and confidence.

    Example:
        >>> result = AnalysisResult.empty()
        >>> result.is_empty()
        True
        >>> result.metadata.confidence
        0.0
    """

    model_config = ConfigDict(frozen=True)

    elements: dict[ElementType, list[MemoryElement]] = Field(default_factory=dict)
    missing_contexts: list[ContextCategory] = Field(default_factory=list)
    verified_details: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: AnalysisMetadata = Field(default_factory=AnalysisMetadata)

    @classmethod
    def empty(cls) -> "AnalysisResult":
        return cls()

    def is_empty(self) -> bool:
        return not any(self.elements.values())

    def elements_of(self, element_type: ElementType) -> list[MemoryElement]:
        return list(self.elements.get(element_type, []))

    def first_value(self, element_type: ElementType) -> str | None:
        """Return the value of the first element of a type, if any."""
        found = self.elements.get(element_type)
        return found[0].value if found else None

    def values_of(self, element_type: ElementType) -> list[str]:
        return [element.value for element in self.elements.get(element_type, [])]


class FollowUpQuestion(BaseModel):
    """Templated question prompting the writer for missing context."""

    model_config = ConfigDict(frozen=True)

    type: QuestionType
    text: str
    context: ContextCategory
    priority: int | None = None
    related_elements: list[str] = Field(default_factory=list)


# =============================================================================
# Connections
# =============================================================================


class ConnectionAppearance(BaseModel):
    """Story in which a connection first appeared."""

    story_id: str
    story_title: str = ""
    year: int | None = None
    phase_id: str | None = None


class StoryReference(BaseModel):
    story_id: str
    title: str = ""
    year: int | None = None


class Connection(BaseModel):
    """A person tracked across a user's stories.

    At most one record exists per ``(user_id, normalized_name)``. The story
    list mirrors the ``connections`` id list held by each referenced story.

    Attributes:
        id: Record id.
        user_id: Owning user.
        name: Display name as first written.
        normalized_name: Identity key, see :func:`normalize_name`.
        relationship: Relationship word ("mother", "friend", ...), may be empty.
        first_appearance: Story where the person first appeared.
        stories: Stories the person appears in, in link order.
        notes: Free-form notes from the writer.
    """

    id: str = Field(default_factory=lambda: str(uuid_module.uuid4()))
    user_id: str
    name: str = Field(..., min_length=1)
    normalized_name: str = Field("", validate_default=True)
    relationship: str = ""
    first_appearance: ConnectionAppearance
    stories: list[StoryReference] = Field(default_factory=list)
    notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("normalized_name", mode="before")
    @classmethod
    def auto_normalize(cls, v: str | None, info) -> str:
        """Derive the identity key from ``name`` when not supplied."""
        if not v and "name" in info.data:
            return normalize_name(info.data["name"])
        return normalize_name(v or "")

    def has_story(self, story_id: str) -> bool:
        return any(ref.story_id == story_id for ref in self.stories)

    def story_ids(self) -> list[str]:
        return [ref.story_id for ref in self.stories]


class ConnectionData(BaseModel):
    """Input for linking a person to a story."""

    name: str = Field(..., min_length=1)
    relationship: str = ""
    notes: str | None = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        stripped = " ".join(v.split())
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped


# =============================================================================
# Stories
# =============================================================================


class Story(BaseModel):
    """A diary-like entry tied to a year of the writer's life."""

    id: str = Field(default_factory=lambda: str(uuid_module.uuid4()))
    user_id: str
    title: str = ""
    content: str = ""
    year: int | None = None
    phase_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    connections: list[str] = Field(default_factory=list, description="Connection ids")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("tags", "connections", mode="before")
    @classmethod
    def none_to_list(cls, v: Any) -> Any:
        return [] if v is None else v

    def to_context(self) -> "StoryContext":
        return StoryContext(
            story_id=self.id,
            title=self.title,
            content=self.content,
            year=self.year,
            tags=list(self.tags),
        )


class StoryContext(BaseModel):
    """The parts of a story the assistant embeds into its prompts."""

    story_id: str
    title: str = ""
    content: str = ""
    year: int | None = None
    tags: list[str] = Field(default_factory=list)


# =============================================================================
# Conversation
# =============================================================================


def _none_to_empty_list(v: Any) -> Any:
    return [] if v is None else v


def _none_to_empty_dict(v: Any) -> Any:
    return {} if v is None else v


class StoryDetails(BaseModel):
    main_topic: str | None = None
    timeframe: str | None = None
    locations: list[str] = Field(default_factory=list)
    people: list[str] = Field(default_factory=list)
    emotions: list[str] = Field(default_factory=list)

    @field_validator("locations", "people", "emotions", mode="before")
    @classmethod
    def lists_none_to_empty(cls, v: Any) -> Any:
        return _none_to_empty_list(v)


class UserPreferences(BaseModel):
    detail_level: DetailLevel = DetailLevel.DETAILED
    tone: Tone = Tone.CASUAL

    @field_validator("detail_level", "tone", mode="before")
    @classmethod
    def none_to_default(cls, v: Any, info) -> Any:
        if v is None:
            return cls.model_fields[info.field_name].default
        return v


class MessageHistory(BaseModel):
    last_user_message: str | None = None
    last_ai_response: str | None = None
    topic_stack: list[str] = Field(default_factory=list)

    @field_validator("topic_stack", mode="before")
    @classmethod
    def stack_none_to_empty(cls, v: Any) -> Any:
        return _none_to_empty_list(v)


class ConversationContext(BaseModel):
    """What has been established about a story and the conversation about it.

    Every nested field always holds a value; ``None`` in raw input is replaced
    by the empty default during validation, so consumers never null-check.
    """

    recent_topics: list[str] = Field(default_factory=list)
    current_story_details: StoryDetails = Field(default_factory=StoryDetails)
    user_preferences: UserPreferences = Field(default_factory=UserPreferences)
    message_history: MessageHistory = Field(default_factory=MessageHistory)

    @field_validator("recent_topics", mode="before")
    @classmethod
    def topics_none_to_list(cls, v: Any) -> Any:
        return _none_to_empty_list(v)

    @field_validator("current_story_details", "user_preferences", "message_history", mode="before")
    @classmethod
    def sections_none_to_dict(cls, v: Any) -> Any:
        return _none_to_empty_dict(v)

    def user_authored_text(self) -> str:
        """Return the user-written content recorded in the history."""
        return (self.message_history.last_user_message or "").strip()


class StoredContext(ConversationContext):
    """Persisted form of a :class:`ConversationContext`."""

    analysis: AnalysisResult | None = None
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def to_context(self) -> ConversationContext:
        return ConversationContext.model_validate(
            self.model_dump(include=set(ConversationContext.model_fields))
        )


def sanitize_context(raw: ConversationContext | dict[str, Any] | None) -> ConversationContext:
    """Return an independent, fully populated copy of a context.

    Args:
        raw: A context model, a raw dictionary (possibly with ``None`` holes),
            or ``None``.

    Returns:
        A new ConversationContext with every optional collection present.
    """
    if raw is None:
        return ConversationContext()
    if isinstance(raw, StoredContext):
        return raw.to_context()
    if isinstance(raw, ConversationContext):
        return raw.model_copy(deep=True)
    fields = set(ConversationContext.model_fields)
    return ConversationContext.model_validate({k: v for k, v in raw.items() if k in fields})


class QuickReply(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    action: str


class Message(BaseModel):
    """One chat message. Ids are unique within a session."""

    id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    sender: Sender
    timestamp: datetime = Field(default_factory=utcnow)
    is_greeting: bool = False
    is_fallback: bool = False
    quick_replies: list[QuickReply] = Field(default_factory=list)


class MessageIdFactory:
    """Produces unique, increasing message ids.

    Ids combine a nanosecond timestamp with a process-wide counter, so two ids
    generated within the same clock tick still differ and sort in creation order.
    """

    def __init__(self, prefix: str = "msg") -> None:
        self._prefix = prefix
        self._counter = itertools.count(1)

    def __call__(self) -> str:
        return f"{self._prefix}-{time.time_ns():020d}-{next(self._counter):06d}"
