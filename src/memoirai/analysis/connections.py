"""Detection of named people tied to a relationship word.

Only capitalized spans of one or two words that sit right next to a known
relationship word are accepted as names ("my mother Sarah", "a friend named
Tom", "Sarah, my mother"). Free-standing capitalized words are never taken as
names; recall is traded for precision.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, NamedTuple

from memoirai.core.models import normalize_name

logger = logging.getLogger(__name__)

RELATIONSHIP_WORDS: tuple[str, ...] = (
    "mother",
    "father",
    "sister",
    "brother",
    "friend",
    "teacher",
    "boss",
    "colleague",
    "aunt",
    "uncle",
    "grandmother",
    "grandfather",
)

# Capitalized words that sit next to names but are not names.
NAME_STOPWORDS: frozenset[str] = frozenset(
    {
        "The", "Then", "When", "While", "After", "Before", "Later", "Yesterday",
        "Today", "Tomorrow", "And", "But", "So", "Once", "One", "Every", "Last",
        "This", "That", "Our", "My", "His", "Her", "Their", "We", "She", "He",
        "They", "It", "Dear", "Even", "Still", "Also", "Because", "Since",
    }
)

_RELATIONSHIP = "|".join(RELATIONSHIP_WORDS)
_POSSESSIVE = r"(?i:my|his|her|their)"
_NAME = r"[A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+)?"

DETECTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    # my mother Sarah / my mother, Sarah
    re.compile(rf"\b{_POSSESSIVE}\s+(?P<rel>(?i:{_RELATIONSHIP}))\b(?:\s+|,\s*)(?P<name>{_NAME})\b"),
    # a friend named Tom / my teacher called Mrs
    re.compile(rf"\b(?P<rel>(?i:{_RELATIONSHIP}))\s+(?i:named|called)\s+(?P<name>{_NAME})\b"),
    # Sarah, my mother
    re.compile(rf"\b(?P<name>{_NAME})\s*,\s*{_POSSESSIVE}\s+(?P<rel>(?i:{_RELATIONSHIP}))\b"),
)


class DetectedPerson(NamedTuple):
    """A probable person name and the relationship word found with it."""

    name: str
    relationship: str


def _clean_name(raw: str) -> str | None:
    tokens = raw.split()
    while tokens and tokens[0] in NAME_STOPWORDS:
        tokens.pop(0)
    while tokens and tokens[-1] in NAME_STOPWORDS:
        tokens.pop()
    if not tokens:
        return None
    return " ".join(tokens)


class ConnectionDetector:
    """Finds probable person names in story text.

    Example:
        >>> ConnectionDetector().detect("My mother Sarah took me to the hospital.")
        ['Sarah']
        >>> ConnectionDetector().detect("Sarah, my mother, laughed.", known_names=["sarah"])
        []
    """

    def __init__(self, patterns: Iterable[re.Pattern[str]] | None = None) -> None:
        self._patterns = tuple(patterns) if patterns is not None else DETECTION_PATTERNS
        self._logger = logging.getLogger(f"{__name__}.ConnectionDetector")

    def detect_with_relationships(
        self, content: str, known_names: Iterable[str] | None = None
    ) -> list[DetectedPerson]:
        """Detect names along with the relationship word each was found with.

        Args:
            content: Story text.
            known_names: Names already tracked for the user. Matching is
                case-insensitive; known names are left out of the result.

        Returns:
            One entry per distinct name. When a name appears with several
            relationship words, the first one found is kept.
        """
        if not content or not content.strip():
            return []

        known = {normalize_name(name) for name in known_names or ()}
        detected: dict[str, DetectedPerson] = {}

        for pattern in self._patterns:
            for match in pattern.finditer(content):
                name = _clean_name(match.group("name"))
                if not name or name in detected or normalize_name(name) in known:
                    continue
                detected[name] = DetectedPerson(name, match.group("rel").lower())

        self._logger.debug(f"Detected {len(detected)} probable connections")
        return list(detected.values())

    def detect(self, content: str, known_names: Iterable[str] | None = None) -> list[str]:
        """Return distinct probable person names found in content."""
        return [person.name for person in self.detect_with_relationships(content, known_names)]
