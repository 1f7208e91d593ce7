"""Vocabulary-based recognition of memory elements in story text.

The extractor only ever reports text that is literally present in the input:
every element it builds is ``verified``. Anything the fixed vocabularies do not
cover is left out rather than guessed at.
"""

from __future__ import annotations

import logging
import re

from memoirai.core.models import ElementType, MemoryElement

logger = logging.getLogger(__name__)


# =============================================================================
# Vocabularies
# =============================================================================

MEMORY_PATTERNS: dict[ElementType, re.Pattern[str]] = {
    ElementType.PERSON: re.compile(
        r"\b(?:mother|father|dad|sister|brother|aunt|uncle|grandmother|grandfather|friend|teacher)\b",
        re.IGNORECASE,
    ),
    ElementType.LOCATION: re.compile(
        r"\b(?:hospital|kitchen|school|home|house|room|store|park)\b",
        re.IGNORECASE,
    ),
    ElementType.EVENT: re.compile(
        r"\b(?:tripped|hit|born|stitches|fell|broke|celebrated|visited|played|learned)\b",
        re.IGNORECASE,
    ),
    ElementType.TIMEFRAME: re.compile(
        r"\b(?:yesterday|last week|when I was|years ago|in \d{4}|[12][0-9]{3})\b",
        re.IGNORECASE,
    ),
    ElementType.OBJECT: re.compile(
        r"\b(?:briefcase|mirror|eye|book|table|chair|car)\b",
        re.IGNORECASE,
    ),
}


_TERMINATOR = re.compile(r"[.!?]")


def find_sentence(content: str, start: int, end: int) -> str:
    """Return the sentence of ``content`` holding the span ``start:end``.

    The sentence runs from the previous terminator to the next ``.``, ``!`` or
    ``?``. Text with no terminator after the span has no sentence, and an
    empty string is returned.
    """
    terminator = _TERMINATOR.search(content, end)
    if terminator is None:
        return ""
    begin = max(content.rfind(mark, 0, start) for mark in ".!?") + 1
    return content[begin : terminator.end()].strip()


class PatternExtractor:
    """Extracts typed memory elements using fixed vocabularies.

    Example:
        >>> extractor = PatternExtractor()
        >>> found = extractor.extract("My sister fell in the kitchen.")
        >>> [e.value for e in found[ElementType.PERSON]]
        ['sister']
    """

    def __init__(self, patterns: dict[ElementType, re.Pattern[str]] | None = None) -> None:
        self._patterns = patterns or MEMORY_PATTERNS
        self._logger = logging.getLogger(f"{__name__}.PatternExtractor")

    def extract(self, content: str) -> dict[ElementType, list[MemoryElement]]:
        """Scan content for every element type.

        Matches are deduplicated per type case-insensitively, keeping the
        first occurrence. A failure while building one element is logged and
        that element skipped; the rest of the extraction continues.

        Args:
            content: Raw story or message text.

        Returns:
            Mapping holding a (possibly empty) list for each element type.
        """
        elements: dict[ElementType, list[MemoryElement]] = {}

        for element_type, pattern in self._patterns.items():
            first_spans: dict[str, tuple[int, int]] = {}
            for match in pattern.finditer(content):
                first_spans.setdefault(match.group(0).lower(), match.span())

            built: list[MemoryElement] = []
            for value, (start, end) in first_spans.items():
                try:
                    built.append(
                        MemoryElement(
                            type=element_type,
                            value=value,
                            context=find_sentence(content, start, end),
                            verified=True,
                        )
                    )
                except ValueError as e:
                    self._logger.warning(
                        f"Skipping {element_type.value} element: {type(e).__name__}"
                    )
            elements[element_type] = built

        return elements
