"""Heuristics for context a story leaves unstated.

The rules look at surface text only. They are deterministic, not linguistically
correct: "took me to the hospital" names a place but has no locative phrase
from the list below, so it is reported as spatially unsituated.
"""

from __future__ import annotations

import re
from typing import Mapping, Sequence

from memoirai.core.models import ContextCategory, ElementType, MemoryElement

LOCATIVE_PATTERN = re.compile(r"\b(?:in|at|near|by|inside|outside|around)\s+the\b", re.IGNORECASE)
REACTION_PATTERN = re.compile(
    r"\b(?:felt|thought|said|told|asked|responded|reacted)\b", re.IGNORECASE
)


class ContextGapAnalyzer:
    """Decides which context categories a text is missing.

    The three rules are independent of one another:

    - temporal: no timeframe element was extracted.
    - spatial: a location was named, but the text has no locative phrase.
    - personal: a person was named, but the text has no reaction verb.
    """

    def identify_missing_context(
        self,
        elements: Mapping[ElementType, Sequence[MemoryElement]],
        content: str,
    ) -> list[ContextCategory]:
        missing: list[ContextCategory] = []

        if not elements.get(ElementType.TIMEFRAME):
            missing.append(ContextCategory.TEMPORAL)

        if elements.get(ElementType.LOCATION) and not LOCATIVE_PATTERN.search(content):
            missing.append(ContextCategory.SPATIAL)

        if elements.get(ElementType.PERSON) and not REACTION_PATTERN.search(content):
            missing.append(ContextCategory.PERSONAL)

        return missing
