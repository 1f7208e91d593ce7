"""Memory analysis: extraction, gap analysis and confidence in one pass.

The engine is the entry point the rest of the application uses to understand
story text. It is safe to call on anything: empty input short-circuits to an
empty result, and an unexpected failure inside the pipeline is logged and also
produces an empty result instead of an exception.

Example:
    >>> engine = MemoryAnalysisEngine()
    >>> result = engine.analyze("My mother Sarah took me to the hospital when I was 5.")
    >>> [c.value for c in result.missing_contexts]
    ['spatial', 'personal']
    >>> engine.generate_greeting("...", result)
    "Let's continue with your story. Can you tell me more about what the hospital was like?"
"""

from __future__ import annotations

import logging
import time

from memoirai.analysis.gaps import ContextGapAnalyzer
from memoirai.analysis.patterns import PatternExtractor
from memoirai.core.models import (
    AnalysisMetadata,
    AnalysisResult,
    ContextCategory,
    ElementType,
    FollowUpQuestion,
    QuestionType,
)

logger = logging.getLogger(__name__)

GREETING_PREFIX = "Let's continue with your story. "
GREETING_FALLBACK = "What would you like to add?"
TEMPORAL_QUESTION = "When did this happen?"


class MemoryAnalysisEngine:
    """Orchestrates extraction and gap analysis into an AnalysisResult.

    Args:
        extractor: Pattern extractor. A default one is built if omitted.
        gap_analyzer: Context gap analyzer. A default one is built if omitted.
    """

    def __init__(
        self,
        extractor: PatternExtractor | None = None,
        gap_analyzer: ContextGapAnalyzer | None = None,
    ) -> None:
        self._extractor = extractor or PatternExtractor()
        self._gap_analyzer = gap_analyzer or ContextGapAnalyzer()
        self._logger = logging.getLogger(f"{__name__}.MemoryAnalysisEngine")

    def analyze(self, content: str) -> AnalysisResult:
        """Analyze text. Never raises.

        Args:
            content: Story or message text.

        Returns:
            A new AnalysisResult. Blank input, and any internal failure,
            yield the empty result.
        """
        if not isinstance(content, str) or not content.strip():
            return AnalysisResult.empty()

        start = time.perf_counter()
        try:
            elements = self._extractor.extract(content)
            missing = self._gap_analyzer.identify_missing_context(elements, content)

            all_elements = [element for found in elements.values() for element in found]
            verified = [element.value for element in all_elements if element.verified]
            total = len(all_elements)
            confidence = len(verified) / total if total else 0.0

            return AnalysisResult(
                elements=elements,
                missing_contexts=missing,
                verified_details=verified,
                metadata=AnalysisMetadata(
                    total_elements=total,
                    processing_time_ms=(time.perf_counter() - start) * 1000,
                    confidence=confidence,
                ),
            )
        except Exception as e:
            self._logger.error(f"Analysis failed, returning empty result: {type(e).__name__}")
            return AnalysisResult.empty()

    def generate_follow_up_questions(self, result: AnalysisResult) -> list[FollowUpQuestion]:
        """Build at most one templated question per missing context category.

        Spatial and personal questions name the first location or person
        element and are omitted when there is none to name.
        """
        questions: list[FollowUpQuestion] = []
        missing = set(result.missing_contexts)

        if ContextCategory.TEMPORAL in missing:
            questions.append(
                FollowUpQuestion(
                    type=QuestionType.TIMEFRAME,
                    text=TEMPORAL_QUESTION,
                    context=ContextCategory.TEMPORAL,
                    priority=1,
                )
            )

        location = result.first_value(ElementType.LOCATION)
        if ContextCategory.SPATIAL in missing and location:
            questions.append(
                FollowUpQuestion(
                    type=QuestionType.LOCATION_DETAIL,
                    text=f"Can you tell me more about what the {location} was like?",
                    context=ContextCategory.SPATIAL,
                    priority=2,
                    related_elements=[location],
                )
            )

        person = result.first_value(ElementType.PERSON)
        if ContextCategory.PERSONAL in missing and person:
            questions.append(
                FollowUpQuestion(
                    type=QuestionType.PERSON_DETAIL,
                    text=f"How did {person} respond to this?",
                    context=ContextCategory.PERSONAL,
                    priority=3,
                    related_elements=[person],
                )
            )

        return questions

    def generate_greeting(self, content: str, result: AnalysisResult) -> str:
        """Compose the session welcome line from an analysis.

        Mentions the first event and location when both were found, then asks
        the first follow-up question. With neither, asks a generic question.
        """
        try:
            greeting = GREETING_PREFIX
            event = result.first_value(ElementType.EVENT)
            location = result.first_value(ElementType.LOCATION)
            if event and location:
                greeting += f"You mentioned {event} in the {location}. "

            questions = self.generate_follow_up_questions(result)
            if questions:
                greeting += questions[0].text
            elif not (event and location):
                greeting += GREETING_FALLBACK

            return greeting.strip()
        except Exception as e:
            self._logger.error(f"Greeting generation failed: {type(e).__name__}")
            return GREETING_PREFIX + GREETING_FALLBACK
