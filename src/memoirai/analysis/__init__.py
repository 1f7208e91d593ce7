"""Local story analysis: pattern extraction, context gaps and people detection.

Nothing in this package calls an AI service. Every element it reports is
taken verbatim from the story text.
"""

from memoirai.analysis.connections import ConnectionDetector, DetectedPerson
from memoirai.analysis.engine import MemoryAnalysisEngine
from memoirai.analysis.gaps import ContextGapAnalyzer
from memoirai.analysis.patterns import PatternExtractor

__all__ = [
    "ConnectionDetector",
    "ContextGapAnalyzer",
    "DetectedPerson",
    "MemoryAnalysisEngine",
    "PatternExtractor",
]
