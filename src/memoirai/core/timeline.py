"""Life phases and year grouping for the story timeline.

Stories are tied to a year of the writer's life. Given a birth year, each
year maps onto one of a fixed set of life phases, which is how a connection's
first appearance is placed on the timeline.
"""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable

from memoirai.core.models import Story


@dataclass(frozen=True)
class LifePhase:
    """Inclusive age range with a stable id."""

    id: str
    label: str
    start_age: int
    end_age: int

    def contains(self, age: int) -> bool:
        return self.start_age <= age <= self.end_age


LIFE_PHASES: tuple[LifePhase, ...] = (
    LifePhase("early-childhood", "Early Childhood", 0, 5),
    LifePhase("childhood", "Childhood", 6, 12),
    LifePhase("teens", "Teenage Years", 13, 19),
    LifePhase("early-adulthood", "Early Adulthood", 20, 29),
    LifePhase("adulthood", "Adulthood", 30, 49),
    LifePhase("mature-adulthood", "Mature Adulthood", 50, 69),
    LifePhase("senior", "Senior Years", 70, 120),
)

_YEAR_PATTERN = re.compile(r"\b(?:19|20)\d{2}\b")


def phase_for_age(age: int) -> LifePhase | None:
    """Return the phase containing ``age``, or None when out of range."""
    for phase in LIFE_PHASES:
        if phase.contains(age):
            return phase
    return None


def phase_for_year(year: int, birth_year: int) -> LifePhase | None:
    """Return the phase the writer was in during ``year``."""
    return phase_for_age(year - birth_year)


def extract_years(text: str) -> list[int]:
    """Return distinct 19xx/20xx years mentioned in text, in first-seen order.

    Example:
        >>> extract_years("We moved in 1994, and again in 2001 and 1994.")
        [1994, 2001]
    """
    seen: dict[int, None] = {}
    for match in _YEAR_PATTERN.finditer(text or ""):
        seen.setdefault(int(match.group(0)), None)
    return list(seen)


class TimelineIndex:
    """Groups a user's stories by year and life phase.

    Args:
        stories: Stories to index. Stories without a year are kept aside.
        birth_year: Writer's birth year, needed for phase grouping.
    """

    def __init__(self, stories: Iterable[Story], birth_year: int | None = None) -> None:
        self._birth_year = birth_year
        self._by_year: dict[int, list[Story]] = defaultdict(list)
        self._undated: list[Story] = []
        for story in stories:
            if story.year is None:
                self._undated.append(story)
            else:
                self._by_year[story.year].append(story)

    @property
    def years(self) -> list[int]:
        return sorted(self._by_year)

    @property
    def undated(self) -> list[Story]:
        return list(self._undated)

    def stories_in(self, year: int) -> list[Story]:
        return list(self._by_year.get(year, []))

    def by_phase(self) -> dict[str, list[Story]]:
        """Group dated stories by life phase id, in phase order.

        Raises:
            ValueError: If the index was built without a birth year.
        """
        if self._birth_year is None:
            raise ValueError("birth_year is required for phase grouping")
        grouped: dict[str, list[Story]] = {phase.id: [] for phase in LIFE_PHASES}
        for year in self.years:
            phase = phase_for_year(year, self._birth_year)
            if phase is not None:
                grouped[phase.id].extend(self._by_year[year])
        return grouped
