"""Schema migrations for stored conversation contexts.

Each migration upgrades a raw record by exactly one version. Migrations are
pure (the input is never modified) and idempotent (running a step on a record
already in its target shape changes nothing), so :func:`migrate` can simply
apply them in a loop until the record reaches :data:`CURRENT_CONTEXT_VERSION`.

Version history:
    0: camelCase keys (``recentTopics``, ``messageHistory.lastUserMessage``...)
       and plural element groups (``people``, ``locations``...).
    1: snake_case keys, plural element groups.
    2: snake_case keys, element groups keyed by element type (``person``...).
"""

from __future__ import annotations

import copy
import logging
import re
from typing import Any, Callable

logger = logging.getLogger(__name__)

CURRENT_CONTEXT_VERSION = 2

Record = dict[str, Any]

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

PLURAL_ELEMENT_KEYS: dict[str, str] = {
    "people": "person",
    "persons": "person",
    "locations": "location",
    "events": "event",
    "timeframes": "timeframe",
    "objects": "object",
}


def camel_to_snake(name: str) -> str:
    """Convert ``camelCase`` to ``snake_case``. Snake case input is unchanged."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def _snake_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {camel_to_snake(key): _snake_keys(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_snake_keys(item) for item in value]
    return value


def _upgrade_0_to_1(record: Record) -> Record:
    """Rename camelCase keys to snake_case at every level."""
    upgraded = _snake_keys(copy.deepcopy(record))
    upgraded["version"] = 1
    return upgraded


def _upgrade_1_to_2(record: Record) -> Record:
    """Key element groups by element type instead of plural nouns."""
    upgraded = copy.deepcopy(record)
    analysis = upgraded.get("analysis")
    if isinstance(analysis, dict):
        elements = analysis.get("elements") or {}
        renamed: dict[str, Any] = {}
        for key, items in elements.items():
            target = PLURAL_ELEMENT_KEYS.get(key, key)
            for item in items or []:
                if isinstance(item, dict) and item.get("type") in PLURAL_ELEMENT_KEYS:
                    item["type"] = PLURAL_ELEMENT_KEYS[item["type"]]
            renamed.setdefault(target, []).extend(items or [])
        analysis["elements"] = renamed
    else:
        upgraded["analysis"] = None
    upgraded["version"] = 2
    return upgraded


MIGRATIONS: dict[int, Callable[[Record], Record]] = {
    0: _upgrade_0_to_1,
    1: _upgrade_1_to_2,
}


def record_version(record: Record) -> int:
    """Return the schema version of a raw record (0 when unstamped)."""
    version = record.get("version", 0)
    return version if isinstance(version, int) else 0


def needs_migration(record: Record) -> bool:
    return record_version(record) < CURRENT_CONTEXT_VERSION


def migrate(record: Record) -> Record:
    """Upgrade a raw stored-context record to the current version.

    Args:
        record: Raw record as read from the store. Not modified.

    Returns:
        A new record stamped with CURRENT_CONTEXT_VERSION. Records from a newer
        version are returned as a copy, unchanged.
    """
    upgraded = copy.deepcopy(record)
    version = record_version(upgraded)
    if version > CURRENT_CONTEXT_VERSION:
        logger.warning(f"Stored context has newer version {version}; reading as-is")
        return upgraded

    while version < CURRENT_CONTEXT_VERSION:
        upgraded = MIGRATIONS[version](upgraded)
        logger.debug(f"Migrated stored context from version {version} to {version + 1}")
        version = record_version(upgraded)
    return upgraded
