# =============================================================================
# beads-live -- Sort Rules
# =============================================================================
#
# Mirrors keep arrival order; views sort explicitly with these helpers.
# Timestamps are epoch milliseconds.  ISO-8601 strings are accepted too.
# =============================================================================

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from .constants import DEFAULT_PRIORITY
from .types import Entity


def timestamp_ms(value: Any) -> float | None:
    """Coerce an entity timestamp to epoch milliseconds, or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value == value else None  # NaN
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed.timestamp() * 1000.0
    return None


def _priority(entity: Entity) -> int:
    value = entity.get("priority")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_PRIORITY
    return int(value)


def closed_desc_key(entity: Entity) -> tuple[int, float, str]:
    """Most recently closed first; entities without ``closed_at`` last."""
    closed = timestamp_ms(entity.get("closed_at"))
    if closed is None:
        return (1, 0.0, str(entity.get("id", "")))
    return (0, -closed, str(entity.get("id", "")))


def priority_then_created_key(entity: Entity) -> tuple[int, float, str]:
    """Priority ascending (0 is highest), then oldest first, then id."""
    created = timestamp_ms(entity.get("created_at"))
    return (_priority(entity), created if created is not None else 0.0, str(entity.get("id", "")))


def sort_closed_desc(entities: Iterable[Entity]) -> list[Entity]:
    return sorted(entities, key=closed_desc_key)


def sort_priority_then_created(entities: Iterable[Entity]) -> list[Entity]:
    return sorted(entities, key=priority_then_created_key)
