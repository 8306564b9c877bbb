# =============================================================================
# beads-live -- Selectors
# =============================================================================
#
# Pure reads over the mirror registry plus local filter state.  Nothing here
# mutates a mirror; views recompute on every registry notification.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from .constants import (
    CLIENT_LABEL_PREFIX,
    DETAIL_KEY_PREFIX,
    KEY_BOARD_BLOCKED,
    KEY_BOARD_CLOSED,
    KEY_BOARD_IN_PROGRESS,
    KEY_BOARD_READY,
    SPEC_ALL_ISSUES,
    SPEC_CLOSED_ISSUES,
    SPEC_IN_PROGRESS_ISSUES,
    SPEC_READY_ISSUES,
    WORK_LABEL_PREFIX,
)
from .mirror import MirrorRegistry
from .sorting import sort_closed_desc, sort_priority_then_created, timestamp_ms
from .state import Filters
from .types import Entity, QuerySpec

BOARD_COLUMNS = ("ready", "blocked", "in_progress", "closed")

_STATUS_SPECS = {
    "ready": SPEC_READY_ISSUES,
    "in_progress": SPEC_IN_PROGRESS_ISSUES,
    "closed": SPEC_CLOSED_ISSUES,
}


class ListSelectors:
    """Read helpers bound to one :class:`MirrorRegistry`."""

    def __init__(self, registry: MirrorRegistry) -> None:
        self._registry = registry

    def select_issues_for(self, key: str) -> list[Entity]:
        """Entities of *key* in mirror order, unsorted."""
        return self._registry.snapshot_for(key)

    def select_board_column(self, key: str, column: str) -> list[Entity]:
        """Entities of *key* sorted by *column*'s rule.

        Cross-column exclusion is left to :func:`compose_board`.
        """
        if column not in BOARD_COLUMNS:
            raise ValueError(f"unknown board column {column!r}")
        entities = self._registry.snapshot_for(key)
        if column == "closed":
            return sort_closed_desc(entities)
        return sort_priority_then_created(entities)

    def select_epic_children(self, epic_id: str) -> list[Entity]:
        """``dependents`` of the epic held in the ``detail:<epic_id>`` mirror."""
        store = self._registry.get_store(f"{DETAIL_KEY_PREFIX}{epic_id}")
        if store is None:
            return []
        epic = store.get(epic_id)
        if epic is None:
            snapshot = store.snapshot()
            epic = snapshot[0] if snapshot else None
        if epic is None:
            return []
        dependents = epic.get("dependents")
        if not isinstance(dependents, list):
            return []
        return [d for d in dependents if isinstance(d, dict)]

    def subscribe(self, listener: Callable[[str], Any]) -> Callable[[], None]:
        return self._registry.subscribe(listener)


# -- Query derivation ----------------------------------------------------------


def compute_issues_spec(filters: Filters | str) -> QuerySpec:
    """Server query for the issues list.  Only the status filter matters."""
    statuses = (filters,) if isinstance(filters, str) else filters.status
    # Several statuses at once are scoped locally over all issues
    if len(statuses) != 1:
        return QuerySpec(SPEC_ALL_ISSUES)
    return QuerySpec(_STATUS_SPECS.get(statuses[0], SPEC_ALL_ISSUES))


# -- Local filters -------------------------------------------------------------


def _entity_labels(entity: Entity) -> list[str]:
    labels = entity.get("labels")
    if not isinstance(labels, list):
        return []
    return [label for label in labels if isinstance(label, str)]


def labels_by_prefix(entities: Iterable[Entity], prefix: str) -> list[str]:
    """Sorted distinct label values carrying *prefix*, prefix stripped."""
    values = {
        label[len(prefix):]
        for entity in entities
        for label in _entity_labels(entity)
        if label.startswith(prefix)
    }
    return sorted(values)


def matches_labels(
    entity: Entity, client: Iterable[str] = (), work: Iterable[str] = ()
) -> bool:
    """AND semantics: the entity must carry every selected label."""
    labels = set(_entity_labels(entity))
    for value in client:
        if f"{CLIENT_LABEL_PREFIX}{value}" not in labels:
            return False
    for value in work:
        if f"{WORK_LABEL_PREFIX}{value}" not in labels:
            return False
    return True


def filter_issues(entities: Iterable[Entity], filters: Filters) -> list[Entity]:
    """Apply the list view's local filters.

    Status and type match any of the selected values.  A selection that
    includes ``ready`` does not filter by status (the subscription already
    scopes it).  The closed-only view is sorted by ``closed_at``
    descending; other views keep mirror order.
    """
    items = list(entities)
    statuses = filters.status
    if statuses and "ready" not in statuses:
        items = [it for it in items if str(it.get("status") or "") in statuses]
    if filters.search:
        needle = filters.search.lower()
        items = [
            it
            for it in items
            if needle in str(it.get("id", "")).lower()
            or needle in str(it.get("title") or "").lower()
        ]
    if filters.type:
        items = [it for it in items if str(it.get("issue_type") or "") in filters.type]
    if filters.client or filters.work:
        items = [it for it in items if matches_labels(it, filters.client, filters.work)]
    if statuses == ("closed",):
        items = sort_closed_desc(items)
    return items


def closed_since_ms(mode: str, now: datetime | None = None) -> float:
    """Lower bound of the board's closed window, epoch milliseconds.

    ``today`` starts at local midnight; ``3`` and ``7`` are rolling days.
    """
    now = now or datetime.now().astimezone()
    if mode == "3":
        since = now - timedelta(days=3)
    elif mode == "7":
        since = now - timedelta(days=7)
    else:
        since = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return since.timestamp() * 1000.0


# -- Board ---------------------------------------------------------------------


@dataclass
class BoardColumns:
    ready: list[Entity] = field(default_factory=list)
    blocked: list[Entity] = field(default_factory=list)
    in_progress: list[Entity] = field(default_factory=list)
    closed: list[Entity] = field(default_factory=list)


def compose_board(
    selectors: ListSelectors,
    filters: Filters | None = None,
    closed_filter: str = "today",
    *,
    now: datetime | None = None,
) -> BoardColumns:
    """Build all four board columns.

    Ready drops ids that are also In Progress, label filters apply to every
    column, and Closed keeps only items closed inside the window.
    """
    in_progress = selectors.select_board_column(KEY_BOARD_IN_PROGRESS, "in_progress")
    in_progress_ids = {it.get("id") for it in in_progress}
    ready = [
        it
        for it in selectors.select_board_column(KEY_BOARD_READY, "ready")
        if it.get("id") not in in_progress_ids
    ]
    blocked = selectors.select_board_column(KEY_BOARD_BLOCKED, "blocked")
    closed = selectors.select_board_column(KEY_BOARD_CLOSED, "closed")

    if filters is not None and (filters.client or filters.work):
        ready = [it for it in ready if matches_labels(it, filters.client, filters.work)]
        blocked = [it for it in blocked if matches_labels(it, filters.client, filters.work)]
        in_progress = [
            it for it in in_progress if matches_labels(it, filters.client, filters.work)
        ]
        closed = [it for it in closed if matches_labels(it, filters.client, filters.work)]

    since = closed_since_ms(closed_filter, now)
    closed = [
        it
        for it in closed
        if (ts := timestamp_ms(it.get("closed_at"))) is not None and ts >= since
    ]
    return BoardColumns(ready=ready, blocked=blocked, in_progress=in_progress, closed=closed)


# -- Epics ---------------------------------------------------------------------


@dataclass
class EpicGroup:
    epic: Entity
    total_children: int
    closed_children: int


def _counter(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value != value:  # NaN
        return None
    return int(value)


def build_epic_groups(epics: Iterable[Entity]) -> list[EpicGroup]:
    """Progress per epic.

    Server-provided ``total_children``/``closed_children`` win; otherwise
    they are derived from the embedded ``dependents``.
    """
    groups = []
    for epic in epics:
        dependents = epic.get("dependents")
        if not isinstance(dependents, list):
            dependents = []
        total = _counter(epic.get("total_children"))
        closed = _counter(epic.get("closed_children"))
        if total is None:
            total = len(dependents)
        if closed is None:
            closed = sum(
                1
                for d in dependents
                if isinstance(d, dict) and str(d.get("status") or "") == "closed"
            )
        groups.append(EpicGroup(epic=epic, total_children=total, closed_children=closed))
    return groups
