# =============================================================================
# beads-live -- View State
# =============================================================================
#
# Small observable store for the UI state that drives subscriptions:
# selected issue, active view, filters, board closed window, workspace.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Mapping

from ._logging import logger
from .constants import CLOSED_FILTERS, STATUS_FILTERS
from .types import WorkspaceInfo

VIEWS = ("issues", "epics", "board")

StateListener = Callable[["AppState"], Any]

_UNSET: Any = object()


@dataclass(frozen=True)
class Filters:
    """List filters.  Only ``status`` affects the server-side query.

    ``status`` and ``type`` are multi-select; an empty tuple means no
    filter.  A single string or any iterable of strings is accepted.
    """

    status: tuple[str, ...] = ()
    search: str = ""
    type: tuple[str, ...] = ()
    client: tuple[str, ...] = ()
    work: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", _statuses(self.status))
        object.__setattr__(self, "search", str(self.search or ""))
        object.__setattr__(self, "type", _labels(self.type))
        object.__setattr__(self, "client", _labels(self.client))
        object.__setattr__(self, "work", _labels(self.work))


@dataclass(frozen=True)
class BoardState:
    closed_filter: str = "today"


@dataclass(frozen=True)
class WorkspaceState:
    current: WorkspaceInfo | None = None
    available: tuple[WorkspaceInfo, ...] = ()


@dataclass(frozen=True)
class AppState:
    selected_id: str | None = None
    view: str = "issues"
    filters: Filters = field(default_factory=Filters)
    board: BoardState = field(default_factory=BoardState)
    workspace: WorkspaceState = field(default_factory=WorkspaceState)


class AppStore:
    """Holds one immutable :class:`AppState` and notifies on change.

    ``set_state`` merges a partial patch; nested ``filters``, ``board`` and
    ``workspace`` patches are merged field by field.  Listeners are not
    called when the merged state equals the current one.
    """

    def __init__(self, initial: AppState | None = None) -> None:
        self._state = initial or AppState()
        self._listeners: list[StateListener] = []

    def get_state(self) -> AppState:
        return self._state

    def set_state(
        self,
        *,
        selected_id: str | None = _UNSET,
        view: str = _UNSET,
        filters: Mapping[str, Any] | None = None,
        board: Mapping[str, Any] | None = None,
        workspace: Mapping[str, Any] | None = None,
    ) -> bool:
        """Apply a patch.  Returns True if the state changed."""
        current = self._state
        changes: dict[str, Any] = {}
        if selected_id is not _UNSET:
            changes["selected_id"] = selected_id
        if view is not _UNSET:
            if view not in VIEWS:
                raise ValueError(f"unknown view {view!r}")
            changes["view"] = view
        if filters:
            changes["filters"] = _merge_filters(current.filters, filters)
        if board:
            changes["board"] = _merge_board(current.board, board)
        if workspace:
            changes["workspace"] = _merge_workspace(current.workspace, workspace)

        nxt = replace(current, **changes)
        if nxt == current:
            return False
        self._state = nxt
        logger.debug(
            "State change: view=%s selected=%s status=%s workspace=%s",
            nxt.view,
            nxt.selected_id,
            nxt.filters.status,
            nxt.workspace.current.path if nxt.workspace.current else None,
        )
        for listener in list(self._listeners):
            try:
                listener(nxt)
            except Exception as exc:
                logger.debug("State listener error: %s", exc)
        return True

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register *listener(state)*.  Returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


def _labels(values: Iterable[str] | str | None) -> tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        return (values,) if values else ()
    return tuple(str(v) for v in values if v)


def _statuses(values: Iterable[str] | str | None) -> tuple[str, ...]:
    # "all" selects nothing; unknown statuses are dropped
    return tuple(
        status
        for status in _labels(values)
        if status != "all" and status in STATUS_FILTERS
    )


def _merge_filters(filters: Filters, patch: Mapping[str, Any]) -> Filters:
    # Filters normalizes its own fields on construction
    changes = {
        name: patch[name]
        for name in ("status", "search", "type", "client", "work")
        if name in patch
    }
    return replace(filters, **changes)


def _merge_board(board: BoardState, patch: Mapping[str, Any]) -> BoardState:
    closed_filter = str(patch.get("closed_filter", board.closed_filter))
    if closed_filter not in CLOSED_FILTERS:
        closed_filter = "today"
    return replace(board, closed_filter=closed_filter)


def _merge_workspace(workspace: WorkspaceState, patch: Mapping[str, Any]) -> WorkspaceState:
    changes: dict[str, Any] = {}
    if "current" in patch:
        changes["current"] = patch["current"]
    if "available" in patch:
        changes["available"] = tuple(patch["available"] or ())
    return replace(workspace, **changes)
