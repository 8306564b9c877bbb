# =============================================================================
# beads-live -- View Subscriptions
# =============================================================================
#
# Decides which subscriptions the current view needs and keeps the manager
# and the mirror registry in step with it:
#
#   issues  -> tab:issues (query follows the status filter)
#   epics   -> tab:epics + detail:<epic> per expanded epic
#   board   -> tab:board:{ready,in-progress,closed,blocked}
#   any     -> detail:<selected_id> while an issue is selected
#
# Every key's mirror is registered before its subscribe request goes out.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Callable

from ._logging import logger
from .constants import (
    DETAIL_KEY_PREFIX,
    KEY_BOARD_BLOCKED,
    KEY_BOARD_CLOSED,
    KEY_BOARD_IN_PROGRESS,
    KEY_BOARD_READY,
    KEY_EPICS,
    KEY_ISSUES,
    SPEC_BLOCKED_ISSUES,
    SPEC_CLOSED_ISSUES,
    SPEC_EPICS,
    SPEC_IN_PROGRESS_ISSUES,
    SPEC_ISSUE_DETAIL,
    SPEC_READY_ISSUES,
)
from .mirror import MirrorRegistry
from .selectors import compute_issues_spec
from .state import AppState, AppStore
from .subscriptions import SubscriptionManager
from .types import QuerySpec

ErrorCallback = Callable[[BaseException, str], Any]

_BOARD_SPECS = {
    KEY_BOARD_READY: QuerySpec(SPEC_READY_ISSUES),
    KEY_BOARD_IN_PROGRESS: QuerySpec(SPEC_IN_PROGRESS_ISSUES),
    KEY_BOARD_CLOSED: QuerySpec(SPEC_CLOSED_ISSUES),
    KEY_BOARD_BLOCKED: QuerySpec(SPEC_BLOCKED_ISSUES),
}


def detail_key(issue_id: str) -> str:
    return f"{DETAIL_KEY_PREFIX}{issue_id}"


def detail_spec(issue_id: str) -> QuerySpec:
    return QuerySpec(SPEC_ISSUE_DETAIL, {"id": issue_id})


class ViewSubscriptions:
    """Keeps subscriptions matched to an :class:`AppStore`'s state.

    Args:
        manager: Subscription manager used for subscribe/release.
        registry: Mirror registry; stores are registered before subscribing
            and unregistered after release.
        app_store: Source of the current view state.
        on_error: ``on_error(exc, key)`` for subscribe failures.  Failures
            are logged either way and never retried here.
    """

    def __init__(
        self,
        manager: SubscriptionManager,
        registry: MirrorRegistry,
        app_store: AppStore,
        *,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self._manager = manager
        self._registry = registry
        self._app_store = app_store
        self._on_error = on_error

        self._owned: set[str] = set()
        self._expanded_epics: set[str] = set()
        self._lock = asyncio.Lock()

    @property
    def owned_keys(self) -> set[str]:
        return set(self._owned)

    @property
    def expanded_epics(self) -> set[str]:
        return set(self._expanded_epics)

    async def ensure(self, state: AppState | None = None) -> None:
        """Subscribe what *state* needs and release everything else we own.

        Unchanged subscriptions cost nothing: the manager returns the active
        handle when the query fingerprint is equal.
        """
        async with self._lock:
            if state is None:
                state = self._app_store.get_state()
            wanted = self._wanted(state)
            for key in sorted(self._owned - wanted.keys()):
                await self._drop(key)
            for key, spec in wanted.items():
                await self._subscribe(key, spec)

    async def toggle_epic(self, epic_id: str) -> bool:
        """Expand or collapse an epic.  Returns True if now expanded."""
        if epic_id in self._expanded_epics:
            self._expanded_epics.discard(epic_id)
            expanded = False
        else:
            self._expanded_epics.add(epic_id)
            expanded = True
        await self.ensure()
        return expanded

    async def clear_and_resubscribe(self, state: AppState | None = None) -> None:
        """Drop every owned subscription and mirror, then rebuild for *state*.

        Used on workspace switches, where no mirrored content carries over.
        """
        logger.info("Clearing all subscriptions for workspace switch")
        async with self._lock:
            for key in sorted(self._owned):
                await self._drop(key)
            self._expanded_epics.clear()
        await self.ensure(state)

    async def close(self) -> None:
        async with self._lock:
            for key in sorted(self._owned):
                await self._drop(key)

    # -- Internal -------------------------------------------------------------

    def _wanted(self, state: AppState) -> dict[str, QuerySpec]:
        wanted: dict[str, QuerySpec] = {}
        if state.view == "issues":
            wanted[KEY_ISSUES] = compute_issues_spec(state.filters)
        elif state.view == "epics":
            wanted[KEY_EPICS] = QuerySpec(SPEC_EPICS)
            for epic_id in sorted(self._expanded_epics):
                wanted[detail_key(epic_id)] = detail_spec(epic_id)
        elif state.view == "board":
            wanted.update(_BOARD_SPECS)
        if state.selected_id:
            wanted[detail_key(state.selected_id)] = detail_spec(state.selected_id)
        return wanted

    async def _subscribe(self, key: str, spec: QuerySpec) -> None:
        store = self._registry.register(key, spec)
        # A changed query reuses the mirror; the next snapshot replaces it
        store.spec = spec
        self._owned.add(key)
        try:
            await self._manager.subscribe_list(key, spec)
        except Exception as exc:
            logger.warning("Subscribe '%s' failed: %s", key, exc)
            if self._on_error is not None:
                try:
                    self._on_error(exc, key)
                except Exception as cb_exc:
                    logger.error("on_error callback failed: %s", cb_exc)

    async def _drop(self, key: str) -> None:
        self._owned.discard(key)
        await self._manager.release(key)
        self._registry.unregister(key)
