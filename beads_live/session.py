# =============================================================================
# beads-live -- Live Session
# =============================================================================
#
# Composition root: one client, one mirror registry, one subscription
# manager, the view state store and the view subscriptions, wired together.
#
#   client events  snapshot|upsert|delete  -> registry.apply_push
#   client events  workspace-changed       -> state + clear_and_resubscribe
#   client state   open after a drop       -> manager.resubscribe_all
#   state changes                          -> views.ensure
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Callable

from ._logging import logger
from .client import LiveClient
from .constants import (
    CONNECTION_TIMEOUT,
    EVENT_WORKSPACE_CHANGED,
    MSG_LIST_WORKSPACES,
    MSG_SET_WORKSPACE,
    PUSH_EVENTS,
    REQUEST_TIMEOUT,
)
from .mirror import MirrorRegistry
from .selectors import ListSelectors
from .state import AppState, AppStore
from .subscriptions import SubscriptionManager
from .types import (
    ConnectionState,
    ReconnectConfig,
    ServerEvent,
    WorkspaceInfo,
    WorkspaceListing,
)
from .views import ErrorCallback, ViewSubscriptions

ConnectionListener = Callable[[str], Any]


class LiveSession:
    """A connected, self-maintaining set of live views.

    Args:
        url: WebSocket server URL.
        reconnect: Backoff policy for the underlying connection.
        extra_headers: Additional HTTP headers for the handshake.
        connect_timeout: Seconds allowed for opening the socket.
        request_timeout: Optional per-request timeout.
        initial_state: Starting view state.
        on_error: ``on_error(exc, key)`` for failed subscribes.
        client: Pre-built :class:`LiveClient`, mainly for tests.

    Example::

        async with LiveSession("ws://127.0.0.1:3000/ws") as session:
            session.state.set_state(view="board")
            session.selectors.subscribe(lambda key: print(key, "changed"))
    """

    def __init__(
        self,
        url: str = "",
        *,
        reconnect: ReconnectConfig | None = None,
        extra_headers: dict[str, str] | None = None,
        connect_timeout: float = CONNECTION_TIMEOUT,
        request_timeout: float | None = REQUEST_TIMEOUT,
        initial_state: AppState | None = None,
        on_error: ErrorCallback | None = None,
        client: LiveClient | None = None,
    ) -> None:
        self.client = client or LiveClient(
            url,
            reconnect=reconnect,
            extra_headers=extra_headers,
            connect_timeout=connect_timeout,
            request_timeout=request_timeout,
        )
        self.registry = MirrorRegistry()
        self.subscriptions = SubscriptionManager(self.client.send, membership=self.registry)
        self.state = AppStore(initial_state)
        self.selectors = ListSelectors(self.registry)
        self.views = ViewSubscriptions(
            self.subscriptions, self.registry, self.state, on_error=on_error
        )

        self._had_disconnect = False
        self._connection_listeners: list[ConnectionListener] = []
        self._background_tasks: set[asyncio.Task[Any]] = set()

        for event_name in PUSH_EVENTS:
            self.client.on(event_name, self._route_push)
        self.client.on(EVENT_WORKSPACE_CHANGED, self._on_workspace_changed)
        self._unsubscribe_connection = self.client.on_state_change(self._on_connection_state)
        self._unsubscribe_state = self.state.subscribe(self._on_app_state)

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> LiveSession:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # -- Lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        """Connect, load workspaces and subscribe the current view."""
        await self.client.connect()
        await self.list_workspaces()
        await self.views.ensure()

    async def close(self) -> None:
        self._unsubscribe_state()
        self._unsubscribe_connection()
        for task in self._background_tasks:
            task.cancel()
        self._background_tasks.clear()
        if self.client.is_connected:
            await self.views.close()
        self.registry.clear()
        await self.client.disconnect()

    # -- Requests -------------------------------------------------------------

    async def send(self, kind: str, payload: Any = None) -> Any:
        """One-shot request, e.g. a mutation.  Mirrors change only via pushes."""
        return await self.client.send(kind, payload)

    async def list_workspaces(self) -> WorkspaceListing:
        """Fetch known workspaces and store them in the view state.

        Transport failures yield the listing already held in state.
        """
        result = await self.client.send_or_default(MSG_LIST_WORKSPACES, {}, default=None)
        held = self.state.get_state().workspace
        if not isinstance(result, dict) or not isinstance(result.get("workspaces"), list):
            return WorkspaceListing(current=held.current, available=list(held.available))

        available = [
            WorkspaceInfo.from_payload(ws)
            for ws in result["workspaces"]
            if isinstance(ws, dict)
        ]
        current = result.get("current")
        listing = WorkspaceListing(
            current=WorkspaceInfo.from_payload(current) if isinstance(current, dict) else None,
            available=available,
        )
        self.state.set_state(
            workspace={"current": listing.current, "available": listing.available}
        )
        return listing

    async def set_workspace(self, path: str) -> bool:
        """Switch the server to *path*.  Returns True if it changed.

        Raises:
            BeadsLiveError: If the request fails.
        """
        result = await self.client.send(MSG_SET_WORKSPACE, {"path": path})
        if not isinstance(result, dict) or not isinstance(result.get("workspace"), dict):
            return False
        self.state.set_state(
            workspace={"current": WorkspaceInfo.from_payload(result["workspace"])}
        )
        changed = bool(result.get("changed"))
        if changed:
            logger.info("Switched workspace to %s", path)
            await self.views.clear_and_resubscribe()
        return changed

    # -- Connection feedback --------------------------------------------------

    @property
    def had_disconnect(self) -> bool:
        return self._had_disconnect

    def on_connection_event(self, listener: ConnectionListener) -> Callable[[], None]:
        """Call *listener("lost")* on a drop and *listener("reconnected")* after."""
        self._connection_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._connection_listeners:
                self._connection_listeners.remove(listener)

        return unsubscribe

    def get_stats(self) -> dict[str, Any]:
        stats = self.client.get_stats()
        stats["subscriptions"] = len(self.subscriptions.records)
        stats["mirrors"] = len(self.registry.keys())
        stats["had_disconnect"] = self._had_disconnect
        return stats

    # -- Internal: event wiring -----------------------------------------------

    def _route_push(self, event: ServerEvent) -> None:
        self.registry.apply_push(event.payload, kind=event.type)

    async def _on_workspace_changed(self, event: ServerEvent) -> None:
        payload = event.payload
        if not isinstance(payload, dict) or not payload.get("root_dir"):
            logger.debug("Ignoring workspace-changed without root_dir")
            return
        logger.info("Workspace changed on server: %s", payload["root_dir"])
        self.state.set_state(workspace={"current": WorkspaceInfo.from_payload(payload)})
        await self.list_workspaces()
        await self.views.clear_and_resubscribe()

    def _on_connection_state(self, state: ConnectionState) -> None:
        self.subscriptions.handle_state_change(state)

        if state in (ConnectionState.CLOSED, ConnectionState.RECONNECTING):
            if not self._had_disconnect:
                self._had_disconnect = True
                logger.warning("Connection lost (%s)", state.value)
                self._emit_connection("lost")
        elif state is ConnectionState.OPEN and self._had_disconnect:
            self._had_disconnect = False
            logger.info("Reconnected")
            self._emit_connection("reconnected")

    def _emit_connection(self, kind: str) -> None:
        for listener in list(self._connection_listeners):
            try:
                listener(kind)
            except Exception as exc:
                logger.error("Connection listener error: %s", exc)

    def _on_app_state(self, state: AppState) -> None:
        task = asyncio.ensure_future(self.views.ensure(state))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
