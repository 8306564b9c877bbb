# =============================================================================
# beads-live -- Async Client
# =============================================================================
#
# Request/response over one WebSocket plus a typed stream of pushed events.
# Transport lifecycle is delegated to ConnectionManager.
# =============================================================================

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable

from ._logging import logger
from .connection import ConnectionManager
from .constants import CONNECTION_TIMEOUT, REQUEST_TIMEOUT
from .errors import (
    BeadsLiveError,
    ConnectionLostError,
    RequestError,
    RequestTimeoutError,
)
from .protocol import MessageCodec
from .types import (
    ConnectionState,
    ConnectionStats,
    ReconnectConfig,
    Reply,
    ServerEvent,
)

# Type aliases for handlers
EventHandler = Callable[[ServerEvent], Any]
AsyncEventHandler = Callable[[ServerEvent], Awaitable[Any]]
StateHandler = Callable[[ConnectionState], Any]


class LiveClient:
    """Async beads-live client: ``send`` for requests, ``on`` for pushes.

    Requests made while the connection is down fail fast with a recoverable
    :class:`~beads_live.errors.ConnectionLostError`; requests outstanding
    when the connection drops fail the same way.  Nothing is queued for
    replay.

    Args:
        url: WebSocket server URL, e.g. ``"ws://127.0.0.1:3000/ws"``.
        reconnect: Reconnection config.  Defaults to exponential backoff,
            infinite retries.
        extra_headers: Additional HTTP headers for the handshake.
        connect_timeout: Seconds allowed for opening the socket.
        request_timeout: Seconds to wait for a reply, ``None`` to wait until
            the reply arrives or the connection drops.

    Example::

        async with LiveClient("ws://127.0.0.1:3000/ws") as client:
            client.on("workspace-changed", print)
            workspaces = await client.send("list-workspaces")
    """

    def __init__(
        self,
        url: str,
        *,
        reconnect: ReconnectConfig | None = None,
        extra_headers: dict[str, str] | None = None,
        connect_timeout: float = CONNECTION_TIMEOUT,
        request_timeout: float | None = REQUEST_TIMEOUT,
    ) -> None:
        self._codec = MessageCodec()
        self._request_timeout = request_timeout

        # Outstanding requests: request id -> future resolved with the Reply
        self._pending: dict[str, asyncio.Future[Reply]] = {}

        # Callback handlers: type -> list of handlers
        self._handlers: dict[str, list[EventHandler | AsyncEventHandler]] = defaultdict(
            list
        )
        self._wildcard_handlers: list[EventHandler | AsyncEventHandler] = []
        self._state_handlers: list[StateHandler] = []

        self._stats = ConnectionStats()
        self._background_tasks: set[asyncio.Task[Any]] = set()

        self._connection = ConnectionManager(
            url,
            reconnect=reconnect,
            extra_headers=extra_headers,
            connect_timeout=connect_timeout,
            on_message=self._on_raw_message,
            on_state_change=self._on_state_change,
        )

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> LiveClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.disconnect()

    # -- Connect / Disconnect -------------------------------------------------

    async def connect(self) -> None:
        """Open the connection."""
        await self._connection.connect()

    async def disconnect(self) -> None:
        """Disconnect for good; outstanding requests fail."""
        for task in self._background_tasks:
            task.cancel()
        self._background_tasks.clear()
        await self._connection.destroy()
        self._fail_pending("Client disconnected")

    async def close(self) -> None:
        """Alias for disconnect."""
        await self.disconnect()

    async def force_reconnect(self) -> None:
        """Drop the socket and reconnect immediately."""
        await self._connection.force_reconnect()

    # -- Properties -----------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._connection.is_connected

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    # -- Requests -------------------------------------------------------------

    async def send(self, kind: str, payload: Any = None) -> Any:
        """Send a request and wait for its reply payload.

        Args:
            kind: Request kind, e.g. ``"subscribe-list"``.
            payload: JSON-serializable request body (default: empty object).

        Returns:
            The ``payload`` of the server's reply.

        Raises:
            ConnectionLostError: Not connected, or the connection dropped
                before the reply arrived.
            RequestTimeoutError: ``request_timeout`` elapsed.
            RequestError: The server answered ``ok: false``.
        """
        request_id, encoded = self._codec.encode_request(kind, payload)
        future: asyncio.Future[Reply] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            if not await self._connection.send(encoded):
                raise ConnectionLostError(f"Not connected, cannot send '{kind}'")
            self._stats.messages_sent += 1
            self._stats.bytes_sent += len(encoded.encode("utf-8"))

            if self._request_timeout is None:
                reply = await future
            else:
                try:
                    reply = await asyncio.wait_for(future, self._request_timeout)
                except asyncio.TimeoutError:
                    raise RequestTimeoutError(
                        f"No reply to '{kind}' within {self._request_timeout}s"
                    ) from None
        except BeadsLiveError:
            self._stats.requests_failed += 1
            raise
        finally:
            self._pending.pop(request_id, None)

        if not reply.ok:
            self._stats.requests_failed += 1
            error = reply.error or {}
            raise RequestError(
                code=str(error.get("code", "UNKNOWN_ERROR")),
                message=str(error.get("message", "Request failed")),
                details=error.get("details"),
            )
        return reply.payload

    async def send_or_default(
        self, kind: str, payload: Any = None, *, default: Any = None
    ) -> Any:
        """Like :meth:`send`, but any client error yields *default*."""
        try:
            return await self.send(kind, payload)
        except BeadsLiveError as exc:
            logger.debug("Request '%s' failed, using default: %s", kind, exc)
            return default

    # -- Handler registration -------------------------------------------------

    def on(
        self,
        event_type: str,
        handler: EventHandler | AsyncEventHandler | None = None,
    ) -> Any:
        """Register a handler for one pushed event type.

        Usable directly (``client.on("snapshot", fn)``) or as a decorator.
        Handlers run in receipt order; coroutine handlers are scheduled as
        tasks and therefore lose that ordering.
        """
        if handler is not None:
            self._handlers[event_type].append(handler)
            return handler

        def decorator(
            fn: EventHandler | AsyncEventHandler,
        ) -> EventHandler | AsyncEventHandler:
            self._handlers[event_type].append(fn)
            return fn

        return decorator

    def on_any(
        self, fn: EventHandler | AsyncEventHandler
    ) -> EventHandler | AsyncEventHandler:
        """Register a wildcard handler that receives all events."""
        self._wildcard_handlers.append(fn)
        return fn

    def off(self, event_type: str, fn: EventHandler | AsyncEventHandler) -> None:
        """Remove a specific handler."""
        handlers = self._handlers.get(event_type, [])
        if fn in handlers:
            handlers.remove(fn)

    def on_state_change(self, fn: StateHandler) -> Callable[[], None]:
        """Observe connection state transitions.  Returns an unsubscribe callable."""
        self._state_handlers.append(fn)

        def remove() -> None:
            if fn in self._state_handlers:
                self._state_handlers.remove(fn)

        return remove

    # -- Stats ----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Return client statistics."""
        return {
            "state": self._connection.state.value,
            "url": self._connection.url,
            "pending_requests": len(self._pending),
            "messages_received": self._stats.messages_received,
            "messages_sent": self._stats.messages_sent,
            "bytes_received": self._stats.bytes_received,
            "bytes_sent": self._stats.bytes_sent,
            "requests_failed": self._stats.requests_failed,
            "reconnect_count": self._stats.reconnect_count,
        }

    # -- Internal: message handling -------------------------------------------

    def _on_raw_message(self, data: str | bytes) -> None:
        """Decode a raw WebSocket frame and dispatch its contents in order."""
        self._stats.messages_received += 1
        if isinstance(data, bytes):
            self._stats.bytes_received += len(data)
        else:
            self._stats.bytes_received += len(data.encode("utf-8"))

        for frame in self._codec.decode(data):
            if isinstance(frame, Reply):
                self._resolve(frame)
            else:
                self._dispatch_event(frame)

    def _resolve(self, reply: Reply) -> None:
        future = self._pending.get(reply.id)
        if future is None:
            logger.debug("Reply for unknown request %s (%s)", reply.id, reply.type)
            return
        if not future.done():
            future.set_result(reply)

    def _dispatch_event(self, event: ServerEvent) -> None:
        """Invoke handlers registered for this event type, then wildcards."""
        handlers = self._handlers.get(event.type, []) + self._wildcard_handlers
        if not handlers:
            logger.debug("No handler for event '%s'", event.type)
        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    self._fire_task(result)
            except Exception as exc:
                logger.error("Handler error for '%s': %s", event.type, exc)

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _fail_pending(self, reason: str) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(ConnectionLostError(reason))

    def _on_state_change(self, state: ConnectionState) -> None:
        if state == ConnectionState.RECONNECTING:
            self._stats.reconnect_count += 1
        if state in (ConnectionState.CLOSED, ConnectionState.RECONNECTING):
            self._fail_pending(f"Connection {state.value}")

        for handler in list(self._state_handlers):
            try:
                handler(state)
            except Exception as exc:
                logger.error("State handler error (%s): %s", state.value, exc)
