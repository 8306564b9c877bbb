# =============================================================================
# beads-live -- Connection Manager
# =============================================================================
#
# WebSocket lifecycle: connect, receive loop, reconnect with backoff.
# Request/response correlation lives one layer up in client.py.
# =============================================================================

from __future__ import annotations

import asyncio
import random
from typing import Any, Callable

import websockets.asyncio.client
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedError,
    ConnectionClosedOK,
    InvalidHandshake,
    InvalidStatus,
)

from ._logging import logger
from .constants import (
    CONNECTION_TIMEOUT,
    MAX_MESSAGE_SIZE,
    PING_INTERVAL,
    PING_TIMEOUT,
    RECONNECT_ABSOLUTE_CAP,
    WS_CLOSE_AUTH_EXPIRED,
    WS_CLOSE_AUTH_FAILED,
    WS_CLOSE_GOING_AWAY,
    WS_CLOSE_INTERNAL_ERROR,
    WS_CLOSE_NORMAL,
    WS_CLOSE_POLICY_VIOLATION,
)
from .errors import AuthError, ConnectionLostError, ConnectTimeoutError
from .types import ConnectionState, ReconnectConfig, ReconnectMode

_AUTH_CLOSE_CODES = (
    WS_CLOSE_AUTH_FAILED,
    WS_CLOSE_AUTH_EXPIRED,
    WS_CLOSE_POLICY_VIOLATION,
)


class ConnectionManager:
    """Owns one WebSocket session and its reconnection.

    Any close the client did not ask for schedules a reconnect, except
    auth/policy close codes which leave the manager CLOSED.  Frames are
    handed to *on_message* in receipt order from a single receive task, so
    nothing of a dropped session is delivered after CLOSED is reported.
    """

    def __init__(
        self,
        url: str,
        *,
        reconnect: ReconnectConfig | None = None,
        extra_headers: dict[str, str] | None = None,
        connect_timeout: float = CONNECTION_TIMEOUT,
        on_message: Callable[[str | bytes], Any] | None = None,
        on_state_change: Callable[[ConnectionState], Any] | None = None,
    ) -> None:
        self._url = url
        self._reconnect_cfg = reconnect or ReconnectConfig()
        self._extra_headers = extra_headers or {}
        self._connect_timeout = connect_timeout

        # Callbacks
        self._on_message = on_message
        self._on_state_change = on_state_change

        # State
        self._ws: websockets.asyncio.client.ClientConnection | None = None
        self._state = ConnectionState.CLOSED
        self._is_connecting = False
        self._reconnect_attempts = 0
        self._destroyed = False
        self._closing = False

        # Tasks
        self._recv_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return (
            self._ws is not None
            and self._state == ConnectionState.OPEN
            and not self._destroyed
        )

    @property
    def url(self) -> str:
        return self._url

    # -- Connect / Disconnect -------------------------------------------------

    async def connect(self) -> None:
        """Open the WebSocket and start the receive loop."""
        if self._destroyed:
            raise ConnectionLostError("ConnectionManager has been destroyed")
        if self.is_connected or self._is_connecting:
            return

        self._is_connecting = True
        self._closing = False
        if self._state != ConnectionState.RECONNECTING:
            self._set_state(ConnectionState.CONNECTING)
        try:
            await self._open()
            self._reconnect_attempts = 0
        except BaseException:
            if self._state == ConnectionState.CONNECTING:
                self._set_state(ConnectionState.CLOSED)
            raise
        finally:
            self._is_connecting = False

    async def _open(self) -> None:
        try:
            self._ws = await asyncio.wait_for(
                websockets.asyncio.client.connect(
                    self._url,
                    additional_headers=self._extra_headers,
                    max_size=MAX_MESSAGE_SIZE,
                    ping_interval=PING_INTERVAL,
                    ping_timeout=PING_TIMEOUT,
                    open_timeout=None,  # asyncio.wait_for handles timeout
                ),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError:
            raise ConnectTimeoutError(
                f"Connection timed out after {self._connect_timeout}s"
            ) from None
        except OSError as exc:
            raise ConnectionLostError(f"Failed to connect: {exc}") from exc
        except InvalidStatus as exc:
            if exc.response.status_code in (401, 403):
                raise AuthError(f"Handshake rejected: {exc}") from exc
            raise ConnectionLostError(f"Handshake failed: {exc}") from exc
        except InvalidHandshake as exc:
            raise ConnectionLostError(f"Handshake failed: {exc}") from exc

        self._recv_task = asyncio.create_task(self._recv_loop(self._ws))
        self._set_state(ConnectionState.OPEN)

    async def disconnect(self) -> None:
        """Graceful shutdown, no reconnect."""
        self._closing = True
        self._cancel_reconnect()

        recv_task, self._recv_task = self._recv_task, None
        if recv_task is not None:
            recv_task.cancel()
            await asyncio.gather(recv_task, return_exceptions=True)

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close(WS_CLOSE_NORMAL, "Client disconnect")
            except ConnectionClosed:
                pass

        self._set_state(ConnectionState.CLOSED)

    async def destroy(self) -> None:
        """Disconnect and mark permanently destroyed."""
        self._destroyed = True
        await self.disconnect()

    # -- Send -----------------------------------------------------------------

    async def send(self, data: str) -> bool:
        """Send a text frame.  Returns True on success."""
        ws = self._ws
        if ws is None or self._state != ConnectionState.OPEN:
            return False
        try:
            await ws.send(data)
            return True
        except ConnectionClosed:
            logger.debug("Send failed: connection closed")
            return False

    # -- Public reconnect -----------------------------------------------------

    async def force_reconnect(self) -> None:
        """Tear down the current socket and reconnect immediately."""
        recv_task, self._recv_task = self._recv_task, None
        if recv_task is not None:
            recv_task.cancel()
            await asyncio.gather(recv_task, return_exceptions=True)

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close(WS_CLOSE_GOING_AWAY, "Reconnecting")
            except ConnectionClosed:
                pass

        self._set_state(ConnectionState.CLOSED)
        self._reconnect_attempts = 0
        self._schedule_reconnect(delay=0.0)

    # -- Internal: receive loop -----------------------------------------------

    async def _recv_loop(self, ws: websockets.asyncio.client.ClientConnection) -> None:
        """Read frames until the socket closes, then hand over to close handling."""
        try:
            async for message in ws:
                if self._on_message:
                    self._on_message(message)
        except ConnectionClosedOK as exc:
            self._handle_close(exc.rcvd.code if exc.rcvd else WS_CLOSE_NORMAL, "")
        except ConnectionClosedError as exc:
            code = exc.rcvd.code if exc.rcvd else 1006
            reason = exc.rcvd.reason if exc.rcvd else ""
            self._handle_close(code, reason)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Receive loop error: %s", exc)
            try:
                await ws.close(WS_CLOSE_INTERNAL_ERROR, "Client error")
            except ConnectionClosed:
                pass
            self._handle_close(1006, str(exc))
        else:
            # Iterator exhausted after a clean close
            self._handle_close(WS_CLOSE_NORMAL, "")

    def _handle_close(self, code: int, reason: str) -> None:
        """React to a close the client did not initiate."""
        logger.debug("WebSocket closed: code=%d reason=%s", code, reason)
        self._ws = None
        self._recv_task = None
        self._set_state(ConnectionState.CLOSED)

        if self._closing or self._destroyed:
            return

        if code in _AUTH_CLOSE_CODES:
            logger.error("Auth/policy failure (code %d): %s", code, reason)
            return

        self._schedule_reconnect()

    # -- Internal: reconnection -----------------------------------------------

    def _schedule_reconnect(self, delay: float | None = None) -> None:
        """Schedule a reconnection attempt with backoff."""
        if self._destroyed or self._closing:
            return

        cfg = self._reconnect_cfg
        if cfg.max_attempts >= 0 and self._reconnect_attempts >= cfg.max_attempts:
            logger.error("Max reconnect attempts (%d) reached", cfg.max_attempts)
            self._set_state(ConnectionState.CLOSED)
            return

        self._set_state(ConnectionState.RECONNECTING)
        if delay is None:
            delay = self._calculate_delay()
        logger.info(
            "Reconnecting in %.1fs (attempt %d/%s)",
            delay,
            self._reconnect_attempts + 1,
            cfg.max_attempts if cfg.max_attempts >= 0 else "inf",
        )
        self._reconnect_task = asyncio.ensure_future(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        """Wait, then try to reconnect."""
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return

        self._reconnect_task = None
        self._reconnect_attempts += 1
        try:
            await self.connect()
        except AuthError:
            self._set_state(ConnectionState.CLOSED)
        except (ConnectionLostError, ConnectTimeoutError) as exc:
            logger.debug("Reconnect attempt failed: %s", exc)
            self._schedule_reconnect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task:
            self._reconnect_task.cancel()
            self._reconnect_task = None

    def _calculate_delay(self) -> float:
        """Compute reconnect delay based on strategy."""
        cfg = self._reconnect_cfg
        attempt = self._reconnect_attempts

        if cfg.mode == ReconnectMode.LINEAR:
            delay = cfg.base_delay + attempt * 1.0
        elif cfg.mode == ReconnectMode.FIBONACCI:
            delay = cfg.base_delay * _fib(min(attempt + 1, 10))
        else:
            delay = cfg.base_delay * (cfg.factor**attempt)

        delay = min(delay, cfg.max_delay, RECONNECT_ABSOLUTE_CAP)

        if cfg.jitter:
            jitter_amount = delay * 0.2 * (random.random() - 0.5)
            delay = max(0.0, delay + jitter_amount)

        return delay

    # -- State management -----------------------------------------------------

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state == self._state:
            return
        old = self._state
        self._state = new_state
        logger.debug("State: %s -> %s", old.value, new_state.value)
        if self._on_state_change:
            self._on_state_change(new_state)


def _fib(n: int) -> int:
    """Fibonacci number for reconnect delay calculation."""
    a, b = 0, 1
    for _ in range(n):
        a, b = b, a + b
    return a
