"""Tests for ConnectionManager (mocked websockets)."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import websockets.asyncio.client
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.frames import Close

from beads_live.connection import ConnectionManager, _fib
from beads_live.errors import ConnectionLostError, ConnectTimeoutError
from beads_live.types import ConnectionState, ReconnectConfig, ReconnectMode


class FakeWebSocket:
    """Async-iterable socket yielding *messages*, then raising *exc* if given."""

    def __init__(self, messages=(), exc=None):
        self._messages = list(messages)
        self._exc = exc
        self.send = AsyncMock()
        self.close = AsyncMock()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self._messages:
            yield message
        if self._exc is not None:
            raise self._exc


def make_manager(**kwargs):
    states = []
    received = []
    manager = ConnectionManager(
        "ws://127.0.0.1:3000/ws",
        on_message=received.append,
        on_state_change=states.append,
        **kwargs,
    )
    return manager, states, received


class TestBackoff:
    def test_fib(self):
        assert [_fib(n) for n in range(1, 8)] == [1, 1, 2, 3, 5, 8, 13]

    def test_exponential(self):
        manager, _, _ = make_manager(reconnect=ReconnectConfig(jitter=False))
        delays = []
        for attempt in range(4):
            manager._reconnect_attempts = attempt
            delays.append(manager._calculate_delay())
        assert delays == [1.0, 1.5, 2.25, 3.375]

    def test_linear(self):
        cfg = ReconnectConfig(mode=ReconnectMode.LINEAR, base_delay=2.0, jitter=False)
        manager, _, _ = make_manager(reconnect=cfg)
        manager._reconnect_attempts = 3
        assert manager._calculate_delay() == 5.0

    def test_fibonacci(self):
        cfg = ReconnectConfig(mode=ReconnectMode.FIBONACCI, jitter=False)
        manager, _, _ = make_manager(reconnect=cfg)
        manager._reconnect_attempts = 5
        assert manager._calculate_delay() == 8.0

    def test_capped_at_max_delay(self):
        cfg = ReconnectConfig(max_delay=5.0, jitter=False)
        manager, _, _ = make_manager(reconnect=cfg)
        manager._reconnect_attempts = 50
        assert manager._calculate_delay() == 5.0

    def test_jitter_within_ten_percent(self):
        manager, _, _ = make_manager(reconnect=ReconnectConfig(base_delay=10.0))
        for _ in range(20):
            assert 9.0 <= manager._calculate_delay() <= 11.0


class TestConnect:
    @pytest.mark.asyncio
    async def test_open_and_forward_messages(self, monkeypatch):
        ws = FakeWebSocket(['{"type": "a"}', b"binary"])
        monkeypatch.setattr(websockets.asyncio.client, "connect", AsyncMock(return_value=ws))
        manager, states, received = make_manager()
        manager._schedule_reconnect = MagicMock()

        await manager.connect()
        assert states == [ConnectionState.CONNECTING, ConnectionState.OPEN]
        await manager._recv_task

        assert received == ['{"type": "a"}', b"binary"]
        assert states[-1] == ConnectionState.CLOSED
        manager._schedule_reconnect.assert_called_once()

    @pytest.mark.asyncio
    async def test_os_error_maps_to_connection_lost(self, monkeypatch):
        monkeypatch.setattr(
            websockets.asyncio.client, "connect", AsyncMock(side_effect=OSError("refused"))
        )
        manager, states, _ = make_manager()
        with pytest.raises(ConnectionLostError):
            await manager.connect()
        assert states == [ConnectionState.CONNECTING, ConnectionState.CLOSED]
        assert manager.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_timeout(self, monkeypatch):
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        monkeypatch.setattr(websockets.asyncio.client, "connect", hang)
        manager, _, _ = make_manager(connect_timeout=0.01)
        with pytest.raises(ConnectTimeoutError):
            await manager.connect()

    @pytest.mark.asyncio
    async def test_destroyed_refuses(self):
        manager, _, _ = make_manager()
        await manager.destroy()
        with pytest.raises(ConnectionLostError):
            await manager.connect()


class TestCloseHandling:
    def test_unrequested_close_reconnects(self):
        manager, states, _ = make_manager()
        manager._state = ConnectionState.OPEN
        manager._schedule_reconnect = MagicMock()
        manager._handle_close(1000, "")
        assert states == [ConnectionState.CLOSED]
        manager._schedule_reconnect.assert_called_once()

    def test_abnormal_close_reconnects(self):
        manager, _, _ = make_manager()
        manager._state = ConnectionState.OPEN
        manager._schedule_reconnect = MagicMock()
        manager._handle_close(1006, "")
        manager._schedule_reconnect.assert_called_once()

    @pytest.mark.parametrize("code", [1008, 4401, 4403])
    def test_auth_close_does_not_reconnect(self, code):
        manager, _, _ = make_manager()
        manager._state = ConnectionState.OPEN
        manager._schedule_reconnect = MagicMock()
        manager._handle_close(code, "denied")
        manager._schedule_reconnect.assert_not_called()
        assert manager.state == ConnectionState.CLOSED

    def test_closing_does_not_reconnect(self):
        manager, _, _ = make_manager()
        manager._state = ConnectionState.OPEN
        manager._closing = True
        manager._schedule_reconnect = MagicMock()
        manager._handle_close(1006, "")
        manager._schedule_reconnect.assert_not_called()

    @pytest.mark.asyncio
    async def test_recv_loop_maps_close_codes(self, monkeypatch):
        exc = ConnectionClosedError(Close(4401, "expired"), None)
        ws = FakeWebSocket(["x"], exc=exc)
        monkeypatch.setattr(websockets.asyncio.client, "connect", AsyncMock(return_value=ws))
        manager, _, received = make_manager()
        manager._handle_close = MagicMock()

        await manager.connect()
        await manager._recv_task
        assert received == ["x"]
        manager._handle_close.assert_called_once_with(4401, "expired")

    @pytest.mark.asyncio
    async def test_recv_loop_error_closes_socket(self, monkeypatch):
        ws = FakeWebSocket(["x"])
        monkeypatch.setattr(websockets.asyncio.client, "connect", AsyncMock(return_value=ws))
        manager = ConnectionManager(
            "ws://127.0.0.1:3000/ws", on_message=MagicMock(side_effect=TypeError("bad"))
        )
        manager._handle_close = MagicMock()

        await manager.connect()
        await manager._recv_task
        ws.close.assert_awaited_once_with(1011, "Client error")
        manager._handle_close.assert_called_once_with(1006, "bad")

    @pytest.mark.asyncio
    async def test_recv_loop_clean_close(self, monkeypatch):
        exc = ConnectionClosedOK(Close(1001, "bye"), None)
        ws = FakeWebSocket([], exc=exc)
        monkeypatch.setattr(websockets.asyncio.client, "connect", AsyncMock(return_value=ws))
        manager, _, _ = make_manager()
        manager._handle_close = MagicMock()

        await manager.connect()
        await manager._recv_task
        manager._handle_close.assert_called_once_with(1001, "")


class TestReconnect:
    def test_max_attempts_reached(self):
        manager, states, _ = make_manager(reconnect=ReconnectConfig(max_attempts=2))
        manager._reconnect_attempts = 2
        manager._schedule_reconnect()
        assert manager.state == ConnectionState.CLOSED
        assert ConnectionState.RECONNECTING not in states

    @pytest.mark.asyncio
    async def test_reconnect_after_failure_reschedules(self, monkeypatch):
        monkeypatch.setattr(
            websockets.asyncio.client, "connect", AsyncMock(side_effect=OSError("down"))
        )
        manager, states, _ = make_manager(reconnect=ReconnectConfig(max_attempts=1, jitter=False))
        manager._schedule_reconnect(delay=0.0)
        assert manager.state == ConnectionState.RECONNECTING
        await manager._reconnect_task

        assert manager._reconnect_attempts == 1
        assert manager.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_reconnect_succeeds(self, monkeypatch):
        ws = FakeWebSocket()
        monkeypatch.setattr(websockets.asyncio.client, "connect", AsyncMock(return_value=ws))
        manager, states, _ = make_manager()
        manager._schedule_reconnect(delay=0.0)
        await manager._reconnect_task

        assert ConnectionState.OPEN in states
        assert ConnectionState.CONNECTING not in states
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_reconnect(self):
        manager, _, _ = make_manager()
        manager._schedule_reconnect(delay=10.0)
        task = manager._reconnect_task
        await manager.disconnect()
        await asyncio.sleep(0)
        assert task.done()
        assert manager.state == ConnectionState.CLOSED


class TestSend:
    @pytest.mark.asyncio
    async def test_send_when_closed(self):
        manager, _, _ = make_manager()
        assert await manager.send("{}") is False

    @pytest.mark.asyncio
    async def test_send_when_open(self):
        manager, _, _ = make_manager()
        manager._ws = FakeWebSocket()
        manager._state = ConnectionState.OPEN
        assert await manager.send("{}") is True
        manager._ws.send.assert_awaited_once_with("{}")

    @pytest.mark.asyncio
    async def test_send_on_closed_socket(self):
        manager, _, _ = make_manager()
        manager._ws = FakeWebSocket()
        manager._ws.send.side_effect = ConnectionClosedOK(None, None)
        manager._state = ConnectionState.OPEN
        assert await manager.send("{}") is False
