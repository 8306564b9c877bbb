"""Shared fixtures for beads-live tests."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import orjson
import pytest

from beads_live.client import LiveClient
from beads_live.mirror import MirrorRegistry
from beads_live.types import ConnectionState


class FakeTransport:
    """Stands in for ``LiveClient.send``: records calls, optionally blocks or fails.

    ``gate`` (an asyncio.Event) holds every call until set.  ``errors`` maps a
    request kind to a list of exceptions raised by successive calls.
    """

    def __init__(self):
        self.calls = []
        self.gate = None
        self.errors = {}
        self.on_call = None

    async def send(self, kind, payload=None):
        self.calls.append((kind, payload))
        if self.on_call is not None:
            self.on_call(kind, payload)
        if self.gate is not None:
            await self.gate.wait()
        pending = self.errors.get(kind)
        if pending:
            raise pending.pop(0)
        return {}

    def kinds(self):
        return [kind for kind, _ in self.calls]


class FakeServer:
    """Answers requests sent through a mocked ConnectionManager.

    Replies are delivered on the next loop iteration, like a real socket.
    ``responses`` maps request kind to the reply payload (or a callable
    taking the request payload).  ``failures`` maps kind to an error dict.
    """

    def __init__(self, client):
        self.client = client
        self.requests = []
        self.responses = {}
        self.failures = {}

    async def send(self, text):
        message = orjson.loads(text)
        self.requests.append((message["type"], message["payload"]))
        kind = message["type"]
        if kind in self.failures:
            reply = {"id": message["id"], "ok": False, "type": kind, "error": self.failures[kind]}
        else:
            payload = self.responses.get(kind, {})
            if callable(payload):
                payload = payload(message["payload"])
            reply = {"id": message["id"], "ok": True, "type": kind, "payload": payload}
        asyncio.get_running_loop().call_soon(self.client._on_raw_message, orjson.dumps(reply).decode())
        return True

    def push(self, event_type, payload):
        self.client._on_raw_message(orjson.dumps({"type": event_type, "payload": payload}).decode())

    def kinds(self):
        return [kind for kind, _ in self.requests]


def mock_connection(client):
    """Replace the client's ConnectionManager with an open-looking mock."""
    client._connection = MagicMock()
    client._connection.is_connected = True
    client._connection.state = ConnectionState.OPEN
    client._connection.url = "ws://127.0.0.1:3000/ws"
    client._connection.send = AsyncMock(return_value=True)
    client._connection.connect = AsyncMock()
    client._connection.destroy = AsyncMock()
    client._connection.force_reconnect = AsyncMock()
    return client._connection


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def registry():
    return MirrorRegistry()


@pytest.fixture
def client():
    """LiveClient with a mocked connection manager."""
    c = LiveClient("ws://127.0.0.1:3000/ws")
    mock_connection(c)
    return c


@pytest.fixture
def server(client):
    fake = FakeServer(client)
    client._connection.send = AsyncMock(side_effect=fake.send)
    return fake
