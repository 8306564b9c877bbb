# =============================================================================
# beads-live -- Wire Protocol Codec
# =============================================================================
#
# Outgoing (client -> server):
#   {"id": <uuid>, "type": <kind>, "payload": {...}}
#
# Incoming (server -> client):
#   Reply:  {"id": <request id>, "ok": bool, "type", "payload" | "error"}
#   Event:  {"type": <event name>, "payload": {...}}
#   Batch:  {"type": "batch", "payload": {"messages": [...]}}
#   Text frames are JSON; binary frames are zlib JSON, M:-prefixed msgpack,
#   or plain UTF-8 JSON.
# =============================================================================

from __future__ import annotations

import zlib
from uuid import uuid4
from typing import Any

import msgpack
import orjson

from ._logging import logger
from .constants import (
    EVENT_BATCH,
    MAX_BATCH_DEPTH,
    MAX_MESSAGE_SIZE,
    PREFIX_MSGPACK,
    ZLIB_MAGIC,
    ZLIB_METHODS,
)
from .types import Reply, ServerEvent

Frame = Reply | ServerEvent


class MessageCodec:
    """Encode requests and decode server frames.

    Frames with an ``id`` and an ``ok`` flag are replies; everything else
    with a ``type`` is an event.

    Args:
        max_message_size: Frames larger than this, before or after
            inflation, are dropped.
    """

    def __init__(self, max_message_size: int = MAX_MESSAGE_SIZE) -> None:
        self._max_message_size = max_message_size

    def encode_request(self, kind: str, payload: Any = None) -> tuple[str, str]:
        """Encode a request.  Returns ``(request_id, text)``."""
        request_id = str(uuid4())
        message = {
            "id": request_id,
            "type": kind,
            "payload": payload if payload is not None else {},
        }
        return request_id, orjson.dumps(message).decode()

    def decode(self, data: str | bytes) -> list[Frame]:
        """Decode one WebSocket frame into zero or more replies/events.

        Undecodable frames are logged and yield an empty list.
        """
        if len(data) > self._max_message_size:
            logger.warning("Message exceeds max size (%d bytes), dropping", len(data))
            return []

        if isinstance(data, str):
            parsed = self._loads(data)
        else:
            parsed = self._decode_binary(data)
        if parsed is None:
            return []

        frames: list[Frame] = []
        self._collect(parsed, frames)
        return frames

    # -- Binary decoding -------------------------------------------------------

    def _decode_binary(self, data: bytes) -> Any:
        if data[:2] == PREFIX_MSGPACK:
            try:
                return msgpack.unpackb(data[2:], raw=False)
            except (ValueError, TypeError) as exc:
                logger.warning("Corrupt msgpack frame (%d bytes): %s", len(data), exc)
                return None

        if len(data) >= 2 and data[0] == ZLIB_MAGIC and data[1] in ZLIB_METHODS:
            try:
                inflated = zlib.decompress(data)
            except zlib.error:
                logger.warning("Corrupt zlib frame (%d bytes), dropping", len(data))
                return None
            if len(inflated) > self._max_message_size:
                logger.warning(
                    "Decompressed message exceeds max size (%d bytes), dropping",
                    len(inflated),
                )
                return None
            return self._loads(inflated)

        return self._loads(data)

    def _loads(self, data: str | bytes) -> Any:
        try:
            return orjson.loads(data)
        except orjson.JSONDecodeError as exc:
            logger.debug("Failed to parse JSON: %s", exc)
            return None

    # -- Helpers ---------------------------------------------------------------

    def _collect(self, parsed: Any, out: list[Frame], depth: int = 0) -> None:
        if not isinstance(parsed, dict):
            logger.debug("Ignoring non-object frame: %r", type(parsed).__name__)
            return

        msg_type = parsed.get("type")
        payload = parsed.get("payload")

        # Replies carry the request id plus an ok flag
        if "ok" in parsed and isinstance(parsed.get("id"), str):
            error = parsed.get("error")
            out.append(
                Reply(
                    id=parsed["id"],
                    ok=bool(parsed["ok"]),
                    type=msg_type,
                    payload=payload,
                    error=error if isinstance(error, dict) else None,
                )
            )
            return

        if not isinstance(msg_type, str) or not msg_type:
            logger.debug("Ignoring frame without type")
            return

        if msg_type == EVENT_BATCH and isinstance(payload, dict):
            messages = payload.get("messages")
            if not isinstance(messages, list):
                logger.warning("Batch without a message list, dropping")
                return
            if depth >= MAX_BATCH_DEPTH:
                logger.warning("Batch nested deeper than %d, dropping", MAX_BATCH_DEPTH)
                return
            for message in messages:
                self._collect(message, out, depth + 1)
            return

        out.append(ServerEvent(type=msg_type, payload=payload))
