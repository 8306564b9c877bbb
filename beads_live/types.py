# =============================================================================
# beads-live -- Type Definitions
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Union

import orjson

from .errors import ProtocolError

Scalar = Union[str, int, float, bool, None]
Entity = dict[str, Any]


class ConnectionState(str, Enum):
    """Transport lifecycle state.

    Typical flow: CONNECTING -> OPEN -> CLOSED -> RECONNECTING -> OPEN.
    CLOSED is terminal only after an explicit disconnect or an auth failure.
    """

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    RECONNECTING = "reconnecting"


class ReconnectMode(str, Enum):
    """Backoff strategy for auto-reconnection after a connection drop."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIBONACCI = "fibonacci"


class SubscriptionStatus(str, Enum):
    """Lifecycle of one subscription record: PENDING -> ACTIVE -> CLOSED."""

    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"


class EnvelopeKind(str, Enum):
    SNAPSHOT = "snapshot"
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class ServerEvent:
    """An event pushed by the server.

    Attributes:
        type: Event name, e.g. ``"snapshot"`` or ``"workspace-changed"``.
        payload: Event data (normally a dict).
    """

    type: str
    payload: Any


@dataclass(frozen=True, slots=True)
class Reply:
    """The server's answer to one request, matched by ``id``."""

    id: str
    ok: bool
    type: str | None = None
    payload: Any = None
    error: dict[str, Any] | None = None


@dataclass
class ConnectionStats:
    """Counters for a single client."""

    messages_received: int = 0
    messages_sent: int = 0
    bytes_received: int = 0
    bytes_sent: int = 0
    requests_failed: int = 0
    reconnect_count: int = 0


@dataclass
class ReconnectConfig:
    """Configuration for automatic reconnection.

    Attributes:
        mode: Backoff strategy (default: exponential).
        base_delay: Initial delay in seconds before first retry.
        max_delay: Maximum delay cap in seconds.
        max_attempts: Max retries, ``-1`` for infinite.
        factor: Multiplier per attempt for exponential backoff.
        jitter: Randomize delays to avoid thundering herd.
    """

    mode: ReconnectMode = ReconnectMode.EXPONENTIAL
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_attempts: int = -1
    factor: float = 1.5
    jitter: bool = True


@dataclass(frozen=True, eq=False)
class QuerySpec:
    """What the server should stream for one subscription.

    Two specs are equal iff their canonical serializations (sorted keys)
    are equal.  Empty ``params`` is the same as no params.
    """

    kind: str
    params: Mapping[str, Scalar] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.kind, str) or not self.kind:
            raise ValueError("QuerySpec.kind must be a non-empty string")
        if self.params is not None:
            for name, value in self.params.items():
                if not isinstance(value, (str, int, float, bool)) and value is not None:
                    raise TypeError(
                        f"QuerySpec param {name!r} must be a scalar, got {type(value).__name__}"
                    )
        object.__setattr__(self, "params", dict(self.params) if self.params else None)

    @classmethod
    def coerce(cls, spec: QuerySpec | Mapping[str, Any]) -> QuerySpec:
        """Accept a QuerySpec or a ``{kind|type, params?}`` mapping."""
        if isinstance(spec, QuerySpec):
            return spec
        kind = spec.get("kind") or spec.get("type")
        return cls(kind=kind, params=spec.get("params"))

    @property
    def fingerprint(self) -> str:
        """Canonical serialization, used for change detection."""
        return orjson.dumps(self.to_wire(), option=orjson.OPT_SORT_KEYS).decode()

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"type": self.kind}
        if self.params:
            wire["params"] = dict(self.params)
        return wire

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, QuerySpec):
            return NotImplemented
        return self.fingerprint == other.fingerprint

    def __hash__(self) -> int:
        return hash(self.fingerprint)


@dataclass(frozen=True, slots=True)
class PushEnvelope:
    """A validated server push for one subscription key.

    Build with :meth:`from_payload`; a PushEnvelope always holds a complete,
    valid update so stores never see partial input.
    """

    key: str
    kind: EnvelopeKind
    items: tuple[Entity, ...] = ()
    ids: tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, data: Any) -> PushEnvelope:
        """Validate a raw envelope dict.

        Accepts ``key``/``kind``/``items`` and the legacy ``id``/``type``/
        ``issues`` spellings.

        Raises:
            ProtocolError: If the key, kind or body is missing or malformed.
        """
        if not isinstance(data, Mapping):
            raise ProtocolError(f"envelope must be an object, got {type(data).__name__}")

        key = data.get("key", data.get("id"))
        if not isinstance(key, str) or not key:
            raise ProtocolError("envelope has no subscription key")

        raw_kind = data.get("kind", data.get("type"))
        try:
            kind = EnvelopeKind(raw_kind)
        except ValueError:
            raise ProtocolError(f"unrecognized envelope kind {raw_kind!r}") from None

        if kind is EnvelopeKind.SNAPSHOT:
            items = data.get("items", data.get("issues"))
            if not isinstance(items, list):
                raise ProtocolError("snapshot envelope requires an items list")
            return cls(key=key, kind=kind, items=_validate_items(items))

        if kind is EnvelopeKind.UPSERT:
            if "item" in data and data["item"] is not None:
                items = [data["item"]]
            else:
                items = data.get("items", data.get("issues"))
            if not isinstance(items, list):
                raise ProtocolError("upsert envelope requires item or items")
            return cls(key=key, kind=kind, items=_validate_items(items))

        ids = data.get("ids")
        if ids is None and isinstance(data.get("items"), list):
            ids = [it.get("id") if isinstance(it, Mapping) else None for it in data["items"]]
        if not isinstance(ids, list):
            raise ProtocolError("delete envelope requires an ids list")
        for entity_id in ids:
            if not isinstance(entity_id, str) or not entity_id:
                raise ProtocolError(f"invalid entity id {entity_id!r} in delete envelope")
        return cls(key=key, kind=kind, ids=tuple(ids))


def _validate_items(items: list[Any]) -> tuple[Entity, ...]:
    validated = []
    for item in items:
        if not isinstance(item, Mapping):
            raise ProtocolError(f"entity must be an object, got {type(item).__name__}")
        entity_id = item.get("id")
        if not isinstance(entity_id, str) or not entity_id:
            raise ProtocolError(f"entity has invalid id {entity_id!r}")
        validated.append(dict(item))
    return tuple(validated)


@dataclass(frozen=True, slots=True)
class ReleaseResult:
    """Outcome of releasing a subscription.

    Local bookkeeping is always cleared; ``ok`` only reports whether the
    server acknowledged the unsubscribe.  ``skipped`` marks repeat calls.
    """

    ok: bool
    error: BaseException | None = None
    skipped: bool = False


@dataclass(frozen=True, slots=True)
class WorkspaceInfo:
    """A beads workspace known to the server."""

    path: str
    database: str | None = None
    pid: int | None = None
    version: str | None = None

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> WorkspaceInfo:
        # list-workspaces uses path/database, set-workspace root_dir/db_path
        return cls(
            path=str(data.get("path") or data.get("root_dir") or ""),
            database=data.get("database") or data.get("db_path"),
            pid=data.get("pid"),
            version=data.get("version"),
        )


@dataclass
class WorkspaceListing:
    current: WorkspaceInfo | None = None
    available: list[WorkspaceInfo] = field(default_factory=list)
