"""beads-live: live, push-synchronized mirrors of a beads issue tracker.

Usage::

    from beads_live import connect

    async with connect("ws://127.0.0.1:3000/ws") as session:
        session.state.set_state(view="board")
        session.selectors.subscribe(lambda key: print(key, "changed"))

Lower-level pieces can be combined directly::

    client = LiveClient("ws://127.0.0.1:3000/ws")
    registry = MirrorRegistry()
    manager = SubscriptionManager(client.send, membership=registry)

    await client.connect()
    client.on("snapshot", lambda ev: registry.apply_push(ev.payload, kind=ev.type))
    registry.register("tab:issues", {"type": "all-issues"})
    release = await manager.subscribe_list("tab:issues", {"type": "all-issues"})
"""

from ._version import __version__
from .client import LiveClient
from .errors import (
    AuthError,
    BeadsLiveError,
    ConnectionLostError,
    ConnectTimeoutError,
    ProtocolError,
    RequestError,
    RequestTimeoutError,
)
from .mirror import EntityMirrorStore, MirrorRegistry
from .selectors import (
    BoardColumns,
    EpicGroup,
    ListSelectors,
    build_epic_groups,
    compose_board,
    compute_issues_spec,
    filter_issues,
    labels_by_prefix,
)
from .session import LiveSession
from .state import AppState, AppStore, Filters
from .subscriptions import Release, SubscriptionManager, SubscriptionRecord
from .types import (
    ConnectionState,
    PushEnvelope,
    QuerySpec,
    ReconnectConfig,
    ReconnectMode,
    ReleaseResult,
    ServerEvent,
    SubscriptionStatus,
    WorkspaceInfo,
)
from .views import ViewSubscriptions


def connect(
    url: str,
    **kwargs,
) -> LiveSession:
    """Create a live session.

    Use as an async context manager. Keyword arguments are forwarded
    to :class:`LiveSession` -- common ones: ``reconnect``,
    ``extra_headers``, ``initial_state``, ``on_error``.

    Args:
        url: WebSocket server URL, e.g. ``"ws://127.0.0.1:3000/ws"``.
        **kwargs: Passed to :class:`LiveSession`.

    Returns:
        A :class:`LiveSession` instance.

    Raises:
        ConnectionLostError: If the connection cannot be established.
        AuthError: If the handshake is rejected.

    Example::

        async with connect("ws://127.0.0.1:3000/ws") as session:
            await session.set_workspace("/home/me/project")
    """
    return LiveSession(url, **kwargs)


__all__ = [
    "__version__",
    "connect",
    "LiveClient",
    "LiveSession",
    "MirrorRegistry",
    "EntityMirrorStore",
    "SubscriptionManager",
    "SubscriptionRecord",
    "Release",
    "ReleaseResult",
    "ListSelectors",
    "ViewSubscriptions",
    "AppState",
    "AppStore",
    "Filters",
    "BoardColumns",
    "EpicGroup",
    "build_epic_groups",
    "compose_board",
    "compute_issues_spec",
    "filter_issues",
    "labels_by_prefix",
    "ConnectionState",
    "PushEnvelope",
    "QuerySpec",
    "ReconnectConfig",
    "ReconnectMode",
    "ServerEvent",
    "SubscriptionStatus",
    "WorkspaceInfo",
    "BeadsLiveError",
    "ConnectionLostError",
    "ConnectTimeoutError",
    "RequestTimeoutError",
    "RequestError",
    "ProtocolError",
    "AuthError",
]
