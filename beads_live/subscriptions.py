# =============================================================================
# beads-live -- Subscription Manager
# =============================================================================
#
# Maps caller-chosen keys to server-side list subscriptions.
#
#   subscribe_list(key, spec)
#       same key, same fingerprint, active   -> existing Release
#       same key, same fingerprint, pending  -> share the in-flight result
#       same key, other fingerprint          -> unsubscribe old, subscribe new
#
# Stores must be registered with the MirrorRegistry before subscribe_list is
# awaited, otherwise the initial snapshot push can arrive with nowhere to go.
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Protocol

from ._logging import logger
from .constants import MSG_SUBSCRIBE_LIST, MSG_UNSUBSCRIBE_LIST
from .types import ConnectionState, QuerySpec, ReleaseResult, SubscriptionStatus

SendFn = Callable[[str, Any], Awaitable[Any]]


class MembershipSource(Protocol):
    def ids_for(self, key: str) -> list[str]: ...

    def count(self, key: str) -> int: ...


@dataclass
class SubscriptionRecord:
    """Bookkeeping for one key.  At most one record exists per key."""

    key: str
    spec: QuerySpec
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    release: Release | None = None


class Release:
    """Handle returned by :meth:`SubscriptionManager.subscribe_list`.

    Awaiting ``release()`` sends ``unsubscribe-list`` and returns a
    :class:`~beads_live.types.ReleaseResult`; it never raises for transport
    failures.  Local bookkeeping is dropped before the request goes out, and
    every call after the first returns ``skipped=True`` without sending.
    """

    __slots__ = ("_manager", "_record", "_released")

    def __init__(self, manager: SubscriptionManager, record: SubscriptionRecord) -> None:
        self._manager = manager
        self._record = record
        self._released = False

    @property
    def key(self) -> str:
        return self._record.key

    @property
    def spec(self) -> QuerySpec:
        return self._record.spec

    @property
    def released(self) -> bool:
        return self._released

    async def __call__(self) -> ReleaseResult:
        if self._released:
            return ReleaseResult(ok=True, skipped=True)
        self._released = True
        self._manager._forget(self._record)

        try:
            await self._manager._send(MSG_UNSUBSCRIBE_LIST, {"id": self._record.key})
        except Exception as exc:
            logger.warning("Unsubscribe '%s' failed: %s", self._record.key, exc)
            return ReleaseResult(ok=False, error=exc)
        logger.debug("Unsubscribed '%s'", self._record.key)
        return ReleaseResult(ok=True)

    def __repr__(self) -> str:
        return f"<Release key={self._record.key!r} released={self._released}>"


class SubscriptionManager:
    """Per-key subscription state machine over a request/response transport.

    Args:
        send: Coroutine function ``(kind, payload) -> result``, normally
            :meth:`LiveClient.send`.  Errors it raises propagate to
            ``subscribe_list`` callers unchanged and are never retried.
        membership: Source for :meth:`ids_for` / :meth:`count`, normally the
            :class:`~beads_live.mirror.MirrorRegistry`.
    """

    def __init__(self, send: SendFn, *, membership: MembershipSource | None = None) -> None:
        self._send = send
        self._membership = membership

        self._records: dict[str, SubscriptionRecord] = {}
        # (key, fingerprint) -> shared result of the subscribe in flight
        self._in_flight: dict[tuple[str, str], asyncio.Task[Release]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

        self._stale = False
        self._background_tasks: set[asyncio.Task[Any]] = set()

    # -- Subscribe ------------------------------------------------------------

    async def subscribe_list(
        self, key: str, spec: QuerySpec | Mapping[str, Any]
    ) -> Release:
        """Ensure the server streams *spec* under *key*.

        Returns:
            The :class:`Release` for the active subscription.  Concurrent
            callers with an equal spec receive the same object.

        Raises:
            Whatever the transport raised for the subscribe request.  No
            record is left behind in that case.
        """
        spec = QuerySpec.coerce(spec)
        fingerprint = spec.fingerprint

        record = self._records.get(key)
        if (
            record is not None
            and record.status is SubscriptionStatus.ACTIVE
            and record.spec.fingerprint == fingerprint
            and record.release is not None
        ):
            return record.release

        flight_key = (key, fingerprint)
        task = self._in_flight.get(flight_key)
        if task is not None:
            logger.debug("Subscribe '%s' already pending, sharing result", key)
        else:
            # Runs detached: a cancelled caller stops waiting, the subscribe
            # still completes for everyone else.
            task = asyncio.ensure_future(self._establish(key, spec))
            self._in_flight[flight_key] = task
            task.add_done_callback(
                lambda done, flight_key=flight_key: self._landed(flight_key, done)
            )
        return await asyncio.shield(task)

    def _landed(self, flight_key: tuple[str, str], task: asyncio.Task[Release]) -> None:
        if self._in_flight.get(flight_key) is task:
            del self._in_flight[flight_key]
        if not task.cancelled():
            # Mark retrieved; callers re-raise it on their own
            task.exception()

    async def _establish(self, key: str, spec: QuerySpec) -> Release:
        async with self._key_lock(key):
            current = self._records.get(key)
            if current is not None and current.release is not None:
                if current.spec == spec and current.status is SubscriptionStatus.ACTIVE:
                    return current.release
                logger.debug(
                    "Spec for '%s' changed: %s -> %s",
                    key,
                    current.spec.fingerprint,
                    spec.fingerprint,
                )
                await current.release()

            record = SubscriptionRecord(key=key, spec=spec)
            self._records[key] = record
            try:
                await self._send(MSG_SUBSCRIBE_LIST, {"id": key, "spec": spec.to_wire()})
            except BaseException:
                record.status = SubscriptionStatus.CLOSED
                if self._records.get(key) is record:
                    del self._records[key]
                raise

            record.status = SubscriptionStatus.ACTIVE
            record.release = Release(self, record)
            logger.debug("Subscribed '%s' (%s)", key, spec.fingerprint)
            return record.release

    # -- Release --------------------------------------------------------------

    async def release(self, key: str) -> ReleaseResult:
        """Release the subscription for *key*, if any."""
        record = self._records.get(key)
        if record is None or record.release is None:
            return ReleaseResult(ok=True, skipped=True)
        return await record.release()

    async def release_all(self) -> dict[str, ReleaseResult]:
        """Release every active subscription.  Pending ones are left to finish."""
        releases = [
            record.release
            for record in self._records.values()
            if record.release is not None
        ]
        results = await asyncio.gather(*(release() for release in releases))
        return {release.key: result for release, result in zip(releases, results)}

    def _forget(self, record: SubscriptionRecord) -> None:
        record.status = SubscriptionStatus.CLOSED
        if self._records.get(record.key) is record:
            del self._records[record.key]
        self._evict_lock(record.key)

    # -- Reconnect ------------------------------------------------------------

    def handle_state_change(self, state: ConnectionState) -> None:
        """Connection state hook; pass to ``LiveClient.on_state_change``.

        After the connection drops, every active subscription is presumed
        stale and is re-sent on the next ``open``.
        """
        if state in (ConnectionState.CLOSED, ConnectionState.RECONNECTING):
            self._stale = True
        elif state is ConnectionState.OPEN and self._stale:
            self._stale = False
            task = asyncio.ensure_future(self.resubscribe_all())
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

    async def resubscribe_all(self) -> None:
        """Re-send ``subscribe-list`` for every active record.

        Release handles stay valid.  A record whose resubscribe fails is
        dropped and its handle marked released.
        """
        records = [
            record
            for record in self._records.values()
            if record.status is SubscriptionStatus.ACTIVE
        ]
        if records:
            logger.info("Re-establishing %d subscription(s)", len(records))

        for record in records:
            async with self._key_lock(record.key):
                if self._records.get(record.key) is not record:
                    continue
                try:
                    await self._send(
                        MSG_SUBSCRIBE_LIST,
                        {"id": record.key, "spec": record.spec.to_wire()},
                    )
                except Exception as exc:
                    logger.warning(
                        "Resubscribe '%s' failed, dropping: %s", record.key, exc
                    )
                    self._forget(record)
                    if record.release is not None:
                        record.release._released = True

    # -- Introspection --------------------------------------------------------

    def status(self, key: str) -> SubscriptionStatus | None:
        record = self._records.get(key)
        return record.status if record is not None else None

    def spec_for(self, key: str) -> QuerySpec | None:
        record = self._records.get(key)
        return record.spec if record is not None else None

    def is_pending(self, key: str) -> bool:
        return any(flight_key == key for flight_key, _ in self._in_flight)

    @property
    def records(self) -> list[SubscriptionRecord]:
        return list(self._records.values())

    def ids_for(self, key: str) -> list[str]:
        """Current membership of *key*'s mirror, in mirror order."""
        if self._membership is None:
            return []
        return self._membership.ids_for(key)

    def count(self, key: str) -> int:
        if self._membership is None:
            return 0
        return self._membership.count(key)

    # -- Internal -------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _key_lock(self, key: str) -> AsyncIterator[None]:
        """Serialize work on *key*.  The lock lives while a record or a user does."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
            self._evict_lock(key)

    def _evict_lock(self, key: str) -> None:
        if key not in self._records and key not in self._lock_users:
            self._locks.pop(key, None)
