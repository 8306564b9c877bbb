# =============================================================================
# beads-live -- Entity Mirrors
# =============================================================================
#
# One EntityMirrorStore per subscription key holds the local copy of that
# subscription's membership (ordered ids) and entities.  The MirrorRegistry
# owns all stores, routes push envelopes to them by key, and tells listeners
# once per applied envelope.
# =============================================================================

from __future__ import annotations

from typing import Any, Callable, Iterator, Mapping

from ._logging import logger
from .errors import ProtocolError
from .types import Entity, EnvelopeKind, PushEnvelope, QuerySpec

ChangeListener = Callable[[str], Any]


class EntityMirrorStore:
    """Local mirror of one subscription.

    Entities live in a single insertion-ordered dict, so membership is
    always exactly the entity ids, unique and in arrival order.
    """

    def __init__(self, key: str, spec: QuerySpec | None = None) -> None:
        self.key = key
        self.spec = spec
        self._entities: dict[str, Entity] = {}
        self._version = 0

    @property
    def membership(self) -> list[str]:
        return list(self._entities)

    @property
    def version(self) -> int:
        """Number of envelopes that changed this store."""
        return self._version

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entities

    def __iter__(self) -> Iterator[Entity]:
        return iter(list(self._entities.values()))

    def get(self, entity_id: str) -> Entity | None:
        return self._entities.get(entity_id)

    def snapshot(self) -> list[Entity]:
        """Entities in membership order.  Treat them as read-only."""
        return list(self._entities.values())

    def apply(self, envelope: PushEnvelope) -> bool:
        """Apply one validated envelope.  Returns True if anything changed."""
        if envelope.kind is EnvelopeKind.SNAPSHOT:
            entities: dict[str, Entity] = {}
            for item in envelope.items:
                entities[item["id"]] = item
            self._entities = entities
            changed = True

        elif envelope.kind is EnvelopeKind.UPSERT:
            # Existing keys keep their position on reassignment
            for item in envelope.items:
                self._entities[item["id"]] = item
            changed = bool(envelope.items)

        else:
            changed = False
            for entity_id in envelope.ids:
                if self._entities.pop(entity_id, None) is not None:
                    changed = True

        if changed:
            self._version += 1
        return changed

    def clear(self) -> None:
        self._entities = {}

    def __repr__(self) -> str:
        return f"<EntityMirrorStore key={self.key!r} size={len(self._entities)}>"


class MirrorRegistry:
    """Owner of all per-key mirrors.

    ``apply_push`` is the only mutation path for store content and runs
    synchronously, so readers never observe a half-applied envelope.
    """

    def __init__(self) -> None:
        self._stores: dict[str, EntityMirrorStore] = {}
        self._listeners: list[ChangeListener] = []

    # -- Lifecycle ------------------------------------------------------------

    def register(
        self, key: str, spec: QuerySpec | Mapping[str, Any] | None = None
    ) -> EntityMirrorStore:
        """Create the store for *key* unless one exists; return it."""
        store = self._stores.get(key)
        if store is not None:
            return store
        store = EntityMirrorStore(key, QuerySpec.coerce(spec) if spec is not None else None)
        self._stores[key] = store
        logger.debug("Registered mirror '%s'", key)
        return store

    def unregister(self, key: str) -> bool:
        """Drop the store for *key*.  Unknown keys are ignored."""
        store = self._stores.pop(key, None)
        if store is None:
            return False
        store.clear()
        logger.debug("Unregistered mirror '%s'", key)
        return True

    def clear(self) -> None:
        for key in list(self._stores):
            self.unregister(key)

    def get_store(self, key: str) -> EntityMirrorStore | None:
        return self._stores.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._stores

    def keys(self) -> list[str]:
        return list(self._stores)

    # -- Push routing ---------------------------------------------------------

    def apply_push(
        self, envelope: PushEnvelope | Mapping[str, Any], *, kind: str | None = None
    ) -> bool:
        """Route one envelope to its store.

        Args:
            envelope: A :class:`PushEnvelope` or the raw event payload.
            kind: Event name the payload arrived under.  Fills in a missing
                envelope kind; a conflicting one makes the envelope malformed.

        Returns:
            True if a store changed and listeners were notified.  Malformed
            envelopes are logged and dropped; envelopes for unknown keys are
            ignored.
        """
        if not isinstance(envelope, PushEnvelope):
            try:
                envelope = self._parse(envelope, kind)
            except ProtocolError as exc:
                logger.warning("Dropping malformed envelope: %s", exc)
                return False

        store = self._stores.get(envelope.key)
        if store is None:
            logger.debug(
                "No mirror for '%s', ignoring %s", envelope.key, envelope.kind.value
            )
            return False

        if not store.apply(envelope):
            return False
        self._notify(envelope.key)
        return True

    @staticmethod
    def _parse(data: Any, kind: str | None) -> PushEnvelope:
        if kind is not None and isinstance(data, Mapping):
            declared = data.get("kind", data.get("type"))
            if declared is None:
                data = {**data, "kind": kind}
            elif declared != kind:
                raise ProtocolError(
                    f"envelope kind {declared!r} does not match event {kind!r}"
                )
        return PushEnvelope.from_payload(data)

    # -- Reads ----------------------------------------------------------------

    def snapshot_for(self, key: str) -> list[Entity]:
        """Entities of *key* in membership order; empty for unknown keys."""
        store = self._stores.get(key)
        return store.snapshot() if store is not None else []

    def ids_for(self, key: str) -> list[str]:
        store = self._stores.get(key)
        return store.membership if store is not None else []

    def count(self, key: str) -> int:
        store = self._stores.get(key)
        return len(store) if store is not None else 0

    # -- Change notification --------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Call *listener(key)* after every applied envelope.

        Returns a callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, key: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(key)
            except Exception as exc:
                logger.warning("Mirror listener error for '%s': %s", key, exc)
