"""Remote document store interface.

:class:`RemoteStore` describes the operations the sync layer needs from the backend:
create, update, delete and list documents of a user's collection, and subscribe to
live snapshots of it. Subscriptions are :class:`Subscription` handles, async
iterators yielding ordered :class:`Snapshot` events until cancelled.

:class:`MemoryRemoteStore` keeps everything in memory and is used for tests and local
development. The Firestore implementation lives in :mod:`ExpenseSync.core.firestore`.
"""
import abc
import asyncio
import dataclasses
import itertools
import logging
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .model import Entity, EntityKind, build_entity, merge_entity, now, sort_entities
from ..status import status


@dataclasses.dataclass(frozen=True)
class Snapshot:
    """The full, ordered contents of one collection at a point in time."""
    kind: EntityKind
    entities: Tuple[Entity, ...]
    sequence: int


class Subscription:
    """Cancellable async iterator of :class:`Snapshot` events.

    Producers call :meth:`push`; consumers iterate with ``async for``. Iteration ends
    after :meth:`cancel`.
    """
    _sentinel = object()

    def __init__(self, kind: EntityKind, on_cancel: Optional[Callable[['Subscription'], None]] = None) -> None:
        self.kind = kind
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_cancel = on_cancel
        self._cancelled = False
        self._sequence = itertools.count(1)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def push(self, entities: List[Entity]) -> None:
        if self._cancelled:
            return
        self._queue.put_nowait(Snapshot(self.kind, tuple(entities), next(self._sequence)))

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._queue.put_nowait(self._sentinel)
        if self._on_cancel:
            self._on_cancel(self)

    def __aiter__(self) -> 'Subscription':
        return self

    async def __anext__(self) -> Snapshot:
        item = await self._queue.get()
        if item is self._sentinel:
            raise StopAsyncIteration
        return item


class RemoteStore(abc.ABC):
    """Per-user collections of expenses, categories and budgets."""

    @abc.abstractmethod
    async def create(self, user_id: str, kind: EntityKind, fields: Mapping[str, Any]) -> Entity:
        """Create a document from a complete, coerced payload and return the stored entity.

        Raises:
            status.RemoteWriteFailureException: If the store rejects the write.
        """

    @abc.abstractmethod
    async def update(self, user_id: str, kind: EntityKind, entity_id: str, fields: Mapping[str, Any]) -> None:
        """Merge a partial, coerced payload into an existing document.

        Raises:
            status.EntityNotFoundException: If the document does not exist.
            status.RemoteWriteFailureException: If the store rejects the write.
        """

    @abc.abstractmethod
    async def delete(self, user_id: str, kind: EntityKind, entity_id: str) -> None:
        """Delete a document.

        Raises:
            status.EntityNotFoundException: If the document does not exist.
            status.RemoteWriteFailureException: If the store rejects the write.
        """

    @abc.abstractmethod
    async def get_all(self, user_id: str, kind: EntityKind) -> List[Entity]:
        """Return every document of the collection, ordered.

        Raises:
            status.ServiceUnavailableException: If the store cannot be read.
        """

    @abc.abstractmethod
    def subscribe(self, user_id: str, kind: EntityKind) -> Subscription:
        """Start delivering snapshots of the collection, beginning with its current state."""


class MemoryRemoteStore(RemoteStore):
    """In-process :class:`RemoteStore`. Snapshots are pushed after every write."""

    def __init__(self) -> None:
        self._collections: Dict[Tuple[str, EntityKind], Dict[str, Entity]] = {}
        self._subscriptions: Dict[Tuple[str, EntityKind], List[Subscription]] = {}

    def _collection(self, user_id: str, kind: EntityKind) -> Dict[str, Entity]:
        return self._collections.setdefault((user_id, kind), {})

    def _snapshot(self, user_id: str, kind: EntityKind) -> List[Entity]:
        entities = [dataclasses.replace(e) for e in self._collection(user_id, kind).values()]
        return sort_entities(kind, entities)

    def _notify(self, user_id: str, kind: EntityKind) -> None:
        for subscription in list(self._subscriptions.get((user_id, kind), [])):
            subscription.push(self._snapshot(user_id, kind))

    async def create(self, user_id: str, kind: EntityKind, fields: Mapping[str, Any]) -> Entity:
        timestamp = now()
        entity = build_entity(kind, uuid.uuid4().hex[:20], fields, created_at=timestamp, updated_at=timestamp)
        self._collection(user_id, kind)[entity.id] = entity
        logging.debug(f'Created {kind.label} {entity.id} for user {user_id}')
        self._notify(user_id, kind)
        return dataclasses.replace(entity)

    async def update(self, user_id: str, kind: EntityKind, entity_id: str, fields: Mapping[str, Any]) -> None:
        collection = self._collection(user_id, kind)
        if entity_id not in collection:
            raise status.EntityNotFoundException(f'{kind.label} "{entity_id}" does not exist.')
        collection[entity_id] = merge_entity(collection[entity_id], fields, updated_at=now())
        self._notify(user_id, kind)

    async def delete(self, user_id: str, kind: EntityKind, entity_id: str) -> None:
        collection = self._collection(user_id, kind)
        if collection.pop(entity_id, None) is None:
            raise status.EntityNotFoundException(f'{kind.label} "{entity_id}" does not exist.')
        self._notify(user_id, kind)

    async def get_all(self, user_id: str, kind: EntityKind) -> List[Entity]:
        return self._snapshot(user_id, kind)

    def subscribe(self, user_id: str, kind: EntityKind) -> Subscription:
        key = (user_id, kind)

        def _detach(subscription: Subscription) -> None:
            if subscription in self._subscriptions.get(key, []):
                self._subscriptions[key].remove(subscription)

        subscription = Subscription(kind, on_cancel=_detach)
        self._subscriptions.setdefault(key, []).append(subscription)
        subscription.push(self._snapshot(user_id, kind))
        return subscription
