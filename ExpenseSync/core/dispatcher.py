"""Single entry point for adding, updating and deleting entities.

Online, writes go straight to the remote store and any failure is raised to the
caller. Offline, the remote store is never contacted: the mutation is appended to the
:class:`~ExpenseSync.core.mutations.MutationLog` and shown optimistically in the
:class:`~ExpenseSync.core.mirror.LocalMirrorStore` until the reconciler replays it.
"""
import dataclasses
import logging
from typing import Any, Mapping, Optional

from PySide6 import QtCore

from .auth import Identity
from .connectivity import ConnectivityMonitor
from .mirror import LocalMirrorStore
from .model import (
    Entity, EntityKind, Operation, PendingMutation, coerce_payload, is_temp_id, make_temp_id
)
from .mutations import MutationLog
from .remote import RemoteStore
from ..status import status

QUEUED_MESSAGES = {
    Operation.Add: '{label} saved locally and will sync when online',
    Operation.Update: '{label} updated locally and will sync when online',
    Operation.Delete: '{label} deleted locally and will sync when online',
}

SENT_MESSAGES = {
    Operation.Add: '{label} saved',
    Operation.Update: '{label} updated',
    Operation.Delete: '{label} deleted',
}


@dataclasses.dataclass(frozen=True)
class MutationResult:
    """Outcome of a dispatched mutation.

    ``entity_id`` is the remote id for writes sent online, and the temporary or
    targeted id for queued ones.
    """
    kind: EntityKind
    operation: Operation
    entity_id: str
    queued: bool
    mutation: Optional[PendingMutation] = None
    entity: Optional[Entity] = None

    @property
    def message(self) -> str:
        messages = QUEUED_MESSAGES if self.queued else SENT_MESSAGES
        return messages[self.operation].format(label=self.kind.label)


class MutationDispatcher(QtCore.QObject):
    """Routes mutations to the remote store or the offline queue.

    Signals:
        changeQueued (object): Emitted with the :class:`MutationResult` of every queued mutation.
    """
    changeQueued = QtCore.Signal(object)

    def __init__(self, identity: Identity, connectivity: ConnectivityMonitor, remote: RemoteStore,
                 log: MutationLog, mirror: LocalMirrorStore, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self._identity = identity
        self._connectivity = connectivity
        self._remote = remote
        self._log = log
        self._mirror = mirror

    def _require_user(self) -> str:
        user_id = self._identity.user_id
        if not user_id:
            raise status.UnauthenticatedException()
        return user_id

    def _should_queue(self, entity_id: Optional[str] = None) -> bool:
        if not self._connectivity.is_online:
            return True
        # An entity only known by its temporary id must wait for its queued add
        return entity_id is not None and is_temp_id(self._log.resolve(entity_id))

    async def add(self, kind: EntityKind, payload: Mapping[str, Any]) -> MutationResult:
        """Create an entity.

        Raises:
            status.UnauthenticatedException: If nobody is signed in.
            status.PayloadInvalidException: If the payload does not match the kind's schema.
            status.RemoteWriteFailureException: If the remote store rejects an online write.
        """
        user_id = self._require_user()
        fields = coerce_payload(kind, payload)

        if not self._should_queue():
            entity = await self._remote.create(user_id, kind, fields)
            logging.debug(f'Created {kind.label} {entity.id}')
            return MutationResult(kind, Operation.Add, entity.id, queued=False, entity=entity)

        mutation = PendingMutation(Operation.Add, kind, payload=fields, temp_id=make_temp_id())
        return await self._queue(mutation)

    async def update(self, kind: EntityKind, entity_id: str, payload: Mapping[str, Any]) -> MutationResult:
        """Merge a partial payload into an existing entity.

        Raises:
            status.UnauthenticatedException: If nobody is signed in.
            status.PayloadInvalidException: If the payload has unknown fields or bad values.
            status.EntityNotFoundException: If an online update targets a missing document.
            status.RemoteWriteFailureException: If the remote store rejects an online write.
        """
        user_id = self._require_user()
        fields = coerce_payload(kind, payload, partial=True)

        if not self._should_queue(entity_id):
            entity_id = self._log.resolve(entity_id)
            await self._remote.update(user_id, kind, entity_id, fields)
            logging.debug(f'Updated {kind.label} {entity_id}')
            return MutationResult(kind, Operation.Update, entity_id, queued=False)

        mutation = PendingMutation(Operation.Update, kind, entity_id=entity_id, payload=fields)
        return await self._queue(mutation)

    async def delete(self, kind: EntityKind, entity_id: str) -> MutationResult:
        """Delete an entity.

        Raises:
            status.UnauthenticatedException: If nobody is signed in.
            status.EntityNotFoundException: If an online delete targets a missing document.
            status.RemoteWriteFailureException: If the remote store rejects an online write.
        """
        user_id = self._require_user()
        if not entity_id:
            raise status.PayloadInvalidException(f'{kind.label} id must not be empty.')

        if not self._should_queue(entity_id):
            entity_id = self._log.resolve(entity_id)
            await self._remote.delete(user_id, kind, entity_id)
            logging.debug(f'Deleted {kind.label} {entity_id}')
            return MutationResult(kind, Operation.Delete, entity_id, queued=False)

        mutation = PendingMutation(Operation.Delete, kind, entity_id=entity_id)
        return await self._queue(mutation)

    async def _queue(self, mutation: PendingMutation) -> MutationResult:
        await self._log.append(mutation)
        self._mirror.apply_optimistic(mutation)

        result = MutationResult(
            mutation.kind, mutation.operation, mutation.target_id, queued=True, mutation=mutation
        )
        logging.info(result.message)
        self.changeQueued.emit(result)
        return result

    async def add_expense(self, payload: Mapping[str, Any]) -> MutationResult:
        return await self.add(EntityKind.Expense, payload)

    async def update_expense(self, entity_id: str, payload: Mapping[str, Any]) -> MutationResult:
        return await self.update(EntityKind.Expense, entity_id, payload)

    async def delete_expense(self, entity_id: str) -> MutationResult:
        return await self.delete(EntityKind.Expense, entity_id)

    async def add_category(self, payload: Mapping[str, Any]) -> MutationResult:
        return await self.add(EntityKind.Category, payload)

    async def update_category(self, entity_id: str, payload: Mapping[str, Any]) -> MutationResult:
        return await self.update(EntityKind.Category, entity_id, payload)

    async def delete_category(self, entity_id: str) -> MutationResult:
        return await self.delete(EntityKind.Category, entity_id)

    async def add_budget(self, payload: Mapping[str, Any]) -> MutationResult:
        return await self.add(EntityKind.Budget, payload)

    async def update_budget(self, entity_id: str, payload: Mapping[str, Any]) -> MutationResult:
        return await self.update(EntityKind.Budget, entity_id, payload)

    async def delete_budget(self, entity_id: str) -> MutationResult:
        return await self.delete(EntityKind.Budget, entity_id)
