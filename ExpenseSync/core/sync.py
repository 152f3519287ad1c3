"""Replay of queued offline mutations against the remote store.

A reconciliation pass takes a snapshot of the :class:`~ExpenseSync.core.mutations.MutationLog`
and replays it strictly in order. Every entry is removed from the log, and the log
persisted, as soon as the remote store confirms it. The first entry that fails stops
the pass; it and every entry after it stay queued for the next pass.

Entries appended while a pass is running are not part of its snapshot and wait for the
next pass. Only one pass runs at a time.
"""
import asyncio
import dataclasses
import enum
import logging
from typing import Optional

from PySide6 import QtCore

from .auth import Identity
from .connectivity import ConnectivityMonitor
from .mirror import LocalMirrorStore
from .model import Entity, Operation, PendingMutation, is_temp_id
from .mutations import MutationLog
from .remote import RemoteStore
from ..status import status

DEFAULT_TIMEOUT: float = 30.0


class SyncOutcome(enum.StrEnum):
    Success = 'success'
    Partial = 'partial'
    Failure = 'failure'
    Skipped = 'skipped'


@dataclasses.dataclass(frozen=True)
class SyncResult:
    """Summary of one reconciliation pass.

    Attributes:
        outcome: How the pass ended.
        applied: Number of entries confirmed by the remote store.
        remaining: Number of entries still queued after the pass.
        error: The failure that stopped the pass, if any.
    """
    outcome: SyncOutcome
    applied: int = 0
    remaining: int = 0
    error: Optional[status.ReconciliationEntryFailureException] = None

    @property
    def message(self) -> str:
        if self.outcome == SyncOutcome.Success:
            return f'Synced {self.applied} offline change(s)'
        if self.outcome == SyncOutcome.Partial:
            return f'Synced {self.applied} offline change(s), {self.remaining} remaining'
        if self.outcome == SyncOutcome.Failure:
            return f'Failed to sync offline changes, {self.remaining} remaining'
        return 'Nothing to sync'


class SyncReconciler(QtCore.QObject):
    """Drains the mutation log against the remote store.

    Signals:
        syncStarted (int): Emitted with the number of entries about to be replayed.
        syncFinished (object): Emitted with the :class:`SyncResult` of each pass that ran.
    """
    syncStarted = QtCore.Signal(int)
    syncFinished = QtCore.Signal(object)

    def __init__(self, identity: Identity, connectivity: ConnectivityMonitor, remote: RemoteStore,
                 log: MutationLog, mirror: LocalMirrorStore, timeout: float = DEFAULT_TIMEOUT,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self._identity = identity
        self._connectivity = connectivity
        self._remote = remote
        self._log = log
        self._mirror = mirror
        self.timeout = timeout
        self._in_progress = False

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    async def reconcile(self) -> SyncResult:
        """Replay queued mutations, if there are any and the remote store can be reached.

        Returns immediately with :attr:`SyncOutcome.Skipped` if a pass is already
        running, nobody is signed in, the device is offline or the log is empty.
        Per-entry failures are reported in the result, never raised.
        """
        if self._in_progress:
            logging.debug('A sync pass is already running.')
            return SyncResult(SyncOutcome.Skipped, remaining=len(self._log))

        user_id = self._identity.user_id
        if not user_id or not self._connectivity.is_online or self._log.is_empty:
            return SyncResult(SyncOutcome.Skipped, remaining=len(self._log))

        self._in_progress = True
        try:
            result = await self._drain(user_id)
        finally:
            self._in_progress = False

        logging.info(result.message)
        self.syncFinished.emit(result)
        return result

    async def _drain(self, user_id: str) -> SyncResult:
        drain = self._log.snapshot()
        logging.info(f'Syncing {len(drain)} offline change(s)')
        self.syncStarted.emit(len(drain))

        applied = 0
        error: Optional[status.ReconciliationEntryFailureException] = None

        for mutation in drain:
            if self._identity.user_id != user_id:
                logging.warning('The user changed during sync, abandoning the pass.')
                break

            try:
                entity = await self._replay(user_id, mutation)
            except (status.BaseStatusException, asyncio.TimeoutError) as ex:
                error = status.ReconciliationEntryFailureException(
                    f'{mutation.operation} {mutation.kind.label} {mutation.target_id}: {str(ex) or type(ex).__name__}',
                    mutation=mutation,
                )
                error.__cause__ = ex
                break

            if self._identity.user_id != user_id:
                logging.warning('The user changed during sync, abandoning the pass.')
                break

            await self._log.remove_head(mutation)
            await self._mirror.settle(mutation.mutation_id, entity)
            applied += 1

        remaining = len(self._log)
        if error is None and applied == len(drain):
            outcome = SyncOutcome.Success
        elif applied:
            outcome = SyncOutcome.Partial
        else:
            outcome = SyncOutcome.Failure if error else SyncOutcome.Skipped
        return SyncResult(outcome, applied=applied, remaining=remaining, error=error)

    async def _replay(self, user_id: str, mutation: PendingMutation) -> Optional[Entity]:
        kind = mutation.kind

        if mutation.operation == Operation.Add:
            entity = await asyncio.wait_for(self._remote.create(user_id, kind, mutation.payload), self.timeout)
            await self._log.map_temp_id(mutation.temp_id, entity.id)
            self._mirror.rename(kind, mutation.temp_id, entity.id)
            logging.debug(f'Replayed add of {kind.label} {mutation.temp_id} as {entity.id}')
            return entity

        entity_id = self._log.resolve(mutation.entity_id)
        if is_temp_id(entity_id):
            raise status.EntityNotFoundException(f'{kind.label} "{entity_id}" was never created remotely.')

        if mutation.operation == Operation.Update:
            await asyncio.wait_for(self._remote.update(user_id, kind, entity_id, mutation.payload), self.timeout)
            logging.debug(f'Replayed update of {kind.label} {entity_id}')
            return None

        try:
            await asyncio.wait_for(self._remote.delete(user_id, kind, entity_id), self.timeout)
        except status.EntityNotFoundException:
            logging.info(f'{kind.label} {entity_id} was already deleted remotely.')
        else:
            logging.debug(f'Replayed delete of {kind.label} {entity_id}')
        return None
