"""Persistent, ordered log of mutations waiting to be replayed remotely.

The log is the only state shared between the mutation dispatcher, which appends to the
tail, and the sync reconciler, which removes from the head. Both sides update the
in-memory list synchronously and then persist, so neither ever has to wait for the
other. Writes are serialized and always store the latest in-memory state.
"""
import asyncio
import logging
from typing import Dict, Iterator, List, Optional, Tuple

from . import storage
from .model import PendingMutation
from ..status import status


class MutationLog:
    """FIFO queue of :class:`PendingMutation` persisted to local storage.

    Also keeps the mapping of temporary ids to the ids the remote store assigned when
    their queued adds were replayed, so later entries that reference a temporary id can
    be rewritten, even after a restart.
    """

    def __init__(self, local_storage: storage.LocalStorage) -> None:
        self._storage = local_storage
        self._entries: List[PendingMutation] = []
        self._temp_ids: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PendingMutation]:
        return iter(tuple(self._entries))

    @property
    def is_empty(self) -> bool:
        return not self._entries

    def snapshot(self) -> Tuple[PendingMutation, ...]:
        """Return a fixed copy of the current entries."""
        return tuple(self._entries)

    def head(self) -> Optional[PendingMutation]:
        return self._entries[0] if self._entries else None

    async def load(self) -> Tuple[PendingMutation, ...]:
        """Read the log and temp id map from storage.

        Entries that cannot be decoded are dropped and logged. A storage failure leaves
        the log empty in memory.
        """
        try:
            raw_entries = await self._storage.get_item(storage.Key.PendingMutations) or []
            raw_temp_ids = await self._storage.get_item(storage.Key.TempIdMap) or {}
        except status.PersistenceFailureException as ex:
            logging.error(f'Could not load pending mutations, starting with an empty queue: {ex}')
            return ()

        entries: List[PendingMutation] = []
        for item in raw_entries:
            try:
                entries.append(PendingMutation.from_dict(item))
            except (KeyError, ValueError, TypeError, status.PayloadInvalidException) as ex:
                logging.error(f'Dropping unreadable pending mutation {item!r}: {ex}')

        self._entries = entries
        self._temp_ids = dict(raw_temp_ids)
        logging.info(f'Loaded {len(entries)} pending mutation(s) from local storage.')
        return self.snapshot()

    async def append(self, mutation: PendingMutation) -> None:
        """Add a mutation to the tail and persist the log."""
        self._entries.append(mutation)
        logging.debug(
            f'Queued {mutation.operation} {mutation.kind} {mutation.target_id} '
            f'({len(self._entries)} pending)'
        )
        await self._persist()

    async def remove_head(self, mutation: PendingMutation) -> None:
        """Remove a replayed mutation from the head of the log and persist.

        Raises:
            RuntimeError: If the mutation is not at the head of the log.
        """
        head = self.head()
        if head is None or head.mutation_id != mutation.mutation_id:
            raise RuntimeError(f'Mutation {mutation.mutation_id} is not at the head of the log.')
        self._entries.pop(0)
        await self._persist()

    async def clear(self) -> None:
        self._entries.clear()
        self._temp_ids.clear()
        await self._persist()

    def resolve(self, entity_id: Optional[str]) -> Optional[str]:
        """Return the remote id for a temporary id that has been replayed, else the id itself."""
        return self._temp_ids.get(entity_id, entity_id)

    async def map_temp_id(self, temp_id: str, remote_id: str) -> None:
        self._temp_ids[temp_id] = remote_id
        await self._persist()

    async def _persist(self) -> None:
        async with self._lock:
            entries = [m.to_dict() for m in self._entries]
            temp_ids = dict(self._temp_ids)
            try:
                await self._storage.set_items({
                    storage.Key.PendingMutations: entries,
                    storage.Key.TempIdMap: temp_ids,
                })
            except status.PersistenceFailureException as ex:
                logging.error(f'Pending mutations were kept in memory only: {ex}')
