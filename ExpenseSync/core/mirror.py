"""Local projection of the user's remote data.

The mirror keeps two layers per entity kind:

* the confirmed snapshot, the last full state delivered by the remote store, persisted
  so it is available offline after a restart;
* an overlay of pending mutations, replayed on top of the confirmed snapshot every time
  entities are read.

Because the overlay is reapplied on read, a remote snapshot that does not yet contain
a queued change can never make that change disappear from view.
"""
import collections
import dataclasses
import logging
from typing import Dict, List, Optional, Sequence

from PySide6 import QtCore

from . import storage
from .model import (
    Entity, EntityKind, Operation, PendingMutation, build_entity, entity_from_dict, merge_entity,
    sort_entities
)
from ..status import status


class LocalMirrorStore(QtCore.QObject):
    """Confirmed remote snapshots overlaid with optimistic local changes.

    Signals:
        entitiesChanged (str): Emitted with the kind value whenever the visible entities of that kind change.
    """
    entitiesChanged = QtCore.Signal(str)

    def __init__(self, local_storage: storage.LocalStorage, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self._storage = local_storage
        self._confirmed: Dict[EntityKind, Dict[str, Entity]] = {kind: {} for kind in EntityKind}
        self._pending: collections.OrderedDict[str, PendingMutation] = collections.OrderedDict()

    async def load(self, pending: Sequence[PendingMutation] = ()) -> None:
        """Restore cached snapshots from local storage and replay pending mutations over them."""
        for kind in EntityKind:
            try:
                items = await self._storage.get_item(kind.value) or []
            except status.PersistenceFailureException as ex:
                logging.error(f'Could not load cached {kind.value}: {ex}')
                continue

            confirmed: Dict[str, Entity] = {}
            for item in items:
                try:
                    entity = entity_from_dict(kind, item)
                except (KeyError, ValueError, TypeError) as ex:
                    logging.error(f'Skipping unreadable cached {kind.label}: {ex}')
                    continue
                confirmed[entity.id] = entity
            self._confirmed[kind] = confirmed
            logging.debug(f'Loaded {len(confirmed)} cached {kind.value}')

        self._pending = collections.OrderedDict((m.mutation_id, m) for m in pending)
        for kind in EntityKind:
            self.entitiesChanged.emit(kind.value)

    def get_all(self, kind: EntityKind) -> List[Entity]:
        """Return the visible entities of a kind, in remote listing order."""
        view = {k: dataclasses.replace(v) for k, v in self._confirmed[kind].items()}
        for mutation in self._pending.values():
            if mutation.kind == kind:
                self._project(view, mutation)
        return sort_entities(kind, list(view.values()))

    def get(self, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        for entity in self.get_all(kind):
            if entity.id == entity_id:
                return entity
        return None

    def pending(self, kind: Optional[EntityKind] = None) -> List[PendingMutation]:
        """Return the optimistic mutations still waiting for confirmation."""
        return [m for m in self._pending.values() if kind is None or m.kind == kind]

    @staticmethod
    def _project(view: Dict[str, Entity], mutation: PendingMutation) -> None:
        if mutation.operation == Operation.Add:
            if mutation.temp_id not in view:
                view[mutation.temp_id] = build_entity(mutation.kind, mutation.temp_id, mutation.payload)
        elif mutation.operation == Operation.Update:
            if mutation.entity_id in view:
                view[mutation.entity_id] = merge_entity(view[mutation.entity_id], mutation.payload)
        elif mutation.operation == Operation.Delete:
            view.pop(mutation.entity_id, None)

    async def apply_remote_snapshot(self, kind: EntityKind, entities: Sequence[Entity]) -> None:
        """Replace the confirmed entities of a kind and persist them."""
        self._confirmed[kind] = {e.id: e for e in entities}
        logging.debug(f'Applied remote snapshot of {len(entities)} {kind.value}')
        await self._persist(kind)
        self.entitiesChanged.emit(kind.value)

    def apply_optimistic(self, mutation: PendingMutation) -> None:
        """Show a queued mutation immediately, until it is settled."""
        self._pending[mutation.mutation_id] = mutation
        self.entitiesChanged.emit(mutation.kind.value)

    def rename(self, kind: EntityKind, temp_id: str, entity_id: str) -> None:
        """Point pending mutations that target a temporary id at its remote id.

        The pending add that created the temporary entity is moved to the remote id as
        well, so the entity stays visible until the add is settled.
        """
        for mutation_id, mutation in self._pending.items():
            if mutation.kind != kind:
                continue
            if mutation.operation == Operation.Add and mutation.temp_id == temp_id:
                self._pending[mutation_id] = dataclasses.replace(mutation, temp_id=entity_id)
            elif mutation.entity_id == temp_id:
                self._pending[mutation_id] = dataclasses.replace(mutation, entity_id=entity_id)
        self.entitiesChanged.emit(kind.value)

    async def settle(self, mutation_id: str, entity: Optional[Entity] = None) -> None:
        """Fold a replayed mutation into the confirmed snapshot and drop it from the overlay.

        Args:
            mutation_id: The id of the pending mutation.
            entity: For adds, the entity as created by the remote store.
        """
        mutation = self._pending.pop(mutation_id, None)
        if mutation is None:
            return

        confirmed = self._confirmed[mutation.kind]
        if mutation.operation == Operation.Add:
            if entity is not None:
                confirmed[entity.id] = entity
        else:
            self._project(confirmed, mutation)

        await self._persist(mutation.kind)
        self.entitiesChanged.emit(mutation.kind.value)

    async def clear(self) -> None:
        """Forget all entities and pending changes, including the persisted snapshots."""
        self._confirmed = {kind: {} for kind in EntityKind}
        self._pending.clear()
        try:
            await self._storage.remove_item(*(kind.value for kind in EntityKind))
        except status.PersistenceFailureException as ex:
            logging.error(f'Could not remove cached entities: {ex}')
        for kind in EntityKind:
            self.entitiesChanged.emit(kind.value)

    async def _persist(self, kind: EntityKind) -> None:
        items = [e.to_dict() for e in self._confirmed[kind].values()]
        try:
            await self._storage.set_item(kind.value, items)
        except status.PersistenceFailureException as ex:
            logging.error(f'Cached {kind.value} were kept in memory only: {ex}')
