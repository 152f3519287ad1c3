"""
Tests for ExpenseSync.core.storage and ExpenseSync.core.mutations
(SQLite key/value storage and the persisted mutation log).

Run:
    python -m unittest tests.test_storage
"""
import contextlib
import sqlite3
import unittest
from unittest.mock import patch

from ExpenseSync.core import storage
from ExpenseSync.core.model import EntityKind, PendingMutation
from ExpenseSync.core.mutations import MutationLog
from ExpenseSync.status import status
from tests.base import BaseAsyncTestCase, expense_payload


def reject_writes(local_storage: storage.LocalStorage, key: str) -> None:
    """Install triggers that abort any insert or update of key."""
    with contextlib.closing(sqlite3.connect(str(local_storage.db_path))) as conn:
        for event in ('INSERT', 'UPDATE'):
            conn.execute(
                f'CREATE TRIGGER reject_{event.lower()} BEFORE {event} ON {storage.Table.Items.value} '
                f"WHEN NEW.key = '{key}' BEGIN SELECT RAISE(ABORT, 'rejected'); END"
            )
        conn.commit()


class LocalStorageTest(BaseAsyncTestCase):

    async def test_missing_key(self):
        self.assertIsNone(await self.storage.get_item('nothing'))

    async def test_set_and_get(self):
        await self.storage.set_item(storage.Key.TempIdMap, {'temp-1': 'abc'})
        self.assertEqual(await self.storage.get_item(storage.Key.TempIdMap), {'temp-1': 'abc'})

        await self.storage.set_item(storage.Key.TempIdMap, {'temp-2': 'def'})
        self.assertEqual(await self.storage.get_item(storage.Key.TempIdMap), {'temp-2': 'def'})

    async def test_persists_across_instances(self):
        await self.storage.set_item('expenses', [{'id': 'a'}])
        other = storage.LocalStorage(self.settings.db_path)
        self.assertEqual(await other.get_item('expenses'), [{'id': 'a'}])

    async def test_remove(self):
        await self.storage.set_item('a', 1)
        await self.storage.set_item('b', 2)
        await self.storage.remove_item('a', 'b', 'missing')
        self.assertIsNone(await self.storage.get_item('a'))
        self.assertIsNone(await self.storage.get_item('b'))

    async def test_unencodable_value(self):
        with self.assertRaises(status.PersistenceFailureException):
            await self.storage.set_item('a', object())

    async def test_set_items(self):
        await self.storage.set_items({'a': 1, storage.Key.TempIdMap: {'temp-1': 'abc'}})
        self.assertEqual(await self.storage.get_item('a'), 1)
        self.assertEqual(await self.storage.get_item(storage.Key.TempIdMap), {'temp-1': 'abc'})

    async def test_set_items_unencodable_writes_nothing(self):
        await self.storage.set_item('a', 1)
        with self.assertRaises(status.PersistenceFailureException):
            await self.storage.set_items({'a': 2, 'b': object()})
        self.assertEqual(await self.storage.get_item('a'), 1)
        self.assertIsNone(await self.storage.get_item('b'))

    async def test_set_items_is_one_transaction(self):
        await self.storage.set_item('a', 1)
        reject_writes(self.storage, 'b')
        with self.assertRaises(status.PersistenceFailureException):
            await self.storage.set_items({'a': 2, 'b': 3})
        self.assertEqual(await self.storage.get_item('a'), 1)
        self.assertIsNone(await self.storage.get_item('b'))

    async def test_database_error(self):
        with patch.object(storage.LocalStorage, '_read', side_effect=sqlite3.OperationalError('locked')):
            with self.assertRaises(status.PersistenceFailureException):
                await self.storage.get_item('a')

    async def test_delete(self):
        await self.storage.set_item('a', 1)
        self.storage.delete()
        self.assertFalse(self.settings.db_path.exists())


class MutationLogTest(BaseAsyncTestCase):

    async def test_append_persists(self):
        mutation = PendingMutation.add(EntityKind.Expense, expense_payload())
        await self.log.append(mutation)

        reloaded = MutationLog(self.storage)
        entries = await reloaded.load()
        self.assertEqual(entries, (mutation,))

    async def test_fifo_removal(self):
        a = PendingMutation.delete(EntityKind.Category, 'a')
        b = PendingMutation.delete(EntityKind.Category, 'b')
        await self.log.append(a)
        await self.log.append(b)

        with self.assertRaises(RuntimeError):
            await self.log.remove_head(b)

        await self.log.remove_head(a)
        self.assertEqual(self.log.snapshot(), (b,))

        reloaded = MutationLog(self.storage)
        self.assertEqual(await reloaded.load(), (b,))

    async def test_snapshot_is_fixed(self):
        a = PendingMutation.delete(EntityKind.Category, 'a')
        await self.log.append(a)
        snapshot = self.log.snapshot()
        await self.log.append(PendingMutation.delete(EntityKind.Category, 'b'))
        self.assertEqual(snapshot, (a,))
        self.assertEqual(len(self.log), 2)

    async def test_temp_id_map_persists(self):
        await self.log.map_temp_id('temp-1', 'remote-1')
        self.assertEqual(self.log.resolve('temp-1'), 'remote-1')
        self.assertEqual(self.log.resolve('other'), 'other')

        reloaded = MutationLog(self.storage)
        await reloaded.load()
        self.assertEqual(reloaded.resolve('temp-1'), 'remote-1')

        await reloaded.clear()
        self.assertEqual(reloaded.resolve('temp-1'), 'temp-1')
        self.assertTrue(reloaded.is_empty)

    async def test_unreadable_entries_dropped(self):
        good = PendingMutation.delete(EntityKind.Budget, 'b1')
        await self.storage.set_item(storage.Key.PendingMutations, [
            {'operation': 'explode', 'kind': 'expenses'},
            good.to_dict(),
        ])
        entries = await self.log.load()
        self.assertEqual(entries, (good,))

    async def test_storage_failure_keeps_memory(self):
        mutation = PendingMutation.delete(EntityKind.Budget, 'b1')
        with patch.object(storage.LocalStorage, '_write', side_effect=sqlite3.OperationalError('disk full')):
            await self.log.append(mutation)
        self.assertEqual(self.log.snapshot(), (mutation,))

    async def test_entries_and_temp_ids_are_written_together(self):
        first = PendingMutation.delete(EntityKind.Budget, 'b1')
        await self.log.append(first)
        reject_writes(self.storage, storage.Key.TempIdMap.value)

        await self.log.append(PendingMutation.delete(EntityKind.Budget, 'b2'))

        reloaded = MutationLog(self.storage)
        self.assertEqual(await reloaded.load(), (first,))
        self.assertEqual(await self.storage.get_item(storage.Key.TempIdMap), {})

    async def test_load_failure_starts_empty(self):
        with patch.object(storage.LocalStorage, '_read', side_effect=sqlite3.OperationalError('locked')):
            self.assertEqual(await self.log.load(), ())
        self.assertTrue(self.log.is_empty)


if __name__ == '__main__':
    unittest.main()
