"""
Tests for ExpenseSync.core.firestore: the value codec and the REST-backed store.

The Firestore documents resource is replaced with a MagicMock; no requests are made.

Run:
    python -m unittest tests.test_firestore
"""
import asyncio
import datetime
import unittest
from unittest.mock import MagicMock, patch

import google.auth.exceptions
import httplib2
from googleapiclient.errors import HttpError

from ExpenseSync.core import firestore
from ExpenseSync.core.auth import AuthExpiredError
from ExpenseSync.core.model import EntityKind, coerce_payload
from ExpenseSync.core.sync import SyncOutcome
from ExpenseSync.status import status
from tests.base import BaseAsyncTestCase, FOOD, TEST_USER, expense_payload

UTC = datetime.timezone.utc
ROOT = 'projects/demo/databases/(default)/documents'


def http_error(code: int) -> HttpError:
    return HttpError(httplib2.Response({'status': code}), b'{"error": {}}')


def expense_document(entity_id='e1', amount=None):
    return {
        'name': f'{ROOT}/users/{TEST_USER}/expenses/{entity_id}',
        'fields': {
            'amount': amount or {'doubleValue': 4.5},
            'description': {'stringValue': 'Coffee'},
            'category': {'mapValue': {'fields': {
                'id': {'stringValue': FOOD.id},
                'name': {'stringValue': FOOD.name},
                'color': {'stringValue': FOOD.color},
                'icon': {'stringValue': FOOD.icon},
            }}},
            'date': {'timestampValue': '2024-01-05T12:00:00.123456789Z'},
        },
        'createTime': '2024-01-05T12:00:01.000001Z',
        'updateTime': '2024-01-06T08:30:00Z',
    }


class CodecTest(unittest.TestCase):

    def test_encode_values(self):
        self.assertEqual(firestore.encode_value(None), {'nullValue': None})
        self.assertEqual(firestore.encode_value(True), {'booleanValue': True})
        self.assertEqual(firestore.encode_value(3), {'integerValue': '3'})
        self.assertEqual(firestore.encode_value(2.5), {'doubleValue': 2.5})
        self.assertEqual(firestore.encode_value('x'), {'stringValue': 'x'})
        self.assertEqual(
            firestore.encode_value(datetime.datetime(2024, 1, 5, 12, tzinfo=UTC)),
            {'timestampValue': '2024-01-05T12:00:00.000000Z'}
        )
        self.assertEqual(
            firestore.encode_value([1, 'a']),
            {'arrayValue': {'values': [{'integerValue': '1'}, {'stringValue': 'a'}]}}
        )
        with self.assertRaises(TypeError):
            firestore.encode_value(object())

    def test_encode_category_as_map(self):
        encoded = firestore.encode_value(FOOD)
        self.assertEqual(encoded['mapValue']['fields']['name'], {'stringValue': 'Food'})

    def test_decode_values(self):
        self.assertIsNone(firestore.decode_value({'nullValue': None}))
        self.assertEqual(firestore.decode_value({'integerValue': '7'}), 7)
        self.assertEqual(
            firestore.decode_value({'timestampValue': '2024-01-05T12:00:00Z'}),
            datetime.datetime(2024, 1, 5, 12, tzinfo=UTC)
        )
        self.assertEqual(firestore.decode_value({'arrayValue': {}}), [])
        self.assertEqual(firestore.decode_value({'mapValue': {}}), {})
        with self.assertRaises(ValueError):
            firestore.decode_value({'geoPointValue': {}})

    def test_field_names(self):
        fields = coerce_payload(EntityKind.Budget, {'amount': 100, 'month': 3, 'year': 2024, 'category_id': 'c1'})
        encoded = firestore.encode_fields(fields)
        self.assertIn('categoryId', encoded)
        self.assertNotIn('category_id', encoded)

    def test_decode_document(self):
        expense = firestore.decode_document(EntityKind.Expense, expense_document())
        self.assertEqual(expense.id, 'e1')
        self.assertEqual(expense.amount, 4.5)
        self.assertEqual(expense.category, FOOD)
        self.assertEqual(expense.date, datetime.datetime(2024, 1, 5, 12, 0, 0, 123456, tzinfo=UTC))
        self.assertEqual(expense.created_at, datetime.datetime(2024, 1, 5, 12, 0, 1, 1, tzinfo=UTC))
        self.assertEqual(expense.updated_at, datetime.datetime(2024, 1, 6, 8, 30, tzinfo=UTC))

    def test_decode_stored_timestamps(self):
        document = expense_document()
        document['fields']['createdAt'] = {'timestampValue': '2024-01-05T12:00:02Z'}
        document['fields']['updatedAt'] = {'timestampValue': '2024-01-07T09:00:00.5Z'}

        expense = firestore.decode_document(EntityKind.Expense, document)

        self.assertEqual(expense.description, 'Coffee')
        self.assertEqual(expense.created_at, datetime.datetime(2024, 1, 5, 12, 0, 2, tzinfo=UTC))
        self.assertEqual(expense.updated_at, datetime.datetime(2024, 1, 7, 9, 0, 0, 500000, tzinfo=UTC))

    def test_decode_integer_amount(self):
        expense = firestore.decode_document(EntityKind.Expense, expense_document(amount={'integerValue': '5'}))
        self.assertIsInstance(expense.amount, float)

    def test_decode_budget(self):
        budget = firestore.decode_document(EntityKind.Budget, {
            'name': f'{ROOT}/users/{TEST_USER}/budgets/b1',
            'fields': {
                'amount': {'integerValue': '500'},
                'month': {'integerValue': '3'},
                'year': {'integerValue': '2024'},
                'categoryId': {'nullValue': None},
            },
        })
        self.assertEqual((budget.id, budget.amount, budget.month, budget.category_id), ('b1', 500.0, 3, None))


class FirestoreRemoteStoreTest(BaseAsyncTestCase):

    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.docs = MagicMock()
        self.store = firestore.FirestoreRemoteStore('demo', credentials=MagicMock(), poll_interval=0.01)
        patcher = patch.object(self.store, '_documents', return_value=self.docs)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_requires_project(self):
        with self.assertRaises(status.SettingsInvalidException):
            firestore.FirestoreRemoteStore('', credentials=MagicMock())

    async def test_create(self):
        self.docs.createDocument.return_value.execute.return_value = expense_document('new-id')
        fields = coerce_payload(EntityKind.Expense, expense_payload())

        entity = await self.store.create(TEST_USER, EntityKind.Expense, fields)

        self.assertEqual(entity.id, 'new-id')
        kwargs = self.docs.createDocument.call_args.kwargs
        self.assertEqual(kwargs['parent'], f'{ROOT}/users/{TEST_USER}')
        self.assertEqual(kwargs['collectionId'], 'expenses')
        self.assertEqual(kwargs['body']['fields']['description'], {'stringValue': 'Coffee'})

    async def test_update_uses_field_mask(self):
        await self.store.update(TEST_USER, EntityKind.Category, 'c1', {'name': 'Groceries'})

        kwargs = self.docs.patch.call_args.kwargs
        self.assertEqual(kwargs['name'], f'{ROOT}/users/{TEST_USER}/categories/c1')
        self.assertEqual(kwargs['updateMask_fieldPaths'], ['name'])
        self.assertTrue(kwargs['currentDocument_exists'])

    async def test_missing_document(self):
        self.docs.patch.return_value.execute.side_effect = http_error(404)
        with self.assertRaises(status.EntityNotFoundException):
            await self.store.update(TEST_USER, EntityKind.Category, 'c1', {'name': 'x'})

        self.docs.delete.return_value.execute.side_effect = http_error(404)
        with self.assertRaises(status.EntityNotFoundException):
            await self.store.delete(TEST_USER, EntityKind.Category, 'c1')

    async def test_write_errors(self):
        self.docs.createDocument.return_value.execute.side_effect = http_error(500)
        fields = coerce_payload(EntityKind.Category, {'name': 'A', 'color': '#000000', 'icon': 'a'})
        with self.assertRaises(status.RemoteWriteFailureException):
            await self.store.create(TEST_USER, EntityKind.Category, fields)

        self.docs.delete.return_value.execute.side_effect = TimeoutError('timed out')
        with self.assertRaises(status.RemoteWriteFailureException):
            await self.store.delete(TEST_USER, EntityKind.Category, 'c1')

    async def test_expired_credentials(self):
        store = firestore.FirestoreRemoteStore('demo', credentials=MagicMock(side_effect=AuthExpiredError('expired')))
        with self.assertRaises(status.CredsInvalidException):
            await store.delete(TEST_USER, EntityKind.Category, 'c1')

    async def test_token_refresh_errors(self):
        error = google.auth.exceptions.TransportError('connection reset during token refresh')
        store = firestore.FirestoreRemoteStore('demo', credentials=MagicMock(side_effect=error))
        with self.assertRaises(status.RemoteWriteFailureException):
            await store.delete(TEST_USER, EntityKind.Category, 'c1')
        with self.assertRaises(status.ServiceUnavailableException):
            await store.get_all(TEST_USER, EntityKind.Category)

    async def test_rejected_token_refresh(self):
        error = google.auth.exceptions.RefreshError('no refresh token')
        self.docs.delete.return_value.execute.side_effect = error
        with self.assertRaises(status.CredsInvalidException):
            await self.store.delete(TEST_USER, EntityKind.Category, 'c1')

        self.docs.list.return_value.execute.side_effect = error
        with self.assertRaises(status.CredsInvalidException):
            await self.store.get_all(TEST_USER, EntityKind.Category)

    async def test_reconcile_fails_entry_on_token_refresh_error(self):
        error = google.auth.exceptions.TransportError('connection reset during token refresh')
        self.remote = firestore.FirestoreRemoteStore('demo', credentials=MagicMock(side_effect=error))
        self.build_components()
        finished = []
        self.reconciler.syncFinished.connect(lambda result: finished.append(result))

        self.go_offline()
        await self.dispatcher.add_expense(expense_payload())
        self.go_online()
        result = await self.reconciler.reconcile()

        self.assertEqual(result.outcome, SyncOutcome.Failure)
        self.assertEqual(result.remaining, 1)
        self.assertEqual(finished, [result])

    async def test_get_all_paginates_and_skips_malformed(self):
        broken = {'name': f'{ROOT}/users/{TEST_USER}/expenses/bad', 'fields': {}}
        self.docs.list.return_value.execute.side_effect = [
            {'documents': [expense_document('e2')], 'nextPageToken': 'next'},
            {'documents': [expense_document('e1'), broken]},
        ]

        entities = await self.store.get_all(TEST_USER, EntityKind.Expense)

        self.assertEqual(sorted(e.id for e in entities), ['e1', 'e2'])
        tokens = [c.kwargs['pageToken'] for c in self.docs.list.call_args_list]
        self.assertEqual(tokens, [None, 'next'])

    async def test_read_errors(self):
        self.docs.list.return_value.execute.side_effect = http_error(503)
        with self.assertRaises(status.ServiceUnavailableException):
            await self.store.get_all(TEST_USER, EntityKind.Expense)

    async def test_subscribe_pushes_changes_only(self):
        pages = [{}, {}, {'documents': [expense_document('e1')]}]
        self.docs.list.return_value.execute.side_effect = lambda: pages.pop(0) if pages else {
            'documents': [expense_document('e1')]
        }

        subscription = self.store.subscribe(TEST_USER, EntityKind.Expense)
        received = []
        try:
            async with asyncio.timeout(1.0):
                async for snapshot in subscription:
                    received.append([e.id for e in snapshot.entities])
                    if len(received) == 2:
                        break
        finally:
            subscription.cancel()

        self.assertEqual(received, [[], ['e1']])

    async def test_unexpected_poll_failure_is_logged(self):
        self.docs.list.return_value.execute.side_effect = RuntimeError('boom')

        with self.assertLogs(level='ERROR') as logs:
            subscription = self.store.subscribe(TEST_USER, EntityKind.Expense)
            try:
                async with asyncio.timeout(1.0):
                    while not any('Live updates of expenses stopped' in line for line in logs.output):
                        await asyncio.sleep(0.01)
            finally:
                subscription.cancel()

        self.assertTrue(any('boom' in line for line in logs.output))


if __name__ == '__main__':
    unittest.main()
