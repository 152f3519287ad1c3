"""
Tests for ExpenseSync.core.service: lifecycle, subscriptions, user switching and the
Offline -> Online reconciliation trigger.

Run:
    python -m unittest tests.test_service
"""
import asyncio
import unittest
from unittest.mock import patch

from ExpenseSync.core.auth import FirebaseIdentity
from ExpenseSync.core.connectivity import ConnectivityMonitor, ConnectivityState
from ExpenseSync.core.firestore import FirestoreRemoteStore
from ExpenseSync.core.model import EntityKind, PendingMutation
from ExpenseSync.core.service import DEFAULT_CATEGORIES, SyncService, create_service
from ExpenseSync.core.sync import SyncOutcome
from ExpenseSync.status import status
from tests.base import BaseAsyncTestCase, BaseTestCase, TEST_USER, expense_payload


async def settle(predicate, timeout: float = 1.0) -> None:
    """Yield to the event loop until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError('Condition not reached in time.')
        await asyncio.sleep(0.005)


class SyncServiceTest(BaseAsyncTestCase):

    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.service = SyncService(
            self.identity, self.remote, self.storage, connectivity=self.connectivity, probe=False,
            remote_timeout=1.0,
        )

    async def asyncTearDown(self) -> None:
        await self.service.dispose()

    async def test_init_seeds_default_categories(self):
        await self.service.init()
        await settle(lambda: len(self.service.categories) == len(DEFAULT_CATEGORIES))

        names = sorted(c.name for c in self.service.categories)
        self.assertEqual(names, sorted(c['name'] for c in DEFAULT_CATEGORIES))
        self.assertEqual(len(await self.remote.get_all(TEST_USER, EntityKind.Category)), 7)

    async def test_no_seeding_when_categories_exist(self):
        await self.remote.create(TEST_USER, EntityKind.Category, {'name': 'Mine', 'color': '#000000', 'icon': 'x'})
        await self.service.init()
        await settle(lambda: len(self.service.categories) == 1)
        self.assertEqual(len(self.remote.sent('create')), 1)

    async def test_no_seeding_when_disabled(self):
        self.service.seed_default_categories = False
        await self.service.init()
        self.assertEqual(self.remote.sent('create'), [])

    async def test_remote_changes_reach_the_mirror(self):
        self.service.seed_default_categories = False
        await self.service.init()

        changed = []
        self.service.entitiesChanged.connect(lambda kind: changed.append(kind))
        await self.remote.create(TEST_USER, EntityKind.Expense, {
            'amount': 4.5, 'description': 'Coffee', 'category': expense_payload()['category'],
            'date': expense_payload()['date'],
        })
        await settle(lambda: len(self.service.expenses) == 1)
        self.assertIn('expenses', changed)

    async def test_reconnect_triggers_one_reconcile(self):
        self.service.seed_default_categories = False
        await self.service.init()

        finished = []
        connectivity = []
        self.service.syncFinished.connect(lambda result: finished.append(result))
        self.service.connectivityChanged.connect(lambda state: connectivity.append(state))

        self.connectivity.report(False)
        result = await self.service.dispatcher.add_expense(expense_payload())
        self.assertTrue(result.queued)
        self.assertEqual(self.service.pending_count, 1)

        with patch.object(self.service.reconciler, 'reconcile', wraps=self.service.reconciler.reconcile) as spy:
            self.connectivity.report(True)
            self.connectivity.report(True)
            await settle(lambda: finished)
            self.assertEqual(spy.call_count, 1)

        self.assertEqual(connectivity, [ConnectivityState.Offline, ConnectivityState.Online])
        self.assertEqual(finished[0].outcome, SyncOutcome.Success)
        self.assertEqual(self.service.pending_count, 0)
        await settle(lambda: len(self.service.expenses) == 1)

    async def test_init_restores_and_reconciles_leftovers(self):
        mutation = PendingMutation.add(EntityKind.Expense, expense_payload(description='Leftover'))
        await self.service.log.append(mutation)
        self.service.seed_default_categories = False

        restarted = SyncService(
            self.identity, self.remote, self.storage, connectivity=self.connectivity, probe=False,
            seed_default_categories=False,
        )
        try:
            await restarted.init()
            await settle(lambda: restarted.pending_count == 0)
            remote = await self.remote.get_all(TEST_USER, EntityKind.Expense)
            self.assertEqual([e.description for e in remote], ['Leftover'])
        finally:
            await restarted.dispose()

    async def test_sign_out_clears_local_state(self):
        self.service.seed_default_categories = False
        await self.service.init()
        self.connectivity.report(False)
        await self.service.dispatcher.add_expense(expense_payload())

        await self.identity.sign_out()
        await settle(lambda: self.service.pending_count == 0 and not self.service.expenses)

        with self.assertRaises(status.UnauthenticatedException):
            self.service.export_data()

    async def test_user_switch_subscribes_new_user(self):
        self.service.seed_default_categories = False
        await self.remote.create('user-2', EntityKind.Category, {'name': 'Theirs', 'color': '#000000', 'icon': 'x'})
        await self.service.init()

        await self.identity.sign_in('user-2')
        await settle(lambda: [c.name for c in self.service.categories] == ['Theirs'])

    async def test_export_and_summary(self):
        self.service.seed_default_categories = False
        await self.service.init()
        self.connectivity.report(False)
        await self.service.dispatcher.add_expense(expense_payload(description='Coffee, large'))

        self.assertEqual(
            self.service.export_data('csv'),
            'Date,Description,Category,Amount\n2024-01-05,Coffee; large,Food,4.50\n'
        )
        with self.assertRaises(ValueError):
            self.service.export_data('pdf')

        summary = self.service.summary('all')
        self.assertEqual(summary.count, 1)
        self.assertAlmostEqual(summary.total, 4.5)

    async def test_dispose_stops_everything(self):
        await self.service.init()
        await self.service.dispose()
        self.assertFalse(self.service.initialized)
        self.assertFalse(self.connectivity.running)

        # Transitions after dispose no longer trigger work
        with patch.object(self.service.reconciler, 'reconcile') as spy:
            self.connectivity.report(False)
            self.connectivity.report(True)
            spy.assert_not_called()


class CreateServiceTest(BaseTestCase):

    def test_requires_firebase_settings(self):
        with self.assertRaises(status.SettingsInvalidException):
            create_service(self.settings)

    def test_builds_firestore_service(self):
        self.settings.set_section('firebase', {
            'project_id': 'demo-project', 'api_key': 'key', 'database': '(default)'
        })
        service = create_service(self.settings)

        self.assertIsInstance(service.identity, FirebaseIdentity)
        self.assertIsInstance(service.remote, FirestoreRemoteStore)
        self.assertIsInstance(service.connectivity, ConnectivityMonitor)
        self.assertEqual(service.remote.project_id, 'demo-project')
        self.assertEqual(service.connectivity.host, 'firestore.googleapis.com')
        self.assertIsNone(service.identity.user_id)
        self.assertTrue(self.settings.db_path.exists())


if __name__ == '__main__':
    unittest.main()
