"""Lifecycle and wiring of the sync components.

:class:`SyncService` owns the mutation log, the local mirror, the dispatcher and the
reconciler for one identity, remote store and local database. Nothing is created at
import time: build a service with :func:`create_service` (or directly, injecting the
collaborators), ``await service.init()`` once an event loop is running, and
``await service.dispose()`` when done.

Example:

    .. code-block:: python

        service = create_service(lib.SettingsAPI())
        await service.init()
        await service.dispatcher.add_expense({...})
"""
import asyncio
import logging
from typing import Any, Awaitable, List, Mapping, Optional, Set

from PySide6 import QtCore

from . import storage
from .auth import FirebaseIdentity, Identity, User
from .connectivity import ConnectivityMonitor, ConnectivityState
from .dispatcher import MutationDispatcher
from .firestore import FirestoreRemoteStore
from .mirror import LocalMirrorStore
from .model import Budget, Category, Entity, EntityKind, Expense
from .mutations import MutationLog
from .remote import RemoteStore, Subscription
from .sync import DEFAULT_TIMEOUT, SyncReconciler, SyncResult
from ..data import data, export
from ..settings import lib
from ..status import status

DEFAULT_CATEGORIES: List[Mapping[str, Any]] = [
    {'name': 'Food', 'color': '#FF5733', 'icon': 'utensils'},
    {'name': 'Transport', 'color': '#33FF57', 'icon': 'car'},
    {'name': 'Entertainment', 'color': '#3357FF', 'icon': 'film'},
    {'name': 'Shopping', 'color': '#F033FF', 'icon': 'shopping-bag'},
    {'name': 'Bills', 'color': '#FF33A8', 'icon': 'file-invoice'},
    {'name': 'Health', 'color': '#33FFF0', 'icon': 'heartbeat'},
    {'name': 'Other', 'color': '#FFBD33', 'icon': 'ellipsis-h'},
]


class SyncService(QtCore.QObject):
    """Offline-first access to one user's expenses, categories and budgets.

    Signals:
        entitiesChanged (str): The visible entities of a kind changed.
        changeQueued (object): A mutation was queued offline (:class:`~ExpenseSync.core.dispatcher.MutationResult`).
        syncFinished (object): A reconciliation pass finished (:class:`~ExpenseSync.core.sync.SyncResult`).
        connectivityChanged (object): The :class:`~ExpenseSync.core.connectivity.ConnectivityState` changed.
    """
    entitiesChanged = QtCore.Signal(str)
    changeQueued = QtCore.Signal(object)
    syncFinished = QtCore.Signal(object)
    connectivityChanged = QtCore.Signal(object)

    def __init__(self, identity: Identity, remote: RemoteStore, local_storage: storage.LocalStorage,
                 connectivity: Optional[ConnectivityMonitor] = None, remote_timeout: float = DEFAULT_TIMEOUT,
                 seed_default_categories: bool = True, probe: bool = True, locale: str = 'en_US',
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.identity = identity
        self.remote = remote
        self.storage = local_storage
        self.connectivity = connectivity or ConnectivityMonitor()
        self.seed_default_categories = seed_default_categories
        self.probe = probe
        self.locale = locale

        self.log = MutationLog(local_storage)
        self.mirror = LocalMirrorStore(local_storage, parent=self)
        self.dispatcher = MutationDispatcher(
            identity, self.connectivity, remote, self.log, self.mirror, parent=self
        )
        self.reconciler = SyncReconciler(
            identity, self.connectivity, remote, self.log, self.mirror, timeout=remote_timeout, parent=self
        )

        self._user_id: Optional[str] = None
        self._subscriptions: List[Subscription] = []
        self._tasks: Set[asyncio.Task] = set()
        self._remove_connectivity_callback = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def init(self) -> None:
        """Restore local state, connect the components and start syncing the signed-in user.

        Must be awaited from a running event loop.
        """
        if self._initialized:
            return

        pending = await self.log.load()
        await self.mirror.load(pending)

        self._connect_signals()
        if self.probe:
            self.connectivity.start()
        self._initialized = True

        logging.info(
            f'Sync service ready ({self.connectivity.state}, {len(self.log)} pending change(s))'
        )
        if self.identity.user_id:
            await self._start_user(self.identity.user_id)

    def _connect_signals(self) -> None:
        self.mirror.entitiesChanged.connect(self.entitiesChanged)
        self.dispatcher.changeQueued.connect(self.changeQueued)
        self.reconciler.syncFinished.connect(self.syncFinished)
        self.identity.userChanged.connect(self._on_user_changed)
        self._remove_connectivity_callback = self.connectivity.on_change(self._on_connectivity_changed)

    def _disconnect_signals(self) -> None:
        self.mirror.entitiesChanged.disconnect(self.entitiesChanged)
        self.dispatcher.changeQueued.disconnect(self.changeQueued)
        self.reconciler.syncFinished.disconnect(self.syncFinished)
        self.identity.userChanged.disconnect(self._on_user_changed)
        if self._remove_connectivity_callback:
            self._remove_connectivity_callback()
            self._remove_connectivity_callback = None

    async def dispose(self) -> None:
        """Stop probing, cancel subscriptions and background work, and disconnect the components."""
        if not self._initialized:
            return
        self._initialized = False

        self._disconnect_signals()
        await self.connectivity.stop()
        await self._cancel_subscriptions()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logging.debug('Sync service disposed.')

    def _schedule(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        ex = task.exception()
        if ex is not None:
            logging.error(f'Background sync task failed: {ex}', exc_info=ex)

    def _on_connectivity_changed(self, state: ConnectivityState) -> None:
        self.connectivityChanged.emit(state)
        if state == ConnectivityState.Online:
            self._schedule(self.reconciler.reconcile())

    def _on_user_changed(self, user: Optional[User]) -> None:
        self._schedule(self._switch_user(user.uid if user else None))

    async def _switch_user(self, user_id: Optional[str]) -> None:
        if user_id == self._user_id:
            return

        await self._cancel_subscriptions()
        if self._user_id is not None:
            if not self.log.is_empty:
                logging.warning(f'Discarding {len(self.log)} unsynced change(s) of the previous user.')
            await self.log.clear()
            await self.mirror.clear()
        self._user_id = None

        if user_id:
            await self._start_user(user_id)

    async def _start_user(self, user_id: str) -> None:
        self._user_id = user_id
        for kind in EntityKind:
            subscription = self.remote.subscribe(user_id, kind)
            self._subscriptions.append(subscription)
            self._schedule(self._consume(subscription))
        logging.debug(f'Subscribed to the collections of user {user_id}')

        if self.connectivity.is_online:
            if self.seed_default_categories:
                await self.ensure_default_categories()
            self._schedule(self.reconciler.reconcile())

    async def _consume(self, subscription: Subscription) -> None:
        async for snapshot in subscription:
            if subscription.cancelled:
                break
            await self.mirror.apply_remote_snapshot(snapshot.kind, list(snapshot.entities))

    async def _cancel_subscriptions(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()

    async def ensure_default_categories(self) -> List[Category]:
        """Create the default categories if the signed-in user has none.

        Returns:
            The categories created, empty if the user already had some or the remote
            store could not be read.
        """
        user_id = self.identity.user_id
        if not user_id or self.mirror.get_all(EntityKind.Category):
            return []
        try:
            if await self.remote.get_all(user_id, EntityKind.Category):
                return []
        except (status.ServiceUnavailableException, status.CredsInvalidException):
            logging.warning('Could not check for existing categories, skipping defaults.')
            return []

        created: List[Category] = []
        for payload in DEFAULT_CATEGORIES:
            try:
                result = await self.dispatcher.add_category(payload)
            except (status.RemoteWriteFailureException, status.CredsInvalidException):
                logging.warning(f'Could not create the default category "{payload["name"]}".')
                continue
            if result.entity is not None:
                created.append(result.entity)
        logging.info(f'Created {len(created)} default categories')
        return created

    async def reconcile(self) -> SyncResult:
        """Replay queued offline changes now."""
        return await self.reconciler.reconcile()

    def get_all(self, kind: EntityKind) -> List[Entity]:
        return self.mirror.get_all(kind)

    @property
    def expenses(self) -> List[Expense]:
        return self.mirror.get_all(EntityKind.Expense)

    @property
    def categories(self) -> List[Category]:
        return self.mirror.get_all(EntityKind.Category)

    @property
    def budgets(self) -> List[Budget]:
        return self.mirror.get_all(EntityKind.Budget)

    @property
    def pending_count(self) -> int:
        return len(self.log)

    def export_data(self, fmt: str = 'csv') -> str:
        """Export the mirrored expenses.

        Raises:
            status.UnauthenticatedException: If nobody is signed in.
            ValueError: If the format is not supported.
        """
        if not self.identity.user_id:
            raise status.UnauthenticatedException()
        return export.export_data(self.expenses, fmt)

    def summary(self, period: data.Period | str = data.Period.Month, start=None, end=None) -> data.Summary:
        """Summarize the mirrored expenses of a period."""
        return data.summarize(self.expenses, period, start=start, end=end, locale_code=self.locale)

    def budget_progress(self, category_id: Optional[str] = None) -> Optional[data.BudgetProgress]:
        """Return this month's spending against its budget, if one is set."""
        return data.budget_progress(self.expenses, self.budgets, category_id=category_id)


def create_service(settings: lib.SettingsAPI, identity: Optional[Identity] = None,
                   remote: Optional[RemoteStore] = None, parent: Optional[QtCore.QObject] = None) -> SyncService:
    """Build a :class:`SyncService` from the application settings.

    Unless given, the identity is a :class:`FirebaseIdentity` restored from the cached
    credentials, and the remote store is a :class:`FirestoreRemoteStore` authorized by it.

    Raises:
        status.SettingsInvalidException: If the Firebase settings are incomplete.
        status.PersistenceFailureException: If the local database cannot be opened.
    """
    firebase = settings.get_section('firebase')
    sync = settings.get_section('sync')
    metadata = settings.get_section('metadata')

    if identity is None:
        identity = FirebaseIdentity(firebase['api_key'], settings.creds_path)
        try:
            identity.restore()
        except status.CredsInvalidException:
            logging.warning('Saved credentials were discarded, sign-in required.')

    if remote is None:
        if not isinstance(identity, FirebaseIdentity):
            raise status.SettingsInvalidException('The Firestore store needs a Firebase identity.')
        remote = FirestoreRemoteStore(
            firebase['project_id'],
            identity.get_credentials,
            database=firebase['database'],
            poll_interval=sync['poll_interval'],
            timeout=sync['remote_timeout'],
        )

    connectivity = ConnectivityMonitor(
        host=sync['probe_host'],
        port=sync['probe_port'],
        interval=sync['probe_interval'],
        timeout=sync['probe_timeout'],
    )

    return SyncService(
        identity,
        remote,
        storage.LocalStorage(settings.db_path),
        connectivity=connectivity,
        remote_timeout=sync['remote_timeout'],
        seed_default_categories=metadata['seed_default_categories'],
        locale=metadata['locale'],
        parent=parent,
    )
