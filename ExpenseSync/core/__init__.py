"""
Core package for ExpenseSync: entities, local state and synchronization.

This package includes:

- :mod:`ExpenseSync.core.model` – Entity dataclasses, payload schema validation and the pending mutation record.
- :mod:`ExpenseSync.core.storage` – SQLite backed key/value storage for the queue and cached snapshots.
- :mod:`ExpenseSync.core.mutations` – The persisted, ordered log of offline mutations.
- :mod:`ExpenseSync.core.mirror` – Confirmed remote snapshots overlaid with optimistic local edits.
- :mod:`ExpenseSync.core.connectivity` – Reachability probing and transition notifications.
- :mod:`ExpenseSync.core.dispatcher` – Add, update and delete entry points routing online or to the queue.
- :mod:`ExpenseSync.core.sync` – Ordered replay of the queue once connectivity returns.
- :mod:`ExpenseSync.core.remote` – The remote store interface and an in-memory implementation.
- :mod:`ExpenseSync.core.firestore` – Cloud Firestore REST implementation of the remote store.
- :mod:`ExpenseSync.core.auth` – Firebase e-mail and password identity.
- :mod:`ExpenseSync.core.service` – Wires the components together and manages their lifecycle.
"""
