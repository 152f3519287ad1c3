"""
ExpenseSync: offline-first data layer for a personal expense tracker backed by Cloud Firestore.

This package provides:

- :mod:`ExpenseSync.core` – Entities, the offline mutation queue, the local mirror, connectivity tracking and the sync reconciler.
- :mod:`ExpenseSync.data` – Spending analytics and CSV export over the mirrored expenses.
- :mod:`ExpenseSync.settings` – Application paths, settings schema validation and locale helpers.
- :mod:`ExpenseSync.log` – Root logger setup and the in-memory log tank.
- :mod:`ExpenseSync.status` – Status codes and the exceptions that carry them.

Use :func:`ExpenseSync.core.service.create_service` to build a configured :class:`ExpenseSync.core.service.SyncService`.
"""

import sys

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('ExpenseSync requires Python 3.11 or higher.')

__version__ = '0.1.0'
__description__ = 'ExpenseSync: offline mutation queue and sync reconciler for a Firestore backed expense tracker.'

from .log import log

log.setup_logging()
