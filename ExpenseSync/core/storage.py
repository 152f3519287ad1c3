"""
Local persisted state.

A small SQLite backed key/value store holding JSON text under fixed string keys: the
pending mutation log, the temporary id map and the last known snapshot of each entity
kind. Every call opens its own connection and runs in a worker thread so the event
loop is never blocked by disk I/O.
"""
import asyncio
import contextlib
import enum
import json
import logging
import pathlib
import sqlite3
from typing import Any, Dict, Iterable, Mapping, Optional

from .model import now
from ..status import status

TABLE_SCHEMA: Dict[str, str] = {
    'key': 'TEXT PRIMARY KEY',
    'value': 'TEXT NOT NULL',
    'updated': 'TEXT NOT NULL',
}


class Table(enum.StrEnum):
    """Enum for database tables."""
    Items = 'items'


class Key(enum.StrEnum):
    """Fixed storage keys."""
    PendingMutations = 'pending_mutations'
    TempIdMap = 'temp_id_map'
    Expenses = 'expenses'
    Categories = 'categories'
    Budgets = 'budgets'


class LocalStorage:
    """Key/value storage of JSON documents in a local SQLite database.

    Raises :class:`status.PersistenceFailureException` for any read or write error;
    callers decide whether to carry on in memory.
    """

    def __init__(self, db_path: pathlib.Path | str) -> None:
        self.db_path = pathlib.Path(db_path)
        self._initialize_schema()

    def _connection(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path))

    def _initialize_schema(self) -> None:
        columns = ', '.join(f'"{name}" {typedef}' for name, typedef in TABLE_SCHEMA.items())
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with contextlib.closing(self._connection()) as conn:
                conn.execute(f'CREATE TABLE IF NOT EXISTS {Table.Items.value} ({columns})')
                conn.commit()
        except (sqlite3.Error, OSError) as ex:
            raise status.PersistenceFailureException(
                f'Could not initialize the local database at {self.db_path}: {ex}'
            ) from ex
        logging.debug(f'Local storage ready at {self.db_path}')

    def _read(self, key: str) -> Optional[str]:
        with contextlib.closing(self._connection()) as conn:
            row = conn.execute(
                f'SELECT value FROM {Table.Items.value} WHERE key=?', (key,)
            ).fetchone()
        return row[0] if row else None

    def _write(self, values: Mapping[str, str]) -> None:
        updated = now().isoformat()
        with contextlib.closing(self._connection()) as conn:
            conn.executemany(
                f'INSERT INTO {Table.Items.value} (key, value, updated) VALUES (?, ?, ?) '
                'ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated=excluded.updated',
                [(key, value, updated) for key, value in values.items()]
            )
            conn.commit()

    def _remove(self, keys: Iterable[str]) -> None:
        with contextlib.closing(self._connection()) as conn:
            conn.executemany(f'DELETE FROM {Table.Items.value} WHERE key=?', [(k,) for k in keys])
            conn.commit()

    async def get_item(self, key: str) -> Any:
        """Return the decoded JSON value stored under key, or None if absent.

        Raises:
            status.PersistenceFailureException: If the database cannot be read or the value is not JSON.
        """
        try:
            text = await asyncio.to_thread(self._read, str(key))
        except sqlite3.Error as ex:
            raise status.PersistenceFailureException(f'Failed to read "{key}": {ex}') from ex

        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as ex:
            raise status.PersistenceFailureException(f'Stored value for "{key}" is not valid JSON: {ex}') from ex

    async def set_item(self, key: str, value: Any) -> None:
        """Encode value as JSON text and store it under key.

        Raises:
            status.PersistenceFailureException: If the value cannot be encoded or written.
        """
        await self.set_items({key: value})

    async def set_items(self, items: Mapping[str, Any]) -> None:
        """Store several values in a single transaction.

        Either every value is written or none is.

        Raises:
            status.PersistenceFailureException: If a value cannot be encoded or the write fails.
        """
        values: Dict[str, str] = {}
        for key, value in items.items():
            try:
                values[str(key)] = json.dumps(value, ensure_ascii=False)
            except (TypeError, ValueError) as ex:
                raise status.PersistenceFailureException(f'Cannot encode value for "{key}": {ex}') from ex

        try:
            await asyncio.to_thread(self._write, values)
        except sqlite3.Error as ex:
            raise status.PersistenceFailureException(f'Failed to write {list(values)}: {ex}') from ex

    async def remove_item(self, *keys: str) -> None:
        """Remove the given keys. Missing keys are ignored."""
        try:
            await asyncio.to_thread(self._remove, [str(k) for k in keys])
        except sqlite3.Error as ex:
            raise status.PersistenceFailureException(f'Failed to remove {list(keys)}: {ex}') from ex

    def delete(self) -> None:
        """Remove the database file from disk."""
        try:
            self.db_path.unlink(missing_ok=True)
        except OSError as ex:
            raise status.PersistenceFailureException(f'Error removing {self.db_path}: {ex}') from ex
        logging.info(f'Removed local database {self.db_path}')
