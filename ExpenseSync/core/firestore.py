"""Cloud Firestore implementation of :class:`~ExpenseSync.core.remote.RemoteStore`.

Documents live under ``users/{uid}/{kind}`` and are accessed through the Firestore REST
API (v1) with ``google-api-python-client``. Requests are blocking and are run in worker
threads. Live snapshots are produced by polling the collection and pushing a new
snapshot whenever its contents change.

Field values are encoded to and from Firestore's typed ``Value`` objects by
:func:`encode_value` and :func:`decode_value`. Python field names are snake_case, the
stored documents use camelCase.
"""
import asyncio
import datetime
import logging
import socket
import ssl
from typing import Any, Callable, Dict, List, Mapping, Optional

import google.auth.exceptions
import google.oauth2.credentials
import google_auth_httplib2
import httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .auth import AuthExpiredError
from .model import Category, Entity, EntityKind, build_entity, coerce_payload, sort_entities, to_datetime
from .remote import RemoteStore, Subscription
from ..status import status

#: Python field name -> stored field name, where they differ
FIELD_NAMES: Dict[str, str] = {
    'category_id': 'categoryId',
    'created_at': 'createdAt',
    'updated_at': 'updatedAt',
}
STORED_NAMES: Dict[str, str] = {v: k for k, v in FIELD_NAMES.items()}

PAGE_SIZE: int = 300

CredentialsProvider = Callable[[], google.oauth2.credentials.Credentials]


def _format_timestamp(value: datetime.datetime) -> str:
    value = to_datetime(value)
    return value.strftime('%Y-%m-%dT%H:%M:%S.%fZ')


def _parse_timestamp(value: str) -> datetime.datetime:
    # Firestore returns up to nanosecond precision; fromisoformat only takes microseconds
    text = value.rstrip('Z')
    if '.' in text:
        head, fraction = text.split('.', 1)
        text = f'{head}.{fraction[:6].ljust(6, "0")}'
    return datetime.datetime.fromisoformat(text).replace(tzinfo=datetime.timezone.utc)


def encode_value(value: Any) -> Dict[str, Any]:
    """Convert a Python value to a Firestore ``Value`` object.

    Raises:
        TypeError: If the value has no Firestore representation.
    """
    if value is None:
        return {'nullValue': None}
    if isinstance(value, bool):
        return {'booleanValue': value}
    if isinstance(value, int):
        return {'integerValue': str(value)}
    if isinstance(value, float):
        return {'doubleValue': value}
    if isinstance(value, str):
        return {'stringValue': value}
    if isinstance(value, datetime.datetime):
        return {'timestampValue': _format_timestamp(value)}
    if isinstance(value, Category):
        value = value.to_dict()
    if isinstance(value, Mapping):
        return {'mapValue': {'fields': {k: encode_value(v) for k, v in value.items()}}}
    if isinstance(value, (list, tuple)):
        return {'arrayValue': {'values': [encode_value(v) for v in value]}}
    raise TypeError(f'Cannot store {type(value).__name__} in Firestore.')


def decode_value(value: Mapping[str, Any]) -> Any:
    """Convert a Firestore ``Value`` object to a Python value.

    Raises:
        ValueError: If the value type is not supported.
    """
    if 'nullValue' in value:
        return None
    if 'booleanValue' in value:
        return bool(value['booleanValue'])
    if 'integerValue' in value:
        return int(value['integerValue'])
    if 'doubleValue' in value:
        return float(value['doubleValue'])
    if 'stringValue' in value:
        return value['stringValue']
    if 'timestampValue' in value:
        return _parse_timestamp(value['timestampValue'])
    if 'mapValue' in value:
        fields = value['mapValue'].get('fields', {})
        return {k: decode_value(v) for k, v in fields.items()}
    if 'arrayValue' in value:
        return [decode_value(v) for v in value['arrayValue'].get('values', [])]
    raise ValueError(f'Unsupported Firestore value: {sorted(value)}')


def encode_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Encode a coerced payload as the ``fields`` of a Firestore document."""
    return {FIELD_NAMES.get(k, k): encode_value(v) for k, v in fields.items()}


def decode_document(kind: EntityKind, document: Mapping[str, Any]) -> Entity:
    """Build an entity from a Firestore document resource.

    Expense timestamps are read from the stored ``createdAt`` and ``updatedAt`` fields,
    falling back to the document's create and update times.

    Raises:
        status.PayloadInvalidException: If the stored fields do not match the kind's schema.
    """
    entity_id = document['name'].rsplit('/', 1)[-1]
    raw = {STORED_NAMES.get(k, k): decode_value(v) for k, v in document.get('fields', {}).items()}

    if kind in (EntityKind.Expense, EntityKind.Budget) and isinstance(raw.get('amount'), int):
        raw['amount'] = float(raw['amount'])

    stored_created = raw.pop('created_at', None)
    stored_updated = raw.pop('updated_at', None)
    fields = coerce_payload(kind, raw)

    created_at = _parse_timestamp(document['createTime']) if 'createTime' in document else None
    updated_at = _parse_timestamp(document['updateTime']) if 'updateTime' in document else None
    if isinstance(stored_created, datetime.datetime):
        created_at = stored_created
    if isinstance(stored_updated, datetime.datetime):
        updated_at = stored_updated
    return build_entity(kind, entity_id, fields, created_at=created_at, updated_at=updated_at)


class FirestoreRemoteStore(RemoteStore):
    """Per-user collections stored in Cloud Firestore.

    Args:
        project_id: The Google Cloud project hosting the database.
        credentials: Returns bearer credentials for the signed-in user. Called from worker threads.
        database: The Firestore database id.
        poll_interval: Seconds between reads of a subscribed collection.
        timeout: Socket timeout of a single HTTP request, in seconds.
    """

    def __init__(self, project_id: str, credentials: CredentialsProvider, database: str = '(default)',
                 poll_interval: float = 10.0, timeout: float = 30.0) -> None:
        if not project_id:
            raise status.SettingsInvalidException('The Firebase project id is not configured.')

        self.project_id = project_id
        self.database = database
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._credentials = credentials

    def _user_path(self, user_id: str) -> str:
        return f'projects/{self.project_id}/databases/{self.database}/documents/users/{user_id}'

    def _document_path(self, user_id: str, kind: EntityKind, entity_id: str) -> str:
        return f'{self._user_path(user_id)}/{kind.value}/{entity_id}'

    def _documents(self) -> Any:
        try:
            creds = self._credentials()
        except (AuthExpiredError, google.auth.exceptions.RefreshError) as ex:
            raise status.CredsInvalidException(str(ex)) from ex

        http = google_auth_httplib2.AuthorizedHttp(creds, http=httplib2.Http(timeout=self.timeout))
        service = build('firestore', 'v1', http=http, cache_discovery=False)
        return service.projects().databases().documents()

    def _execute_write(self, make_request: Callable[[Any], Any], path: str) -> Dict[str, Any]:
        try:
            return make_request(self._documents()).execute()
        except HttpError as ex:
            stat: Optional[int] = ex.resp.status if ex.resp else None
            if stat == 404:
                raise status.EntityNotFoundException(f'"{path}" does not exist.') from ex
            raise status.RemoteWriteFailureException(f'Error writing "{path}": {ex}') from ex
        except google.auth.exceptions.RefreshError as ex:
            raise status.CredsInvalidException(f'Could not authorize writing "{path}": {ex}') from ex
        except google.auth.exceptions.GoogleAuthError as ex:
            raise status.RemoteWriteFailureException(f'Error writing "{path}": {ex}') from ex
        except (socket.timeout, ssl.SSLError, OSError, httplib2.HttpLib2Error) as ex:
            raise status.RemoteWriteFailureException(f'Error writing "{path}": {ex}') from ex

    def _execute_read(self, make_request: Callable[[Any], Any], path: str) -> Dict[str, Any]:
        try:
            return make_request(self._documents()).execute()
        except HttpError as ex:
            raise status.ServiceUnavailableException(f'Error reading "{path}": {ex}') from ex
        except google.auth.exceptions.RefreshError as ex:
            raise status.CredsInvalidException(f'Could not authorize reading "{path}": {ex}') from ex
        except google.auth.exceptions.GoogleAuthError as ex:
            raise status.ServiceUnavailableException(f'Error reading "{path}": {ex}') from ex
        except socket.timeout as ex:
            raise status.ServiceUnavailableException(f'Timeout error fetching data: {ex}') from ex
        except ssl.SSLError as ex:
            raise status.ServiceUnavailableException(f'SSL error fetching data: {ex}') from ex
        except (OSError, httplib2.HttpLib2Error) as ex:
            raise status.ServiceUnavailableException(f'Error reading "{path}": {ex}') from ex

    async def create(self, user_id: str, kind: EntityKind, fields: Mapping[str, Any]) -> Entity:
        parent = self._user_path(user_id)
        body = {'fields': encode_fields(fields)}

        document = await asyncio.to_thread(
            self._execute_write,
            lambda docs: docs.createDocument(parent=parent, collectionId=kind.value, body=body),
            f'{parent}/{kind.value}',
        )
        entity = decode_document(kind, document)
        logging.debug(f'Created {kind.label} "{entity.id}" in Firestore')
        return entity

    async def update(self, user_id: str, kind: EntityKind, entity_id: str, fields: Mapping[str, Any]) -> None:
        name = self._document_path(user_id, kind, entity_id)
        body = {'fields': encode_fields(fields)}
        mask = list(body['fields'])

        await asyncio.to_thread(
            self._execute_write,
            lambda docs: docs.patch(
                name=name, body=body, updateMask_fieldPaths=mask, currentDocument_exists=True
            ),
            name,
        )
        logging.debug(f'Updated {kind.label} "{entity_id}" in Firestore')

    async def delete(self, user_id: str, kind: EntityKind, entity_id: str) -> None:
        name = self._document_path(user_id, kind, entity_id)
        await asyncio.to_thread(
            self._execute_write,
            lambda docs: docs.delete(name=name, currentDocument_exists=True),
            name,
        )
        logging.debug(f'Deleted {kind.label} "{entity_id}" from Firestore')

    def _list_documents(self, user_id: str, kind: EntityKind) -> List[Dict[str, Any]]:
        parent = self._user_path(user_id)
        documents: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            result = self._execute_read(
                lambda docs: docs.list(
                    parent=parent, collectionId=kind.value, pageSize=PAGE_SIZE, pageToken=page_token
                ),
                f'{parent}/{kind.value}',
            )
            documents.extend(result.get('documents', []))
            page_token = result.get('nextPageToken')
            if not page_token:
                return documents

    async def get_all(self, user_id: str, kind: EntityKind) -> List[Entity]:
        documents = await asyncio.to_thread(self._list_documents, user_id, kind)

        entities: List[Entity] = []
        for document in documents:
            try:
                entities.append(decode_document(kind, document))
            except (KeyError, ValueError, status.PayloadInvalidException) as ex:
                logging.warning(f'Skipping malformed document {document.get("name")}: {ex}')
        return sort_entities(kind, entities)

    def subscribe(self, user_id: str, kind: EntityKind) -> Subscription:
        """Poll the collection and push a snapshot every time its contents change.

        Must be called from a running event loop.
        """
        subscription = Subscription(kind, on_cancel=lambda s: task.cancel())
        task = asyncio.get_running_loop().create_task(self._poll(subscription, user_id, kind))
        task.add_done_callback(lambda t: self._poll_done(t, kind))
        return subscription

    @staticmethod
    def _poll_done(task: asyncio.Task, kind: EntityKind) -> None:
        if task.cancelled():
            return
        ex = task.exception()
        if ex is not None:
            logging.error(f'Live updates of {kind.value} stopped: {ex}', exc_info=ex)

    async def _poll(self, subscription: Subscription, user_id: str, kind: EntityKind) -> None:
        previous: Optional[List[Entity]] = None
        while not subscription.cancelled:
            try:
                entities = await self.get_all(user_id, kind)
            except (status.ServiceUnavailableException, status.CredsInvalidException) as ex:
                logging.debug(f'Polling {kind.value} failed: {ex}')
            else:
                if entities != previous:
                    previous = entities
                    subscription.push(entities)
            await asyncio.sleep(self.poll_interval)
