"""
Identity and credential management.

:class:`Identity` exposes the signed-in user and notifies listeners through the
``userChanged`` signal. :class:`FirebaseIdentity` signs users in with e-mail and
password against the Identity Toolkit API, keeps the session on disk and refreshes the
ID token through the secure token endpoint. The ID token is the bearer credential the
Firestore store uses.
"""

import asyncio
import dataclasses
import datetime
import json
import logging
import pathlib
import threading
import urllib.parse
from typing import Any, Dict, Optional

import google.auth.transport.requests
import google.oauth2.credentials
from PySide6 import QtCore
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..status import status

SECURE_TOKEN_URL = 'https://securetoken.googleapis.com/v1/token'

# Refresh a little before the token actually expires
EXPIRY_MARGIN = datetime.timedelta(minutes=5)


class AuthExpiredError(Exception):
    """Raised when the session cannot be refreshed and the user has to sign in again."""
    pass


@dataclasses.dataclass(frozen=True)
class User:
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None


class Identity(QtCore.QObject):
    """The current user, and notifications when it changes.

    Signals:
        userChanged (object): Emitted with the new :class:`User`, or None after sign-out.
    """
    userChanged = QtCore.Signal(object)

    def __init__(self, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self._user: Optional[User] = None

    @property
    def user(self) -> Optional[User]:
        return self._user

    @property
    def user_id(self) -> Optional[str]:
        return self._user.uid if self._user else None

    def _set_user(self, user: Optional[User]) -> None:
        if user == self._user:
            return
        self._user = user
        logging.info(f'Signed in as {user.uid}' if user else 'Signed out')
        self.userChanged.emit(user)

    async def sign_out(self) -> None:
        self._set_user(None)


class LocalIdentity(Identity):
    """Identity without a backend: whoever calls :meth:`sign_in` is the user."""

    async def sign_in(self, uid: str, email: Optional[str] = None, display_name: Optional[str] = None) -> User:
        user = User(uid=uid, email=email, display_name=display_name)
        self._set_user(user)
        return user


class FirebaseIdentity(Identity):
    """E-mail and password sign-in with Firebase Authentication.

    The session (ID token, refresh token, expiry) is saved to ``creds_path`` so the
    user stays signed in, and can work offline, across restarts.
    """

    def __init__(self, api_key: str, creds_path: pathlib.Path | str,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        if not api_key:
            raise status.SettingsInvalidException('The Firebase API key is not configured.')

        self.api_key = api_key
        self.creds_path = pathlib.Path(creds_path)
        self._lock = threading.Lock()
        self._session: Optional[Dict[str, Any]] = None

    def _accounts(self) -> Any:
        service = build('identitytoolkit', 'v1', developerKey=self.api_key, cache_discovery=False)
        return service.accounts()

    def _call(self, request: Any) -> Dict[str, Any]:
        try:
            return request.execute()
        except HttpError as ex:
            try:
                reason = json.loads(ex.content).get('error', {}).get('message', str(ex))
            except (ValueError, AttributeError):
                reason = str(ex)
            raise status.CredsInvalidException(reason) from ex
        except OSError as ex:
            raise status.ServiceUnavailableException(str(ex)) from ex

    def _start_session(self, response: Dict[str, Any]) -> User:
        expiry = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(
            seconds=int(response.get('expiresIn', 3600)))
        session = {
            'uid': response['localId'],
            'email': response.get('email'),
            'display_name': response.get('displayName') or None,
            'id_token': response['idToken'],
            'refresh_token': response['refreshToken'],
            'expiry': expiry.isoformat(),
        }
        with self._lock:
            self._session = session
            self._save_session(session)
        user = User(uid=session['uid'], email=session['email'], display_name=session['display_name'])
        self._set_user(user)
        return user

    def _save_session(self, session: Dict[str, Any]) -> None:
        self.creds_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.creds_path, 'w', encoding='utf-8') as f:
            json.dump(session, f, indent=4)
        logging.debug(f'Credentials saved to {self.creds_path}.')

    async def sign_in(self, email: str, password: str) -> User:
        """Sign in with e-mail and password.

        Raises:
            status.CredsInvalidException: If the provider rejects the credentials.
            status.ServiceUnavailableException: If the provider cannot be reached.
        """
        request = self._accounts().signInWithPassword(
            body={'email': email, 'password': password, 'returnSecureToken': True})
        response = await asyncio.to_thread(self._call, request)
        return self._start_session(response)

    async def register(self, email: str, password: str, display_name: Optional[str] = None) -> User:
        """Create an account and sign in with it."""
        request = self._accounts().signUp(
            body={'email': email, 'password': password, 'returnSecureToken': True})
        response = await asyncio.to_thread(self._call, request)
        if display_name:
            update = self._accounts().update(
                body={'idToken': response['idToken'], 'displayName': display_name, 'returnSecureToken': False})
            await asyncio.to_thread(self._call, update)
            response['displayName'] = display_name
        return self._start_session(response)

    async def reset_password(self, email: str) -> None:
        """Send a password reset e-mail."""
        request = self._accounts().sendOobCode(body={'requestType': 'PASSWORD_RESET', 'email': email})
        await asyncio.to_thread(self._call, request)
        logging.info(f'Password reset e-mail sent to {email}')

    def restore(self) -> Optional[User]:
        """Load a saved session from disk, without contacting the network.

        Raises:
            status.CredsInvalidException: If the saved session is corrupt; the file is removed.
        """
        if not self.creds_path.exists():
            logging.debug('No saved credentials found.')
            return None
        try:
            with open(self.creds_path, 'r', encoding='utf-8') as f:
                session = json.load(f)
            user = User(uid=session['uid'], email=session.get('email'),
                        display_name=session.get('display_name'))
            datetime.datetime.fromisoformat(session['expiry'])
            if not session.get('id_token') or not session.get('refresh_token'):
                raise ValueError('Saved session has no tokens')
        except (ValueError, KeyError, TypeError) as ex:
            self.creds_path.unlink(missing_ok=True)
            raise status.CredsInvalidException('Failed to load credentials') from ex

        with self._lock:
            self._session = session
        self._set_user(user)
        return user

    def get_credentials(self) -> google.oauth2.credentials.Credentials:
        """Return bearer credentials for the remote store, refreshing the token if needed.

        Blocking; call from a worker thread.

        Raises:
            AuthExpiredError: If nobody is signed in or the refresh token was rejected.
        """
        with self._lock:
            if self._session is None:
                raise AuthExpiredError('No credentials found; sign-in required')

            expiry = datetime.datetime.fromisoformat(self._session['expiry'])
            if datetime.datetime.now(datetime.timezone.utc) + EXPIRY_MARGIN >= expiry:
                self._refresh()

            return google.oauth2.credentials.Credentials(token=self._session['id_token'])

    def _refresh(self) -> None:
        logging.debug('ID token expired; refreshing.')
        request = google.auth.transport.requests.Request()
        response = request(
            url=f'{SECURE_TOKEN_URL}?key={self.api_key}',
            method='POST',
            body=urllib.parse.urlencode({
                'grant_type': 'refresh_token',
                'refresh_token': self._session['refresh_token'],
            }),
            headers={'Content-Type': 'application/x-www-form-urlencoded'},
        )
        if response.status != 200:
            raise AuthExpiredError(f'Token refresh failed with HTTP {response.status}; sign-in required')

        data = json.loads(response.data)
        expiry = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(
            seconds=int(data.get('expires_in', 3600)))
        self._session.update({
            'id_token': data['id_token'],
            'refresh_token': data['refresh_token'],
            'expiry': expiry.isoformat(),
        })
        self._save_session(self._session)
        logging.debug('Successfully refreshed credentials.')

    async def sign_out(self) -> None:
        """Forget the session and delete the saved credentials."""
        with self._lock:
            self._session = None
            if self.creds_path.exists():
                logging.debug(f'Deleting {self.creds_path}...')
                self.creds_path.unlink()
        await super().sign_out()
