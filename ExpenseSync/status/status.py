"""Status definitions and exceptions for ExpenseSync.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions (e.g., UnauthenticatedException) for error handling in services
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    SettingsNotFound = enum.auto()
    SettingsInvalid = enum.auto()

    # Authentication status
    CredsNotFound = enum.auto()
    CredsInvalid = enum.auto()
    Unauthenticated = enum.auto()

    # Remote store status
    ServiceUnavailable = enum.auto()
    RemoteWriteFailure = enum.auto()
    EntityNotFound = enum.auto()

    # Local state
    PayloadInvalid = enum.auto()
    PersistenceFailure = enum.auto()
    ReconciliationEntryFailure = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.SettingsNotFound: 'Could not find the settings file.',
    Status.SettingsInvalid: 'The settings seem to be incomplete, or contain invalid values.',

    Status.CredsNotFound: 'Could not find saved credentials. Please sign in.',
    Status.CredsInvalid: 'Could not verify the saved credentials. Please sign in again.',
    Status.Unauthenticated: 'You need to be signed in to make changes.',

    Status.ServiceUnavailable: 'The remote service is unavailable. Please check your connection.',
    Status.RemoteWriteFailure: 'The change could not be saved to the server.',
    Status.EntityNotFound: 'The item no longer exists on the server.',

    Status.PayloadInvalid: 'The data is incomplete, or contains invalid values.',
    Status.PersistenceFailure: 'Could not read or write local storage.',
    Status.ReconciliationEntryFailure: 'Failed to sync some offline changes.',
}


def get_message(status: Status) -> str:
    """
    Get the message for a given status.

    Args:
        status (Status): The status enum.

    Returns:
        str: The message associated with the status.
    """
    return STATUS_MESSAGE.get(status, 'Unknown status')


class BaseStatusException(Exception):
    """Base exception for status-based errors in ExpenseSync.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.error(exception_message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class SettingsNotFoundException(BaseStatusException):
    """Exception raised when the settings file cannot be found."""
    status = Status.SettingsNotFound


class SettingsInvalidException(BaseStatusException):
    """Exception raised when the settings file is invalid or malformed."""
    status = Status.SettingsInvalid


class CredsNotFoundException(BaseStatusException):
    """Exception raised when stored credentials cannot be found."""
    status = Status.CredsNotFound


class CredsInvalidException(BaseStatusException):
    """Exception raised when stored credentials are invalid or expired."""
    status = Status.CredsInvalid


class UnauthenticatedException(BaseStatusException):
    """Exception raised when a mutation is attempted without a signed-in user."""
    status = Status.Unauthenticated


class ServiceUnavailableException(BaseStatusException):
    """Exception raised when the remote service cannot be reached."""
    status = Status.ServiceUnavailable


class RemoteWriteFailureException(BaseStatusException):
    """Exception raised when the remote store rejects a write."""
    status = Status.RemoteWriteFailure


class EntityNotFoundException(RemoteWriteFailureException):
    """Exception raised when the targeted remote document does not exist."""
    status = Status.EntityNotFound


class PayloadInvalidException(BaseStatusException):
    """Exception raised when an entity payload fails schema validation."""
    status = Status.PayloadInvalid


class PersistenceFailureException(BaseStatusException):
    """Exception raised when local storage cannot be read or written."""
    status = Status.PersistenceFailure


class ReconciliationEntryFailureException(BaseStatusException):
    """Exception describing a queued mutation that failed to replay."""
    status = Status.ReconciliationEntryFailure

    def __init__(self, message: str = None, mutation=None):
        self.mutation = mutation
        super().__init__(message)
