"""
Error Taxonomy Module

Exceptions raised by the lending core. Every exception carries a user-facing
message; the API layer maps each class onto an HTTP status.
"""

from typing import Any, Dict, List, Optional


class LendingError(Exception):
    """Base class for all lending core errors"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LendingError, ValueError):
    """
    Field-level, user-correctable input error.

    Carries every failing field at once so the caller can render them inline.
    """

    def __init__(self, field_errors: Dict[str, List[str]], message: Optional[str] = None):
        self.field_errors = field_errors
        if message is None:
            fields = ", ".join(sorted(field_errors))
            message = f"Invalid input for: {fields}"
        super().__init__(message)


class AuthenticationError(LendingError):
    """Credentials or session token rejected"""


class AuthorizationError(LendingError):
    """Principal lacks the role required for an operation"""


class NotFoundError(LendingError):
    """Requested record does not exist"""


class LoanNotFoundError(NotFoundError):
    """No loan record with the given id in the expected collection"""


class UserNotFoundError(NotFoundError):
    """No user account with the given id"""


class PersistenceError(LendingError):
    """
    Generic persistence gateway failure.

    Safe to retry only when it occurred before a cross-collection transition
    began. ``application_id`` is set when a record was already created.
    """

    def __init__(self, message: str, application_id: Optional[str] = None):
        super().__init__(message)
        self.application_id = application_id


class StorageError(LendingError):
    """
    Document upload failed.

    The application record may already exist without document URLs; the
    upload can be retried against ``application_id``.
    """

    def __init__(self, message: str, application_id: Optional[str] = None):
        super().__init__(message)
        self.application_id = application_id


class PartialTransitionError(LendingError):
    """
    Destination insert succeeded but the source delete did not.

    Recovery is a delete-only retry of the source record; the destination
    record must not be inserted again.
    """

    def __init__(self, message: str, application_id: str, destination: str,
                 record: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.application_id = application_id
        self.destination = destination
        self.record = record
