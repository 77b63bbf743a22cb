"""
Error kinds raised and handled by the synchronization engine.

The orchestrator decides per kind whether an error ends the run or is
isolated to a single identity or action.
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class ConnectionFailure(SyncError):
    """Raised when a directory or cloud session cannot be established."""
    pass


class FetchError(SyncError):
    """Raised when a remote listing or membership query fails."""
    pass


class ValidationFailure(SyncError):
    """Raised when a user, group or OU fails the pre-mutation existence check."""

    def __init__(self, entity_type: str, name: str, message: Optional[str] = None):
        self.entity_type = entity_type
        self.name = name
        super().__init__(message or f"Invalid {entity_type}: {name}")


class MutationError(SyncError):
    """An add/remove membership call failed."""

    FAILED = 'failed'
    TIMEOUT = 'timeout'
    VALIDATION = 'validation'

    def __init__(self, message: str, kind: str = FAILED, cause: Optional[BaseException] = None):
        self.kind = kind
        self.cause = cause
        super().__init__(message)


class SyncAbortedError(SyncError):
    """Raised when a run is cancelled before completing."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class RunDeadlineExceeded(SyncAbortedError):
    """Raised when the overall run deadline passes."""
    pass


def is_timeout_error(exception: BaseException) -> bool:
    """
    Determine if an exception represents a remote call timing out.

    Args:
        exception: Exception raised by a directory or cloud call

    Returns:
        True if the failure was a timeout
    """
    if isinstance(exception, TimeoutError):
        return True

    # botocore ConnectTimeoutError / ReadTimeoutError, ldap3 LDAPResponseTimeoutError
    name = type(exception).__name__.lower()
    if 'timeout' in name:
        return True

    return 'timed out' in str(exception).lower()
