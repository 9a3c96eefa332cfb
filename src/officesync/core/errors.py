"""Exception taxonomy and error classification.

Every failure the core surfaces derives from :class:`OfficeSyncError` so
callers can catch the whole family at once. :func:`classify_error` decides
which low-level failures are transient; only those are retried, and always
with a ceiling.
"""

from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ErrorType(Enum):
    """Classification of error types for appropriate handling."""
    RATE_LIMIT = "rate_limit"      # 429 errors - need backoff
    NETWORK = "network"            # Connection, timeout - transient
    API_ERROR = "api_error"        # 4xx/5xx errors - surfaced to the caller
    VALIDATION = "validation"      # Invalid input - don't retry
    UNKNOWN = "unknown"


class InviteFailure(str, Enum):
    """Reasons an invite cannot be redeemed."""

    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REVOKED = "revoked"
    EXHAUSTED = "exhausted"
    LOOKUP_FAILED = "lookup_failed"
    ACCEPT_FAILED = "accept_failed"
    TIMEOUT = "timeout"


INVITE_MESSAGES: Dict[InviteFailure, str] = {
    InviteFailure.NOT_FOUND: "Invite not found or invalid.",
    InviteFailure.EXPIRED: "This invite has expired.",
    InviteFailure.REVOKED: "This invite has been revoked.",
    InviteFailure.EXHAUSTED: "This invite link has reached its maximum number of uses.",
    InviteFailure.LOOKUP_FAILED: "The invite could not be loaded.",
    InviteFailure.ACCEPT_FAILED: "The invite could not be accepted.",
    InviteFailure.TIMEOUT: "Timed out while processing the invite.",
}


class OfficeSyncError(Exception):
    """Base class for all errors raised by officesync."""


class ConfigurationError(OfficeSyncError):
    """A required setting (such as a provider credential) is missing."""


class InvalidInputError(OfficeSyncError, ValueError):
    """Malformed caller input, rejected before any network call."""


class PermissionDeniedError(OfficeSyncError):
    """The acting user's role does not grant the requested capability."""

    def __init__(self, capability: str, role: Optional[str] = None) -> None:
        self.capability = capability
        self.role = role
        super().__init__(f"Role {role or 'none'} lacks capability '{capability}'")


class InviteError(OfficeSyncError):
    """An invite reached a terminal failure."""

    def __init__(self, failure: InviteFailure, message: Optional[str] = None) -> None:
        self.failure = failure
        self.message = message or INVITE_MESSAGES[failure]
        super().__init__(self.message)


class ProviderError(OfficeSyncError):
    """The video provider rejected a request or could not be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Any] = None,
    ) -> None:
        self.status_code = status_code
        self.details = details if details is not None else {}
        super().__init__(message)


class StoreError(OfficeSyncError):
    """A datastore read, write or procedure call failed."""

    def __init__(
        self,
        operation: str,
        detail: Any = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.operation = operation
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"{operation} failed: {detail}")


class SyncError(OfficeSyncError):
    """One or more collections failed during a mirror sync cycle."""

    def __init__(self, space_id: str, errors: Dict[str, BaseException]) -> None:
        self.space_id = space_id
        self.errors = errors
        failed = ", ".join(f"{name}: {exc}" for name, exc in errors.items())
        super().__init__(f"Sync of space {space_id} failed ({failed})")


def classify_error(error: BaseException) -> ErrorType:
    """
    Classify error type for appropriate handling.

    Args:
        error: Exception to classify

    Returns:
        ErrorType enum value
    """
    if isinstance(error, httpx.HTTPStatusError):
        if error.response.status_code == 429:
            return ErrorType.RATE_LIMIT
        return ErrorType.API_ERROR
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return ErrorType.NETWORK
    if isinstance(error, (InvalidInputError, ConfigurationError)):
        return ErrorType.VALIDATION
    if isinstance(error, (ProviderError, StoreError)):
        if error.status_code == 429:
            return ErrorType.RATE_LIMIT
        if error.status_code is None and isinstance(error.__cause__, (httpx.TimeoutException, httpx.NetworkError)):
            return ErrorType.NETWORK
        return ErrorType.API_ERROR
    return ErrorType.UNKNOWN


def is_transient(error: BaseException) -> bool:
    """True for failures worth a bounded retry (network blips only)."""
    return classify_error(error) == ErrorType.NETWORK
