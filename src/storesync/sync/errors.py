"""Exception hierarchy for the synchronization subsystem.

Every error carries a ``retryable`` flag. Transient failures (network, rate
limiting, timeouts) are retried through the operation queue's backoff;
structural failures (bad configuration, malformed responses, missing
permissions) are surfaced and never retried automatically.
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync operations."""

    retryable = False

    def __init__(self, message: str = "", *, details: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)
        self.details = details


class NotConfiguredError(SyncError):
    """Remote sync is not configured."""

    def __init__(self, missing_fields=None):
        self.missing_fields = list(missing_fields or [])
        message = "Remote sync is not configured"
        if self.missing_fields:
            message += f" (missing: {', '.join(self.missing_fields)})"
        super().__init__(message)


class MappingNotFoundError(SyncError):
    """Item mapping not found."""


class InvalidRemoteResponseError(SyncError):
    """Invalid response from the remote system."""


class ConflictError(SyncError):
    """Sync conflict detected."""


class DuplicateMappingError(ConflictError):
    """Another local entity already claims this remote object."""

    def __init__(self, remote_object_id: str, existing_local_id, attempted_local_id):
        self.remote_object_id = remote_object_id
        self.existing_local_id = existing_local_id
        self.attempted_local_id = attempted_local_id
        super().__init__(
            f"Remote object {remote_object_id} is already mapped to {existing_local_id}; "
            f"refusing to map it to {attempted_local_id}"
        )


class StaleVersionError(ConflictError):
    """Mapping write would move the version backwards."""


class VersionConflictError(ConflictError):
    """The remote version advanced since the last sync."""

    def __init__(self, remote_object_id: Optional[str] = None, expected_version=None, actual_version=None):
        self.remote_object_id = remote_object_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Remote version conflict for {remote_object_id}: "
            f"expected {expected_version}, found {actual_version}"
        )


class SyncInProgressError(SyncError):
    """Sync already in progress."""


class NotAuthenticatedError(SyncError):
    """Authentication with the remote system failed."""


class InsufficientPermissionsError(SyncError):
    """The remote credentials lack the required permissions."""


class NetworkError(SyncError):
    """Network connectivity issues."""

    retryable = True

    def __init__(self, message: str = "", cause: Optional[BaseException] = None):
        super().__init__(message or (str(cause) if cause else ""))
        self.cause = cause


class RateLimitError(NetworkError):
    """Remote rate limit exceeded."""


class RequestTimeoutError(NetworkError):
    """Remote call timed out; the remote state is unknown."""


class EntityNotFoundError(SyncError):
    """Referenced entity does not exist."""


def is_retryable(error: BaseException) -> bool:
    """Return True if the error should be retried via queue backoff."""
    return bool(getattr(error, "retryable", False))
