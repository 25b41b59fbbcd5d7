"""Custom exception hierarchy for exbridge."""

from enum import Enum


class ExBridgeError(Exception):
    """Base exception for all exbridge errors."""

    pass


class APIError(ExBridgeError):
    """Error communicating with the Bitrix24 portal."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        """Initialize API error.

        Args:
            message: Error message.
            status_code: HTTP status code if available.
        """
        super().__init__(message)
        self.status_code = status_code


class MappingRegistrationError(ExBridgeError):
    """Invalid object mapping passed to the registry. Never retried."""

    retryable = False


class ErrorKind(str, Enum):
    """Classification of failures raised while syncing a record."""

    DEPENDENCY_NOT_READY = "dependency_not_ready"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    MAPPING_NOT_FOUND = "mapping_not_found"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.DEPENDENCY_NOT_READY, ErrorKind.RATE_LIMIT)


class SyncError(ExBridgeError):
    """Error during data synchronization, tagged with its kind."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def retryable(self) -> bool:
        """Whether the failing record should be scheduled for another attempt."""
        return self.kind.retryable


class DependencyNotReadyError(SyncError):
    """A referenced entity has not been synced yet."""

    kind = ErrorKind.DEPENDENCY_NOT_READY


class RateLimitError(SyncError):
    """The portal throttled the request."""

    kind = ErrorKind.RATE_LIMIT

    def __init__(self, message: str = "API rate limit exceeded", status_code: int = 429) -> None:
        super().__init__(message)
        self.status_code = status_code


class ValidationError(SyncError):
    """Malformed or incomplete input data."""

    kind = ErrorKind.VALIDATION


class MappingNotFoundError(SyncError):
    """No mapping is registered for an object type."""

    kind = ErrorKind.MAPPING_NOT_FOUND

    def __init__(self, object_type: str) -> None:
        super().__init__(f"No mapping registered for object type: {object_type}")
        self.object_type = object_type


class FatalSyncError(ExBridgeError):
    """Unrecoverable condition that aborts the whole cycle for an entity type."""

    def __init__(self, entity_type: str, message: str) -> None:
        super().__init__(message)
        self.entity_type = entity_type
