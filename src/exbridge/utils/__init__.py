"""Utility modules for exbridge."""

from exbridge.utils.cache import MemoryCache
from exbridge.utils.exceptions import (
    APIError,
    DependencyNotReadyError,
    ErrorKind,
    ExBridgeError,
    FatalSyncError,
    MappingNotFoundError,
    MappingRegistrationError,
    RateLimitError,
    SyncError,
    ValidationError,
)
from exbridge.utils.retry import retry_with_backoff

__all__ = [
    "APIError",
    "DependencyNotReadyError",
    "ErrorKind",
    "ExBridgeError",
    "FatalSyncError",
    "MappingNotFoundError",
    "MappingRegistrationError",
    "MemoryCache",
    "RateLimitError",
    "SyncError",
    "ValidationError",
    "retry_with_backoff",
]
