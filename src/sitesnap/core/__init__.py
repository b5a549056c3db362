"""
Core utilities shared across sitesnap: errors, retry and logging.
"""

from .exceptions import (
    SitesnapError,
    ConfigError,
    RepositoryNotConfigured,
    ValidationError,
    SnapshotNotFoundLocally,
    SnapshotNotFoundRemotely,
    PackagingError,
    ScrubError,
    NetworkError,
    RemoteConflict,
    IntegrityError,
    CacheLockTimeout,
)
from .retry import RetryConfig, retry_with_backoff

__all__ = [
    "SitesnapError",
    "ConfigError",
    "RepositoryNotConfigured",
    "ValidationError",
    "SnapshotNotFoundLocally",
    "SnapshotNotFoundRemotely",
    "PackagingError",
    "ScrubError",
    "NetworkError",
    "RemoteConflict",
    "IntegrityError",
    "CacheLockTimeout",
    "RetryConfig",
    "retry_with_backoff",
]
