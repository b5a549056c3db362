"""
Custom exceptions for sitesnap.

Every error carries enough context (operation, snapshot id, repository name)
for a user to retry the whole command safely.
"""

from typing import Dict, Optional


class SitesnapError(Exception):
    """Base exception for all sitesnap errors."""

    # Whether the failing call may succeed if simply repeated
    transient = False

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        snapshot_id: Optional[str] = None,
        repository: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.snapshot_id = snapshot_id
        self.repository = repository

    def context(self) -> Dict[str, str]:
        """Return the non-empty context fields."""
        fields = {
            "operation": self.operation,
            "snapshot_id": self.snapshot_id,
            "repository": self.repository,
        }
        return {k: v for k, v in fields.items() if v}

    def with_context(self, **fields: Optional[str]) -> "SitesnapError":
        """Fill in context fields that are still unset and return self."""
        for key in ("operation", "snapshot_id", "repository"):
            value = fields.get(key)
            if value and not getattr(self, key):
                setattr(self, key, value)
        return self

    def __str__(self) -> str:
        ctx = self.context()
        if not ctx:
            return self.message
        details = " ".join(f"{k}={v}" for k, v in ctx.items())
        return f"{self.message} ({details})"


class ConfigError(SitesnapError):
    """
    Error in sitesnap configuration.

    Raised when:
    - The configuration file is not valid YAML
    - A repository entry is missing its name
    """
    pass


class RepositoryNotConfigured(SitesnapError):
    """No usable repository could be resolved."""
    pass


class ValidationError(SitesnapError):
    """
    User-supplied input failed validation.

    Raised before any I/O begins, e.g. when a project slug contains
    disallowed characters or a description is empty.
    """

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field


class SnapshotNotFoundLocally(SitesnapError):
    """An explicit snapshot id is not present in the local cache."""
    pass


class PackagingError(SitesnapError):
    """
    Packaging of a site failed.

    Raised when:
    - A file or directory under the site root cannot be read
    - The database is unreachable or cannot be exported
    - The walker produces a duplicate manifest path
    """
    pass


class ScrubError(PackagingError):
    """Personal data could not be scrubbed from the database export."""
    pass


class NetworkError(SitesnapError):
    """
    Transient failure talking to a repository.

    Retried with backoff; surfaced only after the retry budget is exhausted.
    """

    transient = True


class RemoteConflict(SitesnapError):
    """The snapshot id is already registered remotely with different content."""

    def __init__(
        self,
        message: str,
        local_hash: Optional[str] = None,
        remote_hash: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.local_hash = local_hash
        self.remote_hash = remote_hash


class IntegrityError(SitesnapError):
    """Stored or transferred content does not match its hash."""
    pass


class CacheLockTimeout(SitesnapError):
    """The local cache lock could not be acquired in time."""
    pass


class SnapshotNotFoundRemotely(SitesnapError):
    """The snapshot id is not registered with the repository."""
    pass
