"""Custom exceptions for the publisher service.

Every exception carries an ``ErrorKind`` so callers route retry/fatal
decisions on structured data rather than on message text.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Machine-readable error classes."""

    VALIDATION = "validation"
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    NOT_ACCESSIBLE = "not_accessible"
    TRANSFER = "transfer"
    UPLOAD = "upload"
    PROVISIONING = "provisioning"
    REMOTE = "remote"


class RemoteReason(str, Enum):
    """Classification of a non-success response from the remote store."""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    STALE = "stale"
    NAME_EXISTS = "name_exists"
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    VALIDATION = "validation"
    SERVER = "server"
    NETWORK = "network"
    OTHER = "other"


class PublishError(Exception):
    """Base exception for the publisher service."""

    kind: ErrorKind = ErrorKind.REMOTE
    retriable: bool = False


class ValidationError(PublishError):
    """Exception raised when job fields, repository name or URL are malformed."""

    kind = ErrorKind.VALIDATION


class AuthError(PublishError):
    """Exception raised for a bad credential or a credential/owner mismatch."""

    kind = ErrorKind.AUTH


class RateLimited(PublishError):
    """Exception raised when remote store throttling outlasts local retries."""

    kind = ErrorKind.RATE_LIMITED
    retriable = True


class NotAccessible(PublishError):
    """Exception raised when a repository exists but cannot be reached."""

    kind = ErrorKind.NOT_ACCESSIBLE


class ProvisioningError(PublishError):
    """Exception raised when repository creation fails for any other reason."""

    kind = ErrorKind.PROVISIONING


class TransferError(PublishError):
    """Exception raised when the archive cannot be downloaded or extracted."""

    kind = ErrorKind.TRANSFER


class FetchFailed(TransferError):
    """Exception raised when the archive download fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ExtractFailed(TransferError):
    """Exception raised when the downloaded archive cannot be decompressed."""
    pass


class UploadError(PublishError):
    """Exception raised when a file upsert fails for a non rate-limit reason."""

    kind = ErrorKind.UPLOAD

    def __init__(self, message: str, outcome: Any = None):
        super().__init__(message)
        self.outcome = outcome


class RemoteStoreError(PublishError):
    """Non-success response from the remote store.

    Raised by the HTTP client only; components translate it into one of the
    job-level exceptions above.
    """

    kind = ErrorKind.REMOTE

    def __init__(self, status_code: int, reason: RemoteReason, message: str):
        super().__init__(f"{status_code} {reason.value}: {message}")
        self.status_code = status_code
        self.reason = reason
        self.message = message

    @property
    def is_rate_limited(self) -> bool:
        return self.reason is RemoteReason.RATE_LIMITED
