"""Tests for custom exceptions."""

import pytest

from treepush.services.publisher.exceptions import (
    AuthError,
    ErrorKind,
    ExtractFailed,
    FetchFailed,
    NotAccessible,
    ProvisioningError,
    PublishError,
    RateLimited,
    RemoteReason,
    RemoteStoreError,
    TransferError,
    UploadError,
    ValidationError,
)


@pytest.mark.parametrize(
    "exc_class, kind",
    [
        (ValidationError, ErrorKind.VALIDATION),
        (AuthError, ErrorKind.AUTH),
        (RateLimited, ErrorKind.RATE_LIMITED),
        (NotAccessible, ErrorKind.NOT_ACCESSIBLE),
        (ProvisioningError, ErrorKind.PROVISIONING),
        (TransferError, ErrorKind.TRANSFER),
        (ExtractFailed, ErrorKind.TRANSFER),
        (UploadError, ErrorKind.UPLOAD),
    ],
)
def test_exception_kinds(exc_class, kind):
    """Test that every job-level exception carries its ErrorKind."""
    error = exc_class("boom")

    assert isinstance(error, PublishError)
    assert error.kind is kind
    assert str(error) == "boom"


def test_only_rate_limited_is_retriable():
    assert RateLimited("slow down").retriable is True
    assert UploadError("failed").retriable is False
    assert ValidationError("bad").retriable is False


def test_fetch_failed_carries_status_code():
    error = FetchFailed("Failed to download zip: 404 Not Found", status_code=404)

    assert isinstance(error, TransferError)
    assert error.status_code == 404


def test_upload_error_carries_outcome():
    error = UploadError("failed", outcome={"path": "a.txt"})

    assert error.outcome == {"path": "a.txt"}


def test_remote_store_error():
    error = RemoteStoreError(403, RemoteReason.RATE_LIMITED, "API rate limit exceeded")

    assert error.kind is ErrorKind.REMOTE
    assert error.is_rate_limited is True
    assert error.status_code == 403
    assert error.message == "API rate limit exceeded"
    assert str(error) == "403 rate_limited: API rate limit exceeded"

    assert RemoteStoreError(404, RemoteReason.NOT_FOUND, "Not Found").is_rate_limited is False
