"""Validation of job fields before any network call is made."""

import logging
import re
from urllib.parse import urlparse

from treepush.services.publisher.exceptions import ValidationError
from treepush.services.publisher.models import Job, UploadJobMessage

logger = logging.getLogger(__name__)

REPO_NAME_MAX_LENGTH = 100
ARCHIVE_URL_MAX_LENGTH = 2048

REPO_NAME_PATTERN = re.compile(r"[A-Za-z0-9._-]+")
# GitHub logins: alphanumerics and single inner hyphens, at most 39 chars
ACCOUNT_PATTERN = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9]|-(?=[A-Za-z0-9])){0,38}")
DANGEROUS_CHARACTERS = ("<", ">", '"', "'", "`")

RESERVED_REPO_NAMES = frozenset(
    {"api", "www", "admin", "root", "git", "github", "help", "con", "prn", "aux", "nul"}
)

TOKEN_PREFIXES = ("ghp_", "github_pat_")


def validate_repository_name(name: object) -> str:
    """Validate a destination repository name.

    Args:
        name: Candidate repository name

    Returns:
        The name, unchanged

    Raises:
        ValidationError: If the name breaks any naming rule
    """
    if not isinstance(name, str) or not name:
        raise ValidationError("Repository name is required")

    if len(name) > REPO_NAME_MAX_LENGTH:
        raise ValidationError(f"Repository name must be 1-{REPO_NAME_MAX_LENGTH} characters")

    if any(ch in name for ch in DANGEROUS_CHARACTERS) or ".." in name:
        raise ValidationError("Repository name contains invalid characters")

    if not REPO_NAME_PATTERN.fullmatch(name):
        raise ValidationError(
            "Repository name can only contain letters, numbers, dots, hyphens, and underscores"
        )

    if name[0] in ".-" or name[-1] in ".-":
        raise ValidationError("Repository name cannot start or end with dots or hyphens")

    if name.lower() in RESERVED_REPO_NAMES:
        raise ValidationError("Repository name is reserved")

    return name


def validate_account_name(account: object) -> str:
    """Validate the destination account login."""
    if not isinstance(account, str) or not ACCOUNT_PATTERN.fullmatch(account):
        raise ValidationError(f"Invalid account name: {account!r}")
    return account


def validate_archive_url(url: object) -> str:
    """Validate the archive source URL.

    Only HTTPS URLs pointing at a ``.zip`` resource are accepted.

    Raises:
        ValidationError: If the URL is missing, too long, not HTTPS or not a zip
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("ZIP URL is required")

    url = url.strip()
    if len(url) > ARCHIVE_URL_MAX_LENGTH:
        raise ValidationError("URL too long")

    parsed = urlparse(url)
    if parsed.scheme != "https" or not parsed.netloc:
        raise ValidationError("Only HTTPS URLs are allowed")

    if not parsed.path.lower().endswith(".zip"):
        raise ValidationError("URL must point to a .zip file")

    return url


def check_token_format(token: str) -> bool:
    """Loosely check the credential format; a mismatch only warns."""
    if token.startswith(TOKEN_PREFIXES):
        return True
    logger.warning(
        "Token doesn't match expected GitHub format, authentication may fail",
        extra={"expected_prefixes": list(TOKEN_PREFIXES)},
    )
    return False


def validate_job_message(message: UploadJobMessage) -> Job:
    """Turn a raw queue message into a validated Job.

    Raises:
        ValidationError: On missing fields or any invalid field
    """
    missing = message.missing_fields()
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    account = validate_account_name(message.username)
    repo_name = validate_repository_name(message.repo_name)
    archive_url = validate_archive_url(message.zip_url)
    check_token_format(message.auth_token)

    return Job(
        account=account,
        repo_name=repo_name,
        archive_url=archive_url,
        credential=message.auth_token,
    )
