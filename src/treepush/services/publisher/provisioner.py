"""Repository provisioning: idempotent check-then-create."""

import logging

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_fixed

from treepush.services.publisher.exceptions import (
    AuthError,
    NotAccessible,
    ProvisioningError,
    RateLimited,
    RemoteReason,
    RemoteStoreError,
)
from treepush.services.publisher.github_client import GitHubClient
from treepush.services.publisher.models import RepositoryHandle

logger = logging.getLogger(__name__)


def _is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, RemoteStoreError) and exc.is_rate_limited


class RepositoryProvisioner:
    """Ensures the destination repository exists before upload begins."""

    def __init__(
        self,
        client: GitHubClient,
        verify_attempts: int = 3,
        verify_delay_seconds: float = 5.0,
    ):
        """Initialize provisioner.

        Args:
            client: GitHub client authenticated as the destination account
            verify_attempts: Attempts for rate-limited accessibility checks
            verify_delay_seconds: Fixed delay between those attempts
        """
        self.client = client
        self.verify_attempts = verify_attempts
        self.verify_delay_seconds = verify_delay_seconds

    async def ensure(self, account: str, name: str) -> RepositoryHandle:
        """Return the repository, creating it if it does not exist.

        Args:
            account: Owner login
            name: Repository name (already validated)

        Returns:
            RepositoryHandle of the existing or newly created repository

        Raises:
            AuthError: If the credential is rejected or lacks the repo scope
            RateLimited: If creation is throttled
            NotAccessible: If the name exists but the repository cannot be read
            ProvisioningError: For any other creation failure
        """
        logger.info(
            "Checking if repository exists",
            extra={"account": account, "repo_name": name},
        )
        try:
            data = await self.client.get_repository(account, name)
        except RemoteStoreError as e:
            if e.reason is RemoteReason.NOT_FOUND:
                pass
            elif e.is_rate_limited:
                logger.warning(
                    "Rate limit hit while checking repository existence, proceeding with creation attempt",
                    extra={"account": account, "repo_name": name},
                )
            elif e.reason is RemoteReason.UNAUTHORIZED:
                raise AuthError("GitHub authentication failed. Please check your token.") from e
            else:
                raise ProvisioningError(f"Failed to check repository: {e.message}") from e
        else:
            handle = RepositoryHandle.from_api(data)
            logger.info("Repository already exists", extra={"html_url": handle.html_url})
            return handle

        return await self._create(account, name)

    async def _create(self, account: str, name: str) -> RepositoryHandle:
        logger.info("Creating new repository", extra={"account": account, "repo_name": name})
        try:
            data = await self.client.create_repository(name, private=False, auto_init=False)
        except RemoteStoreError as e:
            logger.error(
                "Repository creation failed",
                extra={"status_code": e.status_code, "reason": e.reason.value, "error": e.message},
            )
            if e.reason is RemoteReason.UNAUTHORIZED:
                raise AuthError("GitHub authentication failed. Please check your token.") from e
            if e.is_rate_limited:
                raise RateLimited(f"GitHub API rate limit exceeded. Please wait before trying again. {e.message}") from e
            if e.reason is RemoteReason.FORBIDDEN:
                raise AuthError("GitHub API access forbidden. Check token permissions (needs 'repo' scope).") from e
            if e.reason is RemoteReason.NAME_EXISTS:
                logger.info(
                    "Repository name already exists, verifying access",
                    extra={"account": account, "repo_name": name},
                )
                return await self._reverify(account, name)
            raise ProvisioningError(f"Repository creation failed: {e.message}") from e

        handle = RepositoryHandle.from_api(data)
        logger.info("Repository created successfully", extra={"html_url": handle.html_url})
        return handle

    async def _reverify(self, account: str, name: str) -> RepositoryHandle:
        try:
            data = await self.client.get_repository(account, name)
        except RemoteStoreError as e:
            raise NotAccessible(
                f"Repository '{name}' exists but is not accessible. "
                "You might not have permission to access it."
            ) from e
        handle = RepositoryHandle.from_api(data)
        logger.info("Repository exists and is accessible", extra={"html_url": handle.html_url})
        return handle

    async def verify_accessible(self, account: str, name: str) -> RepositoryHandle:
        """Re-read the repository right before upload.

        Rate-limited reads are retried with a fixed delay; anything else is
        fatal immediately.

        Raises:
            RateLimited: If every attempt was rate limited
            NotAccessible: If the repository cannot be read
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.verify_attempts),
                wait=wait_fixed(self.verify_delay_seconds),
                retry=retry_if_exception(_is_rate_limited),
                before_sleep=self._log_verify_retry,
                reraise=True,
            ):
                with attempt:
                    data = await self.client.get_repository(account, name)
        except RemoteStoreError as e:
            if e.is_rate_limited:
                raise RateLimited(
                    "GitHub API rate limit exceeded during repository verification. Please try again later."
                ) from e
            raise NotAccessible(f"Repository not accessible: {e.message}") from e

        handle = RepositoryHandle.from_api(data)
        logger.info("Repository verified and accessible", extra={"html_url": handle.html_url})
        return handle

    @staticmethod
    def _log_verify_retry(retry_state) -> None:
        logger.warning(
            "Rate limit hit during repository verification, waiting before retry",
            extra={"attempt": retry_state.attempt_number},
        )
