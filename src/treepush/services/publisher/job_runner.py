"""
Job Runner: entry point invoked once per inbound upload job.

Sweeps stale scratch, validates the job and checks the credential, then drives
fetch → strip → classify → provision → publish. Scratch files are removed
on every exit path.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from treepush.core.config import Settings
from treepush.services.publisher.archive_fetcher import ArchiveFetcher, sweep_stale_scratch
from treepush.services.publisher.exceptions import (
    AuthError,
    PublishError,
    RemoteReason,
    RemoteStoreError,
    ValidationError,
)
from treepush.services.publisher.file_classifier import classify
from treepush.services.publisher.github_client import GitHubClient
from treepush.services.publisher.models import Job, JobResult, UploadJobMessage
from treepush.services.publisher.orchestrator import UploadOrchestrator
from treepush.services.publisher.provisioner import RepositoryProvisioner
from treepush.services.publisher.stripper import strip_sensitive_content
from treepush.services.publisher.validation import validate_job_message

logger = logging.getLogger(__name__)


class JobRunner:
    """Runs upload jobs against the configured remote store."""

    def __init__(
        self,
        settings: Settings,
        client_factory: Optional[Callable[[str], GitHubClient]] = None,
        fetcher_factory: Optional[Callable[[], ArchiveFetcher]] = None,
    ):
        """Initialize runner.

        Args:
            settings: Application settings; the scratch root comes from here
            client_factory: Builds a GitHub client for a credential
            fetcher_factory: Builds an ArchiveFetcher bound to the scratch root
        """
        self.settings = settings
        self.client_factory = client_factory or self._default_client
        self.fetcher_factory = fetcher_factory or self._default_fetcher

    def _default_client(self, token: str) -> GitHubClient:
        return GitHubClient(
            token,
            base_url=self.settings.GITHUB_API_URL,
            timeout=self.settings.REQUEST_TIMEOUT,
        )

    def _default_fetcher(self) -> ArchiveFetcher:
        return ArchiveFetcher(
            self.settings.scratch_root,
            max_archive_size_bytes=self.settings.max_archive_size_bytes,
            timeout=self.settings.DOWNLOAD_TIMEOUT,
        )

    async def run(self, message: Union[UploadJobMessage, Dict[str, Any]]) -> JobResult:
        """Run one job to completion.

        Args:
            message: Parsed queue message or its raw JSON object

        Returns:
            JobResult with the repository URL and completion timestamp

        Raises:
            PublishError: Any job failure, already logged
        """
        start_time = time.time()
        sweep_stale_scratch(self.settings.scratch_root, self.settings.SCRATCH_MAX_AGE_SECONDS)
        try:
            if not isinstance(message, UploadJobMessage):
                try:
                    message = UploadJobMessage.model_validate(message)
                except PydanticValidationError as e:
                    raise ValidationError(f"Invalid job message: {e}") from e

            job = validate_job_message(message)
            logger.info(
                f"Processing: {job.repo_name} by {job.account}",
                extra={"account": job.account, "repo_name": job.repo_name},
            )

            async with self.client_factory(job.credential) as client:
                await self._verify_credential(client, job)
                result = await self._publish(client, job)

        except PublishError as e:
            logger.error(
                f"Upload failed: {e}",
                extra={
                    "error_kind": e.kind.value,
                    "error_type": type(e).__name__,
                    "processing_time_ms": int((time.time() - start_time) * 1000),
                },
                exc_info=True,
            )
            raise
        except Exception as e:
            logger.error(
                "Upload failed with unexpected error",
                extra={"error": str(e), "error_type": type(e).__name__},
                exc_info=True,
            )
            raise

        logger.info(
            f"Upload completed: {result.repo_url}",
            extra={
                "repo_url": result.repo_url,
                "files_uploaded": result.files_uploaded,
                "strategy": result.strategy,
                "processing_time_ms": int((time.time() - start_time) * 1000),
            },
        )
        return result

    async def _verify_credential(self, client: GitHubClient, job: Job) -> Optional[str]:
        """Resolve the credential's login and compare it with the job owner.

        A rate-limited check is skipped rather than failing the job.

        Returns:
            The resolved login, or None when verification was skipped
        """
        logger.info("Validating GitHub token")
        try:
            user = await client.get_authenticated_user()
        except RemoteStoreError as e:
            if e.is_rate_limited:
                logger.warning("Rate limit hit during token validation, skipping username verification")
                return None
            if e.reason in (RemoteReason.UNAUTHORIZED, RemoteReason.FORBIDDEN):
                raise AuthError(f"GitHub token validation failed: {e.message}") from e
            raise

        login = str(user.get("login") or "")
        if login.lower() != job.account.lower():
            raise AuthError(
                f"Token belongs to user '{login}' but expected '{job.account}'. "
                "Please check your configuration."
            )
        logger.info("GitHub token validated successfully", extra={"login": login})
        return login

    async def _publish(self, client: GitHubClient, job: Job) -> JobResult:
        settings = self.settings
        fetcher = self.fetcher_factory()
        try:
            working_dir = await fetcher.fetch(job.archive_url)
            if strip_sensitive_content(working_dir):
                logger.info("Workflow files removed to prevent permission issues")

            tree = classify(working_dir, settings.MAX_TEXT_FILE_BYTES)
            if not tree:
                raise ValidationError("No files found to upload")

            provisioner = RepositoryProvisioner(
                client,
                verify_attempts=settings.REPO_VERIFY_ATTEMPTS,
                verify_delay_seconds=settings.REPO_VERIFY_DELAY_SECONDS,
            )
            await provisioner.ensure(job.account, job.repo_name)
            handle = await provisioner.verify_accessible(job.account, job.repo_name)

            orchestrator = UploadOrchestrator.from_settings(client, settings)
            outcomes = await orchestrator.publish(tree, handle)
        finally:
            fetcher.cleanup()

        return JobResult(
            success=True,
            repo_url=f"{settings.GITHUB_WEB_URL.rstrip('/')}/{job.account}/{job.repo_name}",
            processed_at=datetime.now(timezone.utc),
            files_uploaded=len(outcomes),
            strategy=orchestrator.last_strategy.value,
        )
