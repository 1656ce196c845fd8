"""Upload orchestration: batched per-file upserts and single atomic commits."""

import asyncio
import base64
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from treepush.services.publisher.exceptions import (
    RateLimited,
    RemoteReason,
    RemoteStoreError,
    UploadError,
)
from treepush.services.publisher.github_client import GitHubClient
from treepush.services.publisher.models import RepositoryHandle, UploadOutcome, WorkingFile

logger = logging.getLogger(__name__)

BLOB_MODE = "100644"


class PublishStrategy(str, Enum):
    """How a WorkingTree is published."""

    AUTO = "auto"
    ATOMIC = "atomic"
    BATCHED = "batched"


class _BatchRateLimited(Exception):
    """Internal signal that a batch hit the rate limit and should be retried whole."""

    def __init__(self, cause: RemoteStoreError):
        super().__init__(str(cause))
        self.cause = cause


def partition(tree: Sequence[WorkingFile], batch_size: int) -> List[List[WorkingFile]]:
    """Split a tree into consecutive batches of at most ``batch_size`` files."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [list(tree[i:i + batch_size]) for i in range(0, len(tree), batch_size)]


class UploadOrchestrator:
    """Publishes a WorkingTree into a repository.

    Two strategies are available. The atomic strategy writes one tree and one
    commit and fast-forwards the branch, so all files appear at once. The
    batched strategy upserts each file through the contents API; every file
    is its own commit, so a failure part way leaves earlier batches in place.
    """

    def __init__(
        self,
        client: GitHubClient,
        strategy: PublishStrategy = PublishStrategy.AUTO,
        batch_size: int = 10,
        batch_pause_seconds: float = 0.2,
        rate_limit_pause_seconds: float = 2.0,
        atomic_max_files: int = 500,
        atomic_max_bytes: int = 20 * 1024 * 1024,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize orchestrator.

        Args:
            client: GitHub client authenticated as the destination account
            strategy: Requested publication strategy
            batch_size: Files per batch (and concurrency bound) for batched uploads
            batch_pause_seconds: Pause between batches
            rate_limit_pause_seconds: Pause before retrying a rate-limited batch
            atomic_max_files: Largest tree, in files, submitted as one commit
            atomic_max_bytes: Largest tree, in bytes, submitted as one commit
            sleep: Awaitable sleep, replaceable in tests
        """
        self.client = client
        self.strategy = PublishStrategy(strategy)
        self.batch_size = batch_size
        self.batch_pause_seconds = batch_pause_seconds
        self.rate_limit_pause_seconds = rate_limit_pause_seconds
        self.atomic_max_files = atomic_max_files
        self.atomic_max_bytes = atomic_max_bytes
        self._sleep = sleep
        self.last_strategy: Optional[PublishStrategy] = None

    @classmethod
    def from_settings(cls, client: GitHubClient, settings) -> "UploadOrchestrator":
        return cls(
            client,
            strategy=PublishStrategy(settings.PUBLISH_STRATEGY),
            batch_size=settings.UPLOAD_BATCH_SIZE,
            batch_pause_seconds=settings.BATCH_PAUSE_SECONDS,
            rate_limit_pause_seconds=settings.RATE_LIMIT_PAUSE_SECONDS,
            atomic_max_files=settings.ATOMIC_MAX_FILES,
            atomic_max_bytes=settings.ATOMIC_MAX_BYTES,
        )

    def fits_atomic(self, tree: Sequence[WorkingFile]) -> bool:
        """Check whether a tree is small enough to submit as one commit."""
        return (
            len(tree) <= self.atomic_max_files
            and sum(f.size for f in tree) <= self.atomic_max_bytes
        )

    async def publish(self, tree: Sequence[WorkingFile], handle: RepositoryHandle) -> List[UploadOutcome]:
        """Publish ``tree`` into ``handle`` with the configured strategy.

        AUTO prefers the atomic commit for small trees on repositories that
        already have a branch head, and falls back to batched uploads for
        large trees or empty repositories.

        Raises:
            RateLimited: If throttling outlasts the batch retry
            UploadError: If any file fails for another reason
        """
        if not tree:
            return []

        if self.strategy is PublishStrategy.BATCHED or (
            self.strategy is PublishStrategy.AUTO and not self.fits_atomic(tree)
        ):
            return await self.publish_batched(tree, handle)

        head_sha = await self._branch_head(handle)
        if head_sha is None:
            if self.strategy is PublishStrategy.ATOMIC:
                raise UploadError(
                    f"Atomic commit requires an initialized branch '{handle.default_branch}'"
                )
            logger.info(
                "Repository has no branch head yet, falling back to batched upload",
                extra={"repository": handle.full_name},
            )
            return await self.publish_batched(tree, handle)

        return await self.publish_atomic(tree, handle, head_sha)

    async def _branch_head(self, handle: RepositoryHandle) -> Optional[str]:
        try:
            return await self.client.get_branch_head(handle.owner, handle.name, handle.default_branch)
        except RemoteStoreError as e:
            # An empty repository answers 409 on the git data API
            if e.reason in (RemoteReason.NOT_FOUND, RemoteReason.STALE):
                return None
            if e.is_rate_limited:
                raise RateLimited(f"Rate limit hit while reading branch head: {e.message}") from e
            raise UploadError(f"Failed to read branch head: {e.message}") from e

    @staticmethod
    def _identity(handle: RepositoryHandle) -> Dict[str, str]:
        return {"name": handle.owner, "email": f"{handle.owner}@users.noreply.github.com"}

    # Batched strategy

    async def publish_batched(self, tree: Sequence[WorkingFile], handle: RepositoryHandle) -> List[UploadOutcome]:
        """Upload files in sequential batches of concurrent upserts."""
        self.last_strategy = PublishStrategy.BATCHED
        batches = partition(tree, self.batch_size)
        total = len(batches)
        outcomes: List[UploadOutcome] = []

        logger.info(
            f"Uploading {len(tree)} files in {total} batches",
            extra={"repository": handle.full_name, "file_count": len(tree), "batch_count": total},
        )

        for index, batch in enumerate(batches, start=1):
            logger.info(
                f"Processing batch {index}/{total} ({len(batch)} files)",
                extra={"batch": index, "batch_count": total, "batch_size": len(batch)},
            )
            outcomes.extend(await self._run_batch_with_retry(batch, handle, index))
            logger.info(f"Batch {index} completed successfully", extra={"batch": index})

            if index < total:
                await self._sleep(self.batch_pause_seconds)

        logger.info(
            f"All {len(outcomes)} files uploaded successfully",
            extra={"repository": handle.full_name, "file_count": len(outcomes)},
        )
        return outcomes

    async def _run_batch_with_retry(
        self, batch: List[WorkingFile], handle: RepositoryHandle, index: int
    ) -> List[UploadOutcome]:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(2),
                wait=wait_fixed(self.rate_limit_pause_seconds),
                retry=retry_if_exception_type(_BatchRateLimited),
                sleep=self._sleep,
                before_sleep=lambda state: logger.warning(
                    f"Rate limit hit in batch {index}, retrying batch",
                    extra={"batch": index, "pause_seconds": self.rate_limit_pause_seconds},
                ),
                reraise=True,
            ):
                with attempt:
                    outcomes = await self._run_batch(batch, handle)
        except _BatchRateLimited as e:
            raise RateLimited(f"Rate limit persisted for batch {index}: {e.cause.message}") from e.cause
        return outcomes

    async def _run_batch(self, batch: List[WorkingFile], handle: RepositoryHandle) -> List[UploadOutcome]:
        results = await asyncio.gather(
            *(self.upsert_file(working_file, handle) for working_file in batch),
            return_exceptions=True,
        )

        rate_limited: Optional[RemoteStoreError] = None
        for working_file, result in zip(batch, results):
            if isinstance(result, UploadOutcome):
                continue
            if isinstance(result, RemoteStoreError) and result.is_rate_limited:
                rate_limited = rate_limited or result
                continue
            if not isinstance(result, Exception):
                # Cancellation and other BaseExceptions are not ours to handle
                raise result
            detail = result.message if isinstance(result, RemoteStoreError) else str(result)
            outcome = UploadOutcome(path=working_file.relative_path, success=False, error=detail)
            logger.error(
                f"Error uploading {working_file.relative_path}",
                extra={"path": working_file.relative_path, "error": detail},
            )
            raise UploadError(f"Failed to upload {working_file.relative_path}: {detail}", outcome=outcome) from result

        if rate_limited is not None:
            raise _BatchRateLimited(rate_limited)

        return list(results)

    async def upsert_file(self, working_file: WorkingFile, handle: RepositoryHandle) -> UploadOutcome:
        """Create a file, or update it when the path already has content.

        The create is attempted without a revision token; only a conflict
        triggers the extra read of the current token and an update.
        """
        path = working_file.relative_path
        content_b64 = base64.b64encode(working_file.content).decode("ascii")
        identity = self._identity(handle)

        try:
            await self.client.put_file(
                handle.owner, handle.name, path, content_b64, f"Upload {path}", committer=identity
            )
        except RemoteStoreError as e:
            if e.reason is RemoteReason.STALE:
                raise UploadError(f"branch head moved during write: {e.message}") from e
            if e.reason is not RemoteReason.CONFLICT:
                raise
        else:
            logger.info(f"Created: {path}", extra={"path": path})
            return UploadOutcome(path=path, success=True, action="created")

        record = await self.client.get_file(handle.owner, handle.name, path)
        if not record.exists or not record.sha:
            raise UploadError(f"Failed to update {path}: existing revision not found")

        await self.client.put_file(
            handle.owner, handle.name, path, content_b64, f"Upload {path}", sha=record.sha, committer=identity
        )
        logger.info(f"Updated: {path}", extra={"path": path})
        return UploadOutcome(path=path, success=True, action="updated")

    # Atomic strategy

    async def publish_atomic(
        self, tree: Sequence[WorkingFile], handle: RepositoryHandle, head_sha: str
    ) -> List[UploadOutcome]:
        """Publish the whole tree as one commit on top of ``head_sha``."""
        self.last_strategy = PublishStrategy.ATOMIC
        owner, repo = handle.owner, handle.name
        logger.info(
            f"Publishing {len(tree)} files as a single commit",
            extra={"repository": handle.full_name, "parent": head_sha},
        )

        try:
            base_tree = await self.client.get_commit_tree(owner, repo, head_sha)
            entries = [await self._tree_entry(handle, working_file) for working_file in tree]
            tree_sha = await self.client.create_tree(owner, repo, entries, base_tree=base_tree)
            commit_sha = await self.client.create_commit(
                owner,
                repo,
                f"Upload {len(tree)} files",
                tree_sha,
                parents=[head_sha],
                author=self._identity(handle),
            )
            await self.client.update_branch(owner, repo, handle.default_branch, commit_sha, force=False)
        except RemoteStoreError as e:
            if e.is_rate_limited:
                raise RateLimited(f"Rate limit hit during atomic commit: {e.message}") from e
            raise UploadError(f"Atomic commit failed: {e.message}") from e

        logger.info(
            "Atomic commit published",
            extra={"repository": handle.full_name, "commit": commit_sha, "file_count": len(tree)},
        )
        return [UploadOutcome(path=f.relative_path, success=True, action="committed") for f in tree]

    async def _tree_entry(self, handle: RepositoryHandle, working_file: WorkingFile) -> Dict[str, str]:
        entry = {"path": working_file.relative_path, "mode": BLOB_MODE, "type": "blob"}
        try:
            entry["content"] = working_file.content.decode("utf-8")
        except UnicodeDecodeError:
            # Inline tree content must be UTF-8; other encodings go through a blob
            content_b64 = base64.b64encode(working_file.content).decode("ascii")
            entry["sha"] = await self.client.create_blob(handle.owner, handle.name, content_b64)
        return entry
