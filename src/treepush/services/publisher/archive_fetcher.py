"""Archive download and extraction into the scratch area."""

import asyncio
import logging
import os
import shutil
import tempfile
import time
import zipfile
import zlib
from pathlib import Path
from typing import List, Optional

import httpx

from treepush.services.publisher.exceptions import ExtractFailed, FetchFailed

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 64 * 1024


def _remove_path(path: Path) -> None:
    """Remove a file or directory tree, logging instead of raising."""
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
    except OSError as e:
        logger.error(
            f"Cleanup error: {e}",
            extra={"path": str(path), "error": str(e)},
        )


def sweep_stale_scratch(scratch_root: Path, max_age_seconds: int = 3600, now: Optional[float] = None) -> int:
    """Remove top-level scratch entries older than ``max_age_seconds``.

    Bounds scratch growth when an earlier job's cleanup failed. Never raises.

    Args:
        scratch_root: Process-wide scratch directory
        max_age_seconds: Age threshold based on modification time
        now: Current epoch time, for tests

    Returns:
        Number of entries removed
    """
    if not scratch_root.exists():
        return 0

    now = time.time() if now is None else now
    removed = 0
    try:
        entries = list(scratch_root.iterdir())
    except OSError as e:
        logger.warning("Temp cleanup warning", extra={"scratch_root": str(scratch_root), "error": str(e)})
        return 0

    for entry in entries:
        try:
            age = now - entry.lstat().st_mtime
        except OSError as e:
            logger.warning("Temp cleanup warning", extra={"path": str(entry), "error": str(e)})
            continue
        if age > max_age_seconds:
            _remove_path(entry)
            removed += 1

    if removed:
        logger.info(
            f"Swept {removed} stale scratch entries",
            extra={"scratch_root": str(scratch_root), "removed": removed},
        )
    return removed


def find_content_root(extract_dir: Path) -> Path:
    """Return the single top-level directory if the archive wraps everything in one."""
    items = list(extract_dir.iterdir())
    if len(items) == 1 and items[0].is_dir() and not items[0].is_symlink():
        logger.info("Using nested directory", extra={"working_dir": str(items[0])})
        return items[0]
    return extract_dir


class ArchiveFetcher:
    """Downloads a zip archive and extracts it into a fresh scratch directory.

    The caller owns cleanup: every scratch path created by ``fetch`` is
    removed by ``cleanup``.
    """

    def __init__(
        self,
        scratch_root: Path,
        max_archive_size_bytes: int = 500 * 1024 * 1024,
        timeout: float = 120,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize fetcher.

        Args:
            scratch_root: Directory under which downloads and extractions are created
            max_archive_size_bytes: Abort downloads larger than this
            timeout: Download timeout in seconds
            transport: Optional transport override for tests
        """
        self.scratch_root = Path(scratch_root)
        self.max_archive_size_bytes = max_archive_size_bytes
        self.timeout = timeout
        self.transport = transport
        self.created_paths: List[Path] = []

    async def fetch(self, url: str) -> Path:
        """Download and extract the archive at ``url``.

        Args:
            url: HTTPS URL of a zip archive

        Returns:
            Effective working directory (the inner folder for single-folder archives)

        Raises:
            FetchFailed: If the download fails or the archive is too large
            ExtractFailed: If the archive cannot be decompressed
        """
        self.scratch_root.mkdir(parents=True, exist_ok=True)
        fd, archive_name = tempfile.mkstemp(prefix="download-", suffix=".zip", dir=self.scratch_root)
        os.close(fd)
        archive_path = Path(archive_name)
        extract_dir = Path(tempfile.mkdtemp(prefix="unzipped-", dir=self.scratch_root))
        self.created_paths.append(extract_dir)

        try:
            await self._download(url, archive_path)
            logger.info("Extracting zip", extra={"extract_dir": str(extract_dir)})
            extracted = await asyncio.to_thread(self._extract_zip, archive_path, extract_dir)
        except (FetchFailed, ExtractFailed):
            _remove_path(extract_dir)
            raise
        finally:
            _remove_path(archive_path)

        logger.info(
            f"Extracted {extracted} files from archive",
            extra={"files_extracted": extracted, "extract_dir": str(extract_dir)},
        )
        return find_content_root(extract_dir)

    async def _download(self, url: str, destination: Path) -> None:
        logger.info("Downloading zip", extra={"zip_url": url})
        total = 0
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=True, transport=self.transport
            ) as client:
                async with client.stream("GET", url) as response:
                    if not response.is_success:
                        raise FetchFailed(
                            f"Failed to download zip: {response.status_code} {response.reason_phrase}",
                            status_code=response.status_code,
                        )
                    with open(destination, "wb") as out_file:
                        async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                            total += len(chunk)
                            if total > self.max_archive_size_bytes:
                                raise FetchFailed(
                                    f"Archive exceeds size limit of {self.max_archive_size_bytes} bytes"
                                )
                            out_file.write(chunk)
        except httpx.HTTPError as e:
            logger.error(f"Download error: {e}", extra={"zip_url": url, "error": str(e)})
            raise FetchFailed(f"Failed to download zip: {e}") from e

        logger.info("Downloaded zip", extra={"zip_url": url, "size_bytes": total})

    def _extract_zip(self, archive_path: Path, extract_dir: Path) -> int:
        """Extract ZIP archive, skipping members that would escape ``extract_dir``."""
        extracted = 0
        try:
            with zipfile.ZipFile(archive_path, "r") as zip_ref:
                for info in zip_ref.infolist():
                    if info.flag_bits & 0x1:
                        raise ExtractFailed("Password-protected ZIP archives are not supported")

                for info in zip_ref.infolist():
                    if not self._is_safe_path(extract_dir, info.filename):
                        logger.warning(
                            f"Skipping unsafe path: {info.filename}",
                            extra={"filename": info.filename},
                        )
                        continue
                    zip_ref.extract(info, extract_dir)
                    if not info.is_dir():
                        extracted += 1
        except ExtractFailed:
            raise
        except (
            zipfile.BadZipFile,
            zipfile.LargeZipFile,
            zlib.error,
            NotImplementedError,
            RuntimeError,
            OSError,
            EOFError,
        ) as e:
            logger.error(
                f"Corrupted ZIP archive: {e}",
                extra={"archive_path": str(archive_path)},
            )
            raise ExtractFailed(f"Corrupted ZIP archive: {e}") from e

        return extracted

    @staticmethod
    def _is_safe_path(base_dir: Path, filename: str) -> bool:
        """Check that an archive member resolves inside ``base_dir``."""
        base_path = os.path.abspath(base_dir)
        target_path = os.path.abspath(os.path.join(base_dir, filename))
        return os.path.commonpath([base_path, target_path]) == base_path

    def cleanup(self) -> None:
        """Remove every scratch path created by this fetcher."""
        for path in self.created_paths:
            _remove_path(path)
        if self.created_paths:
            logger.info("Cleaned up temporary files", extra={"paths": len(self.created_paths)})
        self.created_paths.clear()
