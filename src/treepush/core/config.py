"""Configuration management for TreePush."""

import tempfile
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    ENV: str = "local"
    SERVICE_NAME: str = "treepush"
    SERVICE_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Remote content store
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_WEB_URL: str = "https://github.com"
    REQUEST_TIMEOUT: int = 30  # seconds per GitHub API call
    DOWNLOAD_TIMEOUT: int = 120  # seconds for archive download

    # Scratch area (empty = <system tmp>/treepush-scratch)
    SCRATCH_DIR: str = ""
    SCRATCH_MAX_AGE_SECONDS: int = 3600

    # Archive and file limits
    MAX_ARCHIVE_SIZE_MB: int = 500
    MAX_TEXT_FILE_BYTES: int = 1024 * 1024

    # Batched upload
    UPLOAD_BATCH_SIZE: int = 10
    BATCH_PAUSE_SECONDS: float = 0.2
    RATE_LIMIT_PAUSE_SECONDS: float = 2.0

    # Repository verification
    REPO_VERIFY_ATTEMPTS: int = 3
    REPO_VERIFY_DELAY_SECONDS: float = 5.0

    # Publication strategy: "auto", "atomic" or "batched"
    PUBLISH_STRATEGY: str = "auto"
    ATOMIC_MAX_FILES: int = 500
    ATOMIC_MAX_BYTES: int = 20 * 1024 * 1024

    @property
    def scratch_root(self) -> Path:
        """Resolve SCRATCH_DIR, defaulting to a folder under the system temp dir."""
        if self.SCRATCH_DIR:
            return Path(self.SCRATCH_DIR)
        return Path(tempfile.gettempdir()) / "treepush-scratch"

    @property
    def max_archive_size_bytes(self) -> int:
        """Convert MAX_ARCHIVE_SIZE_MB to bytes."""
        return self.MAX_ARCHIVE_SIZE_MB * 1024 * 1024


# Singleton settings instance
settings = Settings()
