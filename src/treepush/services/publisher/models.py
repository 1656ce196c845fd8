"""
Data models for the publisher service.

The inbound queue message is a pydantic model (wire names kept as aliases);
everything produced inside a job is a plain dataclass.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UploadJobMessage(BaseModel):
    """
    Job message delivered by the upload queue.

    Every field is optional at parse time so that the Job Runner can report
    all missing fields at once instead of failing on the first one.
    """

    model_config = ConfigDict(populate_by_name=True)

    username: Optional[str] = Field(None, description="Destination account login")
    zip_url: Optional[str] = Field(None, alias="zipUrl", description="HTTPS URL of the zip archive")
    repo_name: Optional[str] = Field(None, alias="repoName", description="Destination repository name")
    auth_token: Optional[str] = Field(
        None, alias="authToken", repr=False, description="Bearer token for the destination account"
    )

    def missing_fields(self) -> List[str]:
        """Return the wire names of required fields that are absent or blank."""
        required = {
            "username": self.username,
            "zipUrl": self.zip_url,
            "repoName": self.repo_name,
            "authToken": self.auth_token,
        }
        return [name for name, value in required.items() if not value or not str(value).strip()]


@dataclass(frozen=True)
class Job:
    """A validated, immutable upload job."""

    account: str
    repo_name: str
    archive_url: str
    credential: str = field(repr=False)


@dataclass(frozen=True)
class WorkingFile:
    """One file of a WorkingTree: POSIX relative path plus raw content."""

    relative_path: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class RemoteFileRecord:
    """The remote store's view of a path."""

    path: str
    sha: Optional[str]
    exists: bool


@dataclass(frozen=True)
class RepositoryHandle:
    """Destination repository coordinates as reported by the remote store."""

    owner: str
    name: str
    full_name: str
    html_url: str
    default_branch: str = "main"
    private: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RepositoryHandle":
        """Build a handle from a GitHub repository JSON document."""
        owner = (data.get("owner") or {}).get("login", "")
        name = data.get("name", "")
        return cls(
            owner=owner,
            name=name,
            full_name=data.get("full_name") or f"{owner}/{name}",
            html_url=data.get("html_url", ""),
            default_branch=data.get("default_branch") or "main",
            private=bool(data.get("private", False)),
        )


@dataclass
class UploadOutcome:
    """Result of publishing a single path."""

    path: str
    success: bool
    action: Optional[str] = None  # "created", "updated" or "committed"
    error: Optional[str] = None


@dataclass
class JobResult:
    """Terminal outcome of a successful job."""

    success: bool
    repo_url: str
    processed_at: datetime
    files_uploaded: int
    strategy: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "repoUrl": self.repo_url,
            "processedAt": self.processed_at.isoformat(),
            "filesUploaded": self.files_uploaded,
            "strategy": self.strategy,
        }
