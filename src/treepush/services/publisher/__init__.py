"""
Publisher Service

Takes a zip archive URL and a destination repository, filters the archive
down to publishable text files and writes them into the repository through
the GitHub API, creating the repository when it does not exist yet.
"""

from treepush.services.publisher.exceptions import ErrorKind, PublishError, RemoteReason
from treepush.services.publisher.job_runner import JobRunner
from treepush.services.publisher.models import JobResult, UploadJobMessage
from treepush.services.publisher.orchestrator import PublishStrategy

__all__ = [
    "ErrorKind",
    "JobResult",
    "JobRunner",
    "PublishError",
    "PublishStrategy",
    "RemoteReason",
    "UploadJobMessage",
]
