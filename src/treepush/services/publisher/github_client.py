"""Async HTTP client for the GitHub REST API."""

import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from treepush.services.publisher.exceptions import RemoteReason, RemoteStoreError
from treepush.services.publisher.models import RemoteFileRecord

logger = logging.getLogger(__name__)

GITHUB_ACCEPT = "application/vnd.github+json"
GITHUB_API_VERSION = "2022-11-28"

_RATE_LIMIT_MESSAGE = re.compile(r"rate limit", re.IGNORECASE)
_SHA_MESSAGE = re.compile(r"\bsha\b", re.IGNORECASE)
_NAME_EXISTS_MESSAGE = re.compile(r"name already exists", re.IGNORECASE)


def _error_payload(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {"message": response.reason_phrase or response.text}
    return data if isinstance(data, dict) else {"message": str(data)}


def _error_messages(payload: Dict[str, Any]) -> List[str]:
    messages = [str(payload.get("message") or "")]
    for err in payload.get("errors") or []:
        if isinstance(err, dict):
            messages.append(str(err.get("message") or err.get("code") or ""))
        else:
            messages.append(str(err))
    return [m for m in messages if m]


def classify_response(response: httpx.Response) -> RemoteReason:
    """Map a non-success GitHub response to a RemoteReason.

    This is the only place where response text is inspected; everything
    downstream routes on the returned enum.

    Args:
        response: Non-2xx response from the API

    Returns:
        RemoteReason for the failure
    """
    status_code = response.status_code
    payload = _error_payload(response)
    text = " ".join(_error_messages(payload))

    if status_code == 401:
        return RemoteReason.UNAUTHORIZED
    if status_code == 429:
        return RemoteReason.RATE_LIMITED
    if status_code == 403:
        if (
            response.headers.get("x-ratelimit-remaining") == "0"
            or "retry-after" in response.headers
            or _RATE_LIMIT_MESSAGE.search(text)
        ):
            return RemoteReason.RATE_LIMITED
        return RemoteReason.FORBIDDEN
    if status_code == 404:
        return RemoteReason.NOT_FOUND
    # 409 means the target moved underneath the request, not that the path exists
    if status_code == 409:
        return RemoteReason.STALE
    if status_code == 422:
        if _NAME_EXISTS_MESSAGE.search(text):
            return RemoteReason.NAME_EXISTS
        if _SHA_MESSAGE.search(text):
            return RemoteReason.CONFLICT
        return RemoteReason.VALIDATION
    if status_code >= 500:
        return RemoteReason.SERVER
    return RemoteReason.OTHER


def error_from_response(response: httpx.Response) -> RemoteStoreError:
    """Build a RemoteStoreError from a non-success response."""
    payload = _error_payload(response)
    message = "; ".join(_error_messages(payload)) or response.reason_phrase
    return RemoteStoreError(response.status_code, classify_response(response), message)


class GitHubClient:
    """Thin async wrapper over the GitHub REST endpoints used for publishing.

    Every non-success response is raised as RemoteStoreError; transport
    failures are raised as RemoteStoreError with reason NETWORK.
    """

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            token: Bearer credential for the destination account
            base_url: API root URL
            timeout: Per-request timeout in seconds
            transport: Optional transport override (tests use httpx.MockTransport)
        """
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": GITHUB_ACCEPT,
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
                "User-Agent": "treepush",
            },
        )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, json: Any = None) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, url, json=json)
        except httpx.TransportError as e:
            logger.warning(
                "GitHub request failed at transport level",
                extra={"method": method, "url": url, "error": str(e)},
            )
            raise RemoteStoreError(0, RemoteReason.NETWORK, str(e)) from e

        if response.is_success:
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

        error = error_from_response(response)
        logger.debug(
            "GitHub request returned an error",
            extra={
                "method": method,
                "url": url,
                "status_code": error.status_code,
                "reason": error.reason.value,
            },
        )
        raise error

    # Identity and repositories

    async def get_authenticated_user(self) -> Dict[str, Any]:
        return await self._request("GET", "/user")

    async def get_repository(self, owner: str, name: str) -> Dict[str, Any]:
        return await self._request("GET", f"/repos/{owner}/{name}")

    async def create_repository(
        self,
        name: str,
        private: bool = False,
        auto_init: bool = False,
        description: str = "Repository created via automated upload",
    ) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/user/repos",
            json={
                "name": name,
                "private": private,
                "auto_init": auto_init,
                "description": description,
            },
        )

    # Contents API

    @staticmethod
    def _contents_url(owner: str, repo: str, path: str) -> str:
        return f"/repos/{owner}/{repo}/contents/{quote(path, safe='/')}"

    async def get_file(self, owner: str, repo: str, path: str) -> RemoteFileRecord:
        """Read the current revision token of a path.

        Returns:
            RemoteFileRecord with ``exists=False`` when the path is absent
        """
        try:
            data = await self._request("GET", self._contents_url(owner, repo, path))
        except RemoteStoreError as e:
            if e.reason is RemoteReason.NOT_FOUND:
                return RemoteFileRecord(path=path, sha=None, exists=False)
            raise
        return RemoteFileRecord(path=path, sha=data.get("sha"), exists=True)

    async def put_file(
        self,
        owner: str,
        repo: str,
        path: str,
        content_b64: str,
        message: str,
        sha: Optional[str] = None,
        committer: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Create or update a file.

        Without ``sha`` the write is a create and fails with a CONFLICT
        reason if the path already has content, or STALE on a 409 when the
        branch head moved underneath the write.
        """
        body: Dict[str, Any] = {"message": message, "content": content_b64}
        if sha:
            body["sha"] = sha
        if committer:
            body["committer"] = committer
            body["author"] = committer
        return await self._request("PUT", self._contents_url(owner, repo, path), json=body)

    # Git data API

    async def get_branch_head(self, owner: str, repo: str, branch: str) -> str:
        data = await self._request("GET", f"/repos/{owner}/{repo}/git/ref/heads/{branch}")
        return data["object"]["sha"]

    async def get_commit_tree(self, owner: str, repo: str, commit_sha: str) -> str:
        data = await self._request("GET", f"/repos/{owner}/{repo}/git/commits/{commit_sha}")
        return data["tree"]["sha"]

    async def create_blob(self, owner: str, repo: str, content_b64: str) -> str:
        data = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/blobs",
            json={"content": content_b64, "encoding": "base64"},
        )
        return data["sha"]

    async def create_tree(
        self,
        owner: str,
        repo: str,
        entries: List[Dict[str, Any]],
        base_tree: Optional[str] = None,
    ) -> str:
        body: Dict[str, Any] = {"tree": entries}
        if base_tree:
            body["base_tree"] = base_tree
        data = await self._request("POST", f"/repos/{owner}/{repo}/git/trees", json=body)
        return data["sha"]

    async def create_commit(
        self,
        owner: str,
        repo: str,
        message: str,
        tree_sha: str,
        parents: List[str],
        author: Optional[Dict[str, str]] = None,
    ) -> str:
        body: Dict[str, Any] = {"message": message, "tree": tree_sha, "parents": parents}
        if author:
            body["author"] = author
            body["committer"] = author
        data = await self._request("POST", f"/repos/{owner}/{repo}/git/commits", json=body)
        return data["sha"]

    async def update_branch(
        self, owner: str, repo: str, branch: str, commit_sha: str, force: bool = False
    ) -> Dict[str, Any]:
        return await self._request(
            "PATCH",
            f"/repos/{owner}/{repo}/git/refs/heads/{branch}",
            json={"sha": commit_sha, "force": force},
        )
