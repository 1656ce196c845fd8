"""Pytest configuration and shared fixtures."""

import asyncio
import base64
import hashlib
import io
import itertools
import json
import zipfile
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

import httpx
import pytest

from treepush.core.config import Settings
from treepush.services.publisher.archive_fetcher import ArchiveFetcher
from treepush.services.publisher.github_client import GitHubClient
from treepush.services.publisher.models import RepositoryHandle, WorkingFile

ARCHIVE_URL = "https://downloads.example.com/project.zip"
TOKEN = "ghp_testtoken"


def make_zip(files: Dict[str, bytes]) -> bytes:
    """Build an in-memory zip archive from a path -> content mapping."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buffer.getvalue()


def rate_limited_response() -> httpx.Response:
    return httpx.Response(
        403,
        headers={"x-ratelimit-remaining": "0"},
        json={"message": "API rate limit exceeded for user ID 1."},
    )


def archive_transport(archive: bytes, url: str = ARCHIVE_URL) -> httpx.MockTransport:
    """Serve ``archive`` at ``url`` and 404 everywhere else."""

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == url:
            return httpx.Response(200, content=archive)
        return httpx.Response(404, text="Not Found")

    return httpx.MockTransport(handler)


class FakeGitHub:
    """In-memory GitHub serving the REST endpoints the publisher uses.

    The default branch of every repository is ``main``. A repository created
    without ``auto_init`` has no commits, so its git data endpoints answer
    409 like the real API does. Responses for a given ``(method, path)``
    can be overridden once per queued entry in ``fail_next``.
    """

    def __init__(self, login: str = "octocat"):
        self.login = login
        self.repos: Dict[Tuple[str, str], dict] = {}
        self.heads: Dict[Tuple[str, str], str] = {}
        self.commits: Dict[str, dict] = {}
        self.trees: Dict[str, Dict[str, bytes]] = {}
        self.blobs: Dict[str, bytes] = {}
        self.fail_next: Dict[Tuple[str, str], List[httpx.Response]] = defaultdict(list)
        self.requests: List[Tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._ids = itertools.count(1)

    # Test helpers

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self, token: str = TOKEN) -> GitHubClient:
        return GitHubClient(token, transport=self.transport())

    def add_repo(self, name: str, owner: Optional[str] = None, files: Optional[Dict[str, bytes]] = None) -> dict:
        owner = owner or self.login
        repo = {
            "name": name,
            "full_name": f"{owner}/{name}",
            "owner": {"login": owner},
            "html_url": f"https://github.com/{owner}/{name}",
            "default_branch": "main",
            "private": False,
        }
        self.repos[(owner, name)] = repo
        if files is not None:
            self._commit((owner, name), dict(files), parents=[])
        return repo

    def files(self, name: str, owner: Optional[str] = None) -> Dict[str, bytes]:
        key = (owner or self.login, name)
        head = self.heads.get(key)
        if head is None:
            return {}
        return dict(self.trees[self.commits[head]["tree"]])

    def count(self, method: str, path_prefix: str) -> int:
        return sum(1 for m, p in self.requests if m == method and p.startswith(path_prefix))

    def handle_for(self, name: str, owner: Optional[str] = None) -> RepositoryHandle:
        return RepositoryHandle.from_api(self.repos[(owner or self.login, name)])

    # Internals

    def _sha(self, prefix: str) -> str:
        return hashlib.sha1(f"{prefix}-{next(self._ids)}".encode()).hexdigest()

    def _commit(self, key: Tuple[str, str], files: Dict[str, bytes], parents: List[str]) -> str:
        tree_sha = self._sha("tree")
        self.trees[tree_sha] = files
        commit_sha = self._sha("commit")
        self.commits[commit_sha] = {"tree": tree_sha, "parents": parents}
        self.heads[key] = commit_sha
        return commit_sha

    @staticmethod
    def _blob_sha(content: bytes) -> str:
        return hashlib.sha1(b"blob %d\0" % len(content) + content).hexdigest()

    async def handle(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.requests.append((method, path))

        queued = self.fail_next.get((method, path))
        if queued:
            return queued.pop(0)

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            # Let sibling coroutines of a batch start before this one returns
            await asyncio.sleep(0)
            return self._route(method, path, json.loads(request.content) if request.content else None)
        finally:
            self.in_flight -= 1

    def _route(self, method: str, path: str, body: Optional[dict]) -> httpx.Response:
        if path == "/user" and method == "GET":
            return httpx.Response(200, json={"login": self.login})
        if path == "/user/repos" and method == "POST":
            return self._create_repo(body)

        parts = path.strip("/").split("/")
        if len(parts) < 3 or parts[0] != "repos":
            return httpx.Response(404, json={"message": "Not Found"})

        key = (parts[1], parts[2])
        repo = self.repos.get(key)
        if repo is None:
            return httpx.Response(404, json={"message": "Not Found"})

        rest = parts[3:]
        if not rest and method == "GET":
            return httpx.Response(200, json=repo)
        if rest[:1] == ["contents"]:
            return self._contents(key, method, "/".join(rest[1:]), body)
        if rest[:1] == ["git"]:
            return self._git(key, method, rest[1:], body)
        return httpx.Response(404, json={"message": "Not Found"})

    def _create_repo(self, body: dict) -> httpx.Response:
        name = body["name"]
        if (self.login, name) in self.repos:
            return httpx.Response(
                422,
                json={
                    "message": "Repository creation failed.",
                    "errors": [
                        {
                            "resource": "Repository",
                            "code": "custom",
                            "field": "name",
                            "message": "name already exists on this account",
                        }
                    ],
                },
            )
        repo = self.add_repo(name, files={"README.md": b"# init\n"} if body.get("auto_init") else None)
        return httpx.Response(201, json=repo)

    def _contents(self, key, method: str, file_path: str, body: Optional[dict]) -> httpx.Response:
        current = self.files(key[1], owner=key[0])

        if method == "GET":
            if file_path not in current:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json={"path": file_path, "sha": self._blob_sha(current[file_path])})

        if method == "PUT":
            existing = current.get(file_path)
            supplied = body.get("sha")
            if existing is not None and not supplied:
                return httpx.Response(
                    422, json={"message": 'Invalid request.\n\n"sha" wasn\'t supplied.'}
                )
            if existing is not None and supplied != self._blob_sha(existing):
                return httpx.Response(
                    409, json={"message": f"{file_path} does not match {supplied}"}
                )
            content = base64.b64decode(body["content"])
            current[file_path] = content
            parents = [self.heads[key]] if key in self.heads else []
            self._commit(key, current, parents)
            status_code = 200 if existing is not None else 201
            return httpx.Response(
                status_code,
                json={"content": {"path": file_path, "sha": self._blob_sha(content)}},
            )

        return httpx.Response(405, json={"message": "Method Not Allowed"})

    def _git(self, key, method: str, rest: List[str], body: Optional[dict]) -> httpx.Response:
        if key not in self.heads:
            return httpx.Response(409, json={"message": "Git Repository is empty."})

        if method == "GET" and rest[:3] == ["ref", "heads", "main"]:
            return httpx.Response(200, json={"ref": "refs/heads/main", "object": {"sha": self.heads[key]}})

        if method == "GET" and rest[:1] == ["commits"] and len(rest) == 2:
            commit = self.commits.get(rest[1])
            if commit is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json={"sha": rest[1], "tree": {"sha": commit["tree"]}})

        if method == "POST" and rest == ["blobs"]:
            content = base64.b64decode(body["content"])
            sha = self._blob_sha(content)
            self.blobs[sha] = content
            return httpx.Response(201, json={"sha": sha})

        if method == "POST" and rest == ["trees"]:
            files = dict(self.trees.get(body.get("base_tree"), {}))
            for entry in body["tree"]:
                if "content" in entry:
                    files[entry["path"]] = entry["content"].encode("utf-8")
                else:
                    files[entry["path"]] = self.blobs[entry["sha"]]
            tree_sha = self._sha("tree")
            self.trees[tree_sha] = files
            return httpx.Response(201, json={"sha": tree_sha})

        if method == "POST" and rest == ["commits"]:
            commit_sha = self._sha("commit")
            self.commits[commit_sha] = {"tree": body["tree"], "parents": body["parents"]}
            return httpx.Response(201, json={"sha": commit_sha})

        if method == "PATCH" and rest[:2] == ["refs", "heads"]:
            commit = self.commits.get(body["sha"])
            if commit is None:
                return httpx.Response(422, json={"message": "Object does not exist"})
            if not body.get("force") and self.heads[key] not in commit["parents"]:
                return httpx.Response(422, json={"message": "Update is not a fast forward"})
            self.heads[key] = body["sha"]
            return httpx.Response(200, json={"ref": "refs/heads/main", "object": {"sha": body["sha"]}})

        return httpx.Response(404, json={"message": "Not Found"})


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records delays without waiting."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def working_tree(count: int, prefix: str = "file") -> List[WorkingFile]:
    return [
        WorkingFile(relative_path=f"{prefix}{i:03d}.txt", content=f"content {i}\n".encode())
        for i in range(count)
    ]


@pytest.fixture
def fake_github():
    """In-memory GitHub for the default test account."""
    return FakeGitHub()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def test_settings(tmp_path):
    """Settings pointing the scratch root at a temporary directory, with no pauses."""
    return Settings(
        _env_file=None,
        SCRATCH_DIR=str(tmp_path / "scratch"),
        BATCH_PAUSE_SECONDS=0,
        RATE_LIMIT_PAUSE_SECONDS=0,
        REPO_VERIFY_DELAY_SECONDS=0,
    )


@pytest.fixture
def fetcher_factory(test_settings):
    """Build ArchiveFetcher factories serving a given zip at ARCHIVE_URL."""

    def build(archive: bytes):
        def factory() -> ArchiveFetcher:
            return ArchiveFetcher(test_settings.scratch_root, transport=archive_transport(archive))

        return factory

    return build
