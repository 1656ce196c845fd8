"""Tests for the Job Runner."""

from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from treepush.services.publisher.exceptions import (
    AuthError,
    ExtractFailed,
    FetchFailed,
    ValidationError,
)
from treepush.services.publisher.job_runner import JobRunner
from treepush.services.publisher.models import Job

from conftest import ARCHIVE_URL, TOKEN, FakeGitHub, make_zip, rate_limited_response

PROJECT_ZIP = make_zip(
    {
        "proj/README.md": b"# Project\n",
        "proj/src/index.js": b"console.log('hi')\n",
        "proj/.github/workflows/ci.yml": b"on: push\n",
        "proj/node_modules/dep/index.js": b"module.exports = 1\n",
        "proj/logo.png": b"\x89PNG\r\n\x1a\n\x00\x00",
    }
)


def job_message(**overrides):
    message = {
        "username": "octocat",
        "zipUrl": ARCHIVE_URL,
        "repoName": "demo",
        "authToken": TOKEN,
    }
    message.update(overrides)
    return message


def make_runner(settings, fake_github: FakeGitHub, fetcher_factory):
    return JobRunner(
        settings,
        client_factory=lambda token: fake_github.client(token),
        fetcher_factory=fetcher_factory,
    )


@pytest.mark.asyncio
async def test_run_publishes_archive_into_new_repository(test_settings, fake_github, fetcher_factory):
    runner = make_runner(test_settings, fake_github, fetcher_factory(PROJECT_ZIP))

    result = await runner.run(job_message())

    assert result.success is True
    assert result.repo_url == "https://github.com/octocat/demo"
    assert result.files_uploaded == 2
    assert result.strategy == "batched"
    assert result.processed_at.tzinfo is not None
    assert fake_github.files("demo") == {
        "README.md": b"# Project\n",
        "src/index.js": b"console.log('hi')\n",
    }
    assert list(test_settings.scratch_root.iterdir()) == []


@pytest.mark.asyncio
async def test_rerun_publishes_atomically_and_is_idempotent(test_settings, fake_github, fetcher_factory):
    """Test that a second run of the same job reuses the repository and commits once."""
    runner = make_runner(test_settings, fake_github, fetcher_factory(PROJECT_ZIP))

    first = await runner.run(job_message())
    files_after_first = fake_github.files("demo")
    second = await runner.run(job_message())

    assert first.repo_url == second.repo_url
    assert second.strategy == "atomic"
    assert fake_github.files("demo") == files_after_first
    assert fake_github.count("POST", "/user/repos") == 1


@pytest.mark.asyncio
async def test_traversal_repo_name_fails_before_any_network_call(test_settings):
    client_factory = Mock()
    fetcher_factory = Mock()
    runner = JobRunner(test_settings, client_factory=client_factory, fetcher_factory=fetcher_factory)

    with pytest.raises(ValidationError, match="invalid characters"):
        await runner.run(job_message(repoName="../evil"))

    client_factory.assert_not_called()
    fetcher_factory.assert_not_called()


@pytest.mark.asyncio
async def test_missing_fields_fail_validation(test_settings):
    client_factory = Mock()
    runner = JobRunner(test_settings, client_factory=client_factory)

    with pytest.raises(ValidationError, match="Missing required fields: zipUrl, authToken"):
        await runner.run({"username": "octocat", "repoName": "demo"})

    client_factory.assert_not_called()


@pytest.mark.asyncio
async def test_malformed_field_types_fail_validation(test_settings):
    runner = JobRunner(test_settings, client_factory=Mock())

    with pytest.raises(ValidationError, match="Invalid job message"):
        await runner.run(job_message(repoName=["not", "a", "string"]))


@pytest.mark.asyncio
async def test_owner_mismatch_raises_auth_error(test_settings, fetcher_factory):
    fake_github = FakeGitHub(login="someone-else")
    factory = Mock(side_effect=fetcher_factory(PROJECT_ZIP))
    runner = make_runner(test_settings, fake_github, factory)

    with pytest.raises(AuthError, match="Token belongs to user 'someone-else'"):
        await runner.run(job_message())

    factory.assert_not_called()
    assert fake_github.repos == {}


@pytest.mark.asyncio
async def test_owner_comparison_ignores_case(test_settings):
    fake_github = FakeGitHub(login="OctoCat")
    runner = JobRunner(test_settings)
    job = Job(account="octocat", repo_name="demo", archive_url=ARCHIVE_URL, credential=TOKEN)

    async with fake_github.client() as client:
        login = await runner._verify_credential(client, job)

    assert login == "OctoCat"


@pytest.mark.asyncio
async def test_bad_credentials_raise_auth_error(test_settings, fake_github, fetcher_factory):
    fake_github.fail_next[("GET", "/user")].append(httpx.Response(401, json={"message": "Bad credentials"}))
    runner = make_runner(test_settings, fake_github, fetcher_factory(PROJECT_ZIP))

    with pytest.raises(AuthError, match="Bad credentials"):
        await runner.run(job_message())


@pytest.mark.asyncio
async def test_rate_limited_credential_check_proceeds(test_settings, fake_github, fetcher_factory):
    fake_github.fail_next[("GET", "/user")].append(rate_limited_response())
    runner = make_runner(test_settings, fake_github, fetcher_factory(PROJECT_ZIP))

    result = await runner.run(job_message())

    assert result.success is True
    assert "README.md" in fake_github.files("demo")


@pytest.mark.asyncio
async def test_archive_with_no_eligible_files_fails(test_settings, fake_github, fetcher_factory):
    archive = make_zip({"proj/logo.png": b"\x89PNG", "proj/node_modules/a.js": b"x"})
    runner = make_runner(test_settings, fake_github, fetcher_factory(archive))

    with pytest.raises(ValidationError, match="No files found to upload"):
        await runner.run(job_message())

    assert fake_github.repos == {}
    assert list(test_settings.scratch_root.iterdir()) == []


@pytest.mark.asyncio
async def test_download_failure_propagates(test_settings, fake_github, fetcher_factory):
    runner = make_runner(test_settings, fake_github, fetcher_factory(PROJECT_ZIP))

    with pytest.raises(FetchFailed):
        await runner.run(job_message(zipUrl="https://downloads.example.com/other.zip"))

    assert list(test_settings.scratch_root.iterdir()) == []


@pytest.mark.asyncio
async def test_corrupt_archive_propagates(test_settings, fake_github, fetcher_factory):
    runner = make_runner(test_settings, fake_github, fetcher_factory(b"not a zip"))

    with pytest.raises(ExtractFailed):
        await runner.run(job_message())

    assert list(test_settings.scratch_root.iterdir()) == []


@pytest.mark.asyncio
async def test_cleanup_runs_when_upload_fails(test_settings, fake_github, fetcher_factory):
    runner = make_runner(test_settings, fake_github, fetcher_factory(PROJECT_ZIP))

    with patch(
        "treepush.services.publisher.job_runner.UploadOrchestrator.publish",
        new=AsyncMock(side_effect=RuntimeError("boom")),
    ):
        with pytest.raises(RuntimeError, match="boom"):
            await runner.run(job_message())

    assert list(test_settings.scratch_root.iterdir()) == []


@pytest.mark.asyncio
async def test_stale_scratch_is_swept_before_fetch(test_settings, fake_github, fetcher_factory):
    with patch("treepush.services.publisher.job_runner.sweep_stale_scratch") as mock_sweep:
        runner = make_runner(test_settings, fake_github, fetcher_factory(PROJECT_ZIP))
        await runner.run(job_message())

    mock_sweep.assert_called_once_with(test_settings.scratch_root, 3600)


@pytest.mark.asyncio
async def test_stale_scratch_is_swept_even_when_validation_fails(test_settings, fake_github, fetcher_factory):
    with patch("treepush.services.publisher.job_runner.sweep_stale_scratch") as mock_sweep:
        runner = make_runner(test_settings, fake_github, fetcher_factory(PROJECT_ZIP))
        with pytest.raises(ValidationError):
            await runner.run(job_message(repoName="../evil"))

    mock_sweep.assert_called_once_with(test_settings.scratch_root, 3600)
    assert fake_github.count("GET", "/user") == 0


@pytest.mark.asyncio
async def test_stale_scratch_is_swept_when_credential_is_rejected(test_settings, fake_github, fetcher_factory):
    with patch("treepush.services.publisher.job_runner.sweep_stale_scratch") as mock_sweep:
        runner = make_runner(test_settings, fake_github, fetcher_factory(PROJECT_ZIP))
        with pytest.raises(AuthError):
            await runner.run(job_message(username="someone-else"))

    mock_sweep.assert_called_once_with(test_settings.scratch_root, 3600)
