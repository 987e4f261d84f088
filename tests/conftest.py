"""Shared fixtures for buildsentinel tests."""

from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from buildsentinel.core.config import DaemonConfig
from buildsentinel.engine.workspace import PackageRepository
from buildsentinel.git_api.models import PullRequest
from buildsentinel.git_api.url import RepositoryRef

BASE_TYPES = "https://github.com/rock-core/base-types"
SYSKIT = "https://github.com/rock-core/tools-syskit"
BUILDCONF = "https://github.com/rock-core/buildconf"


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def config():
    return DaemonConfig(daemon_api_key="secret", daemon_project="rock")


@pytest.fixture
def make_pr():
    """Factory for open pull requests with sensible defaults."""

    def _make(url: str = BASE_TYPES, number: int = 1, **kwargs) -> PullRequest:
        repo = RepositoryRef.parse(url)
        fields = dict(
            repo=repo,
            number=number,
            state="open",
            title=f"PR {number}",
            body="",
            base_branch="master",
            base_sha="base0",
            base_owner=repo.owner,
            base_name=repo.name,
            head_branch=f"feature-{number}",
            head_sha=f"head{number}",
            head_owner="contributor",
            head_name=repo.name,
            head_repo_id=1000 + number,
            updated_at=datetime.now(timezone.utc),
            mergeable=True,
            web_url=f"{url}/pull/{number}",
            author="contributor",
        )
        fields.update(kwargs)
        return PullRequest(**fields)

    return _make


@pytest.fixture
def workspace():
    """In-memory workspace: two packages in one repository, one package set and a buildconf."""
    return SimpleNamespace(
        name="rock",
        buildconf=PackageRepository(
            package="buildconf", repo_url=BUILDCONF, branch="master",
            head_sha="conf0", buildconf=True, path="/ws/autoproj",
        ),
        packages=[
            PackageRepository(package="base/types", repo_url=BASE_TYPES, head_sha="main0"),
            PackageRepository(package="base/types_ruby", repo_url=BASE_TYPES, head_sha="main0"),
            PackageRepository(package="tools/syskit", repo_url=SYSKIT, head_sha="sys0"),
            PackageRepository(
                package="rock.core", repo_url="git@github.com:rock-core/package_set.git",
                package_set=True, overrides_key="rock.core", head_sha="set0",
            ),
        ],
    )
