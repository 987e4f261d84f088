"""Tests for Buildbot change notifications."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from buildsentinel.core.config import DaemonConfig
from buildsentinel.engine.buildbot import Buildbot
from buildsentinel.git_api.models import Branch
from buildsentinel.git_api.url import RepositoryRef

from conftest import BASE_TYPES


def _recording_buildbot(config, status=200):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(status)

    return Buildbot(config, "rock", transport=httpx.MockTransport(handler)), requests


def _form(request):
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class TestBuildbot:
    def test_url(self):
        config = DaemonConfig(
            daemon_buildbot_host="ci.example.com",
            daemon_buildbot_port=9000,
            daemon_buildbot_scheme="https",
            daemon_buildbot_change_hook="github",
        )
        assert Buildbot(config, "rock").url == "https://ci.example.com:9000/change_hook/github"

    @pytest.mark.anyio
    async def test_pull_request_changes(self, config, make_pr):
        buildbot, requests = _recording_buildbot(config)
        updated = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
        pr = make_pr(number=5, head_sha="abc", head_branch="fix", head_repo_id=77,
                     last_committer="bob", updated_at=updated)

        assert await buildbot.post_pull_request_changes(pr, "overrides/rock/x/y/z/pulls/5")

        [request] = requests
        assert request.method == "POST"
        assert str(request.url) == "http://localhost:8010/change_hook/base"
        form = _form(request)
        assert form["author"] == "bob"
        assert form["branch"] == "overrides/rock/x/y/z/pulls/5"
        assert form["category"] == "pull_request"
        assert form["project"] == "rock"
        assert form["repository"] == BASE_TYPES
        assert form["revision"] == "abc"
        assert form["revlink"] == f"{BASE_TYPES}/pull/5"
        assert form["when"] == str(int(updated.timestamp()))
        assert form["source_branch"] == "fix"
        assert json.loads(form["properties"]) == {"source_branch": "fix", "source_project_id": 77}

    @pytest.mark.anyio
    async def test_pull_request_without_committer_uses_author(self, config, make_pr):
        buildbot, requests = _recording_buildbot(config)
        await buildbot.post_pull_request_changes(make_pr(head_repo_id=None), "b")
        form = _form(requests[0])
        assert form["author"] == "contributor"
        assert json.loads(form["properties"]) == {"source_branch": "feature-1"}

    @pytest.mark.anyio
    async def test_mainline_changes(self, config, workspace):
        buildbot, requests = _recording_buildbot(config)
        branch = Branch(
            repo=RepositoryRef.parse(BASE_TYPES), name="develop", head_sha="def",
            commit_author="Alice", commit_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )

        assert await buildbot.post_mainline_changes(workspace.packages[0], branch, "master")

        form = _form(requests[0])
        assert form["category"] == "push"
        assert form["branch"] == "master"
        assert form["author"] == "Alice"
        assert form["revision"] == "def"
        assert form["repository"] == BASE_TYPES
        assert form["source_branch"] == "develop"
        assert json.loads(form["properties"]) == {"source_branch": "develop"}

    @pytest.mark.anyio
    async def test_http_error_is_reported_not_raised(self, config, make_pr):
        buildbot, _ = _recording_buildbot(config, status=500)
        assert not await buildbot.post_pull_request_changes(make_pr(), "b")

    @pytest.mark.anyio
    async def test_unreachable_buildbot(self, config, make_pr):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        buildbot = Buildbot(config, "rock", transport=httpx.MockTransport(handler))
        assert not await buildbot.post_pull_request_changes(make_pr(), "b")
        await buildbot.close()
