"""Build trigger: posts change notifications to Buildbot's change hook."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from buildsentinel.core.config import DaemonConfig
from buildsentinel.engine.workspace import PackageRepository
from buildsentinel.git_api.models import Branch, PullRequest

log = structlog.get_logger("buildsentinel.engine")


class Buildbot:
    """Posts changes as form data to ``<scheme>://<host>:<port>/change_hook/<hook>``.

    Failures are logged and reported as ``False``; a build trigger being
    down never stops the daemon.
    """

    def __init__(
        self,
        config: DaemonConfig,
        project: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.project = project
        self.url = (
            f"{config.daemon_buildbot_scheme}://{config.daemon_buildbot_host}:"
            f"{config.daemon_buildbot_port}/change_hook/{config.daemon_buildbot_change_hook}"
        )
        self._client = httpx.AsyncClient(timeout=30.0, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def post_mainline_changes(
        self, package: PackageRepository, branch: Branch, buildconf_branch: str
    ) -> bool:
        """A tracked mainline branch moved: build the buildconf's own branch."""
        return await self.post_change(
            author=branch.commit_author,
            branch=buildconf_branch,
            category="push",
            repository=package.repo.url,
            revision=branch.head_sha,
            revlink=package.repo.url,
            when=branch.commit_date,
            source_branch=branch.name,
            properties={"source_branch": branch.name},
        )

    async def post_pull_request_changes(self, pull_request: PullRequest, branch_name: str) -> bool:
        """A pull request changed: build its override branch."""
        properties: dict[str, Any] = {"source_branch": pull_request.head_branch}
        if pull_request.head_repo_id is not None:
            properties["source_project_id"] = pull_request.head_repo_id

        return await self.post_change(
            author=pull_request.last_committer or pull_request.author,
            branch=branch_name,
            category="pull_request",
            repository=pull_request.repository_url,
            revision=pull_request.head_sha,
            revlink=pull_request.web_url or pull_request.repository_url,
            when=pull_request.updated_at,
            source_branch=pull_request.head_branch,
            properties=properties,
        )

    async def post_change(
        self,
        *,
        author: str,
        branch: str,
        category: str,
        repository: str,
        revision: str,
        revlink: str,
        when: datetime | None,
        source_branch: str,
        properties: dict[str, Any],
    ) -> bool:
        when = when or datetime.now(timezone.utc)
        data = {
            "author": author,
            "branch": branch,
            "category": category,
            "project": self.project,
            "repository": repository,
            "revision": revision,
            "revlink": revlink,
            "source_branch": source_branch,
            "when": str(int(when.timestamp())),
            "properties": json.dumps(properties),
        }

        try:
            response = await self._client.post(self.url, data=data)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            log.error("buildbot.notify_failed", branch=branch, category=category, error=str(exc))
            return False

        log.info("buildbot.notified", branch=branch, category=category, revision=revision)
        return True
