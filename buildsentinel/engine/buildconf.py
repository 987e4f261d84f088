"""Override branches in the build configuration repository.

Every open pull request on a tracked package gets one branch in the buildconf
repository, named after the project, the pull request's repository and its
number. The branch carries a single overrides file that points each affected
package (the pull request's own and those of its dependencies) to the pull
request's test ref.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

import structlog
import yaml

from buildsentinel.core.config import DaemonConfig
from buildsentinel.engine.buildbot import Buildbot
from buildsentinel.engine.cache import PullRequestCache
from buildsentinel.engine.resolver import DependencyResolver, recursive_dependencies
from buildsentinel.engine.workspace import PackageRepository, Workspace
from buildsentinel.git_api.client import Client
from buildsentinel.git_api.exceptions import NotFound
from buildsentinel.git_api.models import Branch, PullRequest
from buildsentinel.git_api.url import RepositoryRef

log = structlog.get_logger("buildsentinel.engine")

BRANCH_PREFIX = "overrides/"
BRANCH_RE = re.compile(r"^overrides/([A-Za-z0-9_\-.]+)/(.*)/pulls/(\d+)$")

OVERRIDES_FILE = "overrides.d/999-buildsentinel.yml"
OVERRIDES_COMMIT_MSG = "Update PR overrides"

Overrides = list[dict[str, dict[str, Any]]]


@dataclass(frozen=True)
class BuildconfBranch:
    project: str
    full_path: str
    number: int


def branch_name(project: str, repo: RepositoryRef, number: int) -> str:
    return f"{BRANCH_PREFIX}{project}/{repo.full_path}/pulls/{number}"


def parse_buildconf_branch(name: str) -> BuildconfBranch | None:
    """Inverse of :func:`branch_name`. None if *name* is not an override branch."""
    m = BRANCH_RE.match(name)
    if not m or len(name.split("/")) < 7:
        return None
    project, full_path, number = m.groups()
    return BuildconfBranch(project, full_path, int(number))


class OverridesCommitter(Protocol):
    async def commit_and_push(
        self, branch_name: str, file_path: str, content: str, message: str
    ) -> bool: ...


class BuildconfManager:
    """Keeps the buildconf's override branches in line with open pull requests."""

    def __init__(
        self,
        config: DaemonConfig,
        client: Client,
        workspace: Workspace,
        cache: PullRequestCache,
        committer: OverridesCommitter,
        buildbot: Buildbot,
        resolver: DependencyResolver | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.workspace = workspace
        self.cache = cache
        self.committer = committer
        self.buildbot = buildbot
        self.resolver = resolver or DependencyResolver(client)
        self.pull_requests: list[PullRequest] = []
        self.pull_requests_stale: list[PullRequest] = []
        self.branches: list[Branch] = []

    # ── workspace ──────────────────────────────────────────────────────────

    @property
    def project(self) -> str:
        return self.config.project_name(self.workspace.name)

    @property
    def buildconf(self) -> PackageRepository:
        return self.workspace.buildconf

    @property
    def packages(self) -> list[PackageRepository]:
        return self.workspace.packages

    def unique_packages(self) -> list[PackageRepository]:
        """One package per watched (repository, branch) pair."""
        seen: set[tuple[RepositoryRef, str]] = set()
        result = []
        for pkg in self.packages:
            key = (pkg.repo, pkg.branch)
            if key not in seen:
                seen.add(key)
                result.append(pkg)
        return result

    def packages_affected_by(self, pull_request: PullRequest) -> list[PackageRepository]:
        return [
            pkg
            for pkg in self.packages
            if pkg.repo == pull_request.repo and pkg.branch == pull_request.base_branch
        ]

    def targets_buildconf(self, pull_request: PullRequest) -> bool:
        return pull_request.repo == self.buildconf.repo

    def is_stale(self, pull_request: PullRequest, now: datetime | None = None) -> bool:
        """Whether *pull_request* was last updated ``daemon_max_age`` days ago or more."""
        now = now or datetime.now(timezone.utc)
        age = (now.date() - pull_request.updated_at.date()).days
        return age >= self.config.daemon_max_age

    # ── overrides ──────────────────────────────────────────────────────────

    def branch_name(self, pull_request: PullRequest) -> str:
        return branch_name(self.project, pull_request.repo, pull_request.number)

    def overrides_for_pull_request(self, pull_request: PullRequest) -> Overrides:
        overrides: Overrides = []
        for pr in [pull_request, *recursive_dependencies(pull_request)]:
            for pkg in self.packages_affected_by(pr):
                overrides.append(
                    {
                        pkg.override_name: {
                            "remote_branch": self.client.test_branch_name(pr),
                            "single_branch": False,
                            "shallow": False,
                        }
                    }
                )
        return overrides

    async def commit_and_push_overrides(self, name: str, overrides: Overrides) -> bool:
        content = yaml.safe_dump(overrides, sort_keys=False)
        pushed = await self.committer.commit_and_push(
            name, OVERRIDES_FILE, content, OVERRIDES_COMMIT_MSG
        )
        log.info("buildconf.branch_updated" if pushed else "buildconf.branch_unchanged",
                 branch=name, overrides=len(overrides))
        return pushed

    async def apply_pull_request(self, pull_request: PullRequest, *, force: bool = False) -> bool:
        """Bring *pull_request*'s override branch up to date and trigger a build.

        Nothing happens when the cache says the pull request (and its
        dependencies) did not change since it was last acted upon, unless
        *force* is set. Returns whether a build was triggered.
        """
        await self.resolver.resolve(pull_request)
        if not force and not self.cache.changed(pull_request):
            log.debug("buildconf.unchanged", repo=str(pull_request.repo), number=pull_request.number)
            return False

        name = self.branch_name(pull_request)
        await self.commit_and_push_overrides(name, self.overrides_for_pull_request(pull_request))
        self.cache.add(pull_request)
        self.cache.dump()
        await self.buildbot.post_pull_request_changes(pull_request, name)
        return True

    async def delete_branch(self, name: str) -> bool:
        """Delete an override branch. A branch that is already gone is not an error."""
        try:
            await self.client.delete_branch(self.buildconf.repo_url, name)
        except NotFound:
            log.debug("buildconf.branch_already_gone", branch=name)
            return False
        log.info("buildconf.branch_deleted", branch=name)
        return True

    # ── synchronization ────────────────────────────────────────────────────

    async def update_pull_requests(self) -> list[PullRequest]:
        """Fetch open pull requests of every watched branch, split into fresh and stale."""
        fetched: list[PullRequest] = []
        for pkg in self.unique_packages():
            fetched.extend(
                await self.client.pull_requests(pkg.repo_url, base=pkg.branch, state="open")
            )

        self.pull_requests = [pr for pr in fetched if not self.is_stale(pr)]
        self.pull_requests_stale = [pr for pr in fetched if self.is_stale(pr)]
        log.info(
            "buildconf.pull_requests",
            tracked=len(fetched),
            stale=len(self.pull_requests_stale),
        )
        return self.pull_requests

    async def update_branches(self) -> list[Branch]:
        self.branches = await self.client.branches(self.buildconf.repo_url)
        return self.branches

    async def delete_stale_branches(self) -> list[str]:
        """Delete override branches that no fresh open pull request accounts for.

        Unparseable names under the override prefix are leftovers and go too;
        other projects' branches are never touched.
        """
        live = {(pr.repo.full_path, pr.number) for pr in self.pull_requests}
        stale = []
        for branch in self.branches:
            info = parse_buildconf_branch(branch.name)
            if info is None:
                if branch.name.startswith(BRANCH_PREFIX):
                    stale.append(branch.name)
                continue
            if info.project != self.project:
                continue
            if (info.full_path, info.number) not in live:
                stale.append(branch.name)

        for name in stale:
            await self.delete_branch(name)
        return stale

    async def synchronize_branches(self) -> None:
        """Reconcile override branches with the open pull requests.

        Run at startup and after every workspace update: prunes branches of
        pull requests that are gone or stale, and recreates or refreshes the
        branches of open ones.
        """
        await self.update_pull_requests()
        await self.update_branches()
        await self.delete_stale_branches()

        existing = {branch.name for branch in self.branches}
        for pr in self.pull_requests:
            if self.targets_buildconf(pr):
                continue
            try:
                await self.apply_pull_request(pr, force=self.branch_name(pr) not in existing)
            except Exception:
                log.exception("buildconf.sync_failed", repo=str(pr.repo), number=pr.number)

        keep = {pr.key for pr in self.pull_requests + self.pull_requests_stale}
        dropped = self.cache.prune(keep)
        if dropped:
            log.info("buildconf.cache_pruned", records=len(dropped))
        self.cache.dump()
