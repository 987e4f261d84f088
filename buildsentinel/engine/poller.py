"""Reconciliation loop body: poll watched repositories and dispatch what changed.

Nothing pushes events to the daemon; each cycle lists the open pull requests
and mainline heads of every watched repository and derives events from the
difference with the pull request cache and the local workspace:

* an open pull request without a cache record is ``opened``,
* an open pull request with a cache record is ``synchronize`` (the cache
  decides whether anything actually changed),
* a cache record without a matching open pull request is ``closed``,
* a mainline head that differs from the local checkout is a push.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from buildsentinel.core.config import DaemonConfig
from buildsentinel.engine.buildbot import Buildbot
from buildsentinel.engine.buildconf import BuildconfManager, branch_name
from buildsentinel.engine.cache import PullRequestCache
from buildsentinel.engine.updater import WorkspaceUpdater
from buildsentinel.engine.workspace import PackageRepository
from buildsentinel.git_api.client import Client
from buildsentinel.git_api.models import Branch, PullRequestEvent, PushEvent
from buildsentinel.git_api.url import RepositoryRef

log = structlog.get_logger("buildsentinel.engine")

# Seconds after a failed workspace update before asking for another attempt
FAILED_UPDATE_RESTART_DELAY = 300

Event = PushEvent | PullRequestEvent


@dataclass(frozen=True)
class RestartRequested:
    """The workspace must be updated and reloaded before the next cycle."""

    reason: str


class Poller:
    def __init__(
        self,
        config: DaemonConfig,
        client: Client,
        manager: BuildconfManager,
        cache: PullRequestCache,
        updater: WorkspaceUpdater,
        buildbot: Buildbot,
    ) -> None:
        self.config = config
        self.client = client
        self.manager = manager
        self.cache = cache
        self.updater = updater
        self.buildbot = buildbot

    @property
    def buildconf(self) -> PackageRepository:
        return self.manager.buildconf

    # ── polling ────────────────────────────────────────────────────────────

    async def poll(self) -> RestartRequested | None:
        """Run one cycle over every watched repository.

        A failure on one repository is logged and does not keep the others
        from being processed.
        """
        restart: RestartRequested | None = None

        if self.updater.update_failed is not None:
            elapsed = self.updater.seconds_since_failure() or 0.0
            log.info("poller.update_failed", seconds_since_failure=int(elapsed))
            if elapsed > FAILED_UPDATE_RESTART_DELAY:
                restart = RestartRequested("retrying failed workspace update")

        for pkg in self.manager.unique_packages():
            try:
                events = await self.collect_events(pkg)
                for event in events:
                    restart = await self.dispatch(event) or restart
            except Exception:
                log.exception("poller.repository_failed", repo=str(pkg.repo), branch=pkg.branch)

        try:
            event = await self.buildconf_push()
            if event is not None:
                restart = await self.dispatch(event) or restart
        except Exception:
            log.exception("poller.repository_failed", repo=str(self.buildconf.repo),
                          branch=self.buildconf.branch)

        return restart

    async def collect_events(self, pkg: PackageRepository) -> list[Event]:
        """Events for one watched (repository, branch) pair."""
        events: list[Event] = []
        if self.updater.update_failed is None:
            events.extend(await self.pull_request_events(pkg))

        push = await self.mainline_push(pkg)
        if push is not None:
            events.append(push)
        return events

    async def pull_request_events(self, pkg: PackageRepository) -> list[PullRequestEvent]:
        repo = pkg.repo
        open_prs = await self.client.pull_requests(pkg.repo_url, base=pkg.branch, state="open")

        events: list[PullRequestEvent] = []
        for pr in open_prs:
            if self.manager.is_stale(pr):
                continue
            action = "synchronize" if self.cache.cached(pr) is not None else "opened"
            events.append(PullRequestEvent(action, pr.repo, pr.number, pr))

        open_numbers = {pr.number for pr in open_prs}
        for record in list(self.cache.pull_requests):
            if (
                record.repo == repo
                and record.base_branch == pkg.branch
                and record.number not in open_numbers
            ):
                events.append(PullRequestEvent("closed", repo, record.number))
        return events

    async def mainline_push(self, pkg: PackageRepository) -> PushEvent | None:
        branch = await self.client.branch(pkg.repo_url, pkg.branch)
        stale = [
            p for p in self.manager.packages
            if p.repo == pkg.repo and p.branch == pkg.branch
            and p.head_sha is not None and p.head_sha != branch.head_sha
        ]
        if not stale:
            return None
        log.info("poller.push_detected", repo=str(pkg.repo), branch=pkg.branch,
                 local=stale[0].head_sha, remote=branch.head_sha)
        return _push_event(branch)

    async def buildconf_push(self) -> PushEvent | None:
        buildconf = self.buildconf
        branch = await self.client.branch(buildconf.repo_url, buildconf.branch)
        if buildconf.head_sha is None or buildconf.head_sha == branch.head_sha:
            return None
        log.info("poller.buildconf_push_detected", local=buildconf.head_sha,
                 remote=branch.head_sha)
        return _push_event(branch)

    # ── dispatch ───────────────────────────────────────────────────────────

    async def dispatch(self, event: Event) -> RestartRequested | None:
        if isinstance(event, PushEvent):
            return await self.handle_push(event)
        if event.action == "closed":
            await self.handle_closed(event.repo, event.number)
            return None
        await self.handle_pull_request(event)
        return None

    async def handle_push(self, event: PushEvent) -> RestartRequested:
        if event.repo == self.buildconf.repo and event.branch == self.buildconf.branch:
            # every override branch was computed against the old buildconf
            self.cache.clear()
            self.cache.dump()
            log.info("poller.cache_cleared", reason="buildconf push")
            return RestartRequested("buildconf changed")

        if self.updater.update_failed is not None:
            log.info("poller.build_skipped", repo=str(event.repo), reason="last update failed")
        else:
            branch = Branch(
                repo=event.repo,
                name=event.branch,
                head_sha=event.head_sha,
                commit_author=event.author,
                commit_date=event.created_at,
            )
            for pkg in self.manager.packages:
                if pkg.repo == event.repo and pkg.branch == event.branch:
                    await self.buildbot.post_mainline_changes(pkg, branch, self.buildconf.branch)
        return RestartRequested(f"push on {event.repo}")

    async def handle_pull_request(self, event: PullRequestEvent) -> None:
        pr = event.pull_request
        if pr is None:
            return
        if self.manager.targets_buildconf(pr):
            log.info("poller.pull_request_skipped", repo=str(pr.repo), number=pr.number,
                     reason="targets buildconf")
            return
        if self.updater.update_failed is not None:
            log.info("poller.pull_request_skipped", repo=str(pr.repo), number=pr.number,
                     reason="last update failed")
            return

        if await self.manager.apply_pull_request(pr):
            log.info("poller.pull_request_built", action=event.action, repo=str(pr.repo),
                     number=pr.number, head=pr.head_sha)

    async def handle_closed(self, repo: RepositoryRef, number: int) -> None:
        name = branch_name(self.manager.project, repo, number)
        try:
            await self.manager.delete_branch(name)
        finally:
            self.cache.discard(repo, number)
            self.cache.dump()
            log.info("poller.pull_request_closed", repo=str(repo), number=number)


def _push_event(branch: Branch) -> PushEvent:
    return PushEvent(
        repo=branch.repo,
        branch=branch.name,
        head_sha=branch.head_sha,
        author=branch.commit_author,
        created_at=branch.commit_date,
    )
