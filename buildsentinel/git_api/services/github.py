"""GitHub REST API adapter, including asynchronous mergeability resolution."""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import quote

import structlog

from buildsentinel.git_api.models import Branch, PullRequest, parse_timestamp
from buildsentinel.git_api.service import RateLimit, Service, register_service
from buildsentinel.git_api.url import RepositoryRef

log = structlog.get_logger("buildsentinel.git_api.github")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# owner/name#N
OWNER_NAME_AND_NUMBER_RE = re.compile(r"^([A-Za-z\d+_\-.]+)/([A-Za-z\d+_\-.]+)#(\d+)$")
# #N
NUMBER_RE = re.compile(r"^#(\d+)$")

MergeabilityKey = tuple[RepositoryRef, int, Optional[str], str]


@dataclass
class MergeabilityCacheEntry:
    mergeable: bool | None
    last_access: datetime


@register_service
class GitHub(Service):
    """GitHub (and GitHub Enterprise, through ``api_endpoint``)."""

    name = "github"

    def __init__(
        self,
        host: str,
        *,
        mergeability_timeout: float = 60.0,
        mergeability_poll_interval: float = 0.1,
        mergeability_cache_lifetime: float = 7.0,
        **options: Any,
    ) -> None:
        super().__init__(host, **options)
        self.mergeability_timeout = mergeability_timeout
        self.mergeability_poll_interval = mergeability_poll_interval
        self.mergeability_cache_lifetime = timedelta(days=mergeability_cache_lifetime)
        self.mergeability_cache: dict[MergeabilityKey, MergeabilityCacheEntry] = {}
        self._pull_request_url_re = re.compile(
            r"^https?://(?:\w+\.)?" + re.escape(host)
            + r"/+([A-Za-z\d+_\-.]+)/+([A-Za-z\d+_\-.]+)/+pull/+(\d+)/?$",
            re.IGNORECASE,
        )

    def default_endpoint(self) -> str:
        if self.host == "github.com":
            return "https://api.github.com"
        return f"https://{self.host}/api/v3"

    def auth_headers(self, access_token: str) -> dict[str, str]:
        return {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "Authorization": f"token {access_token}",
        }

    # ── pull requests ──────────────────────────────────────────────────────

    async def pull_requests(
        self, repo: RepositoryRef, *, state: str | None = None, base: str | None = None
    ) -> list[PullRequest]:
        params: dict[str, Any] = {}
        if state:
            params["state"] = state
        if base:
            params["base"] = base

        items = await self._get_paginated(f"/repos/{repo.path}/pulls", params)
        result = []
        for item in items:
            pr = pull_request_from_json(repo, item)
            result.append(await self.resolve_mergeability(pr))

        self.sweep_mergeability_cache()
        return result

    async def pull_request(self, repo: RepositoryRef, number: int) -> PullRequest:
        data = await self._get(f"/repos/{repo.path}/pulls/{number}")
        return await self.resolve_mergeability(pull_request_from_json(repo, data))

    # ── mergeability ───────────────────────────────────────────────────────

    async def resolve_mergeability(self, pull_request: PullRequest) -> PullRequest:
        """Return *pull_request* with a known ``mergeable`` flag.

        GitHub computes mergeability in the background, so list results may
        carry ``null``. Known answers are memoized per (repo, number, base
        sha, head sha); a timed-out check is treated as not mergeable and is
        not memoized, so the next listing asks again. Pull requests that
        build their head regardless (``head`` strategy, drafts) are never
        polled and keep an unknown flag.
        """
        key: MergeabilityKey = (
            pull_request.repo,
            pull_request.number,
            pull_request.base_sha,
            pull_request.head_sha,
        )
        now = self._now()
        entry = self.mergeability_cache.get(key)
        if entry is not None:
            entry.last_access = now
            return replace(pull_request, mergeable=entry.mergeable)

        mergeable = pull_request.mergeable
        if mergeable is None:
            if self.pr_commit_strategy == "head" or pull_request.draft:
                return pull_request
            mergeable = await self._poll_mergeability(pull_request)
        if mergeable is None:
            return replace(pull_request, mergeable=False)

        self.mergeability_cache[key] = MergeabilityCacheEntry(bool(mergeable), now)
        return replace(pull_request, mergeable=bool(mergeable))

    async def _poll_mergeability(self, pull_request: PullRequest) -> bool | None:
        # the timeout bounds wall-clock time, request latency included
        deadline = time.monotonic() + self.mergeability_timeout
        url = f"/repos/{pull_request.repo.path}/pulls/{pull_request.number}"

        while True:
            data = await self._get(url, headers={"Cache-Control": "no-cache"})
            mergeable = data.get("mergeable")
            if mergeable is not None:
                return bool(mergeable)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.mergeability_poll_interval, remaining))

        log.warning(
            "github.mergeability_timeout",
            repo=str(pull_request.repo),
            number=pull_request.number,
            timeout=self.mergeability_timeout,
        )
        return None

    def sweep_mergeability_cache(self) -> None:
        """Evict entries that were not used for ``mergeability_cache_lifetime``."""
        deadline = self._now() - self.mergeability_cache_lifetime
        stale = [k for k, e in self.mergeability_cache.items() if e.last_access < deadline]
        for key in stale:
            del self.mergeability_cache[key]

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # ── branches ───────────────────────────────────────────────────────────

    async def branches(self, repo: RepositoryRef) -> list[Branch]:
        items = await self._get_paginated(f"/repos/{repo.path}/branches")
        return [branch_from_json(repo, item) for item in items]

    async def branch(self, repo: RepositoryRef, name: str) -> Branch:
        data = await self._get(f"/repos/{repo.path}/branches/{quote(name, safe='')}")
        return branch_from_json(repo, data)

    async def delete_branch(self, repo: RepositoryRef, name: str) -> None:
        # GitHub answers 422 "Reference does not exist" for missing refs
        await self._send(
            "DELETE",
            f"/repos/{repo.path}/git/refs/heads/{quote(name, safe='/')}",
            missing=(404, 422),
        )

    async def rate_limit(self) -> RateLimit:
        data = await self._get("/rate_limit")
        core = (data.get("resources") or {}).get("core") or data.get("rate") or {}
        reset = float(core.get("reset", 0))
        return RateLimit(
            remaining=int(core.get("remaining", 0)),
            resets_in=max(0.0, reset - time.time()),
        )

    # ── refs ───────────────────────────────────────────────────────────────

    def merge_ref(self, pull_request: PullRequest) -> str:
        return f"refs/pull/{pull_request.number}/merge"

    def head_ref(self, pull_request: PullRequest) -> str:
        return f"refs/pull/{pull_request.number}/head"

    def extract_info_from_pull_request_ref(
        self, ref: str, pull_request: PullRequest
    ) -> tuple[str, int] | None:
        m = self._pull_request_url_re.match(ref)
        if m:
            owner, name, number = m.groups()
        else:
            m = OWNER_NAME_AND_NUMBER_RE.match(ref)
            if m:
                owner, name, number = m.groups()
            else:
                m = NUMBER_RE.match(ref)
                if not m:
                    return None
                owner, name = pull_request.repo.owner, pull_request.repo.name
                number = m.group(1)

        return (f"https://{self.host}/{owner}/{name}", int(number))


def pull_request_from_json(repo: RepositoryRef, data: dict[str, Any]) -> PullRequest:
    base = data.get("base") or {}
    head = data.get("head") or {}
    base_repo = base.get("repo") or {}
    head_repo = head.get("repo") or {}
    head_repo_id = head_repo.get("id")

    return PullRequest(
        repo=repo,
        number=int(data["number"]),
        state="open" if data.get("state") == "open" else "closed",
        title=data.get("title") or "",
        body=data.get("body") or "",
        base_branch=base.get("ref") or "",
        base_sha=base.get("sha"),
        base_owner=(base_repo.get("owner") or {}).get("login") or repo.owner,
        base_name=base_repo.get("name") or repo.name,
        head_branch=head.get("ref") or "",
        head_sha=head.get("sha") or "",
        head_owner=(head_repo.get("owner") or {}).get("login") or "",
        head_name=head_repo.get("name"),
        head_repo_id=int(head_repo_id) if head_repo_id is not None else None,
        updated_at=parse_timestamp(data.get("updated_at")) or _EPOCH,
        draft=bool(data.get("draft")),
        mergeable=data.get("mergeable"),
        web_url=data.get("html_url") or "",
        author=(data.get("user") or {}).get("login") or "",
        last_committer=(head.get("user") or {}).get("login") or "",
    )


def branch_from_json(repo: RepositoryRef, data: dict[str, Any]) -> Branch:
    commit = data.get("commit") or {}
    author = (commit.get("commit") or {}).get("author") or {}
    return Branch(
        repo=repo,
        name=data["name"],
        head_sha=commit.get("sha") or "",
        commit_author=author.get("name") or "",
        commit_date=parse_timestamp(author.get("date")),
    )
