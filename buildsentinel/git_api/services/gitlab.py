"""GitLab REST API (v4) adapter."""

from __future__ import annotations

import posixpath
import re
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

from buildsentinel.git_api.models import Branch, PullRequest, parse_timestamp
from buildsentinel.git_api.service import RateLimit, Service, register_service
from buildsentinel.git_api.url import RepositoryRef

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# !N
SHORT_REF_RE = re.compile(r"^!(\d+)$")
# sibling!N, a project in the same namespace
RELATIVE_REF_RE = re.compile(r"^([A-Za-z0-9\-_.]+)!(\d+)$")
# group/subgroup/project!N
FULL_REF_RE = re.compile(r"^((?:[A-Za-z0-9\-_.]+/)*[A-Za-z0-9\-_.]+/?)!(\d+)$")

_MERGE_STATUS = {"can_be_merged": True, "cannot_be_merged": False}

# GitLab does not rate limit API tokens the way GitHub does
UNLIMITED = RateLimit(remaining=1000, resets_in=0)


@register_service
class GitLab(Service):
    name = "gitlab"

    def default_endpoint(self) -> str:
        return f"https://{self.host}/api/v4"

    def auth_headers(self, access_token: str) -> dict[str, str]:
        return {"PRIVATE-TOKEN": access_token}

    @staticmethod
    def _project(repo: RepositoryRef) -> str:
        return quote(repo.path, safe="")

    async def pull_requests(
        self, repo: RepositoryRef, *, state: str | None = None, base: str | None = None
    ) -> list[PullRequest]:
        params: dict[str, Any] = {}
        if state:
            params["state"] = "opened" if state == "open" else state
        if base:
            params["target_branch"] = base

        items = await self._get_paginated(
            f"/projects/{self._project(repo)}/merge_requests", params
        )
        return [merge_request_from_json(repo, item) for item in items]

    async def pull_request(self, repo: RepositoryRef, number: int) -> PullRequest:
        data = await self._get(f"/projects/{self._project(repo)}/merge_requests/{number}")
        return merge_request_from_json(repo, data)

    async def branches(self, repo: RepositoryRef) -> list[Branch]:
        items = await self._get_paginated(f"/projects/{self._project(repo)}/repository/branches")
        return [branch_from_json(repo, item) for item in items]

    async def branch(self, repo: RepositoryRef, name: str) -> Branch:
        data = await self._get(
            f"/projects/{self._project(repo)}/repository/branches/{quote(name, safe='')}"
        )
        return branch_from_json(repo, data)

    async def delete_branch(self, repo: RepositoryRef, name: str) -> None:
        await self._send(
            "DELETE",
            f"/projects/{self._project(repo)}/repository/branches/{quote(name, safe='')}",
        )

    async def rate_limit(self) -> RateLimit:
        return UNLIMITED

    def merge_ref(self, pull_request: PullRequest) -> str:
        return f"refs/merge-requests/{pull_request.number}/merge"

    def head_ref(self, pull_request: PullRequest) -> str:
        return f"refs/merge-requests/{pull_request.number}/head"

    def extract_info_from_pull_request_ref(
        self, ref: str, pull_request: PullRequest
    ) -> tuple[str, int] | None:
        info = (
            _short_ref(ref, pull_request)
            or _relative_ref(ref, pull_request)
            or _full_ref(ref)
            or _url_ref(ref)
        )
        if info is None:
            return None
        path, number = info
        return (f"https://{self.host}/{path}", number)


def _short_ref(ref: str, pull_request: PullRequest) -> tuple[str, int] | None:
    m = SHORT_REF_RE.match(ref)
    if not m:
        return None
    return (pull_request.repo.path, int(m.group(1)))


def _relative_ref(ref: str, pull_request: PullRequest) -> tuple[str, int] | None:
    m = RELATIVE_REF_RE.match(ref)
    if not m:
        return None
    path = posixpath.join(posixpath.dirname(pull_request.repo.path), m.group(1))
    return (path, int(m.group(2)))


def _full_ref(ref: str) -> tuple[str, int] | None:
    m = FULL_REF_RE.match(ref)
    if not m:
        return None
    return (m.group(1).rstrip("/"), int(m.group(2)))


def _url_ref(ref: str) -> tuple[str, int] | None:
    """``https://host/group/project/-/merge_requests/N``."""
    if not ref.lower().startswith(("http://", "https://")):
        return None
    try:
        repo = RepositoryRef.parse(ref)
    except ValueError:
        return None

    segments = repo.path.split("/")
    if len(segments) < 3 or not segments[-1].isdigit():
        return None
    number = int(segments.pop())
    if segments.pop() != "merge_requests":
        return None
    if segments and segments[-1] == "-":
        segments.pop()
    if not segments:
        return None
    return ("/".join(segments), number)


def merge_request_from_json(repo: RepositoryRef, data: dict[str, Any]) -> PullRequest:
    state = data.get("state")
    source_project_id = data.get("source_project_id")
    draft = data.get("draft")
    if draft is None:
        draft = data.get("work_in_progress")

    return PullRequest(
        repo=repo,
        number=int(data["iid"]),
        state="open" if state == "opened" else "closed",
        title=data.get("title") or "",
        body=data.get("description") or "",
        base_branch=data.get("target_branch") or "",
        base_sha=(data.get("diff_refs") or {}).get("base_sha"),
        base_owner=repo.owner,
        base_name=repo.name,
        head_branch=data.get("source_branch") or "",
        head_sha=data.get("sha") or "",
        head_owner="",
        head_name=None,
        head_repo_id=int(source_project_id) if source_project_id is not None else None,
        updated_at=parse_timestamp(data.get("updated_at")) or _EPOCH,
        draft=bool(draft),
        mergeable=_MERGE_STATUS.get(data.get("merge_status") or ""),
        web_url=data.get("web_url") or "",
        author=(data.get("author") or {}).get("username") or "",
    )


def branch_from_json(repo: RepositoryRef, data: dict[str, Any]) -> Branch:
    commit = data.get("commit") or {}
    return Branch(
        repo=repo,
        name=data["name"],
        head_sha=commit.get("id") or "",
        commit_author=commit.get("committer_name") or "",
        commit_date=parse_timestamp(commit.get("committed_date")),
    )
