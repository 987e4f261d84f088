"""Value types shared by every git hosting service adapter.

Adapters parse provider JSON into these once; nothing downstream sees a raw
payload.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from buildsentinel.git_api.url import RepositoryRef

PullRequestState = Literal["open", "closed"]
PullRequestAction = Literal["opened", "synchronize", "closed"]


@dataclass(frozen=True)
class PullRequest:
    """A pull (or merge) request, as seen from its base repository.

    ``dependencies`` is filled lazily by the dependency resolver and is not
    part of equality or hashing.
    """

    repo: RepositoryRef
    number: int
    state: PullRequestState
    title: str
    body: str
    base_branch: str
    base_sha: str | None
    base_owner: str
    base_name: str
    head_branch: str
    head_sha: str
    head_owner: str
    head_name: str | None
    head_repo_id: int | None
    updated_at: datetime
    draft: bool = False
    mergeable: bool | None = None
    web_url: str = ""
    author: str = ""
    last_committer: str = ""
    dependencies: list[PullRequest] = field(
        default_factory=list, compare=False, hash=False, repr=False
    )

    @property
    def key(self) -> tuple[RepositoryRef, int]:
        return (self.repo, self.number)

    @property
    def open(self) -> bool:
        return self.state == "open"

    @property
    def repository_url(self) -> str:
        return self.repo.url


@dataclass(frozen=True)
class Branch:
    repo: RepositoryRef
    name: str
    head_sha: str
    commit_author: str = ""
    commit_date: datetime | None = None


@dataclass(frozen=True)
class PushEvent:
    """A new head on a tracked mainline branch."""

    repo: RepositoryRef
    branch: str
    head_sha: str
    author: str = ""
    created_at: datetime | None = None


@dataclass(frozen=True)
class PullRequestEvent:
    """A pull request lifecycle change detected by the poller.

    ``synchronize`` is a push to the pull request branch. ``closed`` events
    may carry no pull request when only the cache still knew about it.
    """

    action: PullRequestAction
    repo: RepositoryRef
    number: int
    pull_request: PullRequest | None = None


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
