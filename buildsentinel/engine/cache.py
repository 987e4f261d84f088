"""Pull request cache: what the daemon has already acted upon.

The cache file is the only durable state. It is rewritten atomically and
can be deleted at any time, which only costs a full resynchronization.

File format (YAML)::

    - repo_url: https://github.com/rock-core/base-types
      number: 42
      base_branch: master
      head_sha: 7d1c...
      draft: false
      updated_at: '2024-03-01T10:00:00+00:00'
      dependencies:
        - repository: https://github.com/rock-core/tools-syskit
          number: 7
          base_branch: master
          head: 91be...
          draft: false
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog
import yaml

from buildsentinel.engine.resolver import recursive_dependencies
from buildsentinel.git_api.models import PullRequest, parse_timestamp
from buildsentinel.git_api.url import RepositoryRef

log = structlog.get_logger("buildsentinel.engine")


@dataclass(frozen=True, order=True)
class CachedDependency:
    repository: str
    number: int
    base_branch: str
    head: str
    draft: bool


@dataclass
class CachedPullRequest:
    repo_url: str
    number: int
    base_branch: str
    head_sha: str
    draft: bool
    updated_at: datetime
    dependencies: frozenset[CachedDependency] = field(default_factory=frozenset)

    @property
    def repo(self) -> RepositoryRef:
        return RepositoryRef.parse(self.repo_url)

    def caches(self, repo: RepositoryRef, number: int) -> bool:
        return self.number == number and self.repo == repo

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo_url": self.repo_url,
            "number": self.number,
            "base_branch": self.base_branch,
            "head_sha": self.head_sha,
            "draft": self.draft,
            "updated_at": self.updated_at.isoformat(),
            "dependencies": [
                {
                    "repository": dep.repository,
                    "number": dep.number,
                    "base_branch": dep.base_branch,
                    "head": dep.head,
                    "draft": dep.draft,
                }
                for dep in sorted(self.dependencies)
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CachedPullRequest:
        updated_at = parse_timestamp(data["updated_at"])
        if updated_at is None:
            raise ValueError(f"invalid updated_at: {data['updated_at']!r}")
        return cls(
            repo_url=data["repo_url"],
            number=int(data["number"]),
            base_branch=data["base_branch"],
            head_sha=data["head_sha"],
            draft=bool(data.get("draft", False)),
            updated_at=updated_at,
            dependencies=frozenset(
                CachedDependency(
                    repository=dep["repository"],
                    number=int(dep["number"]),
                    base_branch=dep["base_branch"],
                    head=dep["head"],
                    draft=bool(dep.get("draft", False)),
                )
                for dep in data.get("dependencies") or []
            ),
        )


def dependency_fingerprint(pull_request: PullRequest) -> frozenset[CachedDependency]:
    return frozenset(
        CachedDependency(
            repository=dep.repository_url,
            number=dep.number,
            base_branch=dep.base_branch,
            head=dep.head_sha,
            draft=dep.draft,
        )
        for dep in recursive_dependencies(pull_request)
    )


class PullRequestCache:
    """Records keyed by ``(repo, number)``, persisted to a YAML file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.pull_requests: list[CachedPullRequest] = []

    def __len__(self) -> int:
        return len(self.pull_requests)

    def cached(self, pull_request: PullRequest) -> CachedPullRequest | None:
        return self.find(pull_request.repo, pull_request.number)

    def find(self, repo: RepositoryRef, number: int) -> CachedPullRequest | None:
        for record in self.pull_requests:
            if record.caches(repo, number):
                return record
        return None

    def add(self, pull_request: PullRequest) -> CachedPullRequest:
        self.delete(pull_request)
        record = CachedPullRequest(
            repo_url=pull_request.repository_url,
            number=pull_request.number,
            base_branch=pull_request.base_branch,
            head_sha=pull_request.head_sha,
            draft=pull_request.draft,
            updated_at=pull_request.updated_at,
            dependencies=dependency_fingerprint(pull_request),
        )
        self.pull_requests.append(record)
        return record

    def changed(self, pull_request: PullRequest) -> bool:
        """Whether *pull_request* differs from what was last acted upon.

        A differing head, base or draft flag only counts when ``updated_at``
        moved forward, so an out-of-order listing never replaces a fresher
        record. A differing dependency fingerprint always counts.
        """
        record = self.cached(pull_request)
        if record is None:
            return True

        if record.dependencies != dependency_fingerprint(pull_request):
            return True

        differs = (
            record.head_sha != pull_request.head_sha
            or record.base_branch != pull_request.base_branch
            or record.draft != pull_request.draft
        )
        return differs and pull_request.updated_at > record.updated_at

    def delete(self, pull_request: PullRequest) -> None:
        self.discard(pull_request.repo, pull_request.number)

    def discard(self, repo: RepositoryRef, number: int) -> None:
        self.pull_requests = [r for r in self.pull_requests if not r.caches(repo, number)]

    def clear(self) -> None:
        self.pull_requests = []

    def prune(self, keep: set[tuple[RepositoryRef, int]]) -> list[CachedPullRequest]:
        """Drop every record whose ``(repo, number)`` is not in *keep*."""
        kept, dropped = [], []
        for record in self.pull_requests:
            (kept if (record.repo, record.number) in keep else dropped).append(record)
        self.pull_requests = kept
        return dropped

    def dump(self) -> None:
        """Atomically replace the cache file with the current records."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = yaml.safe_dump(
            [record.to_dict() for record in self.pull_requests], sort_keys=False
        )
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def load(self) -> PullRequestCache:
        """Read the cache file. A missing or unreadable file means starting cold."""
        if not self.path.exists():
            self.pull_requests = []
            return self

        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or []
            self.pull_requests = [CachedPullRequest.from_dict(item) for item in data]
        except (yaml.YAMLError, KeyError, TypeError, ValueError) as exc:
            log.warning("cache.unreadable", path=str(self.path), error=str(exc))
            self.pull_requests = []
        return self
