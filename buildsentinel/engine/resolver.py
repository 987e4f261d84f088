"""Pull request dependency discovery and closure.

Pull requests reference each other from their description, and those
references can form cycles. Every pull request is fetched at most once per
resolution and kept in an arena keyed by ``(repo, number)``; the closure is
a depth-first walk with an explicit visited set.
"""

from __future__ import annotations

import structlog

from buildsentinel.git_api.client import Client
from buildsentinel.git_api.exceptions import NotFound
from buildsentinel.git_api.models import PullRequest
from buildsentinel.git_api.ref_parser import parse_task_list
from buildsentinel.git_api.url import RepositoryRef

log = structlog.get_logger("buildsentinel.engine")


def recursive_dependencies(pull_request: PullRequest) -> list[PullRequest]:
    """All pull requests reachable through ``dependencies``, excluding *pull_request*."""
    visited = {pull_request.key}
    result: list[PullRequest] = []
    stack = list(reversed(pull_request.dependencies))
    while stack:
        pr = stack.pop()
        if pr.key in visited:
            continue
        visited.add(pr.key)
        result.append(pr)
        stack.extend(reversed(pr.dependencies))
    return result


class DependencyResolver:
    """Fills ``PullRequest.dependencies`` from "Depends on" task lists."""

    def __init__(self, client: Client) -> None:
        self.client = client

    async def resolve(self, pull_request: PullRequest) -> PullRequest:
        """Populate the dependency graph reachable from *pull_request*, in place."""
        arena: dict[tuple[RepositoryRef, int], PullRequest] = {pull_request.key: pull_request}
        pull_request.dependencies.clear()
        pending = [pull_request]

        while pending:
            current = pending.pop()
            for ref in parse_task_list(current.body):
                dependency = await self._lookup(ref, current, arena, pending)
                if dependency is None or dependency.key == current.key:
                    continue
                if all(dep.key != dependency.key for dep in current.dependencies):
                    current.dependencies.append(dependency)

        return pull_request

    async def _lookup(
        self,
        ref: str,
        current: PullRequest,
        arena: dict[tuple[RepositoryRef, int], PullRequest],
        pending: list[PullRequest],
    ) -> PullRequest | None:
        info = self.client.extract_info_from_pull_request_ref(ref, current)
        if info is None:
            return None
        url, number = info
        if not self.client.supports(url):
            log.debug("resolver.unsupported_ref", ref=ref, url=url)
            return None

        key = (RepositoryRef.parse(url), number)
        found = arena.get(key)
        if found is not None:
            return found

        try:
            found = await self.client.pull_request(url, number)
        except NotFound:
            log.warning("resolver.dependency_not_found", ref=ref, referenced_from=str(current.repo),
                        number=current.number)
            return None

        arena[key] = found
        pending.append(found)
        return found
