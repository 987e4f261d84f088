"""Host-routing client that retries transient failures and waits out rate limits."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
import structlog

from buildsentinel.core.config import DaemonConfig
from buildsentinel.git_api.exceptions import ConnectionFailed, TooManyRequests
from buildsentinel.git_api.models import Branch, PullRequest
from buildsentinel.git_api.service import RateLimit, Service, create_service
from buildsentinel.git_api.url import RepositoryRef

log = structlog.get_logger("buildsentinel.git_api")

T = TypeVar("T")


def humanize_time(secs: float) -> str:
    """Format a duration for humans, e.g. ``2h17m23s``."""
    secs = int(secs)
    parts: list[str] = []
    for count, unit in ((60, "s"), (60, "m"), (24, "h")):
        if secs <= 0:
            break
        secs, n = divmod(secs, count)
        if n:
            parts.append(f"{n}{unit}")
    if secs > 0:
        parts.append(f"{secs}d")
    return "".join(reversed(parts)) or "0s"


class Client:
    """Routes every call to the adapter owning the repository's host.

    ``ConnectionFailed`` is retried ``connection_retries`` times with a fixed
    delay, then re-raised. ``TooManyRequests`` is never fatal: the client asks
    the service when the budget resets, sleeps ``resets_in + 1`` seconds and
    tries again, indefinitely.
    """

    def __init__(
        self,
        config: DaemonConfig,
        services: dict[str, Service] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.retries = config.connection_retries
        self.retry_delay = config.connection_retry_delay
        if services is None:
            services = {
                host: create_service(host, svc, config, transport=transport)
                for host, svc in config.services().items()
            }
        self._services = services

    async def close(self) -> None:
        for service in self._services.values():
            await service.close()

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── routing ────────────────────────────────────────────────────────────

    def supports(self, url: str | RepositoryRef) -> bool:
        try:
            return RepositoryRef.parse(url).host in self._services
        except ValueError:
            return False

    def service(self, url: str | RepositoryRef) -> Service:
        """Return the adapter for *url*. Raises ``ValueError`` for unknown hosts."""
        repo = RepositoryRef.parse(url)
        try:
            return self._services[repo.host]
        except KeyError:
            raise ValueError(f"Unsupported service ({repo.host})") from None

    # ── retry ──────────────────────────────────────────────────────────────

    async def with_retry(self, service: Service, call: Callable[[], Awaitable[T]]) -> T:
        """Await *call*, retrying connection failures and waiting out rate limits.

        Connection failures of *call* and of the rate-limit lookup share one
        retry budget; rate-limit waits are retried without bound.
        """
        attempt = 0
        while True:
            try:
                return await call()
            except ConnectionFailed as exc:
                attempt = await self._connection_retry(service, attempt, exc)
            except TooManyRequests:
                try:
                    limit = await service.rate_limit()
                except ConnectionFailed as exc:
                    attempt = await self._connection_retry(service, attempt, exc)
                    continue
                wait = limit.resets_in + 1
                log.warning(
                    "client.rate_limited",
                    host=service.host,
                    wait=humanize_time(wait),
                )
                await asyncio.sleep(wait)

    async def _connection_retry(self, service: Service, attempt: int, exc: ConnectionFailed) -> int:
        attempt += 1
        if attempt > self.retries:
            raise exc
        log.warning(
            "client.connection_retry",
            host=service.host,
            attempt=attempt,
            max_retries=self.retries,
            error=str(exc),
        )
        await asyncio.sleep(self.retry_delay)
        return attempt

    # ── delegation ─────────────────────────────────────────────────────────

    async def pull_requests(
        self, url: str | RepositoryRef, *, state: str | None = None, base: str | None = None
    ) -> list[PullRequest]:
        service, repo = self.service(url), RepositoryRef.parse(url)
        return await self.with_retry(
            service, lambda: service.pull_requests(repo, state=state, base=base)
        )

    async def pull_request(self, url: str | RepositoryRef, number: int) -> PullRequest:
        service, repo = self.service(url), RepositoryRef.parse(url)
        return await self.with_retry(service, lambda: service.pull_request(repo, number))

    async def branches(self, url: str | RepositoryRef) -> list[Branch]:
        service, repo = self.service(url), RepositoryRef.parse(url)
        return await self.with_retry(service, lambda: service.branches(repo))

    async def branch(self, url: str | RepositoryRef, name: str) -> Branch:
        service, repo = self.service(url), RepositoryRef.parse(url)
        return await self.with_retry(service, lambda: service.branch(repo, name))

    async def delete_branch(self, url: str | RepositoryRef, name: str) -> None:
        service, repo = self.service(url), RepositoryRef.parse(url)
        await self.with_retry(service, lambda: service.delete_branch(repo, name))

    async def rate_limit(self, url: str | RepositoryRef) -> RateLimit:
        service = self.service(url)
        return await self.with_retry(service, service.rate_limit)

    def test_branch_name(self, pull_request: PullRequest) -> str:
        return self.service(pull_request.repo).test_branch_name(pull_request)

    def extract_info_from_pull_request_ref(
        self, ref: str, pull_request: PullRequest
    ) -> tuple[str, int] | None:
        return self.service(pull_request.repo).extract_info_from_pull_request_ref(
            ref, pull_request
        )
