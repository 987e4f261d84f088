"""Service adapter contract, shared HTTP plumbing and the service registry."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from buildsentinel.core.config import ConfigError, DaemonConfig, ServiceConfig
from buildsentinel.git_api.exceptions import (
    ConnectionFailed,
    GitAPIError,
    NotFound,
    TooManyRequests,
)
from buildsentinel.git_api.models import Branch, PullRequest
from buildsentinel.git_api.url import RepositoryRef

log = structlog.get_logger("buildsentinel.git_api")

_NEXT_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="next"')

PER_PAGE = 100


@dataclass(frozen=True)
class RateLimit:
    """Provider-reported API budget. Advisory only."""

    remaining: int
    resets_in: float  # seconds


class Service(ABC):
    """One git hosting provider (GitHub, GitLab, ...).

    Every provider-specific failure leaves an adapter method as
    :class:`NotFound`, :class:`ConnectionFailed`, :class:`TooManyRequests`
    or, for anything else, a plain :class:`GitAPIError`.
    """

    name: str = ""

    def __init__(
        self,
        host: str,
        *,
        api_endpoint: str | None = None,
        access_token: str | None = None,
        pr_commit_strategy: str = "auto",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.api_endpoint = api_endpoint or self.default_endpoint()
        if not self.api_endpoint:
            raise ConfigError(f"API endpoint configuration missing for {host}")
        if not access_token:
            raise ConfigError(f"API key configuration missing for {host}")

        self.pr_commit_strategy = pr_commit_strategy
        self._client = httpx.AsyncClient(
            base_url=self.api_endpoint.rstrip("/"),
            headers=self.auth_headers(access_token),
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> Service:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── contract ───────────────────────────────────────────────────────────

    @abstractmethod
    async def pull_requests(
        self, repo: RepositoryRef, *, state: str | None = None, base: str | None = None
    ) -> list[PullRequest]: ...

    @abstractmethod
    async def pull_request(self, repo: RepositoryRef, number: int) -> PullRequest: ...

    @abstractmethod
    async def branches(self, repo: RepositoryRef) -> list[Branch]: ...

    @abstractmethod
    async def branch(self, repo: RepositoryRef, name: str) -> Branch: ...

    @abstractmethod
    async def delete_branch(self, repo: RepositoryRef, name: str) -> None:
        """Delete *name*. A missing branch raises :class:`NotFound`."""

    @abstractmethod
    async def rate_limit(self) -> RateLimit: ...

    @abstractmethod
    def auth_headers(self, access_token: str) -> dict[str, str]: ...

    @abstractmethod
    def merge_ref(self, pull_request: PullRequest) -> str: ...

    @abstractmethod
    def head_ref(self, pull_request: PullRequest) -> str: ...

    @abstractmethod
    def extract_info_from_pull_request_ref(
        self, ref: str, pull_request: PullRequest
    ) -> tuple[str, int] | None:
        """Turn a dependency reference into ``(repo_url, number)``, or None."""

    def default_endpoint(self) -> str | None:
        return None

    def test_branch_name(self, pull_request: PullRequest) -> str:
        """The ref CI should build for *pull_request*.

        ``head`` strategy and drafts always build the head; ``merge`` always
        builds the provider's merge ref; ``auto`` builds the merge ref only
        when the pull request is known to be mergeable.
        """
        if self.pr_commit_strategy == "head" or pull_request.draft:
            return self.head_ref(pull_request)
        if self.pr_commit_strategy == "merge":
            return self.merge_ref(pull_request)
        if pull_request.mergeable is True:
            return self.merge_ref(pull_request)
        return self.head_ref(pull_request)

    # ── http ───────────────────────────────────────────────────────────────

    @contextmanager
    def exception_adapter(self) -> Iterator[None]:
        """Translate httpx failures into the service-agnostic taxonomy."""
        try:
            yield
        except httpx.HTTPStatusError as exc:
            response = exc.response
            if self._is_rate_limited(response):
                raise TooManyRequests(
                    f"{self.host}: rate limit exceeded", status_code=response.status_code
                ) from exc
            if response.status_code == 404:
                raise NotFound(f"{self.host}: {exc.request.url} not found", 404) from exc
            if response.status_code >= 500:
                raise ConnectionFailed(
                    f"{self.host}: server error {response.status_code}",
                    status_code=response.status_code,
                ) from exc
            raise GitAPIError(
                f"{self.host}: HTTP {response.status_code} for {exc.request.url}",
                status_code=response.status_code,
            ) from exc
        except httpx.TransportError as exc:
            raise ConnectionFailed(f"{self.host}: {type(exc).__name__}: {exc}") from exc

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        missing: tuple[int, ...] = (404,),
    ) -> httpx.Response:
        with self.exception_adapter():
            response = await self._client.request(method, url, params=params, headers=headers)
            if response.status_code in missing:
                raise NotFound(f"{self.host}: {method} {url} -> {response.status_code}", 404)
            response.raise_for_status()
        return response

    async def _get(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        response = await self._send("GET", url, params=params, headers=headers)
        return response.json()

    async def _get_paginated(
        self, url: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Collect every item of a paginated endpoint, following ``Link: rel="next"``."""
        params = dict(params or {})
        params.setdefault("per_page", PER_PAGE)

        items: list[dict[str, Any]] = []
        next_url: str | None = url
        first = True
        while next_url:
            response = await self._send("GET", next_url, params=params if first else None)
            data = response.json()
            if isinstance(data, list):
                items.extend(data)
            else:
                items.append(data)
            next_url = self._parse_next_link(response.headers.get("Link", ""))
            first = False
        return items

    @staticmethod
    def _is_rate_limited(response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code != 403:
            return False
        for header in ("X-RateLimit-Remaining", "RateLimit-Remaining"):
            remaining = response.headers.get(header)
            if remaining is not None and remaining.strip() == "0":
                return True
        return "Retry-After" in response.headers

    @staticmethod
    def _parse_next_link(link_header: str) -> str | None:
        match = _NEXT_LINK_RE.search(link_header)
        return match.group(1) if match else None


SERVICE_REGISTRY: dict[str, type[Service]] = {}


def register_service(cls: type[Service]) -> type[Service]:
    """Class decorator: make *cls* selectable by its ``name`` in configuration."""
    SERVICE_REGISTRY[cls.name] = cls
    return cls


def create_service(
    host: str,
    service_config: ServiceConfig,
    config: DaemonConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Service:
    """Instantiate the adapter configured for *host*."""
    import buildsentinel.git_api.services  # noqa: F401  (registers adapters)

    cls = SERVICE_REGISTRY.get(service_config.service)
    if cls is None:
        raise ConfigError(f"unknown service '{service_config.service}' for {host}")

    options: dict[str, Any] = {}
    if cls.name == "github":
        options.update(
            mergeability_timeout=config.mergeability_timeout,
            mergeability_poll_interval=config.mergeability_poll_interval,
            mergeability_cache_lifetime=config.mergeability_cache_lifetime,
        )
    return cls(
        host,
        api_endpoint=service_config.api_endpoint,
        access_token=service_config.access_token,
        pr_commit_strategy=config.pr_commit_strategy,
        transport=transport,
        **options,
    )
