"""Daemon configuration: YAML file + BUILDSENTINEL_* environment overrides."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

ENV_PREFIX = "BUILDSENTINEL_"

GITHUB_HOST = "github.com"
GITHUB_API_ENDPOINT = "https://api.github.com"

# Keys that may be overridden from the environment (scalars only).
_ENV_KEYS = (
    "daemon_api_key",
    "daemon_polling_period",
    "daemon_max_age",
    "daemon_buildbot_host",
    "daemon_buildbot_port",
    "daemon_buildbot_scheme",
    "daemon_buildbot_change_hook",
    "daemon_project",
    "daemon_update_command",
    "pr_commit_strategy",
    "mergeability_timeout",
    "mergeability_poll_interval",
    "mergeability_cache_lifetime",
    "connection_retries",
    "connection_retry_delay",
    "cache_path",
)


class ConfigError(Exception):
    """Missing or invalid configuration. Fatal at startup."""


class ServiceConfig(BaseModel):
    """How to talk to one git hosting service."""

    model_config = ConfigDict(frozen=True)

    service: Literal["github", "gitlab"] = "github"
    api_endpoint: str | None = None
    access_token: str | None = None


class DaemonConfig(BaseModel):
    """Immutable daemon configuration, threaded through every component."""

    model_config = ConfigDict(frozen=True)

    daemon_api_key: str | None = None
    daemon_polling_period: int = 60
    daemon_max_age: int = 120  # days
    daemon_buildbot_host: str = "localhost"
    daemon_buildbot_port: int = 8010
    daemon_buildbot_scheme: str = "http"
    daemon_buildbot_change_hook: str = "base"
    daemon_project: str | None = None
    daemon_services: dict[str, ServiceConfig] = {}
    daemon_update_command: str | None = None
    pr_commit_strategy: Literal["auto", "merge", "head"] = "auto"
    mergeability_timeout: float = 60.0
    mergeability_poll_interval: float = 0.1
    mergeability_cache_lifetime: float = 7.0  # days
    connection_retries: int = 5
    connection_retry_delay: float = 1.0
    cache_path: str = ".buildsentinel/pull_request_cache.yml"

    @field_validator("daemon_services", mode="before")
    @classmethod
    def _normalize_hosts(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(host).lower(): params for host, params in v.items()}
        return v

    @field_validator("daemon_polling_period", "daemon_max_age")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    def services(self) -> dict[str, ServiceConfig]:
        """Return the service map with github.com always present.

        Services that do not carry their own token fall back to
        ``daemon_api_key``.
        """
        services = {GITHUB_HOST: ServiceConfig(service="github", api_endpoint=GITHUB_API_ENDPOINT)}
        services.update(self.daemon_services)

        resolved: dict[str, ServiceConfig] = {}
        for host, svc in services.items():
            token = svc.access_token or self.daemon_api_key
            resolved[host] = svc.model_copy(update={"access_token": token})
        return resolved

    def require_api_key(self) -> None:
        """Raise :class:`ConfigError` unless the daemon has a credential."""
        if not self.daemon_api_key:
            raise ConfigError("you must configure the daemon (daemon_api_key) before starting")

    def project_name(self, default: str) -> str:
        return self.daemon_project or default


def load_config(path: str | Path | None = None, env: dict[str, str] | None = None) -> DaemonConfig:
    """Load configuration from *path* (YAML mapping) and the environment.

    A missing file yields the defaults. ``BUILDSENTINEL_<KEY>`` variables
    override scalar keys from the file.
    """
    data: dict[str, Any] = {}
    if path is not None:
        fp = Path(path)
        if fp.exists():
            try:
                loaded = yaml.safe_load(fp.read_text(encoding="utf-8")) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"cannot parse {fp}: {exc}") from exc
            if not isinstance(loaded, dict):
                raise ConfigError(f"{fp} must contain a mapping, got {type(loaded).__name__}")
            data.update(loaded)

    environ = os.environ if env is None else env
    for key in _ENV_KEYS:
        value = environ.get(ENV_PREFIX + key.upper())
        if value is not None:
            data[key] = value

    try:
        return DaemonConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
