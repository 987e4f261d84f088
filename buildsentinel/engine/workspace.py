"""Tracked packages and the manifest that lists them."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import structlog
import yaml

from buildsentinel.core.config import ConfigError
from buildsentinel.engine.git_ops import GitCommandError, head_sha
from buildsentinel.git_api.url import RepositoryRef

log = structlog.get_logger("buildsentinel.engine")


@dataclass(frozen=True)
class PackageRepository:
    """A package (or package set, or the buildconf) whose repository is watched."""

    package: str
    repo_url: str
    branch: str = "master"
    head_sha: str | None = None
    package_set: bool = False
    buildconf: bool = False
    overrides_key: str | None = None
    path: str | None = None

    @property
    def repo(self) -> RepositoryRef:
        return RepositoryRef.parse(self.repo_url)

    @property
    def override_name(self) -> str:
        """Key of this package's entry in an overrides file."""
        if self.package_set:
            return f"pkg_set:{self.overrides_key or self.package}"
        return self.package


class Workspace(Protocol):
    """Where the daemon learns which repositories to watch."""

    name: str
    buildconf: PackageRepository
    packages: list[PackageRepository]

    async def reload(self) -> None: ...


class ManifestWorkspace:
    """A workspace described by a YAML manifest::

        name: rock
        buildconf:
          url: https://github.com/rock-core/buildconf
          branch: master
          path: autoproj
        packages:
          - name: base/types
            url: https://github.com/rock-core/base-types
            branch: master
            path: base/types
          - name: rock.core
            url: git@github.com:rock-core/package_set
            package_set: true
            overrides_key: rock.core

    Relative ``path`` entries resolve against the manifest's directory.
    ``head_sha`` is read from each local checkout on :meth:`reload`.
    """

    def __init__(self, manifest_path: str | Path) -> None:
        self.manifest_path = Path(manifest_path)
        self.name = ""
        self.buildconf: PackageRepository | None = None
        self.packages: list[PackageRepository] = []

    async def reload(self) -> None:
        try:
            data = yaml.safe_load(self.manifest_path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"cannot read manifest {self.manifest_path}: {exc}") from exc
        if not isinstance(data, dict) or "buildconf" not in data:
            raise ConfigError(f"{self.manifest_path}: manifest needs a 'buildconf' entry")

        self.name = str(data.get("name") or self.manifest_path.parent.name)
        self.buildconf = await self._package(
            {"name": "buildconf", **data["buildconf"]}, buildconf=True
        )
        self.packages = [await self._package(entry) for entry in data.get("packages") or []]
        log.info("workspace.loaded", name=self.name, packages=len(self.packages))

    async def _package(self, entry: dict[str, Any], *, buildconf: bool = False) -> PackageRepository:
        if "url" not in entry:
            raise ConfigError(f"{self.manifest_path}: entry {entry.get('name')!r} has no url")
        try:
            RepositoryRef.parse(entry["url"])
        except ValueError as exc:
            raise ConfigError(f"{self.manifest_path}: {exc}") from exc

        path = entry.get("path")
        if path is not None:
            path = str(self.manifest_path.parent / path)

        return PackageRepository(
            package=str(entry["name"]),
            repo_url=entry["url"],
            branch=entry.get("branch") or "master",
            head_sha=await self._head_sha(path),
            package_set=bool(entry.get("package_set")),
            buildconf=buildconf,
            overrides_key=entry.get("overrides_key"),
            path=path,
        )

    @staticmethod
    async def _head_sha(path: str | None) -> str | None:
        if path is None or not Path(path).is_dir():
            return None
        try:
            return await head_sha(path)
        except GitCommandError as exc:
            log.warning("workspace.head_sha_failed", path=path, error=str(exc))
            return None
