"""Repository URL normalization.

Every surface form of a repository reference (https, ``git://``, ``ssh://``,
scp-like ``user@host:path``) is reduced to a ``(host, path)`` pair that can be
used as an equality and hash key.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass
from urllib.parse import urlsplit

# user@host:path (scp-like syntax)
SCP_RE = re.compile(r"^([A-Za-z0-9\-_.]+)@([A-Za-z0-9\-_.]+):(.*)$")


@dataclass(frozen=True)
class RepositoryRef:
    """Normalized repository reference: lowercase host without ``www.``,
    lowercase slash-collapsed path without a trailing ``.git``."""

    host: str
    path: str

    @classmethod
    def parse(cls, url: str | RepositoryRef) -> RepositoryRef:
        """Normalize *url*. Raises ``ValueError`` if it is not a URL."""
        if isinstance(url, RepositoryRef):
            return url

        raw = url.strip()
        m = SCP_RE.match(raw)
        if m:
            host, path = m.group(2), m.group(3)
        else:
            parts = urlsplit(raw)
            if not parts.scheme or not parts.hostname:
                raise ValueError(f"Invalid URL ({url})")
            host, path = parts.hostname, parts.path

        return cls(host=_normalize_host(host), path=_normalize_path(path))

    @property
    def full_path(self) -> str:
        return f"{self.host}/{self.path}"

    @property
    def url(self) -> str:
        """Canonical https URL."""
        return f"https://{self.full_path}"

    @property
    def owner(self) -> str:
        return posixpath.dirname(self.path)

    @property
    def name(self) -> str:
        return posixpath.basename(self.path)

    def same(self, other: str | RepositoryRef) -> bool:
        try:
            return self == RepositoryRef.parse(other)
        except ValueError:
            return False

    def __str__(self) -> str:
        return self.full_path


def _normalize_host(host: str) -> str:
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def _normalize_path(path: str) -> str:
    path = re.sub(r"/+", "/", path)
    if path:
        path = posixpath.normpath(path)
    path = path.lower().strip("/")
    if path.endswith(".git"):
        path = path[:-4]
    return "" if path == "." else path
