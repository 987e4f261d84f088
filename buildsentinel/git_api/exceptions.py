"""Service-agnostic error taxonomy for git hosting APIs.

Adapters translate every transport or API failure into one of these, so no
``httpx`` exception type crosses the adapter boundary.
"""


class GitAPIError(Exception):
    """Base class for git hosting API failures."""

    def __init__(self, message: str = "", status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class NotFound(GitAPIError):
    """The resource does not exist (or is already gone)."""


class ConnectionFailed(GitAPIError):
    """Transient network or server failure. Retried a bounded number of times."""


class TooManyRequests(GitAPIError):
    """The service is rate limiting us. Never fatal: wait for the reset and retry."""
