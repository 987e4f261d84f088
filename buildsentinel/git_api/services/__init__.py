"""Service adapters, registered on import."""

from buildsentinel.git_api.services import (
    github,  # noqa: F401
    gitlab,  # noqa: F401
)
