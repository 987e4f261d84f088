"""Workspace update and its failure state."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path

import structlog

log = structlog.get_logger("buildsentinel.engine")

UpdateFn = Callable[[], Awaitable[None]]


class UpdateError(RuntimeError):
    """The workspace update command failed."""


class WorkspaceUpdater:
    """Runs the workspace update and remembers when it last failed.

    While ``update_failed`` is set the daemon keeps polling for mainline
    pushes but does not touch override branches or trigger builds.
    """

    def __init__(self, update_fn: UpdateFn | None = None) -> None:
        self.update_fn = update_fn
        self.update_failed: datetime | None = None

    async def update(self) -> bool:
        if self.update_fn is None:
            self.update_failed = None
            return True
        try:
            await self.update_fn()
        except Exception:
            log.exception("updater.failed")
            self.update_failed = datetime.now(timezone.utc)
            return False
        self.update_failed = None
        log.info("updater.done")
        return True

    def seconds_since_failure(self) -> float | None:
        if self.update_failed is None:
            return None
        return (datetime.now(timezone.utc) - self.update_failed).total_seconds()


def command_update(command: str, cwd: str | Path | None = None) -> UpdateFn:
    """Build an update function that runs *command* through the shell."""

    async def run() -> None:
        log.info("updater.run", command=command)
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd) if cwd is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise UpdateError(
                f"update command failed (exit {proc.returncode}): {stderr.decode().strip()}"
            )

    return run
