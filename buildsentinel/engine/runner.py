"""Daemon supervisor: startup, the polling loop and restart handling."""

from __future__ import annotations

import asyncio

import structlog

from buildsentinel.core.config import DaemonConfig
from buildsentinel.engine.buildconf import BuildconfManager
from buildsentinel.engine.cache import PullRequestCache
from buildsentinel.engine.poller import Poller, RestartRequested
from buildsentinel.engine.updater import WorkspaceUpdater
from buildsentinel.engine.workspace import Workspace

logger = structlog.get_logger("buildsentinel.engine")


class Daemon:
    """Owns the poll, dispatch and restart cycle.

    Restarting does not replace the process: a :class:`RestartRequested`
    returned by the poller makes the daemon update and reload the workspace,
    reload the cache and resynchronize branches before the next cycle.
    """

    def __init__(
        self,
        config: DaemonConfig,
        workspace: Workspace,
        cache: PullRequestCache,
        manager: BuildconfManager,
        poller: Poller,
        updater: WorkspaceUpdater,
    ) -> None:
        self.config = config
        self.workspace = workspace
        self.cache = cache
        self.manager = manager
        self.poller = poller
        self.updater = updater

    async def start(self, update: bool = False) -> None:
        """Validate configuration and bring override branches in sync.

        Raises ``ConfigError`` when no API key is configured.
        """
        self.config.require_api_key()
        if update:
            await self._update_and_reload()
        self.cache.load()
        await self.synchronize()
        logger.info("daemon.started", project=self.manager.project,
                    packages=len(self.workspace.packages))

    async def synchronize(self) -> None:
        if self.updater.update_failed is not None:
            logger.info("daemon.sync_skipped", reason="last update failed")
            return
        await self.manager.synchronize_branches()

    async def run_once(self) -> RestartRequested | None:
        try:
            restart = await self.poller.poll()
        except Exception:
            logger.exception("daemon.poll_error")
            return None
        if restart is not None:
            await self.restart(restart)
        return restart

    async def restart(self, request: RestartRequested) -> None:
        logger.info("daemon.restart", reason=request.reason)
        try:
            await self._update_and_reload()
            self.cache.load()
            await self.synchronize()
        except Exception:
            logger.exception("daemon.restart_error", reason=request.reason)

    async def run(self, update: bool = False, max_cycles: int | None = None) -> None:
        """Start, then poll every ``daemon_polling_period`` seconds."""
        await self.start(update=update)
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            await self.run_once()
            cycles += 1
            await asyncio.sleep(self.config.daemon_polling_period)

    async def _update_and_reload(self) -> None:
        await self.updater.update()
        await self.workspace.reload()
