"""CLI entry point: buildsentinel.

Subcommands:
    buildsentinel start -m manifest.yml       # Run the daemon
    buildsentinel start -m manifest.yml -u    # Update the workspace first
    buildsentinel sync -m manifest.yml        # Reconcile override branches once
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click
import structlog

from buildsentinel.core.config import ConfigError, DaemonConfig, load_config
from buildsentinel.core.logging import setup_logging
from buildsentinel.engine.buildbot import Buildbot
from buildsentinel.engine.buildconf import BuildconfManager
from buildsentinel.engine.cache import PullRequestCache
from buildsentinel.engine.git_ops import GitOverridesCommitter
from buildsentinel.engine.poller import Poller
from buildsentinel.engine.runner import Daemon
from buildsentinel.engine.updater import WorkspaceUpdater, command_update
from buildsentinel.engine.workspace import ManifestWorkspace
from buildsentinel.git_api.client import Client

log = structlog.get_logger("buildsentinel.cli")

_DEFAULT_CONFIG = "buildsentinel.yml"
_DEFAULT_MANIFEST = "manifest.yml"


async def build_daemon(config: DaemonConfig, manifest: str | Path) -> tuple[Daemon, list]:
    """Wire the daemon's collaborators. Returns the daemon and what must be closed."""
    workspace = ManifestWorkspace(manifest)
    await workspace.reload()
    if workspace.buildconf.path is None:
        raise ConfigError("the buildconf entry of the manifest needs a local 'path'")

    client = Client(config)
    project = config.project_name(workspace.name)
    buildbot = Buildbot(config, project)
    cache = PullRequestCache(Path(workspace.buildconf.path) / config.cache_path)
    committer = GitOverridesCommitter(workspace.buildconf.path)

    update_fn = None
    if config.daemon_update_command:
        update_fn = command_update(config.daemon_update_command, cwd=Path(manifest).parent)
    updater = WorkspaceUpdater(update_fn)

    manager = BuildconfManager(config, client, workspace, cache, committer, buildbot)
    poller = Poller(config, client, manager, cache, updater, buildbot)
    daemon = Daemon(config, workspace, cache, manager, poller, updater)
    return daemon, [client, buildbot]


async def _close(resources: list) -> None:
    for resource in resources:
        await resource.close()


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging")
@click.option("-c", "--config", "config_path", default=_DEFAULT_CONFIG,
              help="Configuration file (YAML)")
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: str) -> None:
    """buildsentinel: turn pull requests into CI builds through buildconf overrides."""
    setup_logging("DEBUG" if verbose else None)
    try:
        ctx.obj = load_config(config_path)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command("start")
@click.option("-m", "--manifest", default=_DEFAULT_MANIFEST, type=click.Path(exists=True),
              help="Workspace manifest")
@click.option("-u", "--update", is_flag=True, help="Update the workspace before starting")
@click.pass_obj
def start(config: DaemonConfig, manifest: str, update: bool) -> None:
    """Run the daemon until interrupted."""

    async def run() -> None:
        daemon, resources = await build_daemon(config, manifest)
        try:
            await daemon.run(update=update)
        finally:
            await _close(resources)

    try:
        asyncio.run(run())
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        log.info("daemon.stopped")


@main.command("sync")
@click.option("-m", "--manifest", default=_DEFAULT_MANIFEST, type=click.Path(exists=True),
              help="Workspace manifest")
@click.pass_obj
def sync(config: DaemonConfig, manifest: str) -> None:
    """Reconcile override branches with open pull requests, once."""

    async def run() -> None:
        daemon, resources = await build_daemon(config, manifest)
        try:
            config.require_api_key()
            daemon.cache.load()
            await daemon.manager.synchronize_branches()
        finally:
            await _close(resources)

    try:
        asyncio.run(run())
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo("Override branches synchronized.")
