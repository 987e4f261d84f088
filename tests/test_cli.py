"""Tests for CLI commands (daemon wiring mocked)."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from buildsentinel.cli import main
from buildsentinel.core.config import ConfigError


@pytest.fixture
def daemon():
    daemon = MagicMock()
    daemon.run = AsyncMock()
    daemon.manager.synchronize_branches = AsyncMock()
    return daemon


@pytest.fixture
def resource():
    resource = MagicMock()
    resource.close = AsyncMock()
    return resource


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "manifest.yml").write_text("buildconf:\n  url: https://github.com/a/b\n")
    (tmp_path / "buildsentinel.yml").write_text("daemon_api_key: secret\n")
    with patch("buildsentinel.cli.setup_logging"):
        yield CliRunner()


def _patch_build(daemon, resource, **kwargs):
    if "side_effect" not in kwargs:
        kwargs["return_value"] = (daemon, [resource])
    return patch("buildsentinel.cli.build_daemon", new=AsyncMock(**kwargs))


class TestStart:
    def test_start(self, runner, daemon, resource):
        with _patch_build(daemon, resource) as build:
            result = runner.invoke(main, ["start", "-m", "manifest.yml"])

        assert result.exit_code == 0, result.output
        config, manifest = build.await_args.args
        assert config.daemon_api_key == "secret"
        assert manifest == "manifest.yml"
        daemon.run.assert_awaited_once_with(update=False)
        resource.close.assert_awaited_once()

    def test_start_with_update(self, runner, daemon, resource):
        with _patch_build(daemon, resource):
            result = runner.invoke(main, ["start", "--update"])
        assert result.exit_code == 0, result.output
        daemon.run.assert_awaited_once_with(update=True)

    def test_resources_closed_on_failure(self, runner, daemon, resource):
        daemon.run.side_effect = ConfigError("you must configure the daemon")
        with _patch_build(daemon, resource):
            result = runner.invoke(main, ["start"])
        assert result.exit_code == 1
        assert "Error: you must configure the daemon" in result.output
        resource.close.assert_awaited_once()

    def test_missing_manifest(self, runner, daemon, resource):
        with _patch_build(daemon, resource) as build:
            result = runner.invoke(main, ["start", "-m", "nope.yml"])
        assert result.exit_code == 2
        build.assert_not_awaited()

    def test_invalid_manifest(self, runner, daemon, resource):
        with _patch_build(daemon, resource, side_effect=ConfigError("manifest needs a 'buildconf' entry")):
            result = runner.invoke(main, ["start"])
        assert result.exit_code == 1
        assert "buildconf" in result.output

    def test_invalid_config(self, runner, tmp_path):
        (tmp_path / "bad.yml").write_text("daemon_polling_period: 0\n")
        result = runner.invoke(main, ["-c", "bad.yml", "start"])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_verbose(self, runner, daemon, resource):
        with _patch_build(daemon, resource):
            with patch("buildsentinel.cli.setup_logging") as setup:
                runner.invoke(main, ["-v", "start"])
        setup.assert_called_once_with("DEBUG")


class TestSync:
    def test_sync(self, runner, daemon, resource):
        with _patch_build(daemon, resource):
            result = runner.invoke(main, ["sync"])

        assert result.exit_code == 0, result.output
        assert "Override branches synchronized." in result.output
        daemon.cache.load.assert_called_once()
        daemon.manager.synchronize_branches.assert_awaited_once()
        resource.close.assert_awaited_once()

    def test_sync_requires_api_key(self, runner, tmp_path, daemon, resource):
        (tmp_path / "buildsentinel.yml").write_text("daemon_project: rock\n")
        with _patch_build(daemon, resource):
            result = runner.invoke(main, ["sync"], env={"BUILDSENTINEL_DAEMON_API_KEY": None})

        assert result.exit_code == 1
        daemon.manager.synchronize_branches.assert_not_awaited()
