"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from buildsentinel.core.config import ConfigError, DaemonConfig, ServiceConfig, load_config


class TestDaemonConfig:
    def test_defaults(self):
        config = DaemonConfig()
        assert config.daemon_polling_period == 60
        assert config.daemon_max_age == 120
        assert config.daemon_buildbot_port == 8010
        assert config.pr_commit_strategy == "auto"
        assert config.daemon_api_key is None

    def test_github_is_always_configured(self):
        services = DaemonConfig(daemon_api_key="key").services()
        assert services["github.com"] == ServiceConfig(
            service="github", api_endpoint="https://api.github.com", access_token="key"
        )

    def test_service_hosts_are_lowercased_and_tokens_inherited(self):
        config = DaemonConfig(
            daemon_api_key="key",
            daemon_services={
                "GitLab.example.com": {"service": "gitlab"},
                "ghe.example.com": {"api_endpoint": "https://ghe.example.com/api/v3",
                                    "access_token": "own"},
            },
        )
        services = config.services()
        assert set(services) == {"github.com", "gitlab.example.com", "ghe.example.com"}
        assert services["gitlab.example.com"].service == "gitlab"
        assert services["gitlab.example.com"].access_token == "key"
        assert services["ghe.example.com"].service == "github"
        assert services["ghe.example.com"].access_token == "own"

    def test_require_api_key(self):
        with pytest.raises(ConfigError, match="daemon_api_key"):
            DaemonConfig().require_api_key()
        DaemonConfig(daemon_api_key="key").require_api_key()

    def test_project_name(self):
        assert DaemonConfig().project_name("rock") == "rock"
        assert DaemonConfig(daemon_project="flat_fish").project_name("rock") == "flat_fish"

    def test_frozen(self):
        config = DaemonConfig()
        with pytest.raises(Exception):
            config.daemon_polling_period = 5


class TestLoadConfig:
    def test_missing_file_yields_defaults(self, tmp_path: Path):
        assert load_config(tmp_path / "nope.yml", env={}) == DaemonConfig()

    def test_file(self, tmp_path: Path):
        path = tmp_path / "buildsentinel.yml"
        path.write_text(
            "daemon_api_key: abc\n"
            "daemon_polling_period: 30\n"
            "daemon_services:\n"
            "  gitlab.com:\n"
            "    service: gitlab\n"
        )
        config = load_config(path, env={})
        assert config.daemon_api_key == "abc"
        assert config.daemon_polling_period == 30
        assert config.services()["gitlab.com"].service == "gitlab"

    def test_environment_overrides_file(self, tmp_path: Path):
        path = tmp_path / "buildsentinel.yml"
        path.write_text("daemon_api_key: abc\ndaemon_max_age: 10\n")
        config = load_config(
            path,
            env={"BUILDSENTINEL_DAEMON_API_KEY": "from-env", "BUILDSENTINEL_DAEMON_MAX_AGE": "3"},
        )
        assert config.daemon_api_key == "from-env"
        assert config.daemon_max_age == 3

    def test_reads_os_environ_by_default(self, monkeypatch):
        monkeypatch.setenv("BUILDSENTINEL_DAEMON_PROJECT", "rock")
        assert load_config(None).daemon_project == "rock"

    @pytest.mark.parametrize(
        "content",
        [
            "daemon_polling_period: 0\n",
            "daemon_max_age: -1\n",
            "pr_commit_strategy: rebase\n",
            "daemon_services:\n  gitlab.com:\n    service: bitbucket\n",
            "- a list\n",
            "daemon_api_key: [unterminated\n",
        ],
    )
    def test_invalid(self, tmp_path: Path, content):
        path = tmp_path / "buildsentinel.yml"
        path.write_text(content)
        with pytest.raises(ConfigError):
            load_config(path, env={})
