"""Tests for the workspace updater."""

from __future__ import annotations

import shutil
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from buildsentinel.engine.updater import UpdateError, WorkspaceUpdater, command_update


class TestWorkspaceUpdater:
    @pytest.mark.anyio
    async def test_without_update_function(self):
        updater = WorkspaceUpdater()
        assert await updater.update()
        assert updater.update_failed is None
        assert updater.seconds_since_failure() is None

    @pytest.mark.anyio
    async def test_failure_is_recorded(self):
        updater = WorkspaceUpdater(AsyncMock(side_effect=UpdateError("exit 1")))
        assert not await updater.update()
        assert updater.update_failed is not None
        assert 0 <= updater.seconds_since_failure() < 60

    @pytest.mark.anyio
    async def test_success_clears_failure(self):
        updater = WorkspaceUpdater(AsyncMock())
        updater.update_failed = datetime.now(timezone.utc) - timedelta(minutes=10)
        assert await updater.update()
        assert updater.update_failed is None


@pytest.mark.skipif(sys.platform == "win32" or shutil.which("sh") is None, reason="needs a POSIX shell")
class TestCommandUpdate:
    @pytest.mark.anyio
    async def test_success(self, tmp_path):
        await command_update("touch updated", cwd=tmp_path)()
        assert (tmp_path / "updated").exists()

    @pytest.mark.anyio
    async def test_failure(self, tmp_path):
        with pytest.raises(UpdateError, match="exit 3"):
            await command_update("echo broken >&2; exit 3", cwd=tmp_path)()

    @pytest.mark.anyio
    async def test_failing_command_marks_update_failed(self, tmp_path):
        updater = WorkspaceUpdater(command_update("false", cwd=tmp_path))
        assert not await updater.update()
        assert updater.update_failed is not None
