"""Git porcelain for the buildconf checkout."""

from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path

import structlog

log = structlog.get_logger("buildsentinel.engine")


class GitCommandError(RuntimeError):
    """A git command exited with a non-zero status."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        self.args_ = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"git {' '.join(args)} failed (exit {returncode}): {stderr}")


async def run_git(
    args: list[str],
    *,
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
    input: bytes | None = None,
) -> str:
    """Run ``git *args`` and return its stripped stdout."""
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(cwd) if cwd is not None else None,
        env=env,
        stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate(input)
    if proc.returncode != 0:
        raise GitCommandError(list(args), proc.returncode, stderr.decode().strip())
    return stdout.decode().strip()


async def head_sha(path: str | Path) -> str:
    return await run_git(["rev-parse", "HEAD"], cwd=path)


class GitOverridesCommitter:
    """Writes one file on top of the checkout's HEAD and force-pushes it as a branch.

    The commit is built with plumbing commands and a throw-away index, so the
    working tree and the checked out branch are never touched. Pushing content
    the remote branch already has is a no-op.
    """

    def __init__(
        self,
        repo_path: str | Path,
        *,
        remote: str = "origin",
        author_name: str = "buildsentinel",
        author_email: str = "buildsentinel@localhost",
    ) -> None:
        self.repo_path = Path(repo_path)
        self.remote = remote
        self.author_name = author_name
        self.author_email = author_email

    async def _git(self, *args: str, env: dict[str, str] | None = None,
                   input: bytes | None = None) -> str:
        return await run_git(list(args), cwd=self.repo_path, env=env, input=input)

    async def remote_head(self, branch_name: str) -> str | None:
        out = await self._git("ls-remote", self.remote, f"refs/heads/{branch_name}")
        return out.split()[0] if out else None

    async def commit_and_push(
        self, branch_name: str, file_path: str, content: str, message: str
    ) -> bool:
        """Commit *content* as *file_path* on *branch_name* and push it.

        Returns False when the remote branch already carries the same tree.
        """
        blob = await self._git("hash-object", "-w", "--stdin", input=content.encode())

        with tempfile.TemporaryDirectory() as tmp:
            index_env = {**os.environ, "GIT_INDEX_FILE": str(Path(tmp) / "index")}
            await self._git("read-tree", "HEAD", env=index_env)
            await self._git(
                "update-index", "--add", "--cacheinfo", f"100644,{blob},{file_path}",
                env=index_env,
            )
            tree = await self._git("write-tree", env=index_env)

        remote_sha = await self.remote_head(branch_name)
        if remote_sha is not None:
            try:
                remote_tree = await self._git("rev-parse", f"{remote_sha}^{{tree}}")
            except GitCommandError:
                # object not available locally; push unconditionally
                remote_tree = None
            if remote_tree == tree:
                log.info("git.overrides_unchanged", branch=branch_name)
                return False

        commit_env = {
            **os.environ,
            "GIT_AUTHOR_NAME": self.author_name,
            "GIT_AUTHOR_EMAIL": self.author_email,
            "GIT_COMMITTER_NAME": self.author_name,
            "GIT_COMMITTER_EMAIL": self.author_email,
        }
        commit = await self._git("commit-tree", tree, "-p", "HEAD", "-m", message, env=commit_env)
        await self._git(
            "update-ref", "-m", message, f"refs/heads/{branch_name}", commit, env=commit_env
        )
        await self._git(
            "push", "-f", self.remote, f"refs/heads/{branch_name}:refs/heads/{branch_name}"
        )
        log.info("git.overrides_pushed", branch=branch_name, commit=commit)
        return True
