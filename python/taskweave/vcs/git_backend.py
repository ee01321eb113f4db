"""Version-control backend over ``git`` worktrees and the GitHub ``gh`` CLI.

Every command runs as an asyncio subprocess bounded by ``timeout``; a
timeout kills the process and raises ``VCSTimeoutError``. Network-facing
commands (fetch, push) get transport retries from tenacity on top of the
task-level retry policy.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from tenacity import (
    retry,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from taskweave.exceptions_unified import VCSCommandError, VCSTimeoutError

logger = logging.getLogger(__name__)

AUTOSTASH_MESSAGE = "taskweave-autostash"

_network_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception_type(VCSCommandError),
    reraise=True,
)


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


class GitBackend:
    """IVersionControl implementation for a local clone with a GitHub remote."""

    def __init__(
        self,
        repository_path: str = ".",
        remote_name: str = "origin",
        timeout: float = 120.0,
        git_binary: str = "git",
        gh_binary: str = "gh",
    ) -> None:
        self.repository_path = str(Path(repository_path).resolve())
        self.remote_name = remote_name
        self.timeout = timeout
        self.git_binary = git_binary
        self.gh_binary = gh_binary

    @classmethod
    def from_settings(cls, settings: Any) -> "GitBackend":
        return cls(
            repository_path=settings.repository_path,
            remote_name=settings.remote_name,
            timeout=settings.vcs_timeout_seconds,
        )

    # ── Process plumbing ─────────────────────────────────────────────

    async def _run(self, args: List[str], cwd: Optional[str] = None, check: bool = True) -> CommandResult:
        cwd = cwd or self.repository_path
        logger.debug("Running %s in %s", " ".join(args), cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env={**os.environ, "GIT_EDITOR": "true", "GIT_TERMINAL_PROMPT": "0"},
            )
        except OSError as e:
            raise VCSCommandError(f"Could not start {args[0]}: {e}", command=args)

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise VCSTimeoutError(f"{' '.join(args[:3])} timed out after {self.timeout:.0f}s", command=args)

        result = CommandResult(
            returncode=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if check and result.returncode != 0:
            raise VCSCommandError(
                f"{' '.join(args[:3])} exited with {result.returncode}",
                command=args,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result

    async def _git(self, path: Optional[str], *args: str, check: bool = True) -> CommandResult:
        return await self._run([self.git_binary, *args], cwd=path, check=check)

    async def _gh(self, *args: str, check: bool = True) -> CommandResult:
        return await self._run([self.gh_binary, *args], cwd=self.repository_path, check=check)

    # ── Workspaces ───────────────────────────────────────────────────

    async def create_workspace(self, path: str, base_branch: str) -> None:
        if Path(path).exists():
            logger.debug("Workspace %s already exists", path)
            return
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        await self._git(None, "worktree", "prune")
        await self._git(None, "worktree", "add", "--detach", path, base_branch)

    async def remove_workspace(self, path: str) -> None:
        if not Path(path).exists():
            await self._git(None, "worktree", "prune")
            return
        await self._git(None, "worktree", "remove", "--force", path)

    async def checkout_branch(self, path: str, branch: str, base_branch: str) -> None:
        exists = await self._git(path, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", check=False)
        if exists.returncode == 0:
            await self._git(path, "checkout", branch)
        else:
            await self._git(path, "checkout", "-b", branch, base_branch)

    async def commit_all(self, path: str, message: str) -> bool:
        await self._git(path, "add", "-A")
        status = await self._git(path, "status", "--porcelain")
        if not status.stdout.strip():
            return False
        await self._git(path, "commit", "-m", message)
        return True

    @_network_retry
    async def push(self, path: str, branch: str, force: bool = False) -> None:
        args = ["push", "-u", self.remote_name, branch]
        if force:
            args.insert(1, "--force-with-lease")
        await self._git(path, *args)

    @_network_retry
    async def fetch(self, path: str) -> None:
        await self._git(path, "fetch", self.remote_name)

    # ── Rebase ───────────────────────────────────────────────────────

    async def stash(self, path: str) -> bool:
        status = await self._git(path, "status", "--porcelain")
        if not status.stdout.strip():
            return False
        await self._git(path, "stash", "push", "--include-untracked", "-m", AUTOSTASH_MESSAGE)
        return True

    async def stash_pop(self, path: str) -> None:
        await self._git(path, "stash", "pop")

    async def rebase(self, path: str, onto: str) -> List[str]:
        result = await self._git(path, "rebase", onto, check=False)
        return await self._conflicts_after(path, result, "rebase")

    async def stage(self, path: str, files: List[str]) -> None:
        if files:
            await self._git(path, "add", "--", *files)

    async def rebase_continue(self, path: str) -> List[str]:
        result = await self._git(path, "rebase", "--continue", check=False)
        return await self._conflicts_after(path, result, "rebase --continue")

    async def rebase_abort(self, path: str) -> None:
        await self._git(path, "rebase", "--abort")

    async def _conflicts_after(self, path: str, result: CommandResult, step: str) -> List[str]:
        if result.returncode == 0:
            return []
        unmerged = await self._git(path, "diff", "--name-only", "--diff-filter=U")
        files = [line.strip() for line in unmerged.stdout.splitlines() if line.strip()]
        if not files:
            raise VCSCommandError(
                f"git {step} failed without conflicts",
                command=[self.git_binary, step],
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return files

    # ── Change requests ──────────────────────────────────────────────

    async def create_change_request(
        self, path: str, branch: str, base_branch: str, title: str, body: str
    ) -> str:
        result = await self._run(
            [self.gh_binary, "pr", "create", "--title", title, "--body", body,
             "--base", base_branch, "--head", branch],
            cwd=path,
        )
        handle = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        if not handle:
            raise VCSCommandError("gh pr create returned no URL", command=["gh", "pr", "create"])
        logger.info("Opened change request %s from %s", handle, branch)
        return handle

    async def view_change_request(self, handle: str) -> Dict[str, Any]:
        result = await self._gh(
            "pr", "view", handle, "--json", "number,state,mergeable,url,headRefName,baseRefName"
        )
        return json.loads(result.stdout)

    async def get_diff(self, handle: str) -> str:
        result = await self._gh("pr", "diff", handle)
        return result.stdout

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(2),
        retry=retry_if_result(lambda state: state == "UNKNOWN"),
        retry_error_callback=lambda retry_state: retry_state.outcome.result(),
    )
    async def _mergeable_state(self, handle: str) -> str:
        data = await self.view_change_request(handle)
        return str(data.get("mergeable", "UNKNOWN")).upper()

    async def is_mergeable(self, handle: str) -> bool:
        state = await self._mergeable_state(handle)
        if state == "UNKNOWN":
            raise VCSCommandError(f"Mergeability of {handle} still unknown", command=["gh", "pr", "view"])
        return state == "MERGEABLE"

    async def merge_change_request(self, handle: str) -> None:
        await self._gh("pr", "merge", handle, "--squash")
        logger.info("Merged change request %s", handle)

    async def close_change_request(self, handle: str) -> None:
        result = await self._gh("pr", "close", handle, check=False)
        if result.returncode != 0 and "already closed" not in result.stderr.lower():
            raise VCSCommandError(
                f"gh pr close {handle} exited with {result.returncode}",
                command=["gh", "pr", "close", handle],
                returncode=result.returncode,
                stderr=result.stderr,
            )

    async def rerun_ci(self, handle: str) -> None:
        data = await self.view_change_request(handle)
        branch = data.get("headRefName")
        runs = await self._gh("run", "list", "--branch", branch, "--limit", "1", "--json", "databaseId")
        latest = json.loads(runs.stdout or "[]")
        if not latest:
            logger.info("No CI run found for %s; nothing to re-run", handle)
            return
        await self._gh("run", "rerun", str(latest[0]["databaseId"]))
        logger.info("Re-ran CI for %s", handle)
