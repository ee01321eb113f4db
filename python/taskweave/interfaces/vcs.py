"""Interface for the version-control / code-hosting backend.

Workspaces are addressed by path, change requests by the handle returned
from ``create_change_request``. Every method raises ``VCSCommandError`` (an
``ExternalCallFailure``) on failure and must be safe to retry.
"""

from typing import Any, Dict, List, Protocol


class IVersionControl(Protocol):
    """Interface for branch, rebase and change-request operations."""

    # ── Workspaces ───────────────────────────────────────────────────

    async def create_workspace(self, path: str, base_branch: str) -> None:
        """Create an isolated workspace at *path*; no-op if it exists."""
        ...

    async def remove_workspace(self, path: str) -> None:
        """Remove the workspace at *path*; no-op if already gone."""
        ...

    async def checkout_branch(self, path: str, branch: str, base_branch: str) -> None:
        """Check out *branch* in the workspace, creating it from *base_branch* if needed."""
        ...

    async def commit_all(self, path: str, message: str) -> bool:
        """Commit every change in the workspace.

        Returns:
            False when there was nothing to commit
        """
        ...

    async def push(self, path: str, branch: str, force: bool = False) -> None:
        ...

    async def fetch(self, path: str) -> None:
        ...

    # ── Rebase ───────────────────────────────────────────────────────

    async def stash(self, path: str) -> bool:
        """Stash uncommitted changes. Returns True if anything was stashed."""
        ...

    async def stash_pop(self, path: str) -> None:
        ...

    async def rebase(self, path: str, onto: str) -> List[str]:
        """Rebase the current branch onto *onto*.

        Returns:
            Conflicting file paths; empty when the rebase completed
        """
        ...

    async def stage(self, path: str, files: List[str]) -> None:
        ...

    async def rebase_continue(self, path: str) -> List[str]:
        """Continue a paused rebase. Returns the next round's conflicts."""
        ...

    async def rebase_abort(self, path: str) -> None:
        ...

    # ── Change requests ──────────────────────────────────────────────

    async def create_change_request(
        self, path: str, branch: str, base_branch: str, title: str, body: str
    ) -> str:
        """Open a change request and return its handle."""
        ...

    async def view_change_request(self, handle: str) -> Dict[str, Any]:
        ...

    async def get_diff(self, handle: str) -> str:
        """Unified diff of the change request against its base."""
        ...

    async def is_mergeable(self, handle: str) -> bool:
        """True when the change request merges cleanly into its base."""
        ...

    async def merge_change_request(self, handle: str) -> None:
        ...

    async def close_change_request(self, handle: str) -> None:
        ...

    async def rerun_ci(self, handle: str) -> None:
        """Trigger a fresh CI run for the change request."""
        ...
