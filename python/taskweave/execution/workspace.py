"""Isolated per-task workspaces.

Each task runs in its own checkout under ``workspace_root``. The path is a
pure function of the executor and the task, so a lost workspace can always
be rebuilt at the same place:

    {workspace_root}/executor-{executor_id[:8]}/task-{key[:8]}

where ``key`` is the parent id for subtasks (siblings share one checkout)
and the task id otherwise. Creation is lazy and removal is idempotent.

A shared checkout holds one branch at a time. When a sibling is
IN_PROGRESS in it, any other task of the same parent gets a private
checkout keyed by its own id instead, so the sibling's working tree is
never switched underneath it.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Set

from taskweave.interfaces.task_store import ITaskStore
from taskweave.interfaces.vcs import IVersionControl
from taskweave.models import Executor, Task, TaskStatus

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = [
    TaskStatus.PENDING,
    TaskStatus.READY,
    TaskStatus.IN_PROGRESS,
    TaskStatus.IN_REVIEW,
    TaskStatus.BLOCKED,
]


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "executor"


def workspace_key(task: Task) -> str:
    return task.parent_task_id or task.id


def branch_name(executor: Executor, task: Task) -> str:
    return f"feature/{slugify(executor.name)}/task-{task.id[:8]}"


class WorkspaceManager:
    """Creates, reuses and removes task workspaces through the VCS backend."""

    def __init__(
        self,
        vcs: IVersionControl,
        store: ITaskStore,
        workspace_root: str,
        mainline_branch: str = "main",
    ) -> None:
        self.vcs = vcs
        self.store = store
        self.workspace_root = Path(workspace_root)
        self.mainline_branch = mainline_branch
        self._created: Set[str] = set()
        self._removed: Set[str] = set()
        self._holders: Dict[str, Set[str]] = {}

    @classmethod
    def from_settings(cls, settings: Any, vcs: IVersionControl, store: ITaskStore) -> "WorkspaceManager":
        return cls(vcs, store, str(settings.workspace_root_path()), settings.mainline_branch)

    def path_for(self, executor_id: str, task: Task, private: bool = False) -> str:
        key = task.id if private else workspace_key(task)
        return str(
            self.workspace_root
            / f"executor-{executor_id[:8]}"
            / f"task-{key[:8]}"
        )

    async def ensure(self, executor: Executor, task: Task) -> str:
        """Create (or reuse) the workspace and check out the task branch.

        Returns:
            The workspace path
        """
        path = await self._select_path(executor.id, task)
        if path not in self._created or not Path(path).exists():
            await self.vcs.create_workspace(path, self.mainline_branch)
            self._created.add(path)
            self._removed.discard(path)
            logger.info("Workspace ready at %s for task %s", path, task.id)
        await self.vcs.checkout_branch(path, branch_name(executor, task), self.mainline_branch)
        self._holders.setdefault(path, set()).add(task.id)
        return path

    async def _select_path(self, executor_id: str, task: Task) -> str:
        shared = self.path_for(executor_id, task)
        private = self.path_for(executor_id, task, private=True)
        if shared == private or task.workspace == private:
            return private
        if await self._held_by_running_sibling(shared, task.id):
            logger.info("Workspace %s busy with a running sibling; task %s gets %s", shared, task.id, private)
            return private
        return shared

    async def _held_by_running_sibling(self, path: str, task_id: str) -> bool:
        holders = self._holders.get(path, set())
        for other in await self.store.list_tasks([TaskStatus.IN_PROGRESS]):
            if other.id != task_id and (other.workspace == path or other.id in holders):
                return True
        return False

    async def release(self, task: Task) -> bool:
        """Remove the task's workspace once no other live task uses it.

        Returns:
            True if the workspace was removed
        """
        path = task.workspace
        if not path:
            return False
        if await self._in_use(path, exclude=task.id):
            logger.debug("Workspace %s still in use; keeping it", path)
            return False
        return await self._remove(path)

    async def cleanup_sweep(self) -> List[str]:
        """Remove every workspace referenced only by terminal tasks."""
        tasks = await self.store.list_tasks()
        in_use = {t.workspace for t in tasks if t.workspace and not t.status.is_terminal}
        stale = sorted({
            t.workspace for t in tasks
            if t.workspace and t.status.is_terminal and t.workspace not in in_use
        } - self._removed)

        removed = []
        for path in stale:
            if await self._remove(path):
                removed.append(path)
        if removed:
            logger.info("Cleanup sweep removed %d workspace(s)", len(removed))
        return removed

    async def _in_use(self, path: str, exclude: str) -> bool:
        for other in await self.store.list_tasks(_ACTIVE_STATUSES):
            if other.id != exclude and other.workspace == path:
                return True
        return False

    async def _remove(self, path: str) -> bool:
        await self.vcs.remove_workspace(path)
        self._created.discard(path)
        self._holders.pop(path, None)
        self._removed.add(path)
        logger.info("Workspace removed: %s", path)
        return True

    @property
    def stats(self) -> Dict[str, int]:
        return {"active": len(self._created), "removed": len(self._removed)}
