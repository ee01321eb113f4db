"""In-memory task store satisfying the ITaskStore protocol.

Reference implementation for single-process deployments and tests. Records
are copied on the way in and on the way out, so no caller ever holds a
reference into the store and every write is explicit, as with a database.

All mutations run under one ``asyncio.Lock``. That makes the claim
compare-and-set and the combined change-request + task write atomic with
respect to every other coroutine on the loop.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from taskweave.exceptions_unified import (
    ChangeRequestNotFoundError,
    ClaimConflict,
    ExecutorNotFoundError,
    TaskNotFoundError,
)
from taskweave.models import (
    ChangeRequest,
    ChangeRequestStatus,
    Executor,
    ExecutorStatus,
    Task,
    TaskStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class InMemoryTaskStore:
    """Dict-backed store for tasks, change requests and executors."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._tasks: Dict[str, Task] = {}
        self._change_requests: Dict[str, ChangeRequest] = {}
        self._executors: Dict[str, Executor] = {}
        self._claims = 0
        self._claim_conflicts = 0

    # ── Tasks ────────────────────────────────────────────────────────

    async def add_task(self, task: Task) -> None:
        async with self._lock:
            if task.id in self._tasks:
                raise ValueError(f"Task {task.id!r} already exists")
            self._tasks[task.id] = task.copy()

    async def get_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found", details={"task_id": task_id})
        return task.copy()

    async def save_task(self, task: Task) -> None:
        async with self._lock:
            if task.id not in self._tasks:
                raise TaskNotFoundError(f"Task {task.id} not found", details={"task_id": task.id})
            self._tasks[task.id] = task.copy()

    async def list_tasks(self, statuses: Optional[Iterable[TaskStatus]] = None) -> List[Task]:
        wanted = set(statuses) if statuses is not None else None
        return [
            t.copy() for t in self._tasks.values()
            if wanted is None or t.status in wanted
        ]

    async def get_children(self, parent_id: str) -> List[Task]:
        return [t.copy() for t in self._tasks.values() if t.parent_task_id == parent_id]

    async def get_dependents(self, task_id: str) -> List[Task]:
        return [t.copy() for t in self._tasks.values() if task_id in t.depends_on]

    async def claim_task(self, task_id: str, executor_id: str) -> Task:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(f"Task {task_id} not found", details={"task_id": task_id})
            if task.status != TaskStatus.READY or task.assigned_executor_id not in (None, executor_id):
                self._claim_conflicts += 1
                raise ClaimConflict(
                    f"Task {task_id} is no longer claimable",
                    details={
                        "task_id": task_id,
                        "status": task.status.value,
                        "assigned_executor_id": task.assigned_executor_id,
                    },
                )
            task.status = TaskStatus.IN_PROGRESS
            task.assigned_executor_id = executor_id
            task.started_at = utcnow()
            self._claims += 1
            return task.copy()

    # ── Change requests ──────────────────────────────────────────────

    async def get_change_request(self, cr_id: str) -> ChangeRequest:
        cr = self._change_requests.get(cr_id)
        if cr is None:
            raise ChangeRequestNotFoundError(
                f"Change request {cr_id} not found", details={"change_request_id": cr_id}
            )
        return cr.copy()

    async def save_change_request(self, cr: ChangeRequest) -> None:
        async with self._lock:
            self._change_requests[cr.id] = cr.copy()

    async def list_change_requests(
        self, statuses: Optional[Iterable[ChangeRequestStatus]] = None
    ) -> List[ChangeRequest]:
        wanted = set(statuses) if statuses is not None else None
        return [
            cr.copy() for cr in self._change_requests.values()
            if wanted is None or cr.status in wanted
        ]

    async def find_change_request_for_task(self, task_id: str) -> Optional[ChangeRequest]:
        matches = [cr for cr in self._change_requests.values() if cr.task_id == task_id]
        if not matches:
            return None
        return max(matches, key=lambda cr: cr.created_at).copy()

    async def save_change_request_and_task(
        self,
        cr: ChangeRequest,
        task: Task,
        expected_task_status: Optional[Iterable[TaskStatus]] = None,
    ) -> None:
        async with self._lock:
            stored = self._tasks.get(task.id)
            if stored is None:
                raise TaskNotFoundError(f"Task {task.id} not found", details={"task_id": task.id})
            if expected_task_status is not None and stored.status not in set(expected_task_status):
                raise ClaimConflict(
                    f"Task {task.id} changed to {stored.status.value} concurrently",
                    details={"task_id": task.id, "status": stored.status.value},
                )
            # Both copies are made before either write so a failure leaves nothing behind
            cr_copy, task_copy = cr.copy(), task.copy()
            self._change_requests[cr.id] = cr_copy
            self._tasks[task.id] = task_copy

    # ── Executors ────────────────────────────────────────────────────

    async def add_executor(self, executor: Executor) -> None:
        async with self._lock:
            self._executors[executor.id] = executor.copy()

    async def get_executor(self, executor_id: str) -> Executor:
        executor = self._executors.get(executor_id)
        if executor is None:
            raise ExecutorNotFoundError(
                f"Executor {executor_id} not found", details={"executor_id": executor_id}
            )
        return executor.copy()

    async def save_executor(self, executor: Executor) -> None:
        async with self._lock:
            self._executors[executor.id] = executor.copy()

    async def list_executors(
        self,
        status: Optional[ExecutorStatus] = None,
        team_id: Optional[str] = None,
        role: Optional[str] = None,
    ) -> List[Executor]:
        return [
            e.copy() for e in self._executors.values()
            if (status is None or e.status == status)
            and (team_id is None or e.team_id == team_id)
            and (role is None or e.role == role)
        ]

    @property
    def stats(self) -> Dict[str, int]:
        counts: Dict[str, int] = {s.value: 0 for s in TaskStatus}
        for task in self._tasks.values():
            counts[task.status.value] += 1
        return {
            **counts,
            "change_requests": len(self._change_requests),
            "executors": len(self._executors),
            "claims": self._claims,
            "claim_conflicts": self._claim_conflicts,
        }
