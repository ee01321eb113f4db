"""Interface for the shared task store.

The store is the sole arbiter of task ownership. Besides plain CRUD it
exposes exactly two atomic units: the claim compare-and-set and the
combined change-request + task write.
"""

from typing import Iterable, List, Optional, Protocol

from taskweave.models import (
    ChangeRequest,
    ChangeRequestStatus,
    Executor,
    ExecutorStatus,
    Task,
    TaskStatus,
)


class ITaskStore(Protocol):
    """Interface for task, change-request and executor persistence."""

    # ── Tasks ────────────────────────────────────────────────────────

    async def add_task(self, task: Task) -> None:
        ...

    async def get_task(self, task_id: str) -> Task:
        """Return a copy of the task.

        Raises:
            TaskNotFoundError: unknown id
        """
        ...

    async def save_task(self, task: Task) -> None:
        ...

    async def list_tasks(self, statuses: Optional[Iterable[TaskStatus]] = None) -> List[Task]:
        """All tasks in insertion order, optionally filtered by status."""
        ...

    async def get_children(self, parent_id: str) -> List[Task]:
        ...

    async def get_dependents(self, task_id: str) -> List[Task]:
        """Tasks whose ``depends_on`` contains *task_id*."""
        ...

    async def claim_task(self, task_id: str, executor_id: str) -> Task:
        """Atomically move a READY, unassigned task to IN_PROGRESS for *executor_id*.

        Raises:
            ClaimConflict: the task is no longer READY or belongs to someone else
        """
        ...

    # ── Change requests ──────────────────────────────────────────────

    async def get_change_request(self, cr_id: str) -> ChangeRequest:
        ...

    async def save_change_request(self, cr: ChangeRequest) -> None:
        ...

    async def list_change_requests(
        self, statuses: Optional[Iterable[ChangeRequestStatus]] = None
    ) -> List[ChangeRequest]:
        ...

    async def find_change_request_for_task(self, task_id: str) -> Optional[ChangeRequest]:
        """Most recent change request for the task, if any."""
        ...

    async def save_change_request_and_task(
        self,
        cr: ChangeRequest,
        task: Task,
        expected_task_status: Optional[Iterable[TaskStatus]] = None,
    ) -> None:
        """Write both records or neither.

        Raises:
            ClaimConflict: the stored task is not in *expected_task_status*
        """
        ...

    # ── Executors ────────────────────────────────────────────────────

    async def add_executor(self, executor: Executor) -> None:
        ...

    async def get_executor(self, executor_id: str) -> Executor:
        ...

    async def save_executor(self, executor: Executor) -> None:
        ...

    async def list_executors(
        self,
        status: Optional[ExecutorStatus] = None,
        team_id: Optional[str] = None,
        role: Optional[str] = None,
    ) -> List[Executor]:
        ...
