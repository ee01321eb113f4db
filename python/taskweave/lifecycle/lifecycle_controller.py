"""Task and change-request lifecycle.

The LifecycleController is the only component that moves tasks and change
requests between states. It owns:

1. **Registration**: hierarchy validation and initial READY promotion.
2. **Manual operations**: release, cancel (with descendant cascade) and
   escalate.
3. **Change-request flow**: open → CI → review → approve → merge, with
   changes-requested and re-review loops.
4. **Completion cascade**: on merge the task completes, parents whose
   children are all complete follow, and every dependent is re-evaluated
   for unblocking.

Every terminal transition is published on the event bus.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from taskweave.exceptions_unified import (
    ExternalCallFailure,
    InvalidHierarchyError,
    InvalidTransitionError,
    TaskNotFoundError,
)
from taskweave.interfaces.event_bus import EventType, IEventBus
from taskweave.interfaces.task_store import ITaskStore
from taskweave.interfaces.vcs import IVersionControl
from taskweave.lifecycle.reviewer_assignment import ReviewerAssigner, classify_task
from taskweave.lifecycle.state_machine import (
    validate_change_request_transition,
    validate_task_transition,
)
from taskweave.models import (
    ChangeRequest,
    ChangeRequestStatus,
    Task,
    TaskStatus,
    new_id,
    utcnow,
)
from taskweave.scheduling.graph_analyzer import descendants_in_tree
from taskweave.scheduling.retry_strategies import RetryDecision

logger = logging.getLogger(__name__)

AUTO_RESOLVED = "auto-resolved"

_TASK_EVENTS = {
    TaskStatus.READY: EventType.TASK_READY,
    TaskStatus.COMPLETED: EventType.TASK_COMPLETED,
    TaskStatus.CANCELLED: EventType.TASK_CANCELLED,
    TaskStatus.BLOCKED: EventType.TASK_BLOCKED,
}

_CR_EVENTS = {
    ChangeRequestStatus.READY_FOR_REVIEW: EventType.REVIEW_REQUESTED,
    ChangeRequestStatus.APPROVED: EventType.CHANGE_REQUEST_APPROVED,
    ChangeRequestStatus.CHANGES_REQUESTED: EventType.CHANGES_REQUESTED,
    ChangeRequestStatus.MERGED: EventType.CHANGE_REQUEST_MERGED,
    ChangeRequestStatus.CLOSED: EventType.CHANGE_REQUEST_CLOSED,
}


@dataclass
class CompletionResult:
    """Tasks completed and unblocked by one merge."""

    completed: List[str] = field(default_factory=list)
    unblocked: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"completed": list(self.completed), "unblocked": list(self.unblocked)}


class LifecycleController:
    """Drives task and change-request state machines."""

    def __init__(
        self,
        store: ITaskStore,
        event_bus: Optional[IEventBus] = None,
        reviewer_assigner: Optional[ReviewerAssigner] = None,
        workspaces: Any = None,
        vcs: Optional[IVersionControl] = None,
        count_cancelled_as_complete: bool = False,
        max_subtask_depth: int = 3,
        max_subtasks_per_task: int = 10,
        clock=utcnow,
    ) -> None:
        self.store = store
        self.event_bus = event_bus
        self.reviewer_assigner = reviewer_assigner or ReviewerAssigner(store)
        self.workspaces = workspaces
        self.vcs = vcs
        self.count_cancelled_as_complete = count_cancelled_as_complete
        self.max_subtask_depth = max_subtask_depth
        self.max_subtasks_per_task = max_subtasks_per_task
        self._clock = clock
        self._escalations: List[Dict[str, Any]] = []

    @classmethod
    def from_settings(cls, settings: Any, store: ITaskStore, **kwargs: Any) -> "LifecycleController":
        return cls(
            store,
            count_cancelled_as_complete=settings.count_cancelled_as_complete,
            max_subtask_depth=settings.max_subtask_depth,
            max_subtasks_per_task=settings.max_subtasks_per_task,
            **kwargs,
        )

    # ── Registration ─────────────────────────────────────────────────

    async def register_tasks(self, tasks: Iterable[Task]) -> List[Task]:
        """Validate and store new tasks, promoting dependency-free ones to READY.

        Raises:
            InvalidHierarchyError: bad depth, fan-out, missing parent or a
                dependency on the task's own descendant
        """
        new_tasks = list(tasks)
        existing = await self.store.list_tasks()
        combined: Dict[str, Task] = {t.id: t for t in existing}
        for task in new_tasks:
            if task.id in combined:
                raise InvalidHierarchyError(f"Task {task.id} already registered")
            combined[task.id] = task

        self._validate_hierarchy(new_tasks, combined)

        for task in new_tasks:
            await self.store.add_task(task)

        registered = []
        for task in new_tasks:
            stored = await self.store.get_task(task.id)
            if stored.status == TaskStatus.PENDING and await self._dependencies_complete(stored):
                stored = await self._transition(stored, TaskStatus.READY, reason="dependencies satisfied")
            registered.append(stored)
        logger.info("Registered %d task(s)", len(registered))
        return registered

    def _validate_hierarchy(self, new_tasks: List[Task], combined: Dict[str, Task]) -> None:
        all_tasks = list(combined.values())
        child_counts: Dict[str, int] = {}
        for task in all_tasks:
            if task.parent_task_id:
                child_counts[task.parent_task_id] = child_counts.get(task.parent_task_id, 0) + 1

        for task in new_tasks:
            if task.parent_task_id is None:
                if task.depth != 0:
                    raise InvalidHierarchyError(
                        f"Top-level task {task.id} must have depth 0, got {task.depth}"
                    )
            else:
                parent = combined.get(task.parent_task_id)
                if parent is None:
                    raise InvalidHierarchyError(
                        f"Task {task.id} has unknown parent {task.parent_task_id}"
                    )
                if task.depth != parent.depth + 1:
                    raise InvalidHierarchyError(
                        f"Task {task.id} depth {task.depth} must be parent depth + 1 ({parent.depth + 1})"
                    )
                if task.depth > self.max_subtask_depth:
                    raise InvalidHierarchyError(
                        f"Task {task.id} exceeds max subtask depth {self.max_subtask_depth}"
                    )
                if child_counts.get(parent.id, 0) > self.max_subtasks_per_task:
                    raise InvalidHierarchyError(
                        f"Parent {parent.id} exceeds {self.max_subtasks_per_task} subtasks"
                    )

            own_descendants = descendants_in_tree(all_tasks, task.id)
            bad = sorted(task.depends_on & own_descendants)
            if bad:
                raise InvalidHierarchyError(
                    f"Task {task.id} depends on its own descendant(s): {', '.join(bad)}",
                    details={"task_id": task.id, "descendants": bad},
                )

    # ── Manual operations ────────────────────────────────────────────

    async def release(self, task_id: str) -> Task:
        """Manually release a PENDING or BLOCKED task into READY.

        Clears holds, backoff and the failure count. Dependencies are not
        re-checked; a manual release overrides them.
        """
        task = await self.store.get_task(task_id)
        if task.status == TaskStatus.READY:
            return task
        if task.status not in (TaskStatus.PENDING, TaskStatus.BLOCKED):
            raise InvalidTransitionError(
                f"Task {task_id} cannot be released from {task.status.value}",
                details={"task_id": task_id, "status": task.status.value},
            )
        if not await self._dependencies_complete(task):
            logger.warning("Task %s released with incomplete dependencies", task_id)

        task.external_hold = False
        task.retry_count = 0
        task.error_message = None
        return await self._transition(task, TaskStatus.READY, reason="manual release")

    async def cancel(self, task_id: str, reason: str = "cancelled") -> List[str]:
        """Cancel a task and every non-completed descendant.

        Open change requests are closed and workspaces released. An
        executor call already in flight is not interrupted; its result is
        discarded when it returns.
        """
        root = await self.store.get_task(task_id)
        targets = [root]
        queue = [root.id]
        while queue:
            for child in await self.store.get_children(queue.pop(0)):
                targets.append(child)
                queue.append(child.id)

        cancelled: List[str] = []
        for task in targets:
            if task.status.is_terminal:
                continue
            await self._transition(task, TaskStatus.CANCELLED, reason=reason)
            cancelled.append(task.id)
            await self._close_open_change_requests(task.id, reason)
            if self.workspaces is not None:
                try:
                    await self.workspaces.release(task)
                except ExternalCallFailure:
                    logger.warning("Workspace release failed for cancelled task %s", task.id, exc_info=True)

        logger.info("Cancelled %d task(s) under %s", len(cancelled), task_id)

        # Descendants share the cancelled subtree; only the root's ancestors can complete.
        if self.count_cancelled_as_complete and root.id in cancelled and root.parent_task_id:
            completed = await self._complete_ancestors(await self.store.get_task(root.id))
            if completed:
                unblocked = await self.unblock_dependents(completed)
                logger.info("Cancelling %s completed %s, unblocked %s", task_id, completed, unblocked)
        return cancelled

    async def escalate(self, task_id: str, reason: str) -> Task:
        """Block a task until a human releases it."""
        task = await self.store.get_task(task_id)
        if task.status.is_terminal:
            raise InvalidTransitionError(
                f"Task {task_id} is {task.status.value} and cannot be escalated",
                details={"task_id": task_id},
            )
        task.external_hold = True
        task.blocked_until = None
        task.blocked_reason = reason
        task.error_message = reason
        task.assigned_executor_id = None
        if task.status == TaskStatus.BLOCKED:
            await self.store.save_task(task)
        else:
            task = await self._transition(task, TaskStatus.BLOCKED, reason=reason)

        record = {"task_id": task_id, "reason": reason, "at": self._clock().isoformat()}
        self._escalations.append(record)
        await self._publish(EventType.TASK_ESCALATED, {**record, "title": task.title})
        logger.warning("Task %s escalated: %s", task_id, reason)
        return task

    @property
    def escalations(self) -> List[Dict[str, Any]]:
        return list(self._escalations)

    async def record_failure(self, task_id: str, decision: RetryDecision, error: str) -> Task:
        """Apply a retry decision to a task whose attempt just failed."""
        task = await self.store.get_task(task_id)
        task.retry_count = decision.attempt
        task.error_message = error
        task.assigned_executor_id = None
        await self._publish(EventType.TASK_FAILED, {
            "task_id": task_id,
            "attempt": decision.attempt,
            "error": error,
        })

        if decision.should_retry:
            task.blocked_until = decision.retry_at
            task.blocked_reason = f"retry backoff: {decision.reason.value}"
            if task.status == TaskStatus.BLOCKED:
                await self.store.save_task(task)
                return task
            return await self._transition(task, TaskStatus.BLOCKED, reason=decision.message)

        await self.store.save_task(task)
        return await self.escalate(task_id, f"{decision.message}: {error}")

    async def force_status(self, task_id: str, target: TaskStatus, reason: str) -> Task:
        """Set a status without consulting the transition table."""
        task = await self.store.get_task(task_id)
        logger.warning("Forcing task %s %s -> %s (%s)", task_id, task.status.value, target.value, reason)
        return await self._transition(task, target, reason=reason, force=True)

    # ── Unblocking ───────────────────────────────────────────────────

    async def evaluate_blocked(self, now: Optional[datetime] = None) -> List[str]:
        """Move every PENDING/BLOCKED task that may run into READY."""
        now = now or self._clock()
        promoted = []
        for task in await self.store.list_tasks([TaskStatus.PENDING, TaskStatus.BLOCKED]):
            if await self._can_unblock(task, now):
                await self._transition(task, TaskStatus.READY, reason="unblocked")
                promoted.append(task.id)
        return promoted

    async def unblock_dependents(self, completed_ids: Iterable[str]) -> List[str]:
        now = self._clock()
        seen: Set[str] = set()
        promoted = []
        for task_id in completed_ids:
            for dependent in await self.store.get_dependents(task_id):
                if dependent.id in seen:
                    continue
                seen.add(dependent.id)
                current = await self.store.get_task(dependent.id)
                if current.status in (TaskStatus.PENDING, TaskStatus.BLOCKED) and await self._can_unblock(current, now):
                    await self._transition(current, TaskStatus.READY, reason=f"dependency {task_id} completed")
                    promoted.append(current.id)
        return promoted

    async def _can_unblock(self, task: Task, now: datetime) -> bool:
        if task.external_hold:
            return False
        if task.status == TaskStatus.BLOCKED and task.blocked_until and task.blocked_until > now:
            return False
        return await self._dependencies_complete(task)

    async def _dependencies_complete(self, task: Task) -> bool:
        for dep_id in task.depends_on:
            try:
                dep = await self.store.get_task(dep_id)
            except TaskNotFoundError:
                logger.warning("Task %s depends on unknown task %s; ignoring", task.id, dep_id)
                continue
            if dep.status != TaskStatus.COMPLETED:
                return False
        return True

    # ── Change requests ──────────────────────────────────────────────

    async def open_change_request(
        self,
        task_id: str,
        author_executor_id: str,
        handle: Optional[str],
        branch: Optional[str],
        title: str = "",
    ) -> ChangeRequest:
        """Create a DRAFT change request and move the task to IN_REVIEW atomically."""
        task = await self.store.get_task(task_id)
        validate_task_transition(task.id, task.status, TaskStatus.IN_REVIEW)

        cr = ChangeRequest(
            id=new_id(),
            task_id=task_id,
            author_executor_id=author_executor_id,
            reviewer_class=classify_task(task),
            handle=handle,
            branch=branch,
            title=title or task.title,
        )
        previous = task.status
        task.status = TaskStatus.IN_REVIEW
        task.retry_count = 0
        task.error_message = None
        await self.store.save_change_request_and_task(cr, task, expected_task_status=[previous])

        await self._publish(EventType.CHANGE_REQUEST_OPENED, {
            "change_request_id": cr.id,
            "task_id": task_id,
            "handle": handle,
            "author": author_executor_id,
        })
        logger.info("Change request %s opened for task %s", cr.id, task_id)
        return cr

    async def resubmit_change_request(self, cr_id: str) -> ChangeRequest:
        """Send a reworked change request back to its reviewer; task to IN_REVIEW atomically."""
        cr = await self.store.get_change_request(cr_id)
        task = await self.store.get_task(cr.task_id)
        validate_change_request_transition(cr.id, cr.status, ChangeRequestStatus.READY_FOR_REVIEW)
        validate_task_transition(task.id, task.status, TaskStatus.IN_REVIEW)

        if cr.reviewer_executor_id is None:
            assignment = await self.reviewer_assigner.assign(task, cr.author_executor_id)
            cr.reviewer_executor_id = assignment.reviewer_id
            cr.reviewer_class = assignment.reviewer_class
        cr.status = ChangeRequestStatus.READY_FOR_REVIEW
        previous = task.status
        task.status = TaskStatus.IN_REVIEW
        task.retry_count = 0
        task.error_message = None
        await self.store.save_change_request_and_task(cr, task, expected_task_status=[previous])
        await self._publish_cr(cr, reason="resubmitted")
        return cr

    async def on_ci_completed(self, cr_id: str, passed: bool, details: str = "") -> ChangeRequest:
        """CI finished: a passing DRAFT goes to review, a failure requests changes."""
        cr = await self.store.get_change_request(cr_id)
        if passed:
            if cr.status == ChangeRequestStatus.DRAFT:
                return await self.request_review(cr_id)
            logger.debug("CI passed for %s in %s; nothing to do", cr_id, cr.status.value)
            return cr
        if cr.status.is_open:
            return await self.request_changes(cr_id, f"CI failed: {details}".strip())
        return cr

    async def request_review(self, cr_id: str) -> ChangeRequest:
        """Assign a reviewer and move DRAFT → READY_FOR_REVIEW."""
        cr = await self.store.get_change_request(cr_id)
        validate_change_request_transition(cr.id, cr.status, ChangeRequestStatus.READY_FOR_REVIEW)
        task = await self.store.get_task(cr.task_id)

        assignment = await self.reviewer_assigner.assign(task, cr.author_executor_id)
        cr.reviewer_executor_id = assignment.reviewer_id
        cr.reviewer_class = assignment.reviewer_class
        cr.status = ChangeRequestStatus.READY_FOR_REVIEW
        await self.store.save_change_request(cr)
        await self._publish_cr(cr, reason=f"reviewer via {assignment.source}")
        return cr

    async def submit_review(
        self,
        cr_id: str,
        approved: bool,
        comments: Optional[List[str]] = None,
        reviewer_id: Optional[str] = None,
    ) -> ChangeRequest:
        cr = await self.store.get_change_request(cr_id)
        if reviewer_id is not None and reviewer_id == cr.author_executor_id:
            raise InvalidTransitionError(
                f"Author {reviewer_id} cannot review change request {cr_id}",
                details={"change_request_id": cr_id},
            )
        if reviewer_id is not None and cr.reviewer_executor_id and reviewer_id != cr.reviewer_executor_id:
            raise InvalidTransitionError(
                f"{reviewer_id} is not the assigned reviewer of {cr_id}",
                details={"change_request_id": cr_id, "reviewer": cr.reviewer_executor_id},
            )

        if not approved:
            return await self.request_changes(cr_id, *(comments or ["Changes requested"]))

        validate_change_request_transition(cr.id, cr.status, ChangeRequestStatus.APPROVED)
        cr.status = ChangeRequestStatus.APPROVED
        cr.approved_at = self._clock()
        cr.comments.extend(comments or [])
        await self.store.save_change_request(cr)
        await self._publish_cr(cr)
        return cr

    async def request_changes(self, cr_id: str, *comments: str) -> ChangeRequest:
        """Move the change request to CHANGES_REQUESTED and its task back to READY.

        The task keeps its executor assignment so the author picks the
        rework up again.
        """
        cr = await self.store.get_change_request(cr_id)
        validate_change_request_transition(cr.id, cr.status, ChangeRequestStatus.CHANGES_REQUESTED)
        task = await self.store.get_task(cr.task_id)

        cr.status = ChangeRequestStatus.CHANGES_REQUESTED
        cr.approved_at = None
        cr.comments.extend(comments)
        if task.status == TaskStatus.IN_REVIEW:
            task.status = TaskStatus.READY
            task.blocked_until = None
            task.blocked_reason = None
            await self.store.save_change_request_and_task(cr, task)
            await self._publish(EventType.TASK_READY, {"task_id": task.id, "reason": "changes requested"})
        else:
            logger.warning(
                "Changes requested on %s while task %s is %s; task left as is",
                cr_id, task.id, task.status.value,
            )
            await self.store.save_change_request(cr)
        await self._publish_cr(cr, reason="; ".join(comments))
        return cr

    async def reopen_for_review(self, cr_id: str, annotation: str = AUTO_RESOLVED) -> ChangeRequest:
        """APPROVED → READY_FOR_REVIEW: the branch changed, the approval no longer holds."""
        cr = await self.store.get_change_request(cr_id)
        validate_change_request_transition(cr.id, cr.status, ChangeRequestStatus.READY_FOR_REVIEW)
        cr.status = ChangeRequestStatus.READY_FOR_REVIEW
        cr.approved_at = None
        if annotation not in cr.annotations:
            cr.annotations.append(annotation)
        await self.store.save_change_request(cr)
        await self._publish_cr(cr, reason=annotation)
        return cr

    async def close_change_request(self, cr_id: str, reason: str = "") -> ChangeRequest:
        cr = await self.store.get_change_request(cr_id)
        validate_change_request_transition(cr.id, cr.status, ChangeRequestStatus.CLOSED)
        cr.status = ChangeRequestStatus.CLOSED
        if reason:
            cr.comments.append(reason)
        await self.store.save_change_request(cr)
        if self.vcs is not None and cr.handle:
            try:
                await self.vcs.close_change_request(cr.handle)
            except ExternalCallFailure:
                logger.warning("Remote close failed for %s (%s)", cr_id, cr.handle, exc_info=True)
        await self._publish_cr(cr, reason=reason)
        return cr

    async def mark_merged(self, cr_id: str) -> CompletionResult:
        """Record a merge, complete the task and run the completion cascade."""
        cr = await self.store.get_change_request(cr_id)
        validate_change_request_transition(cr.id, cr.status, ChangeRequestStatus.MERGED)
        task = await self.store.get_task(cr.task_id)

        now = self._clock()
        cr.status = ChangeRequestStatus.MERGED
        cr.merged_at = now
        if task.status != TaskStatus.IN_REVIEW:
            logger.warning("Task %s was %s at merge time", task.id, task.status.value)
        task.status = TaskStatus.COMPLETED
        task.completed_at = now
        task.blocked_until = None
        task.blocked_reason = None
        await self.store.save_change_request_and_task(cr, task)
        await self._publish_cr(cr)
        await self._publish(EventType.TASK_COMPLETED, {"task_id": task.id, "title": task.title})

        result = CompletionResult(completed=[task.id])
        result.completed.extend(await self._complete_ancestors(task))
        result.unblocked = await self.unblock_dependents(result.completed)

        if self.workspaces is not None:
            try:
                await self.workspaces.release(task)
            except ExternalCallFailure:
                logger.warning("Workspace release failed for task %s", task.id, exc_info=True)

        logger.info(
            "Merged %s: completed %s, unblocked %s", cr_id, result.completed, result.unblocked
        )
        return result

    async def _complete_ancestors(self, task: Task) -> List[str]:
        completed = []
        current = task
        while current.parent_task_id:
            parent = await self.store.get_task(current.parent_task_id)
            if parent.status.is_terminal:
                break
            children = await self.store.get_children(parent.id)
            if not children or not all(self._counts_as_complete(c) for c in children):
                break
            parent.completed_at = self._clock()
            await self._transition(parent, TaskStatus.COMPLETED, reason="all subtasks complete", force=True)
            completed.append(parent.id)
            current = parent
        return completed

    def _counts_as_complete(self, task: Task) -> bool:
        if task.status == TaskStatus.COMPLETED:
            return True
        return self.count_cancelled_as_complete and task.status == TaskStatus.CANCELLED

    async def _close_open_change_requests(self, task_id: str, reason: str) -> None:
        for cr in await self.store.list_change_requests():
            if cr.task_id == task_id and cr.status not in (ChangeRequestStatus.MERGED, ChangeRequestStatus.CLOSED):
                await self.close_change_request(cr.id, reason)

    # ── Internal helpers ─────────────────────────────────────────────

    async def _transition(
        self,
        task: Task,
        target: TaskStatus,
        reason: Optional[str] = None,
        force: bool = False,
    ) -> Task:
        previous = task.status
        if not force:
            validate_task_transition(task.id, previous, target)

        task.status = target
        if target == TaskStatus.READY:
            task.blocked_until = None
            task.blocked_reason = None
        elif target == TaskStatus.CANCELLED:
            task.assigned_executor_id = None
        elif target == TaskStatus.COMPLETED and task.completed_at is None:
            task.completed_at = self._clock()
        await self.store.save_task(task)

        logger.debug("Task %s: %s -> %s (%s)", task.id, previous.value, target.value, reason)
        event = _TASK_EVENTS.get(target)
        if event is not None:
            await self._publish(event, {
                "task_id": task.id,
                "title": task.title,
                "from": previous.value,
                "to": target.value,
                "reason": reason,
            })
        return task

    async def _publish_cr(self, cr: ChangeRequest, reason: str = "") -> None:
        event = _CR_EVENTS.get(cr.status)
        if event is None:
            return
        await self._publish(event, {
            "change_request_id": cr.id,
            "task_id": cr.task_id,
            "status": cr.status.value,
            "reviewer": cr.reviewer_executor_id,
            "annotations": list(cr.annotations),
            "reason": reason,
        })

    async def _publish(self, event_type: EventType, data: Dict[str, Any]) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(event_type, data, source="lifecycle")
