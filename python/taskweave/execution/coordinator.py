"""Execution pipeline: claim, run, submit, recover.

The coordinator turns READY tasks into change requests:

1. **Claiming** pairs executors that have a free concurrency slot with READY
   leaf tasks, highest priority first, through the store's atomic claim.
2. **Execution** runs off the scheduling path as its own asyncio task:
   workspace, prompt, executor call under a timeout, commit, push, change
   request, then conflict checkpoint A.
3. **Recovery** turns failures into backoff or escalation, discards results
   for tasks cancelled in the meantime, sweeps stuck tasks and reconciles
   change requests whose task drifted out of IN_REVIEW.
4. **Review** hands the assigned reviewer executor a review prompt and
   applies its JSON verdict.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from taskweave.exceptions_unified import (
    ClaimConflict,
    ConsistencyDrift,
    ExecutorInvocationError,
    ExecutorTimeoutError,
    ExternalCallFailure,
    InvalidTransitionError,
    TaskNotFoundError,
    VCSCommandError,
)
from taskweave.execution.conflict_resolver import Checkpoint, ConflictContext, ConflictResolver
from taskweave.execution.prompts import (
    ReviewVerdict,
    build_change_request_body,
    build_review_prompt,
    build_task_prompt,
    parse_review_output,
)
from taskweave.execution.workspace import WorkspaceManager, branch_name
from taskweave.interfaces.event_bus import EventType, IEventBus
from taskweave.interfaces.executor import ExecutorResult, IExecutor
from taskweave.interfaces.task_store import ITaskStore
from taskweave.interfaces.vcs import IVersionControl
from taskweave.lifecycle.lifecycle_controller import LifecycleController
from taskweave.models import (
    ChangeRequest,
    ChangeRequestStatus,
    Executor,
    ExecutorStatus,
    Task,
    TaskStatus,
    utcnow,
)
from taskweave.scheduling.retry_strategies import RetryManager, RetryReason

logger = logging.getLogger(__name__)

_OPEN_CR_STATUSES = [
    ChangeRequestStatus.DRAFT,
    ChangeRequestStatus.READY_FOR_REVIEW,
    ChangeRequestStatus.APPROVED,
]
_CONSISTENT_TASK_STATUSES = (TaskStatus.IN_REVIEW, TaskStatus.COMPLETED, TaskStatus.BLOCKED)


# ── Concurrency ──────────────────────────────────────────────────────


class ConcurrencySlot:
    """Per-executor concurrency limiter.

    acquire() returns False when all slots are taken (backpressure).
    """

    def __init__(self, executor_id: str, max_concurrent: int = 1) -> None:
        self.executor_id = executor_id
        self.max_concurrent = max_concurrent
        self._active: int = 0
        self._total_acquired: int = 0
        self._total_rejected: int = 0

    def acquire(self) -> bool:
        if self._active < self.max_concurrent:
            self._active += 1
            self._total_acquired += 1
            return True
        self._total_rejected += 1
        return False

    def release(self) -> None:
        self._active = max(0, self._active - 1)

    @property
    def active(self) -> int:
        return self._active

    @property
    def available(self) -> int:
        return max(0, self.max_concurrent - self._active)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executor_id": self.executor_id,
            "max_concurrent": self.max_concurrent,
            "active": self._active,
            "available": self.available,
            "total_acquired": self._total_acquired,
            "total_rejected": self._total_rejected,
        }


# ── Outcomes ─────────────────────────────────────────────────────────


class ExecutionStatus(str, Enum):
    SUBMITTED = "submitted"  # change request opened or resubmitted
    FAILED = "failed"  # backoff or escalation applied
    DISCARDED = "discarded"  # task cancelled or moved while running


@dataclass
class ExecutionOutcome:
    task_id: str
    status: ExecutionStatus
    change_request_id: Optional[str] = None
    cost: float = 0.0
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "change_request_id": self.change_request_id,
            "cost": self.cost,
            "error": self.error,
            **self.details,
        }


# ── Coordinator ──────────────────────────────────────────────────────


class ExecutionCoordinator:
    """Claims READY work for executors and drives it to a change request."""

    def __init__(
        self,
        store: ITaskStore,
        lifecycle: LifecycleController,
        vcs: IVersionControl,
        workspaces: WorkspaceManager,
        resolver: ConflictResolver,
        retry_manager: Optional[RetryManager] = None,
        event_bus: Optional[IEventBus] = None,
        default_executor: Optional[IExecutor] = None,
        mainline_branch: str = "main",
        repository_path: str = ".",
        executor_timeout: float = 1800.0,
        max_concurrent_per_executor: int = 1,
        dispatch_interval: float = 5.0,
        reconciliation_interval: float = 300.0,
        stuck_threshold_seconds: float = 7200.0,
        drift_warning_threshold: int = 2,
        claim_roles: tuple = ("developer",),
        clock=utcnow,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.vcs = vcs
        self.workspaces = workspaces
        self.resolver = resolver
        self.retry_manager = retry_manager or RetryManager()
        self.event_bus = event_bus
        self.default_executor = default_executor
        self.mainline_branch = mainline_branch
        self.repository_path = repository_path
        self.executor_timeout = executor_timeout
        self.max_concurrent_per_executor = max_concurrent_per_executor
        self.dispatch_interval = dispatch_interval
        self.reconciliation_interval = reconciliation_interval
        self.stuck_threshold_seconds = stuck_threshold_seconds
        self.drift_warning_threshold = drift_warning_threshold
        self.claim_roles = claim_roles
        self._clock = clock

        self._executors: Dict[str, IExecutor] = {}
        self._slots: Dict[str, ConcurrencySlot] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._drift_counts: Dict[str, int] = {}
        self._loops: List[asyncio.Task] = []
        self._running = False
        self._counts = {s: 0 for s in ExecutionStatus}
        self._total_cost = 0.0

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> "ExecutionCoordinator":
        return cls(
            mainline_branch=settings.mainline_branch,
            repository_path=settings.repository_path,
            executor_timeout=settings.executor_timeout_seconds,
            max_concurrent_per_executor=settings.max_concurrent_per_executor,
            dispatch_interval=settings.dispatch_interval_seconds,
            reconciliation_interval=settings.reconciliation_interval_seconds,
            stuck_threshold_seconds=settings.stuck_task_threshold_seconds,
            drift_warning_threshold=settings.drift_warning_threshold,
            **kwargs,
        )

    # ── Executor registry ────────────────────────────────────────────

    async def register_executor(self, executor: Executor, backend: Optional[IExecutor] = None) -> None:
        """Store an executor record and bind the backend that runs its prompts."""
        await self.store.add_executor(executor)
        if backend is not None:
            self._executors[executor.id] = backend

    def backend_for(self, executor_id: str) -> IExecutor:
        backend = self._executors.get(executor_id, self.default_executor)
        if backend is None:
            raise ExecutorInvocationError(
                f"No executor backend bound for {executor_id}",
                details={"executor_id": executor_id},
            )
        return backend

    def _slot(self, executor: Executor) -> ConcurrencySlot:
        limit = executor.max_concurrent or self.max_concurrent_per_executor
        slot = self._slots.get(executor.id)
        if slot is None:
            slot = ConcurrencySlot(executor.id, limit)
            self._slots[executor.id] = slot
        else:
            slot.max_concurrent = limit
        return slot

    # ── Claiming ─────────────────────────────────────────────────────

    async def dispatch_once(self) -> List[str]:
        """Claim READY leaf tasks for every executor with a free slot.

        Returns:
            Ids of the tasks claimed in this pass
        """
        ready = await self.store.list_tasks([TaskStatus.READY])
        if not ready:
            return []
        parents = {t.parent_task_id for t in await self.store.list_tasks() if t.parent_task_id}
        queue = sorted(
            (t for t in ready if t.id not in parents),
            key=lambda t: (t.priority.rank, t.created_at),
        )

        executors = [
            e for e in await self.store.list_executors()
            if e.status != ExecutorStatus.OFFLINE and e.role in self.claim_roles
        ]
        claimed: List[str] = []
        for executor in executors:
            slot = self._slot(executor)
            while slot.available > 0 and queue:
                task = await self._claim_next(executor, queue)
                if task is None:
                    break
                slot.acquire()
                claimed.append(task.id)
                await self._set_executor_status(executor.id, ExecutorStatus.WORKING)
                self._inflight[task.id] = asyncio.create_task(self._run(executor, task))
        if claimed:
            logger.info("Dispatched %d task(s): %s", len(claimed), claimed)
        return claimed

    async def _claim_next(self, executor: Executor, queue: List[Task]) -> Optional[Task]:
        for candidate in list(queue):
            if candidate.assigned_executor_id not in (None, executor.id):
                continue
            queue.remove(candidate)
            try:
                task = await self.store.claim_task(candidate.id, executor.id)
            except ClaimConflict:
                logger.debug("Claim conflict on %s for %s; trying next", candidate.id, executor.id)
                continue
            await self._publish(EventType.TASK_CLAIMED, {"task_id": task.id, "executor_id": executor.id})
            return task
        return None

    async def _run(self, executor: Executor, task: Task) -> None:
        try:
            await self.execute_claimed(executor, task)
        except Exception:
            logger.error("Execution of task %s crashed", task.id, exc_info=True)
        finally:
            self._inflight.pop(task.id, None)
            slot = self._slots.get(executor.id)
            if slot is not None:
                slot.release()
                if slot.active == 0:
                    await self._set_executor_status(executor.id, ExecutorStatus.IDLE)

    # ── Execution ────────────────────────────────────────────────────

    async def execute_claimed(self, executor: Executor, task: Task) -> ExecutionOutcome:
        """Run one claimed task to a change request, or record the failure."""
        cost = 0.0
        try:
            workspace = await self.workspaces.ensure(executor, task)
            task = await self.store.get_task(task.id)
            if task.status != TaskStatus.IN_PROGRESS:
                return self._discard(task, "moved before execution started")
            task.workspace = workspace
            await self.store.save_task(task)

            rework = await self._rework_target(task)
            prompt = build_task_prompt(task, review_comments=rework.comments if rework else None)
            result = await self._invoke(self.backend_for(executor.id), prompt, workspace)
            cost = result.cost
            self._total_cost += cost

            current = await self.store.get_task(task.id)
            if current.status != TaskStatus.IN_PROGRESS:
                return self._discard(current, "cancelled or moved while the executor ran")
            if not result.success:
                raise ExecutorInvocationError(
                    result.error or "Executor reported failure",
                    details={"output": result.output[-2000:]},
                )

            branch = branch_name(executor, task)
            if not await self.vcs.commit_all(workspace, f"{task.title}\n\nTask: {task.id}"):
                return await self._handle_failure(task.id, RetryReason.NO_CHANGES, "Executor produced no changes", cost)
            await self.vcs.push(workspace, branch)

            if rework is not None:
                cr = await self.lifecycle.resubmit_change_request(rework.id)
            else:
                handle = await self.vcs.create_change_request(
                    workspace, branch, self.mainline_branch, task.title, build_change_request_body(task)
                )
                cr = await self.lifecycle.open_change_request(task.id, executor.id, handle, branch)
        except ExternalCallFailure as e:
            return await self._handle_failure(task.id, self._reason_for(e), e.message, cost)
        except (InvalidTransitionError, ClaimConflict) as e:
            current = await self.store.get_task(task.id)
            return self._discard(current, e.message)

        self.retry_manager.reset(task.id)
        context = ConflictContext(task, cr, workspace, branch, self.backend_for(executor.id))
        resolution = await self.resolver.resolve_conflicts(context, Checkpoint.AFTER_OPEN)

        self._counts[ExecutionStatus.SUBMITTED] += 1
        logger.info("Task %s submitted as change request %s", task.id, cr.id)
        return ExecutionOutcome(
            task.id,
            ExecutionStatus.SUBMITTED,
            change_request_id=cr.id,
            cost=cost,
            details={"conflicts": resolution.outcome.value},
        )

    async def _invoke(self, backend: IExecutor, prompt: str, workspace: str) -> ExecutorResult:
        try:
            return await asyncio.wait_for(
                backend.invoke(prompt, workspace, self.executor_timeout),
                timeout=self.executor_timeout,
            )
        except asyncio.TimeoutError:
            raise ExecutorTimeoutError(
                f"Executor exceeded {self.executor_timeout:.0f}s",
                details={"timeout": self.executor_timeout},
            )

    async def _rework_target(self, task: Task) -> Optional[ChangeRequest]:
        cr = await self.store.find_change_request_for_task(task.id)
        if cr is not None and cr.status == ChangeRequestStatus.CHANGES_REQUESTED:
            return cr
        return None

    @staticmethod
    def _reason_for(error: ExternalCallFailure) -> RetryReason:
        if isinstance(error, ExecutorTimeoutError):
            return RetryReason.TIMEOUT
        if isinstance(error, VCSCommandError):
            return RetryReason.VCS_FAILURE
        return RetryReason.EXECUTION_FAILURE

    def _discard(self, task: Task, why: str) -> ExecutionOutcome:
        self._counts[ExecutionStatus.DISCARDED] += 1
        logger.info("Discarding result for task %s (%s): %s", task.id, task.status.value, why)
        return ExecutionOutcome(task.id, ExecutionStatus.DISCARDED, error=why)

    async def _handle_failure(self, task_id: str, reason: RetryReason, error: str, cost: float = 0.0) -> ExecutionOutcome:
        task = await self.store.get_task(task_id)
        if task.status != TaskStatus.IN_PROGRESS:
            return self._discard(task, error)

        decision = self.retry_manager.on_failure(task_id, task.retry_count + 1, reason, self._clock())
        await self.lifecycle.record_failure(task_id, decision, error)
        self._counts[ExecutionStatus.FAILED] += 1
        return ExecutionOutcome(
            task_id,
            ExecutionStatus.FAILED,
            cost=cost,
            error=error,
            details={"retry": decision.to_dict()},
        )

    # ── Conflict context ─────────────────────────────────────────────

    async def conflict_context(self, cr: ChangeRequest) -> ConflictContext:
        """Build (and if needed rebuild) the workspace context for a change request."""
        task = await self.store.get_task(cr.task_id)
        author = await self.store.get_executor(cr.author_executor_id)
        workspace = await self.workspaces.ensure(author, task)
        if task.workspace != workspace:
            task.workspace = workspace
            await self.store.save_task(task)
        return ConflictContext(
            task=task,
            change_request=cr,
            workspace=workspace,
            branch=cr.branch or branch_name(author, task),
            executor=self.backend_for(author.id),
        )

    # ── Review ───────────────────────────────────────────────────────

    async def run_review(self, cr_id: str) -> ChangeRequest:
        """Have the assigned reviewer executor review a change request."""
        cr = await self.store.get_change_request(cr_id)
        if cr.status != ChangeRequestStatus.READY_FOR_REVIEW or not cr.reviewer_executor_id:
            raise InvalidTransitionError(
                f"Change request {cr_id} is not awaiting review",
                details={"change_request_id": cr_id, "status": cr.status.value},
            )
        reviewer = await self.store.get_executor(cr.reviewer_executor_id)
        task = await self.store.get_task(cr.task_id)
        diff = await self.vcs.get_diff(cr.handle) if cr.handle else ""

        prompt = build_review_prompt(reviewer.name, task, cr, diff)
        result = await self._invoke(
            self.backend_for(reviewer.id), prompt, task.workspace or self.repository_path
        )
        if result.success:
            verdict = parse_review_output(result.output)
        else:
            verdict = ReviewVerdict(approved=False, comments=[f"Review failed: {result.error}"], parsed=False)

        logger.info("Review of %s by %s: approved=%s", cr_id, reviewer.name, verdict.approved)
        return await self.lifecycle.submit_review(
            cr_id, verdict.approved, verdict.comments, reviewer_id=reviewer.id
        )

    # ── Recovery sweeps ──────────────────────────────────────────────

    async def reconcile_change_requests(self) -> List[str]:
        """Force tasks with an open change request back to IN_REVIEW.

        A cancelled task instead gets its change request closed.

        Returns:
            Ids of the tasks found drifting
        """
        drifted = []
        for cr in await self.store.list_change_requests(_OPEN_CR_STATUSES):
            try:
                task = await self.store.get_task(cr.task_id)
            except TaskNotFoundError:
                logger.warning("Change request %s references missing task %s", cr.id, cr.task_id)
                continue
            if task.status in _CONSISTENT_TASK_STATUSES:
                continue

            drift = ConsistencyDrift(
                f"Task {task.id} is {task.status.value} while change request {cr.id} is {cr.status.value}",
                details={"task_id": task.id, "change_request_id": cr.id},
            )
            count = self._drift_counts.get(task.id, 0) + 1
            self._drift_counts[task.id] = count
            if count >= self.drift_warning_threshold:
                logger.warning("%s (repeated %d times)", drift.message, count)
            else:
                logger.info("%s", drift.message)
            await self._publish(EventType.CONSISTENCY_DRIFT, {**drift.details, "count": count})

            try:
                if task.status == TaskStatus.CANCELLED:
                    await self.lifecycle.close_change_request(cr.id, "task cancelled")
                else:
                    await self.lifecycle.force_status(task.id, TaskStatus.IN_REVIEW, "reconciliation")
            except Exception:
                logger.error("Reconciliation of %s failed", cr.id, exc_info=True)
                continue
            drifted.append(task.id)
        return drifted

    async def sweep_stuck_tasks(self) -> List[str]:
        """Treat IN_PROGRESS tasks older than the threshold as failed attempts."""
        now = self._clock()
        stuck = []
        for task in await self.store.list_tasks([TaskStatus.IN_PROGRESS]):
            if task.id in self._inflight or task.started_at is None:
                continue
            age = (now - task.started_at).total_seconds()
            if age < self.stuck_threshold_seconds:
                continue
            await self._handle_failure(task.id, RetryReason.STUCK, f"In progress for {age:.0f}s")
            stuck.append(task.id)
        if stuck:
            logger.warning("Recovered %d stuck task(s): %s", len(stuck), stuck)
        return stuck

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the dispatch and reconciliation loops."""
        if self._running:
            return
        self._running = True
        self._loops = [
            asyncio.create_task(self._dispatch_loop()),
            asyncio.create_task(self._reconciliation_loop()),
        ]
        logger.info("Execution coordinator started")

    async def stop(self, cancel_inflight: bool = True) -> None:
        if not self._running:
            return
        self._running = False
        pending = list(self._loops)
        if cancel_inflight:
            pending.extend(self._inflight.values())
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._loops = []
        logger.info("Execution coordinator stopped")

    async def wait_idle(self) -> None:
        """Wait for every in-flight execution to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def _dispatch_loop(self) -> None:
        while self._running:
            try:
                await self.lifecycle.evaluate_blocked(self._clock())
                await self.dispatch_once()
            except Exception as e:
                logger.error("Error in dispatch loop: %s", e, exc_info=True)
            await asyncio.sleep(self.dispatch_interval)

    async def _reconciliation_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.reconciliation_interval)
            try:
                await self.reconcile_change_requests()
                await self.sweep_stuck_tasks()
                await self.workspaces.cleanup_sweep()
            except Exception as e:
                logger.error("Error in reconciliation loop: %s", e, exc_info=True)

    # ── Internal helpers ─────────────────────────────────────────────

    async def _set_executor_status(self, executor_id: str, status: ExecutorStatus) -> None:
        executor = await self.store.get_executor(executor_id)
        if executor.status != status and executor.status != ExecutorStatus.OFFLINE:
            executor.status = status
            await self.store.save_executor(executor)

    async def _publish(self, event_type: EventType, data: Dict[str, Any]) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(event_type, data, source="coordinator")

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            **{s.value: n for s, n in self._counts.items()},
            "inflight": len(self._inflight),
            "total_cost": round(self._total_cost, 4),
            "drift": dict(self._drift_counts),
            "slots": {eid: slot.to_dict() for eid, slot in self._slots.items()},
            "retries": self.retry_manager.stats,
        }
