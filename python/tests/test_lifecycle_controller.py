"""Tests for taskweave.lifecycle.lifecycle_controller."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from taskweave.event_bus import InMemoryEventBus
from taskweave.exceptions_unified import (
    ClaimConflict,
    ExternalCallFailure,
    InvalidHierarchyError,
    InvalidTransitionError,
    RetryConfig,
)
from taskweave.interfaces.event_bus import EventType
from taskweave.lifecycle.lifecycle_controller import AUTO_RESOLVED, LifecycleController
from taskweave.models import (
    ChangeRequestStatus,
    Executor,
    ReviewerClass,
    Task,
    TaskStatus,
)
from taskweave.scheduling.retry_strategies import BackoffPolicy, RetryReason
from taskweave.storage.memory_store import InMemoryTaskStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# -- Fixtures --------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_container():
    from taskweave import di_container
    di_container._container = None
    yield
    di_container._container = None


async def _build_lifecycle(**kwargs):
    """Lifecycle controller over a fresh store with two idle developers."""
    store = InMemoryTaskStore()
    bus = InMemoryEventBus()
    await store.add_executor(Executor(id="dev1", name="Author", team_id="core"))
    await store.add_executor(Executor(id="dev2", name="Reviewer", team_id="core"))
    lifecycle = LifecycleController(store, event_bus=bus, clock=lambda: NOW, **kwargs)
    return lifecycle, store, bus


def _task(task_id, *deps, parent=None, depth=0, title=None):
    return Task(
        id=task_id,
        title=title or f"Task {task_id}",
        depends_on=set(deps),
        parent_task_id=parent,
        depth=depth,
    )


def _epic():
    return [
        _task("E"),
        _task("S1", parent="E", depth=1),
        _task("S2", parent="E", depth=1),
        _task("D", "E"),
    ]


async def _open(lifecycle, store, task_id, author="dev1", handle=None):
    await store.claim_task(task_id, author)
    return await lifecycle.open_change_request(task_id, author, handle=handle, branch=f"feature/{task_id}")


async def _approve(lifecycle, store, task_id, author="dev1", handle=None):
    cr = await _open(lifecycle, store, task_id, author, handle)
    await lifecycle.request_review(cr.id)
    await lifecycle.submit_review(cr.id, approved=True)
    return cr.id


# ========================================================================
# REGISTRATION
# ========================================================================


class TestRegistration:
    """Hierarchy validation and initial promotion."""

    @pytest.mark.asyncio
    async def test_dependency_free_tasks_become_ready(self):
        lifecycle, store, _ = await _build_lifecycle()
        registered = await lifecycle.register_tasks(_epic())
        status = {t.id: t.status for t in registered}
        assert status == {
            "E": TaskStatus.READY,
            "S1": TaskStatus.READY,
            "S2": TaskStatus.READY,
            "D": TaskStatus.PENDING,
        }

    @pytest.mark.asyncio
    async def test_unknown_dependency_ignored(self, caplog):
        import logging
        lifecycle, _, _ = await _build_lifecycle()
        with caplog.at_level(logging.WARNING):
            registered = await lifecycle.register_tasks([_task("A", "ghost")])
        assert registered[0].status == TaskStatus.READY
        assert "ghost" in caplog.text

    @pytest.mark.asyncio
    async def test_cyclic_dependencies_registered_not_rejected(self):
        lifecycle, store, _ = await _build_lifecycle()
        registered = await lifecycle.register_tasks([_task("A", "B"), _task("B", "A"), _task("C")])
        status = {t.id: t.status for t in registered}
        assert status == {"A": TaskStatus.PENDING, "B": TaskStatus.PENDING, "C": TaskStatus.READY}
        assert len(await store.list_tasks()) == 3

    @pytest.mark.parametrize("tasks", [
        [_task("E"), _task("S", parent="E", depth=2)],
        [_task("S", parent="missing", depth=1)],
        [_task("A", depth=1)],
        [_task("E", "S"), _task("S", parent="E", depth=1)],
    ])
    @pytest.mark.asyncio
    async def test_invalid_hierarchy_rejected(self, tasks):
        lifecycle, store, _ = await _build_lifecycle()
        with pytest.raises(InvalidHierarchyError):
            await lifecycle.register_tasks(tasks)
        assert await store.list_tasks() == []

    @pytest.mark.asyncio
    async def test_max_depth(self):
        lifecycle, _, _ = await _build_lifecycle(max_subtask_depth=1)
        with pytest.raises(InvalidHierarchyError, match="max subtask depth"):
            await lifecycle.register_tasks([
                _task("E"), _task("S", parent="E", depth=1), _task("SS", parent="S", depth=2),
            ])

    @pytest.mark.asyncio
    async def test_max_children(self):
        lifecycle, _, _ = await _build_lifecycle(max_subtasks_per_task=2)
        with pytest.raises(InvalidHierarchyError, match="exceeds 2 subtasks"):
            await lifecycle.register_tasks(
                [_task("E")] + [_task(f"S{i}", parent="E", depth=1) for i in range(3)]
            )

    @pytest.mark.asyncio
    async def test_duplicate_registration(self):
        lifecycle, _, _ = await _build_lifecycle()
        await lifecycle.register_tasks([_task("A")])
        with pytest.raises(InvalidHierarchyError, match="already registered"):
            await lifecycle.register_tasks([_task("A")])


# ========================================================================
# MANUAL OPERATIONS
# ========================================================================


class TestManualOperations:
    """Release, escalate, cancel and forced transitions."""

    @pytest.mark.asyncio
    async def test_release_overrides_dependencies(self):
        lifecycle, _, bus = await _build_lifecycle()
        await lifecycle.register_tasks([_task("A"), _task("B", "A")])
        task = await lifecycle.release("B")
        assert task.status == TaskStatus.READY
        assert any(e["task_id"] == "B" for e in bus.history(EventType.TASK_READY))

    @pytest.mark.asyncio
    async def test_release_from_terminal_rejected(self):
        lifecycle, _, _ = await _build_lifecycle()
        await lifecycle.register_tasks([_task("A")])
        await lifecycle.cancel("A")
        with pytest.raises(InvalidTransitionError):
            await lifecycle.release("A")

    @pytest.mark.asyncio
    async def test_escalated_task_waits_for_release(self):
        lifecycle, store, bus = await _build_lifecycle()
        await lifecycle.register_tasks([_task("A")])
        task = await lifecycle.escalate("A", "needs a human")
        assert task.status == TaskStatus.BLOCKED
        assert task.external_hold
        assert await lifecycle.evaluate_blocked(NOW + timedelta(days=30)) == []
        assert bus.history(EventType.TASK_ESCALATED)[0]["reason"] == "needs a human"
        assert lifecycle.escalations[0]["task_id"] == "A"

        released = await lifecycle.release("A")
        assert released.status == TaskStatus.READY
        assert not released.external_hold
        assert released.error_message is None

    @pytest.mark.asyncio
    async def test_cancel_cascades_to_open_descendants(self):
        workspaces = AsyncMock()
        vcs = AsyncMock()
        lifecycle, store, bus = await _build_lifecycle(workspaces=workspaces, vcs=vcs)
        await lifecycle.register_tasks(_epic())
        cr2 = await _approve(lifecycle, store, "S2")
        await lifecycle.mark_merged(cr2)
        cr1 = await _open(lifecycle, store, "S1", handle="42")

        cancelled = await lifecycle.cancel("E", "scope cut")

        assert cancelled == ["E", "S1"]
        assert (await store.get_task("S2")).status == TaskStatus.COMPLETED
        s1 = await store.get_task("S1")
        assert s1.status == TaskStatus.CANCELLED
        assert s1.assigned_executor_id is None
        assert (await store.get_change_request(cr1.id)).status == ChangeRequestStatus.CLOSED
        vcs.close_change_request.assert_awaited_once_with("42")
        assert len(bus.history(EventType.TASK_CANCELLED)) == 2

    @pytest.mark.asyncio
    async def test_cancel_tolerates_workspace_failure(self):
        workspaces = AsyncMock()
        workspaces.release.side_effect = ExternalCallFailure("git worktree busy")
        lifecycle, store, _ = await _build_lifecycle(workspaces=workspaces)
        await lifecycle.register_tasks([_task("A")])
        assert await lifecycle.cancel("A") == ["A"]
        assert (await store.get_task("A")).status == TaskStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_force_status_skips_table(self):
        lifecycle, store, _ = await _build_lifecycle()
        await lifecycle.register_tasks([_task("A")])
        task = await lifecycle.force_status("A", TaskStatus.IN_REVIEW, "drift repair")
        assert task.status == TaskStatus.IN_REVIEW


# ========================================================================
# FAILURES & BACKOFF
# ========================================================================


class TestFailures:
    """Retry decisions applied to tasks."""

    @pytest.mark.asyncio
    async def test_retry_blocks_until_backoff_elapses(self):
        lifecycle, store, bus = await _build_lifecycle()
        await lifecycle.register_tasks([_task("A")])
        await store.claim_task("A", "dev1")
        decision = BackoffPolicy(RetryConfig()).decide(1, RetryReason.EXECUTION_FAILURE, NOW)

        task = await lifecycle.record_failure("A", decision, "agent crashed")

        assert task.status == TaskStatus.BLOCKED
        assert task.blocked_until == NOW + timedelta(seconds=300)
        assert task.retry_count == 1
        assert task.assigned_executor_id is None
        assert bus.history(EventType.TASK_FAILED)[0]["error"] == "agent crashed"
        assert await lifecycle.evaluate_blocked(NOW) == []
        assert await lifecycle.evaluate_blocked(NOW + timedelta(seconds=301)) == ["A"]

    @pytest.mark.asyncio
    async def test_exhausted_retries_escalate(self):
        lifecycle, store, _ = await _build_lifecycle()
        await lifecycle.register_tasks([_task("A")])
        await store.claim_task("A", "dev1")
        decision = BackoffPolicy(RetryConfig()).decide(5, RetryReason.TIMEOUT, NOW)

        task = await lifecycle.record_failure("A", decision, "timed out")

        assert task.status == TaskStatus.BLOCKED
        assert task.external_hold
        assert task.blocked_until is None
        assert task.retry_count == 5


# ========================================================================
# CHANGE REQUESTS
# ========================================================================


class TestChangeRequestFlow:
    """Open, review, rework and merge."""

    @pytest.mark.asyncio
    async def test_happy_path(self):
        lifecycle, store, bus = await _build_lifecycle()
        await lifecycle.register_tasks([_task("A", title="Add export button")])
        cr = await _open(lifecycle, store, "A")
        assert cr.status == ChangeRequestStatus.DRAFT
        assert cr.reviewer_class == ReviewerClass.GENERALIST
        assert (await store.get_task("A")).status == TaskStatus.IN_REVIEW

        cr = await lifecycle.on_ci_completed(cr.id, passed=True)
        assert cr.status == ChangeRequestStatus.READY_FOR_REVIEW
        assert cr.reviewer_executor_id == "dev2"

        cr = await lifecycle.submit_review(cr.id, approved=True, reviewer_id="dev2")
        assert cr.status == ChangeRequestStatus.APPROVED
        assert cr.approved_at == NOW

        result = await lifecycle.mark_merged(cr.id)
        assert result.completed == ["A"]
        task = await store.get_task("A")
        assert task.status == TaskStatus.COMPLETED
        assert task.completed_at == NOW
        assert len(bus.history(EventType.CHANGE_REQUEST_MERGED)) == 1

    @pytest.mark.asyncio
    async def test_author_cannot_review(self):
        lifecycle, store, _ = await _build_lifecycle()
        await lifecycle.register_tasks([_task("A")])
        cr = await _open(lifecycle, store, "A")
        await lifecycle.request_review(cr.id)
        with pytest.raises(InvalidTransitionError, match="cannot review"):
            await lifecycle.submit_review(cr.id, approved=True, reviewer_id="dev1")
        with pytest.raises(InvalidTransitionError, match="not the assigned reviewer"):
            await lifecycle.submit_review(cr.id, approved=True, reviewer_id="dev9")

    @pytest.mark.asyncio
    async def test_ci_failure_requests_changes_and_author_reworks(self):
        lifecycle, store, _ = await _build_lifecycle()
        await lifecycle.register_tasks([_task("A")])
        cr = await _open(lifecycle, store, "A")

        cr = await lifecycle.on_ci_completed(cr.id, passed=False, details="lint")
        assert cr.status == ChangeRequestStatus.CHANGES_REQUESTED
        assert cr.comments == ["CI failed: lint"]
        task = await store.get_task("A")
        assert task.status == TaskStatus.READY
        assert task.assigned_executor_id == "dev1"

        with pytest.raises(ClaimConflict):
            await store.claim_task("A", "dev2")
        await store.claim_task("A", "dev1")
        cr = await lifecycle.resubmit_change_request(cr.id)
        assert cr.status == ChangeRequestStatus.READY_FOR_REVIEW
        assert cr.reviewer_executor_id == "dev2"
        assert (await store.get_task("A")).status == TaskStatus.IN_REVIEW

    @pytest.mark.asyncio
    async def test_rejected_review_returns_task(self):
        lifecycle, store, bus = await _build_lifecycle()
        await lifecycle.register_tasks([_task("A")])
        cr = await _open(lifecycle, store, "A")
        await lifecycle.request_review(cr.id)
        cr = await lifecycle.submit_review(cr.id, approved=False, comments=["missing tests"])
        assert cr.status == ChangeRequestStatus.CHANGES_REQUESTED
        assert "missing tests" in cr.comments
        assert (await store.get_task("A")).status == TaskStatus.READY
        assert len(bus.history(EventType.CHANGES_REQUESTED)) == 1

    @pytest.mark.asyncio
    async def test_reopen_for_review_drops_approval(self):
        lifecycle, store, _ = await _build_lifecycle()
        await lifecycle.register_tasks([_task("A")])
        cr_id = await _approve(lifecycle, store, "A")
        cr = await lifecycle.reopen_for_review(cr_id)
        assert cr.status == ChangeRequestStatus.READY_FOR_REVIEW
        assert cr.approved_at is None
        assert cr.annotations == [AUTO_RESOLVED]

    @pytest.mark.asyncio
    async def test_merge_requires_approval(self):
        lifecycle, store, _ = await _build_lifecycle()
        await lifecycle.register_tasks([_task("A")])
        cr = await _open(lifecycle, store, "A")
        with pytest.raises(InvalidTransitionError):
            await lifecycle.mark_merged(cr.id)
        assert (await store.get_task("A")).status == TaskStatus.IN_REVIEW


# ========================================================================
# COMPLETION CASCADE
# ========================================================================


class TestCompletionCascade:
    """Parent completion and dependent unblocking on merge."""

    @pytest.mark.asyncio
    async def test_last_subtask_completes_epic_and_unblocks(self):
        lifecycle, store, _ = await _build_lifecycle()
        await lifecycle.register_tasks(_epic())

        first = await lifecycle.mark_merged(await _approve(lifecycle, store, "S1"))
        assert first.completed == ["S1"]
        assert (await store.get_task("E")).status == TaskStatus.READY

        second = await lifecycle.mark_merged(await _approve(lifecycle, store, "S2"))
        assert second.completed == ["S2", "E"]
        assert second.unblocked == ["D"]
        assert (await store.get_task("D")).status == TaskStatus.READY

    @pytest.mark.asyncio
    async def test_cancelled_subtask_blocks_epic_completion_by_default(self):
        lifecycle, store, _ = await _build_lifecycle()
        await lifecycle.register_tasks(_epic())
        await lifecycle.cancel("S1")
        result = await lifecycle.mark_merged(await _approve(lifecycle, store, "S2"))
        assert result.completed == ["S2"]
        assert (await store.get_task("E")).status == TaskStatus.READY

    @pytest.mark.asyncio
    async def test_cancelled_subtask_counts_when_enabled(self):
        lifecycle, store, _ = await _build_lifecycle(count_cancelled_as_complete=True)
        await lifecycle.register_tasks(_epic())
        await lifecycle.cancel("S1")
        result = await lifecycle.mark_merged(await _approve(lifecycle, store, "S2"))
        assert result.completed == ["S2", "E"]
        assert result.unblocked == ["D"]

    @pytest.mark.asyncio
    async def test_cancelling_last_open_subtask_completes_epic_when_enabled(self):
        lifecycle, store, bus = await _build_lifecycle(count_cancelled_as_complete=True)
        await lifecycle.register_tasks(_epic())
        await lifecycle.mark_merged(await _approve(lifecycle, store, "S1"))

        assert await lifecycle.cancel("S2") == ["S2"]

        assert (await store.get_task("E")).status == TaskStatus.COMPLETED
        assert (await store.get_task("D")).status == TaskStatus.READY
        assert any(e["task_id"] == "E" for e in bus.history(EventType.TASK_COMPLETED))

    @pytest.mark.asyncio
    async def test_cancelling_last_open_subtask_leaves_epic_by_default(self):
        lifecycle, store, _ = await _build_lifecycle()
        await lifecycle.register_tasks(_epic())
        await lifecycle.mark_merged(await _approve(lifecycle, store, "S1"))

        await lifecycle.cancel("S2")

        assert (await store.get_task("E")).status == TaskStatus.READY
        assert (await store.get_task("D")).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_dependent_waits_for_all_dependencies(self):
        lifecycle, store, _ = await _build_lifecycle()
        await lifecycle.register_tasks([_task("A"), _task("B"), _task("C", "A", "B")])
        result = await lifecycle.mark_merged(await _approve(lifecycle, store, "A"))
        assert result.unblocked == []
        result = await lifecycle.mark_merged(await _approve(lifecycle, store, "B"))
        assert result.unblocked == ["C"]
