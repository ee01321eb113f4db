"""Tests for taskweave.storage.memory_store."""

import asyncio
from datetime import datetime, timezone

import pytest

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
)
from taskweave.storage.memory_store import InMemoryTaskStore


# -- Fixtures --------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_container():
    from taskweave import di_container
    di_container._container = None
    yield
    di_container._container = None


@pytest.fixture
def store():
    return InMemoryTaskStore()


async def _seed(store, *tasks):
    for task in tasks:
        await store.add_task(task)


# ========================================================================
# TASKS
# ========================================================================


class TestTasks:
    """Task rows and copy isolation."""

    @pytest.mark.asyncio
    async def test_add_and_get(self, store):
        await _seed(store, Task(id="t1", title="One"))
        task = await store.get_task("t1")
        assert task.title == "One"
        assert task.status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, store):
        await _seed(store, Task(id="t1", title="One"))
        with pytest.raises(ValueError, match="already exists"):
            await store.add_task(Task(id="t1", title="Again"))

    @pytest.mark.asyncio
    async def test_returned_rows_are_copies(self, store):
        await _seed(store, Task(id="t1", title="One", depends_on={"x"}))
        task = await store.get_task("t1")
        task.status = TaskStatus.CANCELLED
        task.depends_on.add("y")
        stored = await store.get_task("t1")
        assert stored.status == TaskStatus.PENDING
        assert stored.depends_on == {"x"}

    @pytest.mark.asyncio
    async def test_missing_task(self, store):
        with pytest.raises(TaskNotFoundError):
            await store.get_task("nope")
        with pytest.raises(TaskNotFoundError):
            await store.save_task(Task(id="nope", title="x"))

    @pytest.mark.asyncio
    async def test_queries(self, store):
        await _seed(
            store,
            Task(id="e", title="Epic", status=TaskStatus.READY),
            Task(id="s", title="Sub", parent_task_id="e", depth=1, depends_on={"x"}),
            Task(id="x", title="Other", status=TaskStatus.READY),
        )
        assert [t.id for t in await store.get_children("e")] == ["s"]
        assert [t.id for t in await store.get_dependents("x")] == ["s"]
        ready = await store.list_tasks([TaskStatus.READY])
        assert {t.id for t in ready} == {"e", "x"}


# ========================================================================
# CLAIMS
# ========================================================================


class TestClaims:
    """Compare-and-set claiming."""

    @pytest.mark.asyncio
    async def test_claim_moves_to_in_progress(self, store):
        await _seed(store, Task(id="t1", title="One", status=TaskStatus.READY))
        task = await store.claim_task("t1", "dev1")
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.assigned_executor_id == "dev1"
        assert task.started_at is not None

    @pytest.mark.asyncio
    async def test_second_claim_conflicts(self, store):
        await _seed(store, Task(id="t1", title="One", status=TaskStatus.READY))
        await store.claim_task("t1", "dev1")
        with pytest.raises(ClaimConflict):
            await store.claim_task("t1", "dev2")
        assert store.stats["claim_conflicts"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_claims_single_winner(self, store):
        await _seed(store, Task(id="t1", title="One", status=TaskStatus.READY))
        results = await asyncio.gather(
            *(store.claim_task("t1", f"dev{i}") for i in range(5)),
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, Task)]
        assert len(winners) == 1
        assert sum(isinstance(r, ClaimConflict) for r in results) == 4

    @pytest.mark.asyncio
    async def test_assigned_task_reserved_for_assignee(self, store):
        await _seed(store, Task(id="t1", title="One", status=TaskStatus.READY, assigned_executor_id="dev1"))
        with pytest.raises(ClaimConflict):
            await store.claim_task("t1", "dev2")
        task = await store.claim_task("t1", "dev1")
        assert task.status == TaskStatus.IN_PROGRESS


# ========================================================================
# CHANGE REQUESTS
# ========================================================================


class TestChangeRequests:
    """Change-request rows and the atomic pair write."""

    @pytest.mark.asyncio
    async def test_save_and_find(self, store):
        await store.save_change_request(ChangeRequest(id="cr1", task_id="t1", author_executor_id="dev1"))
        assert (await store.get_change_request("cr1")).status == ChangeRequestStatus.DRAFT
        assert (await store.find_change_request_for_task("t1")).id == "cr1"
        assert await store.find_change_request_for_task("t2") is None
        with pytest.raises(ChangeRequestNotFoundError):
            await store.get_change_request("cr2")

    @pytest.mark.asyncio
    async def test_atomic_write_checks_expected_status(self, store):
        await _seed(store, Task(id="t1", title="One", status=TaskStatus.CANCELLED))
        cr = ChangeRequest(id="cr1", task_id="t1", author_executor_id="dev1")
        task = await store.get_task("t1")
        task.status = TaskStatus.IN_REVIEW
        with pytest.raises(ClaimConflict):
            await store.save_change_request_and_task(cr, task, expected_task_status=[TaskStatus.IN_PROGRESS])
        assert (await store.get_task("t1")).status == TaskStatus.CANCELLED
        assert await store.list_change_requests() == []

    @pytest.mark.asyncio
    async def test_atomic_write_commits_both(self, store):
        await _seed(store, Task(id="t1", title="One", status=TaskStatus.IN_PROGRESS))
        cr = ChangeRequest(id="cr1", task_id="t1", author_executor_id="dev1")
        task = await store.get_task("t1")
        task.status = TaskStatus.IN_REVIEW
        await store.save_change_request_and_task(cr, task, expected_task_status=[TaskStatus.IN_PROGRESS])
        assert (await store.get_task("t1")).status == TaskStatus.IN_REVIEW
        assert len(await store.list_change_requests([ChangeRequestStatus.DRAFT])) == 1


# ========================================================================
# EXECUTORS
# ========================================================================


class TestExecutors:

    @pytest.mark.asyncio
    async def test_filters(self, store):
        await store.add_executor(Executor(id="a", name="A", team_id="t1"))
        await store.add_executor(Executor(id="b", name="B", team_id="t2", status=ExecutorStatus.WORKING))
        await store.add_executor(Executor(id="c", name="C", role="CodeReviewer"))
        assert [e.id for e in await store.list_executors(status=ExecutorStatus.IDLE)] == ["a", "c"]
        assert [e.id for e in await store.list_executors(team_id="t2")] == ["b"]
        assert [e.id for e in await store.list_executors(role="CodeReviewer")] == ["c"]
        with pytest.raises(ExecutorNotFoundError):
            await store.get_executor("zzz")


class TestModelSerialization:
    """Stored records survive a dict round trip."""

    def test_task_from_dict(self):
        data = {
            "id": "t1",
            "title": "Export",
            "status": "blocked",
            "priority": "high",
            "depends_on": ["b", "a"],
            "external_hold": True,
            "deadline": "2026-03-05T12:00:00+00:00",
        }
        task = Task.from_dict(data)
        assert task.status == TaskStatus.BLOCKED
        assert task.depends_on == {"a", "b"}
        assert task.external_hold
        assert task.deadline.day == 5
        assert task.to_dict()["depends_on"] == ["a", "b"]

    def test_change_request_defaults(self):
        cr = ChangeRequest.from_dict({"id": "cr1", "task_id": "t1", "author_executor_id": "dev1"})
        assert cr.status == ChangeRequestStatus.DRAFT
        assert cr.status.is_open
        assert cr.comments == []

    def test_naive_timestamps_read_as_utc(self):
        task = Task.from_dict({"id": "t1", "title": "Export", "deadline": "2026-03-04T00:00:00"})
        assert task.deadline == datetime(2026, 3, 4, tzinfo=timezone.utc)
        assert task.created_at.tzinfo is not None
