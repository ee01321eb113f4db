"""Tests for taskweave.execution.workspace."""

import os
from unittest.mock import AsyncMock

import pytest

from taskweave.execution.workspace import WorkspaceManager, branch_name, slugify, workspace_key
from taskweave.models import Executor, Task, TaskStatus
from taskweave.storage.memory_store import InMemoryTaskStore


@pytest.fixture(autouse=True)
def _reset_container():
    from taskweave import di_container
    di_container._container = None
    yield
    di_container._container = None


def _build_vcs() -> AsyncMock:
    """VCS mock whose create_workspace really creates the directory."""
    vcs = AsyncMock()

    async def _create(path, base_branch):
        os.makedirs(path, exist_ok=True)

    vcs.create_workspace.side_effect = _create
    return vcs


@pytest.fixture
def executor():
    return Executor(id="0123456789abcdef", name="Ada Lovelace!")


class TestNaming:
    """Deterministic paths and branch names."""

    def test_subtasks_share_parent_key(self):
        assert workspace_key(Task(id="child-1", title="c", parent_task_id="epic-123", depth=1)) == "epic-123"
        assert workspace_key(Task(id="solo", title="s")) == "solo"

    def test_branch_name(self, executor):
        task = Task(id="abcdef0123456789", title="t")
        assert branch_name(executor, task) == "feature/ada-lovelace/task-abcdef01"
        assert slugify("!!!") == "executor"

    def test_path_layout(self, tmp_path, executor):
        manager = WorkspaceManager(_build_vcs(), InMemoryTaskStore(), str(tmp_path))
        path = manager.path_for(executor.id, Task(id="fedcba9876543210", title="t"))
        assert path == str(tmp_path / "executor-01234567" / "task-fedcba98")


class TestLifecycle:
    """Lazy creation, sharing and removal."""

    @pytest.mark.asyncio
    async def test_ensure_creates_once(self, tmp_path, executor):
        vcs = _build_vcs()
        manager = WorkspaceManager(vcs, InMemoryTaskStore(), str(tmp_path), mainline_branch="trunk")
        task = Task(id="t1", title="t")
        first = await manager.ensure(executor, task)
        second = await manager.ensure(executor, task)
        assert first == second
        vcs.create_workspace.assert_awaited_once_with(first, "trunk")
        assert vcs.checkout_branch.await_count == 2
        vcs.checkout_branch.assert_awaited_with(first, branch_name(executor, task), "trunk")

    @pytest.mark.asyncio
    async def test_lost_workspace_rebuilt(self, tmp_path, executor):
        vcs = _build_vcs()
        manager = WorkspaceManager(vcs, InMemoryTaskStore(), str(tmp_path))
        task = Task(id="t1", title="t")
        path = await manager.ensure(executor, task)
        os.rmdir(path)
        assert await manager.ensure(executor, task) == path
        assert vcs.create_workspace.await_count == 2

    @pytest.mark.asyncio
    async def test_release_keeps_shared_workspace(self, tmp_path):
        vcs = _build_vcs()
        store = InMemoryTaskStore()
        shared = str(tmp_path / "ws")
        await store.add_task(Task(id="a", title="a", status=TaskStatus.COMPLETED, workspace=shared))
        await store.add_task(Task(id="b", title="b", status=TaskStatus.IN_PROGRESS, workspace=shared))
        manager = WorkspaceManager(vcs, store, str(tmp_path))

        assert await manager.release(await store.get_task("a")) is False
        vcs.remove_workspace.assert_not_awaited()

        assert await manager.release(await store.get_task("b")) is True
        vcs.remove_workspace.assert_awaited_once_with(shared)

    @pytest.mark.asyncio
    async def test_release_without_workspace(self, tmp_path):
        manager = WorkspaceManager(_build_vcs(), InMemoryTaskStore(), str(tmp_path))
        assert await manager.release(Task(id="a", title="a")) is False

    @pytest.mark.asyncio
    async def test_cleanup_sweep_removes_terminal_only(self, tmp_path):
        vcs = _build_vcs()
        store = InMemoryTaskStore()
        await store.add_task(Task(id="a", title="a", status=TaskStatus.COMPLETED, workspace="/ws/done"))
        await store.add_task(Task(id="b", title="b", status=TaskStatus.CANCELLED, workspace="/ws/shared"))
        await store.add_task(Task(id="c", title="c", status=TaskStatus.READY, workspace="/ws/shared"))
        manager = WorkspaceManager(vcs, store, str(tmp_path))

        assert await manager.cleanup_sweep() == ["/ws/done"]
        assert await manager.cleanup_sweep() == []
        assert manager.stats == {"active": 0, "removed": 1}


class TestSharedCheckout:
    """Sibling subtasks never switch a checkout another sibling is running in."""

    @pytest.mark.asyncio
    async def test_running_sibling_forces_private_checkout(self, tmp_path, executor):
        vcs = _build_vcs()
        store = InMemoryTaskStore()
        first = Task(id="a" * 16, title="a", parent_task_id="epic0000", depth=1, status=TaskStatus.IN_REVIEW)
        second = Task(id="b" * 16, title="b", parent_task_id="epic0000", depth=1, status=TaskStatus.IN_PROGRESS)
        await store.add_task(first)
        await store.add_task(second)
        manager = WorkspaceManager(vcs, store, str(tmp_path))
        shared = str(tmp_path / "executor-01234567" / "task-epic0000")

        assert await manager.ensure(executor, second) == shared
        vcs.checkout_branch.reset_mock()

        path = await manager.ensure(executor, first)

        assert path == str(tmp_path / "executor-01234567" / "task-aaaaaaaa")
        vcs.checkout_branch.assert_awaited_once_with(path, branch_name(executor, first), "main")

    @pytest.mark.asyncio
    async def test_stored_workspace_marks_sibling_busy(self, tmp_path, executor):
        store = InMemoryTaskStore()
        shared = str(tmp_path / "executor-01234567" / "task-epic0000")
        await store.add_task(Task(
            id="b" * 16, title="b", parent_task_id="epic0000", depth=1,
            status=TaskStatus.IN_PROGRESS, workspace=shared,
        ))
        manager = WorkspaceManager(_build_vcs(), store, str(tmp_path))

        path = await manager.ensure(executor, Task(id="a" * 16, title="a", parent_task_id="epic0000", depth=1))

        assert path != shared

    @pytest.mark.asyncio
    async def test_finished_sibling_frees_shared_checkout(self, tmp_path, executor):
        store = InMemoryTaskStore()
        second = Task(id="b" * 16, title="b", parent_task_id="epic0000", depth=1, status=TaskStatus.IN_PROGRESS)
        await store.add_task(second)
        manager = WorkspaceManager(_build_vcs(), store, str(tmp_path))
        shared = await manager.ensure(executor, second)
        second.status = TaskStatus.IN_REVIEW
        await store.save_task(second)

        first = Task(id="a" * 16, title="a", parent_task_id="epic0000", depth=1)
        assert await manager.ensure(executor, first) == shared
