"""Tests for taskweave.orchestrator and the DI container."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from taskweave.config.settings import Settings
from taskweave.di_container import (
    TaskweaveContainer,
    get_container,
    init_container,
    shutdown_container,
)
from taskweave.exceptions_unified import InvalidTransitionError
from taskweave.interfaces.event_bus import EventType
from taskweave.models import Executor, Priority, Task, TaskStatus
from taskweave.orchestrator import TaskweaveOrchestrator, create_orchestrator

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# -- Fixtures --------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_container():
    from taskweave import di_container
    di_container._container = None
    yield
    di_container._container = None


@pytest.fixture
def settings(tmp_path):
    return Settings(repository_path=str(tmp_path), workspace_root=str(tmp_path / "ws"))


@pytest.fixture
def orchestrator(settings):
    return create_orchestrator(vcs=AsyncMock(), settings=settings, clock=lambda: NOW)


def _chain_plus_loner():
    return [
        Task(id="X", title="Schema"),
        Task(id="Y", title="API", depends_on={"X"}),
        Task(id="Z", title="Docs"),
    ]


# ========================================================================
# ANALYSIS & PRIORITIES
# ========================================================================


class TestAnalysis:

    @pytest.mark.asyncio
    async def test_analyze_stored_tasks(self, orchestrator):
        await orchestrator.register_tasks(_chain_plus_loner())
        report = await orchestrator.analyze()
        assert report["order"].index("X") < report["order"].index("Y")
        assert report["critical_path"] == ["X", "Y"]
        assert report["cycles"] == []

    @pytest.mark.asyncio
    async def test_analyze_explicit_tasks(self, orchestrator):
        report = await orchestrator.analyze([Task(id="A", title="A"), Task(id="B", title="B", depends_on={"A"})])
        assert report["phases"] == [["A"], ["B"]]


class TestRebalance:
    """Priority changes are persisted and announced unless dry-run."""

    @pytest.mark.asyncio
    async def test_dry_run_leaves_store_untouched(self, orchestrator):
        await orchestrator.register_tasks(_chain_plus_loner())
        result = await orchestrator.rebalance(dry_run=True)

        change = next(c for c in result["changes"] if c["task_id"] == "Z")
        assert change["old_priority"] == "medium"
        assert change["new_priority"] == "low"
        assert result["dry_run"] is True
        assert (await orchestrator.store.get_task("Z")).priority == Priority.MEDIUM
        assert orchestrator.event_bus.history(EventType.PRIORITY_CHANGED) == []

    @pytest.mark.asyncio
    async def test_changes_persisted(self, orchestrator):
        await orchestrator.register_tasks(_chain_plus_loner())
        result = await orchestrator.rebalance()

        assert (await orchestrator.store.get_task("Z")).priority == Priority.LOW
        events = orchestrator.event_bus.history(EventType.PRIORITY_CHANGED)
        assert len(events) == len(result["changes"])
        assert any(e["task_id"] == "Z" and e["_source"] == "orchestrator" for e in events)

    @pytest.mark.asyncio
    async def test_unstored_tasks_skipped(self, orchestrator):
        result = await orchestrator.rebalance([Task(id="Q", title="Loose")])
        assert result["tasks_rebalanced"] == len(result["changes"])
        assert orchestrator.event_bus.history(EventType.PRIORITY_CHANGED) == []


# ========================================================================
# MANUAL OPERATIONS
# ========================================================================


class TestManualOperations:

    @pytest.mark.asyncio
    async def test_escalate_then_release(self, orchestrator):
        await orchestrator.register_tasks([Task(id="T", title="Flaky")])
        held = await orchestrator.escalate("T", "needs a human")
        assert held.status == TaskStatus.BLOCKED
        assert held.external_hold

        released = await orchestrator.release("T")
        assert released.status == TaskStatus.READY
        assert not released.external_hold
        assert released.retry_count == 0
        assert orchestrator.get_statistics()["escalations"][0]["task_id"] == "T"

    @pytest.mark.asyncio
    async def test_release_rejects_cancelled(self, orchestrator):
        await orchestrator.register_tasks([Task(id="T", title="t")])
        await orchestrator.cancel("T")
        with pytest.raises(InvalidTransitionError):
            await orchestrator.release("T")

    @pytest.mark.asyncio
    async def test_cancel_cascades(self, orchestrator):
        await orchestrator.register_tasks([
            Task(id="E", title="Epic"),
            Task(id="E1", title="Child", parent_task_id="E", depth=1),
            Task(id="E2", title="Child", parent_task_id="E", depth=1),
        ])
        cancelled = await orchestrator.cancel("E", reason="scope cut")
        assert sorted(cancelled) == ["E", "E1", "E2"]
        for task_id in cancelled:
            assert (await orchestrator.store.get_task(task_id)).status == TaskStatus.CANCELLED


class TestStatistics:

    @pytest.mark.asyncio
    async def test_statistics_sections(self, orchestrator):
        await orchestrator.register_executor(Executor(id="dev1", name="Dev"), backend=AsyncMock())
        await orchestrator.register_tasks(_chain_plus_loner())
        stats = orchestrator.get_statistics()
        assert set(stats) == {"tasks", "execution", "conflicts", "merges", "escalations"}
        assert stats["merges"] == {"merged": 0, "deferred": 0}
        assert stats["escalations"] == []


# ========================================================================
# DI CONTAINER
# ========================================================================


class TestContainer:
    """Lazy service wiring."""

    def test_lazy_initialization(self, settings):
        container = init_container(settings)
        assert container.status() == {
            "settings": True,
            "event_bus": False,
            "store": False,
            "vcs": False,
            "executor": False,
            "orchestrator": False,
        }
        store = container.store
        assert container.store is store
        assert container.status()["store"] is True

    def test_orchestrator_shares_services(self, settings):
        container = init_container(settings)
        orchestrator = container.orchestrator
        assert isinstance(orchestrator, TaskweaveOrchestrator)
        assert orchestrator.store is container.store
        assert orchestrator.event_bus is container.event_bus
        assert all(container.status().values())

    def test_global_container(self, settings):
        first = init_container(settings)
        assert get_container() is first
        shutdown_container()
        second = get_container()
        assert isinstance(second, TaskweaveContainer)
        assert second is not first

    def test_default_executor_is_cli(self, settings):
        container = TaskweaveContainer(settings)
        assert container.executor.args == ["claude", "-p"]
