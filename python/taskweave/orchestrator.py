"""Public facade of the taskweave orchestration core.

Wires the graph analyzer, priority engine, lifecycle controller, execution
coordinator, conflict resolver and merge pipeline together and exposes the
operations callers need: analyze, rebalance, release, cancel, escalate,
merge, CI and review hooks, and the background loops.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from taskweave.config.settings import Settings, get_settings
from taskweave.event_bus import InMemoryEventBus
from taskweave.exceptions_unified import TaskNotFoundError
from taskweave.execution.conflict_resolver import ConflictResolver
from taskweave.execution.coordinator import ExecutionCoordinator
from taskweave.execution.merge_pipeline import MergePipeline
from taskweave.execution.workspace import WorkspaceManager
from taskweave.interfaces.event_bus import EventType, IEventBus
from taskweave.interfaces.executor import IExecutor
from taskweave.interfaces.task_store import ITaskStore
from taskweave.interfaces.vcs import IVersionControl
from taskweave.lifecycle.lifecycle_controller import LifecycleController
from taskweave.lifecycle.reviewer_assignment import ReviewerAssigner
from taskweave.models import ChangeRequest, Executor, Task
from taskweave.scheduling.graph_analyzer import GraphAnalyzer
from taskweave.scheduling.priority_engine import PriorityEngine, RebalanceOptions
from taskweave.scheduling.retry_strategies import BackoffPolicy, RetryManager
from taskweave.storage.memory_store import InMemoryTaskStore

logger = logging.getLogger(__name__)


class TaskweaveOrchestrator:
    """Facade over the scheduling, lifecycle and execution components."""

    def __init__(
        self,
        store: ITaskStore,
        event_bus: IEventBus,
        analyzer: GraphAnalyzer,
        priority_engine: PriorityEngine,
        lifecycle: LifecycleController,
        coordinator: ExecutionCoordinator,
        merge_pipeline: MergePipeline,
    ) -> None:
        self.store = store
        self.event_bus = event_bus
        self.analyzer = analyzer
        self.priority_engine = priority_engine
        self.lifecycle = lifecycle
        self.coordinator = coordinator
        self.merge_pipeline = merge_pipeline

    # ── Registration ─────────────────────────────────────────────────

    async def register_tasks(self, tasks: Iterable[Task]) -> List[Task]:
        return await self.lifecycle.register_tasks(tasks)

    async def register_executor(self, executor: Executor, backend: Optional[IExecutor] = None) -> None:
        await self.coordinator.register_executor(executor, backend)

    # ── Analysis ─────────────────────────────────────────────────────

    async def analyze(
        self,
        tasks: Optional[Iterable[Task]] = None,
        durations: Optional[Dict[str, float]] = None,
    ) -> Dict[str, Any]:
        """Order, phases, critical path, bottlenecks and warnings for a task set."""
        task_list = list(tasks) if tasks is not None else await self.store.list_tasks()
        return self.analyzer.analyze(task_list, durations).to_dict()

    async def rebalance(
        self,
        tasks: Optional[Iterable[Task]] = None,
        dry_run: bool = False,
        min_score_change: Optional[float] = None,
        allow_in_progress_demotion: bool = False,
    ) -> Dict[str, Any]:
        """Recompute priorities; persist the changes unless *dry_run*."""
        task_list = list(tasks) if tasks is not None else await self.store.list_tasks()
        result = self.priority_engine.rebalance(
            task_list,
            RebalanceOptions(
                dry_run=dry_run,
                min_score_change=min_score_change,
                allow_in_progress_demotion=allow_in_progress_demotion,
            ),
        )
        if not dry_run:
            for change in result.changes:
                try:
                    task = await self.store.get_task(change.task_id)
                except TaskNotFoundError:
                    logger.warning("Rebalanced task %s is not stored; skipping", change.task_id)
                    continue
                task.priority = change.new_priority
                await self.store.save_task(task)
                await self.event_bus.publish(EventType.PRIORITY_CHANGED, change.to_dict(), source="orchestrator")
        return result.to_dict()

    # ── Manual operations ────────────────────────────────────────────

    async def release(self, task_id: str) -> Task:
        task = await self.lifecycle.release(task_id)
        self.coordinator.retry_manager.reset(task_id)
        return task

    async def cancel(self, task_id: str, reason: str = "cancelled") -> List[str]:
        cancelled = await self.lifecycle.cancel(task_id, reason)
        for cancelled_id in cancelled:
            self.coordinator.retry_manager.reset(cancelled_id)
        return cancelled

    async def escalate(self, task_id: str, reason: str) -> Task:
        return await self.lifecycle.escalate(task_id, reason)

    # ── Change requests ──────────────────────────────────────────────

    async def merge(self, cr_id: str) -> Dict[str, Any]:
        result = await self.merge_pipeline.merge(cr_id)
        return result.to_dict()

    async def on_ci_completed(self, cr_id: str, passed: bool, details: str = "") -> ChangeRequest:
        return await self.lifecycle.on_ci_completed(cr_id, passed, details)

    async def run_review(self, cr_id: str) -> ChangeRequest:
        return await self.coordinator.run_review(cr_id)

    # ── Background loops ─────────────────────────────────────────────

    async def start(self) -> None:
        await self.coordinator.start()

    async def stop(self) -> None:
        await self.coordinator.stop()

    def get_statistics(self) -> Dict[str, Any]:
        store_stats = getattr(self.store, "stats", {})
        return {
            "tasks": store_stats,
            "execution": self.coordinator.stats,
            "conflicts": self.coordinator.resolver.stats,
            "merges": self.merge_pipeline.stats,
            "escalations": self.lifecycle.escalations,
        }


def create_orchestrator(
    vcs: IVersionControl,
    settings: Optional[Settings] = None,
    store: Optional[ITaskStore] = None,
    event_bus: Optional[IEventBus] = None,
    default_executor: Optional[IExecutor] = None,
    clock=None,
) -> TaskweaveOrchestrator:
    """Create a fully wired TaskweaveOrchestrator.

    Args:
        vcs: Version-control backend
        settings: Defaults to ``get_settings()``
        store: Defaults to a fresh InMemoryTaskStore
        event_bus: Defaults to a fresh InMemoryEventBus
        default_executor: Backend for executors registered without one
        clock: Optional replacement for ``utcnow`` (tests)

    Returns:
        Configured TaskweaveOrchestrator instance
    """
    settings = settings or get_settings()
    store = store or InMemoryTaskStore()
    event_bus = event_bus or InMemoryEventBus()
    timing = {"clock": clock} if clock is not None else {}

    analyzer = GraphAnalyzer.from_settings(settings)
    priority_engine = PriorityEngine(analyzer, min_score_change=settings.min_score_change, **timing)
    workspaces = WorkspaceManager.from_settings(settings, vcs, store)
    lifecycle = LifecycleController.from_settings(
        settings,
        store,
        event_bus=event_bus,
        reviewer_assigner=ReviewerAssigner(store),
        workspaces=workspaces,
        vcs=vcs,
        **timing,
    )
    resolver = ConflictResolver.from_settings(settings, vcs, lifecycle, event_bus=event_bus)
    coordinator = ExecutionCoordinator.from_settings(
        settings,
        store=store,
        lifecycle=lifecycle,
        vcs=vcs,
        workspaces=workspaces,
        resolver=resolver,
        retry_manager=RetryManager(BackoffPolicy.from_settings(settings)),
        event_bus=event_bus,
        default_executor=default_executor,
        **timing,
    )
    merge_pipeline = MergePipeline(
        store,
        vcs,
        lifecycle,
        resolver,
        context_provider=coordinator.conflict_context,
        mainline_branch=settings.mainline_branch,
    )
    return TaskweaveOrchestrator(
        store=store,
        event_bus=event_bus,
        analyzer=analyzer,
        priority_engine=priority_engine,
        lifecycle=lifecycle,
        coordinator=coordinator,
        merge_pipeline=merge_pipeline,
    )
