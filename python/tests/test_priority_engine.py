"""Tests for taskweave.scheduling.priority_engine."""

from datetime import datetime, timedelta, timezone

import pytest

from taskweave.models import Priority, Task, TaskStatus
from taskweave.scheduling.graph_analyzer import GraphAnalyzer
from taskweave.scheduling.priority_engine import (
    PriorityEngine,
    RebalanceOptions,
    bottleneck_severity,
    bucket_for,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# -- Fixtures --------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_container():
    from taskweave import di_container
    di_container._container = None
    yield
    di_container._container = None


@pytest.fixture
def engine():
    return PriorityEngine(GraphAnalyzer(), clock=lambda: NOW)


def _task(task_id, *deps, status=TaskStatus.READY, priority=Priority.MEDIUM, deadline=None):
    return Task(
        id=task_id,
        title=f"Task {task_id}",
        status=status,
        priority=priority,
        depends_on=set(deps),
        deadline=deadline,
    )


def _chain_plus_loner(**loner):
    """X -> Y chain holds the critical path; Z stands alone."""
    return [_task("X"), _task("Y", "X", status=TaskStatus.PENDING), _task("Z", **loner)]


# ========================================================================
# FACTORS
# ========================================================================


class TestFactors:
    """Individual factor weights."""

    @pytest.mark.parametrize("offset,expected", [
        (timedelta(hours=-1), 100.0),
        (timedelta(days=2), 90.0),
        (timedelta(days=5), 70.0),
        (timedelta(days=10), 50.0),
        (timedelta(days=20), 30.0),
    ])
    def test_deadline_weight(self, engine, offset, expected):
        assert engine.deadline_weight(NOW + offset) == expected

    def test_no_deadline_weight(self, engine):
        assert engine.deadline_weight(None) == 30.0

    def test_naive_deadline_read_as_utc(self, engine):
        assert engine.deadline_weight(datetime(2026, 3, 4, 12, 0)) == 90.0
        assert engine.deadline_weight(datetime(2026, 3, 1)) == 100.0

    def test_composite_for_isolated_ready_task(self, engine):
        tasks = _chain_plus_loner()
        analysis = engine.analyzer.analyze(tasks)
        scored = engine.score_task(tasks[2], analysis)
        assert scored.factors.dependency == 0.0
        assert scored.factors.critical_path == 0.0
        assert scored.score == 21.0
        assert scored.suggested_priority == Priority.LOW
        assert scored.reasoning == "Standard priority based on overall factors"

    def test_buckets(self):
        assert bucket_for(85) == Priority.CRITICAL
        assert bucket_for(60) == Priority.HIGH
        assert bucket_for(40) == Priority.MEDIUM
        assert bucket_for(39.99) == Priority.LOW


# ========================================================================
# REBALANCE
# ========================================================================


class TestRebalance:
    """Proposed changes, materiality and the in-progress cap."""

    def test_demotes_isolated_task(self, engine):
        result = engine.rebalance(_chain_plus_loner())
        assert [c.task_id for c in result.changes] == ["Z"]
        change = result.changes[0]
        assert change.old_priority == Priority.MEDIUM
        assert change.new_priority == Priority.LOW
        assert change.score_change == -29.0
        assert result.tasks_rebalanced == 1
        assert result.average_score_change == 29.0

    def test_naive_deadline_from_stored_record(self, engine):
        task = Task.from_dict({"id": "T", "title": "Launch", "status": "ready", "deadline": "2026-03-04T00:00:00"})
        assert engine.rebalance([task]).total_tasks == 1
        assert PriorityEngine().rebalance([task]).total_tasks == 1
        analysis = GraphAnalyzer().analyze([task])
        assert engine.compute_factors(task, analysis).deadline == 90.0

    def test_promotes_bottleneck(self, engine):
        tasks = [_task("A", priority=Priority.LOW)] + [
            _task(f"D{i}", "A", status=TaskStatus.PENDING) for i in range(5)
        ]
        result = engine.rebalance(tasks)
        change = next(c for c in result.changes if c.task_id == "A")
        assert change.new_priority == Priority.HIGH
        assert change.score == 72.25
        assert "On critical path" in change.reasoning
        assert "Blocks multiple tasks" in change.reasoning

    def test_change_below_threshold_ignored(self, engine):
        result = engine.rebalance(_chain_plus_loner(), RebalanceOptions(min_score_change=40))
        assert result.changes == []

    def test_same_bucket_no_change(self, engine):
        result = engine.rebalance(_chain_plus_loner(priority=Priority.LOW))
        assert result.changes == []

    def test_in_progress_demotion_capped(self, engine):
        tasks = _chain_plus_loner(status=TaskStatus.IN_PROGRESS, priority=Priority.CRITICAL)
        result = engine.rebalance(tasks)
        change = result.changes[0]
        assert change.new_priority == Priority.HIGH
        assert change.score == 34.5
        assert "demotion capped" in change.reasoning

    def test_in_progress_demotion_allowed(self, engine):
        tasks = _chain_plus_loner(status=TaskStatus.IN_PROGRESS, priority=Priority.CRITICAL)
        result = engine.rebalance(tasks, RebalanceOptions(allow_in_progress_demotion=True))
        assert result.changes[0].new_priority == Priority.LOW

    def test_terminal_tasks_skipped(self, engine):
        tasks = _chain_plus_loner(status=TaskStatus.COMPLETED)
        result = engine.rebalance(tasks)
        assert all(c.task_id != "Z" for c in result.changes)

    def test_does_not_mutate_input(self, engine):
        tasks = _chain_plus_loner()
        engine.rebalance(tasks)
        assert tasks[2].priority == Priority.MEDIUM

    def test_empty_input_warns(self, engine):
        result = engine.rebalance([])
        assert result.changes == []
        assert "No tasks to rebalance" in result.warnings

    def test_reevaluate_single_task(self, engine):
        tasks = _chain_plus_loner()
        change = engine.reevaluate_task(tasks[2], tasks)
        assert change.new_priority == Priority.LOW
        assert engine.reevaluate_task(tasks[0], tasks) is None


# ========================================================================
# BOTTLENECKS
# ========================================================================


class TestBottlenecks:
    """Severity classification and ranking."""

    @pytest.mark.parametrize("count,on_cp,expected", [
        (4, False, "low"),
        (5, False, "medium"),
        (7, False, "high"),
        (10, False, "critical"),
        (4, True, "medium"),
        (10, True, "critical"),
    ])
    def test_severity(self, count, on_cp, expected):
        assert bottleneck_severity(count, on_cp) == expected

    def test_off_critical_path_bottleneck_is_low(self, engine):
        tasks = [
            _task("X"), _task("Y", "X"), _task("W", "Y"), _task("V", "W"),
            _task("A"), _task("B1", "A"), _task("B2", "A"), _task("B3", "A"), _task("B4", "A"),
        ]
        analysis = engine.analyzer.analyze(tasks)
        assert analysis.critical_path == ["X", "Y", "W", "V"]
        ranked = engine.rank_bottlenecks(tasks, analysis)
        assert [b.task_id for b in ranked] == ["A"]
        assert ranked[0].severity == "low"
        assert ranked[0].on_critical_path is False
        assert ranked[0].dependent_count == 4
