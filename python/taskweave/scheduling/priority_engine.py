"""Priority scoring, rebalancing and bottleneck ranking.

Each task is scored on five factors in [0, 100]:

- dependency weight: how many tasks wait on it
- critical-path weight: whether it bounds total completion time
- progress weight: how far along it already is
- deadline weight: how close its deadline is
- business-value weight: the manually assigned tier

The weighted composite maps to a priority bucket. A proposed change is
only material when the composite moves far enough from the old bucket's
value, which keeps noisy signals from flipping priorities back and forth.

The engine is pure: it never mutates the tasks it is given. Persisting
the proposed changes is the caller's decision.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from taskweave.models import Priority, Task, TaskStatus, as_utc, utcnow
from taskweave.scheduling.graph_analyzer import GraphAnalysis, GraphAnalyzer

logger = logging.getLogger(__name__)


# ── Scoring tables ───────────────────────────────────────────────────

FACTOR_WEIGHTS: Dict[str, float] = {
    "dependency": 0.25,
    "critical_path": 0.30,
    "progress": 0.15,
    "deadline": 0.15,
    "business_value": 0.15,
}

PROGRESS_WEIGHTS: Dict[TaskStatus, float] = {
    TaskStatus.IN_PROGRESS: 100.0,
    TaskStatus.IN_REVIEW: 80.0,
    TaskStatus.READY: 60.0,
    TaskStatus.PENDING: 40.0,
    TaskStatus.BLOCKED: 20.0,
    TaskStatus.COMPLETED: 0.0,
    TaskStatus.CANCELLED: 0.0,
}

BUSINESS_VALUE_WEIGHTS: Dict[Priority, float] = {
    Priority.CRITICAL: 100.0,
    Priority.HIGH: 75.0,
    Priority.MEDIUM: 50.0,
    Priority.LOW: 25.0,
}

# Representative score of each bucket, used to measure change size
BUCKET_VALUES: Dict[Priority, float] = {
    Priority.CRITICAL: 90.0,
    Priority.HIGH: 70.0,
    Priority.MEDIUM: 50.0,
    Priority.LOW: 30.0,
}

# (days remaining upper bound, weight); overdue handled separately
DEADLINE_STEPS = [(3, 90.0), (7, 70.0), (14, 50.0)]
DEADLINE_NONE_WEIGHT = 30.0


SEVERITY_ORDER = ["low", "medium", "high", "critical"]


# ── Value objects ────────────────────────────────────────────────────


@dataclass(frozen=True)
class PriorityFactors:
    """The five factor scores for one task."""

    dependency: float
    critical_path: float
    progress: float
    deadline: float
    business_value: float

    @property
    def composite(self) -> float:
        return round(
            self.dependency * FACTOR_WEIGHTS["dependency"]
            + self.critical_path * FACTOR_WEIGHTS["critical_path"]
            + self.progress * FACTOR_WEIGHTS["progress"]
            + self.deadline * FACTOR_WEIGHTS["deadline"]
            + self.business_value * FACTOR_WEIGHTS["business_value"],
            2,
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "dependency": self.dependency,
            "critical_path": self.critical_path,
            "progress": self.progress,
            "deadline": self.deadline,
            "business_value": self.business_value,
            "composite": self.composite,
        }


@dataclass(frozen=True)
class TaskScore:
    """Score and suggested bucket for one task, change or not."""

    task_id: str
    factors: PriorityFactors
    score: float
    suggested_priority: Priority
    reasoning: str


@dataclass(frozen=True)
class PriorityChange:
    """A material priority change proposed by a rebalance."""

    task_id: str
    title: str
    old_priority: Priority
    new_priority: Priority
    score: float
    score_change: float
    factors: PriorityFactors
    reasoning: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "old_priority": self.old_priority.value,
            "new_priority": self.new_priority.value,
            "score": self.score,
            "score_change": self.score_change,
            "factors": self.factors.to_dict(),
            "reasoning": self.reasoning,
        }


@dataclass(frozen=True)
class BottleneckInfo:
    """A task whose delay holds up many others."""

    task_id: str
    title: str
    dependent_count: int
    on_critical_path: bool
    severity: str
    recommendation: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "dependent_count": self.dependent_count,
            "on_critical_path": self.on_critical_path,
            "severity": self.severity,
            "recommendation": self.recommendation,
        }


@dataclass
class RebalanceOptions:
    dry_run: bool = False
    min_score_change: Optional[float] = None
    allow_in_progress_demotion: bool = False


@dataclass
class RebalanceResult:
    """Outcome of one rebalance pass."""

    changes: List[PriorityChange] = field(default_factory=list)
    bottlenecks: List[BottleneckInfo] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    total_tasks: int = 0
    average_score_change: float = 0.0
    dry_run: bool = False

    @property
    def tasks_rebalanced(self) -> int:
        return len(self.changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changes": [c.to_dict() for c in self.changes],
            "bottlenecks": [b.to_dict() for b in self.bottlenecks],
            "warnings": list(self.warnings),
            "total_tasks": self.total_tasks,
            "tasks_rebalanced": self.tasks_rebalanced,
            "average_score_change": self.average_score_change,
            "dry_run": self.dry_run,
        }


# ── Engine ───────────────────────────────────────────────────────────


def bucket_for(score: float) -> Priority:
    if score >= 80:
        return Priority.CRITICAL
    if score >= 60:
        return Priority.HIGH
    if score >= 40:
        return Priority.MEDIUM
    return Priority.LOW


def bottleneck_severity(dependent_count: int, on_critical_path: bool) -> str:
    """≥10 critical, ≥7 high, ≥5 medium, else low; one level up on the critical path."""
    if dependent_count >= 10:
        level = 3
    elif dependent_count >= 7:
        level = 2
    elif dependent_count >= 5:
        level = 1
    else:
        level = 0
    if on_critical_path:
        level = min(level + 1, len(SEVERITY_ORDER) - 1)
    return SEVERITY_ORDER[level]


class PriorityEngine:
    """Scores tasks and proposes priority changes."""

    def __init__(
        self,
        analyzer: Optional[GraphAnalyzer] = None,
        min_score_change: float = 15.0,
        clock=utcnow,
    ) -> None:
        self.analyzer = analyzer or GraphAnalyzer()
        self.min_score_change = min_score_change
        self._clock = clock

    # ── Factors ──────────────────────────────────────────────────────

    def deadline_weight(self, deadline: Optional[datetime], now: Optional[datetime] = None) -> float:
        if deadline is None:
            return DEADLINE_NONE_WEIGHT
        now = now or self._clock()
        remaining = as_utc(deadline) - as_utc(now)
        if remaining <= timedelta(0):
            return 100.0
        for days, weight in DEADLINE_STEPS:
            if remaining < timedelta(days=days):
                return weight
        return DEADLINE_NONE_WEIGHT

    def compute_factors(
        self, task: Task, analysis: GraphAnalysis, now: Optional[datetime] = None
    ) -> PriorityFactors:
        dependents = analysis.dependent_counts.get(task.id, 0)
        return PriorityFactors(
            dependency=float(min(100, dependents * 20)),
            critical_path=100.0 if task.id in analysis.critical_path else 0.0,
            progress=PROGRESS_WEIGHTS[task.status],
            deadline=self.deadline_weight(task.deadline, now),
            business_value=BUSINESS_VALUE_WEIGHTS[task.priority],
        )

    @staticmethod
    def reasoning_for(factors: PriorityFactors) -> str:
        reasons = []
        if factors.critical_path >= 100:
            reasons.append("On critical path")
        if factors.dependency >= 60:
            reasons.append("Blocks multiple tasks")
        if factors.progress >= 80:
            reasons.append("Already in progress")
        if factors.deadline >= 70:
            reasons.append("Deadline approaching")
        if factors.business_value >= 75:
            reasons.append("High business value")
        if not reasons:
            return "Standard priority based on overall factors"
        return ", ".join(reasons)

    def score_task(
        self, task: Task, analysis: GraphAnalysis, now: Optional[datetime] = None
    ) -> TaskScore:
        factors = self.compute_factors(task, analysis, now)
        return TaskScore(
            task_id=task.id,
            factors=factors,
            score=factors.composite,
            suggested_priority=bucket_for(factors.composite),
            reasoning=self.reasoning_for(factors),
        )

    # ── Rebalance ────────────────────────────────────────────────────

    def rebalance(
        self,
        tasks: Iterable[Task],
        options: Optional[RebalanceOptions] = None,
        analysis: Optional[GraphAnalysis] = None,
    ) -> RebalanceResult:
        """Propose priority changes for every non-terminal task."""
        options = options or RebalanceOptions()
        threshold = (
            options.min_score_change if options.min_score_change is not None else self.min_score_change
        )
        task_list = list(tasks)
        analysis = analysis or self.analyzer.analyze(task_list)
        now = self._clock()

        result = RebalanceResult(total_tasks=len(task_list), dry_run=options.dry_run)
        if not task_list:
            result.warnings.append("No tasks to rebalance")
            return result

        for task in task_list:
            if task.status.is_terminal:
                continue
            change = self._propose_change(task, analysis, now, threshold, options)
            if change is not None:
                result.changes.append(change)

        result.bottlenecks = self.rank_bottlenecks(task_list, analysis)
        result.warnings.extend(self._warnings(result))
        if result.changes:
            result.average_score_change = round(
                sum(abs(c.score_change) for c in result.changes) / len(result.changes), 2
            )

        logger.info(
            "Rebalance%s: %d/%d task(s) changed, %d bottleneck(s)",
            " (dry run)" if options.dry_run else "",
            len(result.changes), len(task_list), len(result.bottlenecks),
        )
        return result

    def reevaluate_task(
        self,
        task: Task,
        tasks: Iterable[Task],
        options: Optional[RebalanceOptions] = None,
    ) -> Optional[PriorityChange]:
        """Score a single task in the context of the whole set."""
        options = options or RebalanceOptions()
        threshold = (
            options.min_score_change if options.min_score_change is not None else self.min_score_change
        )
        analysis = self.analyzer.analyze(list(tasks))
        if task.status.is_terminal:
            return None
        return self._propose_change(task, analysis, self._clock(), threshold, options)

    def rank_bottlenecks(self, tasks: Iterable[Task], analysis: GraphAnalysis) -> List[BottleneckInfo]:
        by_id = {t.id: t for t in tasks}
        ranked = []
        for task_id in analysis.bottlenecks:
            task = by_id.get(task_id)
            if task is None:
                continue
            count = analysis.dependent_counts.get(task_id, 0)
            on_cp = task_id in analysis.critical_path
            ranked.append(BottleneckInfo(
                task_id=task_id,
                title=task.title,
                dependent_count=count,
                on_critical_path=on_cp,
                severity=bottleneck_severity(count, on_cp),
                recommendation=self._recommendation(task),
            ))
        return ranked

    # ── Internal helpers ─────────────────────────────────────────────

    def _propose_change(
        self,
        task: Task,
        analysis: GraphAnalysis,
        now: datetime,
        threshold: float,
        options: RebalanceOptions,
    ) -> Optional[PriorityChange]:
        scored = self.score_task(task, analysis, now)
        new_priority = scored.suggested_priority
        reasoning = scored.reasoning

        if (
            task.status == TaskStatus.IN_PROGRESS
            and not options.allow_in_progress_demotion
            and new_priority.rank - task.priority.rank > 1
        ):
            new_priority = Priority.from_rank(task.priority.rank + 1)
            reasoning = f"{reasoning}; demotion capped at one tier for in-progress task"

        if new_priority == task.priority:
            return None
        score_change = round(scored.score - BUCKET_VALUES[task.priority], 2)
        if abs(score_change) < threshold:
            return None

        return PriorityChange(
            task_id=task.id,
            title=task.title,
            old_priority=task.priority,
            new_priority=new_priority,
            score=scored.score,
            score_change=score_change,
            factors=scored.factors,
            reasoning=reasoning,
        )

    @staticmethod
    def _recommendation(task: Task) -> str:
        if task.status == TaskStatus.BLOCKED:
            return "URGENT: Unblock this task immediately; it holds up multiple dependents"
        if task.status == TaskStatus.PENDING:
            return "Prioritize starting this task to unblock dependents"
        if task.status == TaskStatus.IN_PROGRESS:
            return "Allocate additional resources to finish this task sooner"
        return "Monitor closely; dependents are waiting on this task"

    @staticmethod
    def _warnings(result: RebalanceResult) -> List[str]:
        warnings = []
        critical = [b for b in result.bottlenecks if b.severity == "critical"]
        high = [b for b in result.bottlenecks if b.severity == "high"]
        if critical:
            warnings.append(f"{len(critical)} critical bottleneck(s) require immediate attention")
        if high:
            warnings.append(f"{len(high)} high-severity bottleneck(s) detected")
        major = [
            c for c in result.changes
            if {c.old_priority, c.new_priority} == {Priority.LOW, Priority.CRITICAL}
        ]
        if major:
            warnings.append(f"{len(major)} task(s) shifted between low and critical priority")
        return warnings
