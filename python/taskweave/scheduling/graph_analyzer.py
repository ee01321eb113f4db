"""Dependency-graph analysis for taskweave scheduling.

Pure functions over an in-memory, id-keyed graph. Nothing here touches the
task store; the graph is rebuilt from task rows on every call.

Provides:
- Cycle detection (DFS with a recursion stack, every back edge reported)
- Topological ordering via Kahn's algorithm (input order on cycles)
- Critical path (longest dependent chain from any root)
- Execution phases (depth = 1 + max dependency depth)
- Bottleneck ranking and a parallelization score
"""

from __future__ import annotations

import heapq
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from taskweave.enhanced_logging import track_performance
from taskweave.exceptions_unified import DanglingDependencyError
from taskweave.models import Task

logger = logging.getLogger(__name__)


# ── Value objects ────────────────────────────────────────────────────


@dataclass(frozen=True)
class GraphNode:
    """Immutable snapshot of a task's position in the graph."""

    task_id: str
    dependencies: Tuple[str, ...]
    dependents: Tuple[str, ...]


@dataclass
class GraphAnalysis:
    """Everything ``GraphAnalyzer.analyze`` derives from one task set."""

    order: List[str] = field(default_factory=list)
    phases: List[List[str]] = field(default_factory=list)
    critical_path: List[str] = field(default_factory=list)
    critical_path_length: float = 0.0
    bottlenecks: List[str] = field(default_factory=list)
    cycles: List[List[str]] = field(default_factory=list)
    parallelization_score: float = 0.0
    dependent_counts: Dict[str, int] = field(default_factory=dict)
    dropped_dependencies: List[Tuple[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)

    @property
    def is_advisory(self) -> bool:
        """Ordering is only a hint when the graph is cyclic."""
        return self.has_cycles

    def phase_of(self, task_id: str) -> Optional[int]:
        for i, phase in enumerate(self.phases):
            if task_id in phase:
                return i
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": list(self.order),
            "phases": [list(p) for p in self.phases],
            "critical_path": list(self.critical_path),
            "critical_path_length": self.critical_path_length,
            "bottlenecks": list(self.bottlenecks),
            "cycles": [list(c) for c in self.cycles],
            "parallelization_score": self.parallelization_score,
            "dropped_dependencies": [list(d) for d in self.dropped_dependencies],
            "warnings": list(self.warnings),
            "is_advisory": self.is_advisory,
        }


# ── Graph ────────────────────────────────────────────────────────────


class DependencyGraph:
    """Id-keyed adjacency maps built from task rows.

    Forward edges map a task to the tasks it depends on; back edges map a
    task to its dependents. Both lists follow input order so every
    traversal is deterministic.
    """

    def __init__(self) -> None:
        self._order: List[str] = []
        self._index: Dict[str, int] = {}
        # Forward edges: task_id → ids it depends ON
        self._dependencies: Dict[str, List[str]] = {}
        # Reverse edges: task_id → ids that depend on IT
        self._dependents: Dict[str, List[str]] = {}
        # (task_id, missing_dep) pairs removed during construction
        self.dropped: List[Tuple[str, str]] = []

    @classmethod
    def build(cls, tasks: Iterable[Task]) -> "DependencyGraph":
        graph = cls()
        task_list = []
        for task in tasks:
            if task.id in graph._index:
                logger.warning("Duplicate task id %s ignored", task.id)
                continue
            graph._index[task.id] = len(graph._order)
            graph._order.append(task.id)
            graph._dependencies[task.id] = []
            graph._dependents[task.id] = []
            task_list.append(task)

        for task in task_list:
            known = [d for d in task.depends_on if d in graph._index]
            for dep in sorted(task.depends_on - set(known)):
                graph.dropped.append((task.id, dep))
                logger.warning("Task %s references unknown dependency %s; edge dropped", task.id, dep)
            for dep in sorted(known, key=graph._index.__getitem__):
                graph._dependencies[task.id].append(dep)
                graph._dependents[dep].append(task.id)

        for deps in graph._dependents.values():
            deps.sort(key=graph._index.__getitem__)
        return graph

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._index

    @property
    def task_ids(self) -> List[str]:
        return list(self._order)

    def index_of(self, task_id: str) -> int:
        return self._index[task_id]

    def dependencies(self, task_id: str) -> List[str]:
        return list(self._dependencies.get(task_id, []))

    def dependents(self, task_id: str) -> List[str]:
        return list(self._dependents.get(task_id, []))

    def dependent_count(self, task_id: str) -> int:
        return len(self._dependents.get(task_id, []))

    def roots(self) -> List[str]:
        return [tid for tid in self._order if not self._dependencies[tid]]

    def get_node(self, task_id: str) -> Optional[GraphNode]:
        if task_id not in self._index:
            return None
        return GraphNode(
            task_id=task_id,
            dependencies=tuple(self._dependencies[task_id]),
            dependents=tuple(self._dependents[task_id]),
        )

    def get_downstream(self, task_id: str) -> Set[str]:
        """BFS to find all transitive dependents of *task_id*."""
        result: Set[str] = set()
        queue: deque[str] = deque(self._dependents.get(task_id, []))
        while queue:
            nid = queue.popleft()
            if nid in result:
                continue
            result.add(nid)
            queue.extend(self._dependents.get(nid, []))
        return result

    # ── Algorithms ───────────────────────────────────────────────────

    def find_cycles(self) -> List[List[str]]:
        """DFS with an explicit recursion stack.

        Every edge into a node still on the stack yields one cycle: the
        stack slice from that node to the current one.
        """
        on_stack: Set[str] = set()
        done: Set[str] = set()
        cycles: List[List[str]] = []

        for start in self._order:
            if start in done:
                continue
            path = [start]
            on_stack.add(start)
            stack = [(start, iter(self._dependencies[start]))]
            while stack:
                node, edges = stack[-1]
                nxt = next(edges, None)
                if nxt is None:
                    stack.pop()
                    path.pop()
                    on_stack.discard(node)
                    done.add(node)
                    continue
                if nxt in on_stack:
                    cycles.append(path[path.index(nxt):])
                elif nxt not in done:
                    path.append(nxt)
                    on_stack.add(nxt)
                    stack.append((nxt, iter(self._dependencies[nxt])))
        return cycles

    def kahn_order(self) -> List[str]:
        """Kahn's algorithm, ties broken by input order.

        Returns only the nodes that could be ordered; on a cyclic graph the
        result is shorter than the graph.
        """
        in_degree = {tid: len(deps) for tid, deps in self._dependencies.items()}
        heap = [self._index[tid] for tid, deg in in_degree.items() if deg == 0]
        heapq.heapify(heap)
        ordered: List[str] = []
        while heap:
            tid = self._order[heapq.heappop(heap)]
            ordered.append(tid)
            for dependent in self._dependents[tid]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, self._index[dependent])
        return ordered

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": list(self._order),
            "dependencies": {k: list(v) for k, v in self._dependencies.items()},
            "dependents": {k: list(v) for k, v in self._dependents.items()},
            "dropped": [list(d) for d in self.dropped],
        }


def descendants_in_tree(tasks: Iterable[Task], task_id: str) -> Set[str]:
    """All transitive children of *task_id* in the parent/child (epic) tree."""
    children: Dict[str, List[str]] = {}
    for task in tasks:
        if task.parent_task_id:
            children.setdefault(task.parent_task_id, []).append(task.id)
    result: Set[str] = set()
    queue: deque[str] = deque(children.get(task_id, []))
    while queue:
        cid = queue.popleft()
        if cid in result:
            continue
        result.add(cid)
        queue.extend(children.get(cid, []))
    return result


# ── Analyzer ─────────────────────────────────────────────────────────


class GraphAnalyzer:
    """Computes order, phases, critical path and bottlenecks for a task set.

    Stateless: ``analyze`` on an unchanged task set always returns the same
    result.
    """

    def __init__(
        self,
        bottleneck_threshold: int = 3,
        long_path_threshold: float = 160.0,
        strict_dependencies: bool = False,
    ) -> None:
        self.bottleneck_threshold = bottleneck_threshold
        self.long_path_threshold = long_path_threshold
        self.strict_dependencies = strict_dependencies

    @classmethod
    def from_settings(cls, settings: Any) -> "GraphAnalyzer":
        return cls(
            bottleneck_threshold=settings.bottleneck_threshold,
            long_path_threshold=settings.long_critical_path_threshold,
            strict_dependencies=settings.strict_dependencies,
        )

    @track_performance(operation="graph_analysis")
    def analyze(
        self,
        tasks: Iterable[Task],
        durations: Optional[Dict[str, float]] = None,
    ) -> GraphAnalysis:
        """Analyze *tasks*; durations default to 1 per task.

        Raises:
            DanglingDependencyError: only with ``strict_dependencies``
        """
        graph = DependencyGraph.build(tasks)
        return self.analyze_graph(graph, durations)

    def analyze_graph(
        self,
        graph: DependencyGraph,
        durations: Optional[Dict[str, float]] = None,
    ) -> GraphAnalysis:
        if len(graph) == 0:
            return GraphAnalysis(warnings=["No tasks to analyze"])

        if graph.dropped and self.strict_dependencies:
            task_id = graph.dropped[0][0]
            raise DanglingDependencyError(
                task_id, [dep for tid, dep in graph.dropped if tid == task_id]
            )

        result = GraphAnalysis(
            dependent_counts={tid: graph.dependent_count(tid) for tid in graph.task_ids},
            dropped_dependencies=list(graph.dropped),
        )

        for task_id, dep in graph.dropped:
            result.warnings.append(f"Task {task_id} references unknown dependency {dep} (dropped)")

        result.cycles = graph.find_cycles()
        ordered = graph.kahn_order()

        if result.cycles:
            result.order = graph.task_ids
            result.warnings.append(
                f"Circular dependencies detected: {len(result.cycles)} cycle(s); "
                "execution order is advisory"
            )
            logger.warning("Dependency graph has %d cycle(s)", len(result.cycles))
        else:
            result.order = ordered

        result.phases = self._compute_phases(graph, ordered)
        if len(ordered) < len(graph):
            result.warnings.append(
                f"{len(graph) - len(ordered)} task(s) on or behind a cycle grouped into the final phase"
            )

        result.critical_path, result.critical_path_length = self._critical_path(
            graph, ordered, durations or {}
        )
        if result.critical_path_length > self.long_path_threshold:
            result.warnings.append(
                f"Critical path length {result.critical_path_length:g} exceeds "
                f"{self.long_path_threshold:g}; consider splitting work"
            )

        result.bottlenecks = sorted(
            (tid for tid in graph.task_ids if graph.dependent_count(tid) >= self.bottleneck_threshold),
            key=lambda tid: (-graph.dependent_count(tid), graph.index_of(tid)),
        )
        if result.bottlenecks:
            result.warnings.append(
                f"{len(result.bottlenecks)} bottleneck task(s) detected; prioritize them"
            )

        parallel = sum(len(p) for p in result.phases if len(p) > 1)
        result.parallelization_score = round(parallel / len(graph) * 100, 2)
        return result

    # ── Internal helpers ─────────────────────────────────────────────

    def _compute_phases(self, graph: DependencyGraph, ordered: List[str]) -> List[List[str]]:
        depth: Dict[str, int] = {}
        for tid in ordered:
            deps = graph.dependencies(tid)
            depth[tid] = 1 + max(depth[d] for d in deps) if deps else 0

        buckets: Dict[int, List[str]] = {}
        for tid in graph.task_ids:
            if tid in depth:
                buckets.setdefault(depth[tid], []).append(tid)

        phases = [buckets[d] for d in sorted(buckets)]
        unresolved = [tid for tid in graph.task_ids if tid not in depth]
        if unresolved:
            phases.append(unresolved)
        return phases

    def _critical_path(
        self,
        graph: DependencyGraph,
        ordered: List[str],
        durations: Dict[str, float],
    ) -> Tuple[List[str], float]:
        """Longest weighted chain from a root following dependents.

        Walks the acyclic part in reverse topological order so each node's
        best continuation is known before its dependencies are visited.
        """
        acyclic = set(ordered)
        best: Dict[str, float] = {}
        successor: Dict[str, Optional[str]] = {}

        for tid in reversed(ordered):
            tail = 0.0
            nxt: Optional[str] = None
            for dependent in graph.dependents(tid):
                if dependent in acyclic and best[dependent] > tail:
                    tail = best[dependent]
                    nxt = dependent
            best[tid] = durations.get(tid, 1.0) + tail
            successor[tid] = nxt

        start: Optional[str] = None
        for root in graph.roots():
            if root in best and (start is None or best[root] > best[start]):
                start = root
        if start is None:
            return [], 0.0

        path = [start]
        while successor[path[-1]] is not None:
            path.append(successor[path[-1]])  # type: ignore[arg-type]
        return path, best[start]
