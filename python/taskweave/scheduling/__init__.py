"""Graph analysis, priority scoring and retry policy for taskweave."""

from taskweave.scheduling.graph_analyzer import (
    DependencyGraph,
    GraphAnalysis,
    GraphAnalyzer,
    GraphNode,
    descendants_in_tree,
)
from taskweave.scheduling.priority_engine import (
    BottleneckInfo,
    PriorityChange,
    PriorityEngine,
    PriorityFactors,
    RebalanceOptions,
    RebalanceResult,
    bottleneck_severity,
    bucket_for,
)
from taskweave.scheduling.retry_strategies import (
    BackoffPolicy,
    RetryDecision,
    RetryManager,
    RetryReason,
)

__all__ = [
    # Graph analyzer
    "DependencyGraph",
    "GraphAnalysis",
    "GraphAnalyzer",
    "GraphNode",
    "descendants_in_tree",
    # Priority engine
    "BottleneckInfo",
    "PriorityChange",
    "PriorityEngine",
    "PriorityFactors",
    "RebalanceOptions",
    "RebalanceResult",
    "bottleneck_severity",
    "bucket_for",
    # Retry strategies
    "BackoffPolicy",
    "RetryDecision",
    "RetryManager",
    "RetryReason",
]
