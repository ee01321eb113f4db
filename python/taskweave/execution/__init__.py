"""Execution pipeline: workspaces, executor dispatch, conflicts and merges."""

from taskweave.execution.conflict_resolver import (
    Checkpoint,
    ConflictContext,
    ConflictResolver,
    ResolutionOutcome,
    ResolutionResult,
    has_conflict_markers,
)
from taskweave.execution.coordinator import (
    ConcurrencySlot,
    ExecutionCoordinator,
    ExecutionOutcome,
    ExecutionStatus,
)
from taskweave.execution.merge_pipeline import MergePipeline, MergeResult
from taskweave.execution.prompts import (
    ReviewVerdict,
    build_conflict_prompt,
    build_review_prompt,
    build_task_prompt,
    parse_review_output,
)
from taskweave.execution.workspace import WorkspaceManager, branch_name, slugify, workspace_key

__all__ = [
    # Conflicts
    "Checkpoint",
    "ConflictContext",
    "ConflictResolver",
    "ResolutionOutcome",
    "ResolutionResult",
    "has_conflict_markers",
    # Coordinator
    "ConcurrencySlot",
    "ExecutionCoordinator",
    "ExecutionOutcome",
    "ExecutionStatus",
    # Merges
    "MergePipeline",
    "MergeResult",
    # Prompts
    "ReviewVerdict",
    "build_conflict_prompt",
    "build_review_prompt",
    "build_task_prompt",
    "parse_review_output",
    # Workspaces
    "WorkspaceManager",
    "branch_name",
    "slugify",
    "workspace_key",
]
