"""Task and change-request lifecycle for taskweave."""

from taskweave.lifecycle.lifecycle_controller import (
    AUTO_RESOLVED,
    CompletionResult,
    LifecycleController,
)
from taskweave.lifecycle.reviewer_assignment import (
    ReviewerAssigner,
    ReviewerAssignment,
    classify_task,
)
from taskweave.lifecycle.state_machine import (
    CHANGE_REQUEST_TRANSITIONS,
    TASK_TRANSITIONS,
    can_transition_change_request,
    can_transition_task,
    validate_change_request_transition,
    validate_task_transition,
)

__all__ = [
    # Controller
    "AUTO_RESOLVED",
    "CompletionResult",
    "LifecycleController",
    # Reviewer assignment
    "ReviewerAssigner",
    "ReviewerAssignment",
    "classify_task",
    # State machine
    "CHANGE_REQUEST_TRANSITIONS",
    "TASK_TRANSITIONS",
    "can_transition_change_request",
    "can_transition_task",
    "validate_change_request_transition",
    "validate_task_transition",
]
