"""taskweave: orchestration core for autonomous software-engineering agents."""

from taskweave.models import (
    ChangeRequest,
    ChangeRequestStatus,
    Executor,
    ExecutorStatus,
    Priority,
    ReviewerClass,
    Task,
    TaskStatus,
)
from taskweave.orchestrator import TaskweaveOrchestrator, create_orchestrator

__version__ = "0.1.0"

__all__ = [
    # Models
    "ChangeRequest",
    "ChangeRequestStatus",
    "Executor",
    "ExecutorStatus",
    "Priority",
    "ReviewerClass",
    "Task",
    "TaskStatus",
    # Facade
    "TaskweaveOrchestrator",
    "create_orchestrator",
]
