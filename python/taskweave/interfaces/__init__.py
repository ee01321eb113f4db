"""Protocols for the collaborators the orchestrator consumes."""

from taskweave.interfaces.event_bus import EventType, IEventBus
from taskweave.interfaces.executor import ExecutorResult, IExecutor
from taskweave.interfaces.task_store import ITaskStore
from taskweave.interfaces.vcs import IVersionControl

__all__ = [
    "EventType",
    "IEventBus",
    "ExecutorResult",
    "IExecutor",
    "ITaskStore",
    "IVersionControl",
]
