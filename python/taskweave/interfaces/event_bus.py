"""Interface for event bus and pub/sub messaging.

Terminal transitions are published here; notification delivery is the
subscriber's business.
"""

from typing import Protocol, Callable, Dict, Any, Awaitable, Optional
from enum import Enum


class EventType(Enum):
    """Events emitted by the orchestrator."""
    # Task lifecycle
    TASK_READY = "task_ready"
    TASK_CLAIMED = "task_claimed"
    TASK_COMPLETED = "task_completed"
    TASK_CANCELLED = "task_cancelled"
    TASK_BLOCKED = "task_blocked"
    TASK_ESCALATED = "task_escalated"
    TASK_FAILED = "task_failed"
    PRIORITY_CHANGED = "priority_changed"
    # Change requests
    CHANGE_REQUEST_OPENED = "change_request_opened"
    REVIEW_REQUESTED = "review_requested"
    CHANGE_REQUEST_APPROVED = "change_request_approved"
    CHANGES_REQUESTED = "changes_requested"
    CHANGE_REQUEST_MERGED = "change_request_merged"
    CHANGE_REQUEST_CLOSED = "change_request_closed"
    # Pipeline
    CI_RERUN_REQUESTED = "ci_rerun_requested"
    CONFLICT_RESOLVED = "conflict_resolved"
    CONFLICT_UNRESOLVABLE = "conflict_unresolvable"
    CONSISTENCY_DRIFT = "consistency_drift"


class IEventBus(Protocol):
    """Interface for publish-subscribe event messaging."""

    async def publish(
        self,
        event_type: EventType,
        data: Dict[str, Any],
        source: Optional[str] = None
    ) -> None:
        """Publish an event to the bus.

        Args:
            event_type: Type of event
            data: Event data/payload
            source: Optional source identifier
        """
        ...

    async def subscribe(
        self,
        event_type: EventType,
        handler: Callable[[Dict[str, Any]], Awaitable[None]]
    ) -> str:
        """Subscribe to events of a type.

        Returns:
            Subscription ID for later unsubscribe
        """
        ...

    async def unsubscribe(self, subscription_id: str) -> None:
        ...
