"""In-memory event bus satisfying the IEventBus protocol.

Carries terminal-transition notifications from the lifecycle controller and
execution pipeline to whoever delivers them (chat, email, dashboards).
"""

import inspect
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from taskweave.interfaces.event_bus import EventType

logger = logging.getLogger(__name__)


class InMemoryEventBus:
    """Simple async event bus for single-process use.

    Satisfies ``taskweave.interfaces.IEventBus`` via structural subtyping.
    Keeps a bounded history of published events for inspection.
    """

    def __init__(self, history_size: int = 500) -> None:
        self._subscribers: Dict[EventType, Dict[str, Callable]] = {}
        self._history: List[Tuple[EventType, Dict[str, Any]]] = []
        self._history_size = history_size

    async def publish(
        self,
        event_type: EventType,
        data: Dict[str, Any],
        source: Optional[str] = None,
    ) -> None:
        if source:
            data = {**data, "_source": source}
        self._history.append((event_type, data))
        if len(self._history) > self._history_size:
            del self._history[: len(self._history) - self._history_size]

        handlers = self._subscribers.get(event_type, {})
        for handler in list(handlers.values()):
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(data)
                else:
                    handler(data)
            except Exception:
                logger.exception("Event handler failed for %s", event_type.value)

    async def subscribe(
        self,
        event_type: EventType,
        handler: Callable[[Dict[str, Any]], Awaitable[None]],
    ) -> str:
        sub_id = uuid.uuid4().hex[:12]
        self._subscribers.setdefault(event_type, {})[sub_id] = handler
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        for handlers in self._subscribers.values():
            handlers.pop(subscription_id, None)

    def history(self, event_type: Optional[EventType] = None) -> List[Dict[str, Any]]:
        """Payloads published so far, optionally for one event type."""
        return [data for et, data in self._history if event_type is None or et == event_type]
