"""In-process event bus used to fan domain events out to local handlers."""

from collections import deque
from typing import Deque, Dict, List, Tuple

import structlog

from ...shared.events.event_bus import EventBus, EventHandler
from ...shared.kernel.events import DomainEvent

logger = structlog.get_logger(__name__)


class InMemoryEventBus(EventBus):
    """Dispatches events to subscribed handlers in subscription order.

    A failing handler does not stop the others; the event and the exception
    are logged and parked in the dead letter queue, which keeps only the most
    recent ``dead_letter_limit`` entries. Published events are not retained.
    """

    def __init__(self, dead_letter_limit: int = 1000) -> None:
        self.subscriptions: Dict[str, List[EventHandler]] = {}
        self.dead_letter_queue: Deque[Tuple[DomainEvent, Exception]] = deque(maxlen=dead_letter_limit)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe handler to an event type (the event class name)."""
        self.subscriptions.setdefault(event_type, []).append(handler)
        logger.info(
            "Handler subscribed to event type",
            event_type=event_type,
            handler=handler.handler_name,
        )

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        """Unsubscribe handler from event type."""
        handlers = [h for h in self.subscriptions.get(event_type, []) if h is not handler]
        if handlers:
            self.subscriptions[event_type] = handlers
        else:
            self.subscriptions.pop(event_type, None)

    async def publish(self, event: DomainEvent) -> None:
        """Publish single event to in-memory subscribers."""
        handlers = self.subscriptions.get(event.event_type, [])
        if not handlers:
            logger.debug(
                "No subscribers for event",
                event_type=event.event_type,
                event_id=str(event.event_id),
            )
            return

        for handler in handlers:
            if not handler.can_handle(event):
                continue
            try:
                await handler.handle(event)
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    event_type=event.event_type,
                    event_id=str(event.event_id),
                    handler=handler.handler_name,
                    error=str(e),
                    exc_info=True,
                )
                self.dead_letter_queue.append((event, e))

    def get_dead_letter_queue(self) -> List[Tuple[DomainEvent, Exception]]:
        """Get dead letter queue contents."""
        return list(self.dead_letter_queue)
