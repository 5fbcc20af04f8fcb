"""Local subscribers for payment domain events."""

import structlog

from ....shared.events.event_bus import EventHandler
from ....shared.kernel.events import DomainEvent

logger = structlog.get_logger(__name__)

AUDITED_EVENTS = (
    "PaymentIntentCreated",
    "PaymentIntentPending",
    "PaymentCompleted",
    "PaymentFailed",
    "PaymentCancelled",
    "PaymentRefunded",
)


class PaymentAuditHandler(EventHandler):
    """Writes one structured audit line per payment lifecycle event."""

    async def handle(self, event: DomainEvent) -> None:
        logger.info("Payment event", **event.to_dict())
