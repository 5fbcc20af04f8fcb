"""Payment domain events."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from ....shared.kernel.events import DomainEvent


class PaymentIntentCreated(DomainEvent):
    """Emitted when an intent is first persisted."""

    def __init__(
        self,
        aggregate_id: UUID,
        reference: str,
        amount: int,
        currency: str,
        gateway_name: str,
    ) -> None:
        super().__init__(aggregate_id)
        self.reference = reference
        self.amount = amount
        self.currency = currency
        self.gateway_name = gateway_name


class PaymentIntentPending(DomainEvent):
    """Emitted when the vendor accepted the checkout."""

    def __init__(
        self,
        aggregate_id: UUID,
        reference: str,
        gateway_name: str,
        external_session_ref: str,
    ) -> None:
        super().__init__(aggregate_id)
        self.reference = reference
        self.gateway_name = gateway_name
        self.external_session_ref = external_session_ref


class PaymentCompleted(DomainEvent):
    """Emitted exactly once per intent, on entering ``completed``.

    Entitlement granting subscribes to this event.
    """

    def __init__(
        self,
        aggregate_id: UUID,
        reference: str,
        amount: int,
        currency: str,
        gateway_name: str,
        external_payment_ref: Optional[str],
        completed_at: datetime,
        source: str,
    ) -> None:
        super().__init__(aggregate_id)
        self.reference = reference
        self.amount = amount
        self.currency = currency
        self.gateway_name = gateway_name
        self.external_payment_ref = external_payment_ref
        self.completed_at = completed_at
        self.source = source


class PaymentFailed(DomainEvent):
    def __init__(
        self,
        aggregate_id: UUID,
        reference: str,
        gateway_name: str,
        failure_reason: str,
        source: str,
    ) -> None:
        super().__init__(aggregate_id)
        self.reference = reference
        self.gateway_name = gateway_name
        self.failure_reason = failure_reason
        self.source = source


class PaymentCancelled(DomainEvent):
    def __init__(self, aggregate_id: UUID, reference: str, gateway_name: str) -> None:
        super().__init__(aggregate_id)
        self.reference = reference
        self.gateway_name = gateway_name


class PaymentRefunded(DomainEvent):
    def __init__(
        self,
        aggregate_id: UUID,
        reference: str,
        refund_ref: str,
        amount: int,
        currency: str,
        total_refunded: int,
    ) -> None:
        super().__init__(aggregate_id)
        self.reference = reference
        self.refund_ref = refund_ref
        self.amount = amount
        self.currency = currency
        self.total_refunded = total_refunded
