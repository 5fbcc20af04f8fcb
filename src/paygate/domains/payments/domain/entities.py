"""Payment domain entities."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from ....shared.exceptions.base import ValidationError
from ....shared.kernel.entity import AggregateRoot
from ....shared.utils.money import normalize_currency
from .events import (
    PaymentCancelled,
    PaymentCompleted,
    PaymentFailed,
    PaymentIntentCreated,
    PaymentIntentPending,
    PaymentRefunded,
)
from .exceptions import InvalidStatusTransitionError, RefundNotAllowedError
from .value_objects import StatusValue


class IntentStatus:
    """Lifecycle status of a payment intent."""

    CREATED = "created"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    VALID_STATUSES = {CREATED, PENDING, COMPLETED, FAILED, CANCELLED}
    TERMINAL_STATUSES = {COMPLETED, FAILED, CANCELLED}

    _TRANSITIONS = {
        CREATED: {PENDING, FAILED},
        PENDING: {COMPLETED, FAILED, CANCELLED},
        COMPLETED: set(),
        FAILED: set(),
        CANCELLED: set(),
    }

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return status in cls.TERMINAL_STATUSES

    @classmethod
    def can_transition(cls, current: str, new: str) -> bool:
        """Check if transition from ``current`` to ``new`` is valid."""
        return new in cls._TRANSITIONS.get(current, set())

    @classmethod
    def from_status_value(cls, value: StatusValue) -> Optional[str]:
        """Intent status a normalized vendor status points at, if any."""
        return {
            StatusValue.PENDING: cls.PENDING,
            StatusValue.COMPLETED: cls.COMPLETED,
            StatusValue.FAILED: cls.FAILED,
            StatusValue.CANCELLED: cls.CANCELLED,
        }.get(value)


class Refund:
    """A refund recorded against a completed intent."""

    def __init__(
        self,
        refund_ref: str,
        amount: int,
        status: str,
        created_at: datetime,
    ) -> None:
        self.refund_ref = refund_ref
        self.amount = amount
        self.status = status
        self.created_at = created_at

    @property
    def counts_against_capture(self) -> bool:
        return self.status != StatusValue.FAILED.value and self.status != StatusValue.CANCELLED.value


class PaymentIntent(AggregateRoot):
    """One attempt to collect money, keyed by the caller's reference."""

    def __init__(
        self,
        reference: str,
        amount: int,
        currency: str,
        gateway_name: str,
        description: str = "",
        intent_id: Optional[UUID] = None,
        status: str = IntentStatus.CREATED,
        external_session_ref: Optional[str] = None,
        external_payment_ref: Optional[str] = None,
        redirect_url: Optional[str] = None,
        failure_reason: Optional[str] = None,
        created_at: Optional[datetime] = None,
        last_transition_at: Optional[datetime] = None,
        refunds: Optional[List[Refund]] = None,
        version: int = 0,
    ) -> None:
        super().__init__(intent_id)
        if not reference:
            raise ValidationError("Payment reference is required")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Payment amount must be a positive integer in minor units")
        if status not in IntentStatus.VALID_STATUSES:
            raise ValidationError(f"Invalid payment status: {status}")

        self._reference = reference
        self.amount = amount
        self.currency = normalize_currency(currency)
        self.gateway_name = gateway_name
        self.description = description

        # State
        self.status = status
        self.external_session_ref = external_session_ref
        self.external_payment_ref = external_payment_ref
        self.redirect_url = redirect_url
        self.failure_reason = failure_reason

        # Audit trail
        self.created_at = created_at or self._now()
        self.last_transition_at = last_transition_at or self.created_at

        self.refunds: List[Refund] = refunds or []

        # Stored version this copy was loaded at; saves compare against it
        self.version = version

    @classmethod
    def create(
        cls,
        reference: str,
        amount: int,
        currency: str,
        gateway_name: str,
        description: str = "",
    ) -> "PaymentIntent":
        """Create a new intent in ``created`` and record the creation event."""
        intent = cls(reference, amount, currency, gateway_name, description)
        intent.add_domain_event(PaymentIntentCreated(
            aggregate_id=intent.id,
            reference=intent.reference,
            amount=intent.amount,
            currency=intent.currency,
            gateway_name=intent.gateway_name,
        ))
        return intent

    @property
    def reference(self) -> str:
        return self._reference

    @property
    def is_terminal(self) -> bool:
        return IntentStatus.is_terminal(self.status)

    @property
    def total_refunded(self) -> int:
        return sum(r.amount for r in self.refunds if r.counts_against_capture)

    @property
    def refundable_amount(self) -> int:
        return self.amount - self.total_refunded

    def _transition(self, new_status: str) -> None:
        if not IntentStatus.can_transition(self.status, new_status):
            raise InvalidStatusTransitionError(self.reference, self.status, new_status)
        self.status = new_status
        self.last_transition_at = self._now()

    def mark_pending(
        self,
        external_session_ref: str,
        external_payment_ref: Optional[str],
        redirect_url: str,
    ) -> None:
        """Vendor accepted the checkout."""
        self._transition(IntentStatus.PENDING)
        self.external_session_ref = external_session_ref
        self.external_payment_ref = external_payment_ref
        self.redirect_url = redirect_url

        self.add_domain_event(PaymentIntentPending(
            aggregate_id=self.id,
            reference=self.reference,
            gateway_name=self.gateway_name,
            external_session_ref=external_session_ref,
        ))

    def mark_completed(self, external_payment_ref: Optional[str], source: str) -> None:
        """Vendor confirmed the payment."""
        self._transition(IntentStatus.COMPLETED)
        if external_payment_ref:
            self.external_payment_ref = external_payment_ref

        self.add_domain_event(PaymentCompleted(
            aggregate_id=self.id,
            reference=self.reference,
            amount=self.amount,
            currency=self.currency,
            gateway_name=self.gateway_name,
            external_payment_ref=self.external_payment_ref,
            completed_at=self.last_transition_at,
            source=source,
        ))

    def mark_failed(self, reason: str, source: str) -> None:
        """Vendor reported a terminal failure."""
        self._transition(IntentStatus.FAILED)
        self.failure_reason = reason

        self.add_domain_event(PaymentFailed(
            aggregate_id=self.id,
            reference=self.reference,
            gateway_name=self.gateway_name,
            failure_reason=reason,
            source=source,
        ))

    def cancel(self) -> None:
        """User abandoned the hosted checkout."""
        self._transition(IntentStatus.CANCELLED)

        self.add_domain_event(PaymentCancelled(
            aggregate_id=self.id,
            reference=self.reference,
            gateway_name=self.gateway_name,
        ))

    def ensure_refundable(self, amount: int) -> None:
        """Pre-check a refund against the stored intent."""
        if self.status != IntentStatus.COMPLETED:
            raise RefundNotAllowedError(
                f"Payment '{self.reference}' is {self.status}, only completed payments can be refunded",
                context={"reference": self.reference, "status": self.status},
            )
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Refund amount must be a positive integer in minor units")
        if amount > self.refundable_amount:
            raise RefundNotAllowedError(
                f"Refund of {amount} exceeds refundable amount {self.refundable_amount}",
                context={"reference": self.reference, "requested": amount,
                         "refundable": self.refundable_amount},
            )

    def record_refund(self, refund: Refund) -> None:
        """Annotate the intent with a refund; the intent status does not change."""
        self.refunds.append(refund)

        self.add_domain_event(PaymentRefunded(
            aggregate_id=self.id,
            reference=self.reference,
            refund_ref=refund.refund_ref,
            amount=refund.amount,
            currency=self.currency,
            total_refunded=self.total_refunded,
        ))
