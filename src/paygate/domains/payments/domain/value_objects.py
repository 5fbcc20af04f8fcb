"""Payment domain value objects."""

from enum import Enum
from typing import Any, Dict, Optional

from ....shared.kernel.value_object import ValueObject


class StatusValue(str, Enum):
    """Status vocabulary shared by every gateway.

    Adapters map their vendor's native statuses onto these values; anything
    they do not recognise becomes ``UNKNOWN``.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class WebhookEventKind(str, Enum):
    """Normalized webhook taxonomy seen by the orchestrator."""

    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    OTHER = "other"


class GatewayErrorKind(str, Enum):
    UNAVAILABLE = "unavailable"  # network, timeout, vendor 5xx: retry later
    REJECTED = "rejected"  # vendor refused the request: terminal for this attempt


class GatewayError(ValueObject):
    """Failure returned (not raised) by a gateway adapter."""

    def __init__(
        self,
        kind: GatewayErrorKind,
        message: str,
        gateway_name: str,
        status_code: Optional[int] = None,
        vendor_code: Optional[str] = None,
        raw_response: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.kind = kind
        self.message = message
        self.gateway_name = gateway_name
        self.status_code = status_code
        self.vendor_code = vendor_code
        self.raw_response = raw_response or {}

    @property
    def retryable(self) -> bool:
        return self.kind is GatewayErrorKind.UNAVAILABLE

    @classmethod
    def unavailable(cls, gateway_name: str, message: str, **kwargs: Any) -> "GatewayError":
        return cls(GatewayErrorKind.UNAVAILABLE, message, gateway_name, **kwargs)

    @classmethod
    def rejected(cls, gateway_name: str, message: str, **kwargs: Any) -> "GatewayError":
        return cls(GatewayErrorKind.REJECTED, message, gateway_name, **kwargs)


class PaymentRequest(ValueObject):
    """Everything an adapter needs to open a hosted checkout."""

    def __init__(
        self,
        reference: str,
        amount: int,
        currency: str,
        description: str,
        success_url: str,
        cancel_url: str,
        buyer_email: Optional[str] = None,
        buyer_name: Optional[str] = None,
        buyer_phone: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        self.reference = reference
        self.amount = amount
        self.currency = currency
        self.description = description
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.buyer_email = buyer_email
        self.buyer_name = buyer_name
        self.buyer_phone = buyer_phone
        self.metadata = metadata or {}

    def vendor_metadata(self) -> Dict[str, str]:
        """Metadata bag the vendor should echo back on webhook delivery."""
        bag = {k: str(v) for k, v in self.metadata.items()}
        bag["reference"] = self.reference
        if self.buyer_name:
            bag["buyer_name"] = self.buyer_name
        if self.buyer_phone:
            bag["buyer_phone"] = self.buyer_phone
        return bag


class CheckoutSession(ValueObject):
    """Successful result of ``create_payment``."""

    def __init__(
        self,
        redirect_url: str,
        external_session_ref: str,
        external_payment_ref: Optional[str] = None,
    ) -> None:
        self.redirect_url = redirect_url
        self.external_session_ref = external_session_ref
        self.external_payment_ref = external_payment_ref


class PaymentVerification(ValueObject):
    """Successful result of ``verify_payment``, amounts in minor units."""

    def __init__(
        self,
        status: StatusValue,
        amount_received: int,
        currency: Optional[str],
        external_payment_ref: Optional[str] = None,
        raw_vendor_payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.status = status
        self.amount_received = amount_received
        self.currency = currency.upper() if currency else None
        self.external_payment_ref = external_payment_ref
        self.raw_vendor_payload = raw_vendor_payload or {}


class RefundResult(ValueObject):
    """Successful result of ``refund``."""

    def __init__(
        self,
        refund_ref: str,
        status: StatusValue,
        amount_refunded: int,
        raw_vendor_payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.refund_ref = refund_ref
        self.status = status
        self.amount_refunded = amount_refunded
        self.raw_vendor_payload = raw_vendor_payload or {}


class WebhookEvent(ValueObject):
    """A webhook notification whose signature has been checked.

    Only adapters build these, and only after verification succeeded (or the
    gateway is explicitly configured to accept unsigned deliveries, in which
    case ``signature_valid`` is False).
    """

    def __init__(
        self,
        gateway_name: str,
        event_type: str,
        kind: WebhookEventKind,
        payload: Dict[str, Any],
        signature_valid: bool,
        event_id: Optional[str] = None,
        reference: Optional[str] = None,
        external_session_ref: Optional[str] = None,
        external_payment_ref: Optional[str] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
    ) -> None:
        self.gateway_name = gateway_name
        self.event_type = event_type
        self.kind = kind
        self.payload = payload
        self.signature_valid = signature_valid
        self.event_id = event_id
        self.reference = reference
        self.external_session_ref = external_session_ref
        self.external_payment_ref = external_payment_ref
        self.amount = amount
        self.currency = currency.upper() if currency else None
