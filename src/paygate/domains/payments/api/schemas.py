"""Payment API Pydantic schemas."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..domain.entities import PaymentIntent


class CheckoutRequest(BaseModel):
    """Request schema for starting a payment."""

    reference: str = Field(..., min_length=1, max_length=255, description="Caller's idempotency reference")
    amount: int = Field(..., gt=0, description="Amount in the currency's minor unit")
    currency: str = Field(..., min_length=3, max_length=3, description="ISO 4217 currency code")
    gateway: Optional[str] = Field(None, description="Gateway name; default gateway when omitted")
    description: str = ""
    success_url: str
    cancel_url: str
    buyer_email: Optional[str] = None
    buyer_name: Optional[str] = None
    buyer_phone: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if not v.isalpha():
            raise ValueError(f"Invalid currency code: {v}")
        return v.upper()


class CheckoutResponse(BaseModel):
    """Response schema for a started payment."""

    reference: str
    gateway: str
    status: str
    redirect_url: Optional[str] = None


class RefundSchema(BaseModel):
    refund_ref: str
    amount: int
    status: str
    created_at: datetime


class PaymentIntentResponse(BaseModel):
    """Stored state of a payment intent."""

    reference: str
    amount: int
    currency: str
    gateway: str
    status: str
    external_session_ref: Optional[str] = None
    external_payment_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    total_refunded: int = 0
    refunds: List[RefundSchema] = Field(default_factory=list)
    created_at: datetime
    last_transition_at: datetime

    @classmethod
    def from_entity(cls, intent: PaymentIntent) -> "PaymentIntentResponse":
        return cls(
            reference=intent.reference,
            amount=intent.amount,
            currency=intent.currency,
            gateway=intent.gateway_name,
            status=intent.status,
            external_session_ref=intent.external_session_ref,
            external_payment_ref=intent.external_payment_ref,
            failure_reason=intent.failure_reason,
            total_refunded=intent.total_refunded,
            refunds=[
                RefundSchema(
                    refund_ref=r.refund_ref,
                    amount=r.amount,
                    status=r.status,
                    created_at=r.created_at,
                )
                for r in intent.refunds
            ],
            created_at=intent.created_at,
            last_transition_at=intent.last_transition_at,
        )


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the vendor."""

    received: bool = True
    reference: Optional[str] = None
    status: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error response schema."""

    error_code: str
    message: str
