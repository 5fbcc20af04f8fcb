"""Stripe gateway adapter (hosted Checkout Sessions)."""

import json
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog

from .....shared.exceptions.base import ValidationError
from ...domain.exceptions import SignatureError
from ...domain.value_objects import (
    CheckoutSession,
    GatewayError,
    PaymentRequest,
    PaymentVerification,
    RefundResult,
    StatusValue,
    WebhookEvent,
    WebhookEventKind,
)
from ..webhooks.signature_verifier import WebhookVerifier
from .base_provider import BaseGatewayAdapter

logger = structlog.get_logger(__name__)

STRIPE_API_VERSION = "2023-10-16"
SESSION_ID_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


def encode_form(data: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """Flatten nested dicts/lists into Stripe's bracketed form encoding."""
    pairs: List[Tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f"{name}[{index}]"
                if isinstance(item, dict):
                    pairs.extend(encode_form(item, item_name))
                else:
                    pairs.append((item_name, str(item)))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return pairs


class StripeAdapter(BaseGatewayAdapter):
    """Stripe adapter.

    Stripe already takes amounts in the currency's smallest unit, so amounts
    pass through unchanged in both directions.
    """

    default_base_url = "https://api.stripe.com"
    signature_header = "stripe-signature"

    _PAYMENT_INTENT_STATUSES = {
        "succeeded": StatusValue.COMPLETED,
        "processing": StatusValue.PENDING,
        "requires_payment_method": StatusValue.PENDING,
        "requires_confirmation": StatusValue.PENDING,
        "requires_action": StatusValue.PENDING,
        "requires_capture": StatusValue.PENDING,
        "canceled": StatusValue.CANCELLED,
    }

    _REFUND_STATUSES = {
        "succeeded": StatusValue.COMPLETED,
        "pending": StatusValue.PENDING,
        "requires_action": StatusValue.PENDING,
        "failed": StatusValue.FAILED,
        "canceled": StatusValue.CANCELLED,
    }

    # A declined card inside Checkout is not terminal: the buyer can retry in
    # the same session, so payment_intent.payment_failed stays OTHER and the
    # session's expiry is what finally fails the payment.
    _EVENT_KINDS = {
        "checkout.session.async_payment_succeeded": WebhookEventKind.PAYMENT_COMPLETED,
        "checkout.session.async_payment_failed": WebhookEventKind.PAYMENT_FAILED,
        "checkout.session.expired": WebhookEventKind.PAYMENT_FAILED,
        "payment_intent.succeeded": WebhookEventKind.PAYMENT_COMPLETED,
        "payment_intent.canceled": WebhookEventKind.PAYMENT_FAILED,
    }

    def __init__(self, *args: Any, verifier: Optional[WebhookVerifier] = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.verifier = verifier or WebhookVerifier(
            scheme="v1", tolerance_seconds=self.webhook_tolerance_seconds
        )

    @property
    def name(self) -> str:
        return "stripe"

    def _get_default_headers(self) -> Dict[str, str]:
        """Get Stripe-specific headers; bodies are form-encoded."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Stripe-Version": STRIPE_API_VERSION,
        }

    def _extract_error(self, body: Any) -> Tuple[Optional[str], Optional[str]]:
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            error = body["error"]
            return error.get("message"), error.get("decline_code") or error.get("code")
        return None, None

    def normalize_status(self, vendor_status: Optional[str]) -> StatusValue:
        return self._PAYMENT_INTENT_STATUSES.get(vendor_status or "", StatusValue.UNKNOWN)

    async def create_payment(self, request: PaymentRequest) -> Union[CheckoutSession, GatewayError]:
        """Create a Stripe Checkout Session."""
        metadata = request.vendor_metadata()
        params = {
            "mode": "payment",
            "success_url": self._with_session_placeholder(request.success_url),
            "cancel_url": request.cancel_url,
            "client_reference_id": request.reference,
            "customer_email": request.buyer_email,
            "line_items": [{
                "quantity": 1,
                "price_data": {
                    "currency": request.currency.lower(),
                    "unit_amount": request.amount,
                    "product_data": {"name": request.description or request.reference},
                },
            }],
            "metadata": metadata,
            # Copied onto the PaymentIntent so payment_intent.* webhooks carry it too
            "payment_intent_data": {"metadata": metadata},
        }

        response = await self._make_request(
            "POST",
            "/v1/checkout/sessions",
            data=dict(encode_form(params)),
            headers={"Idempotency-Key": f"checkout-{request.reference}"},
            idempotent=True,
        )
        if isinstance(response, GatewayError):
            return response

        session_id = response.get("id")
        redirect_url = response.get("url")
        if not session_id or not redirect_url:
            return self._malformed("checkout session without id or url", response)

        logger.info("Stripe checkout session created", reference=request.reference, session_id=session_id)
        return CheckoutSession(
            redirect_url=redirect_url,
            external_session_ref=session_id,
            external_payment_ref=self._object_id(response.get("payment_intent")),
        )

    async def verify_payment(self, external_ref: str) -> Union[PaymentVerification, GatewayError]:
        """Resolve a session (cs_) or payment intent (pi_) to its payment status."""
        if external_ref.startswith("cs_"):
            response = await self._make_request(
                "GET",
                f"/v1/checkout/sessions/{external_ref}",
                params=[("expand[]", "payment_intent")],
                idempotent=True,
            )
            if isinstance(response, GatewayError):
                return response
            return self._verification_from_session(response)

        if external_ref.startswith("pi_"):
            response = await self._make_request(
                "GET", f"/v1/payment_intents/{external_ref}", idempotent=True
            )
            if isinstance(response, GatewayError):
                return response
            return self._verification_from_payment_intent(response)

        return GatewayError.rejected(self.name, f"Unrecognized Stripe reference: {external_ref}")

    async def parse_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookEvent:
        """Verify a Stripe webhook and normalize it."""
        secret = self._require_secret()
        signature_valid = False
        if secret is not None:
            is_valid, reason = self.verifier.check(raw_body, signature_header, secret)
            if not is_valid:
                raise SignatureError(self.name, reason)
            signature_valid = True

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError("Webhook body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body is not a JSON object")

        event_type = payload.get("type", "")
        obj = (payload.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        session_ref = None
        payment_ref = None
        amount = None
        if obj.get("object") == "checkout.session":
            session_ref = obj.get("id")
            payment_ref = self._object_id(obj.get("payment_intent"))
            amount = obj.get("amount_total")
        elif obj.get("object") == "payment_intent":
            payment_ref = obj.get("id")
            amount = obj.get("amount_received")
        elif obj.get("object") == "charge":
            payment_ref = self._object_id(obj.get("payment_intent"))
            amount = obj.get("amount_captured")

        return WebhookEvent(
            gateway_name=self.name,
            event_type=event_type,
            kind=self._map_event_type(event_type, obj),
            payload=payload,
            signature_valid=signature_valid,
            event_id=payload.get("id"),
            reference=metadata.get("reference") or obj.get("client_reference_id"),
            external_session_ref=session_ref,
            external_payment_ref=payment_ref,
            amount=amount,
            currency=obj.get("currency"),
        )

    async def refund(
        self,
        external_payment_ref: str,
        amount: int,
        currency: str,
        idempotency_key: Optional[str] = None,
    ) -> Union[RefundResult, GatewayError]:
        """Refund part or all of a Stripe payment intent."""
        response = await self._make_request(
            "POST",
            "/v1/refunds",
            data=dict(encode_form({"payment_intent": external_payment_ref, "amount": amount})),
            headers={"Idempotency-Key": idempotency_key} if idempotency_key else None,
            idempotent=idempotency_key is not None,
        )
        if isinstance(response, GatewayError):
            return response

        refund_id = response.get("id")
        if not refund_id:
            return self._malformed("refund without id", response)
        refunded = response.get("amount", amount)
        if isinstance(refunded, bool) or not isinstance(refunded, int):
            return self._malformed("refund amount is not an integer", response)

        return RefundResult(
            refund_ref=refund_id,
            status=self._REFUND_STATUSES.get(response.get("status", ""), StatusValue.UNKNOWN),
            amount_refunded=refunded,
            raw_vendor_payload=response,
        )

    async def cancel_checkout(self, external_ref: str) -> Optional[GatewayError]:
        """Expire an open Checkout Session.

        Stripe refuses to expire a session that is already complete, which
        comes back as a rejected error.
        """
        if not external_ref.startswith("cs_"):
            return None

        response = await self._make_request(
            "POST", f"/v1/checkout/sessions/{external_ref}/expire", idempotent=True
        )
        if isinstance(response, GatewayError):
            return response

        logger.info("Stripe checkout session expired", session_id=external_ref)
        return None

    def _verification_from_session(self, session: Dict[str, Any]) -> PaymentVerification:
        payment_intent = session.get("payment_intent")
        if isinstance(payment_intent, dict):
            verification = self._verification_from_payment_intent(payment_intent)
            if session.get("status") == "expired" and verification.status is not StatusValue.COMPLETED:
                return PaymentVerification(
                    status=StatusValue.FAILED,
                    amount_received=0,
                    currency=verification.currency,
                    external_payment_ref=verification.external_payment_ref,
                    raw_vendor_payload=session,
                )
            return verification

        # No payment object yet: the buyer has not submitted the form
        if session.get("payment_status") == "paid":
            status = StatusValue.COMPLETED
        elif session.get("status") == "expired":
            status = StatusValue.FAILED
        elif session.get("status") in ("open", "complete"):
            status = StatusValue.PENDING
        else:
            status = StatusValue.UNKNOWN

        return PaymentVerification(
            status=status,
            amount_received=(session.get("amount_total") or 0) if status is StatusValue.COMPLETED else 0,
            currency=session.get("currency"),
            external_payment_ref=self._object_id(payment_intent),
            raw_vendor_payload=session,
        )

    def _verification_from_payment_intent(self, payment_intent: Dict[str, Any]) -> PaymentVerification:
        return PaymentVerification(
            status=self.normalize_status(payment_intent.get("status")),
            amount_received=int(payment_intent.get("amount_received") or 0),
            currency=payment_intent.get("currency"),
            external_payment_ref=payment_intent.get("id"),
            raw_vendor_payload=payment_intent,
        )

    def _map_event_type(self, event_type: str, obj: Dict[str, Any]) -> WebhookEventKind:
        """Map Stripe event types to the normalized taxonomy."""
        if event_type == "checkout.session.completed":
            # Delayed payment methods complete the session before the money arrives
            if obj.get("payment_status") == "paid":
                return WebhookEventKind.PAYMENT_COMPLETED
            return WebhookEventKind.OTHER
        return self._EVENT_KINDS.get(event_type, WebhookEventKind.OTHER)

    @staticmethod
    def _with_session_placeholder(success_url: str) -> str:
        if SESSION_ID_PLACEHOLDER in success_url:
            return success_url
        separator = "&" if "?" in success_url else "?"
        return f"{success_url}{separator}session_id={SESSION_ID_PLACEHOLDER}"

    @staticmethod
    def _object_id(value: Any) -> Optional[str]:
        """Stripe returns either an id or the expanded object."""
        if isinstance(value, dict):
            return value.get("id")
        return value or None
