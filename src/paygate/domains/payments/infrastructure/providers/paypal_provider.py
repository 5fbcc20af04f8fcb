"""PayPal gateway adapter (Orders v2)."""

import json
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import structlog

from .....infrastructure.config.settings import GatewayConfig
from .....shared.exceptions.base import ValidationError
from .....shared.utils.money import format_major, from_major_units
from ...domain.exceptions import GatewayUnavailableError, SignatureError
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
from .base_provider import BaseGatewayAdapter

logger = structlog.get_logger(__name__)

TRANSMISSION_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-transmission-sig",
    "paypal-cert-url",
    "paypal-auth-algo",
)


class PayPalAdapter(BaseGatewayAdapter):
    """PayPal adapter.

    PayPal amounts are decimal strings in major units ("20.00"); they are
    converted to and from minor units through ``Decimal``. The order id is the
    session reference, the capture id the payment reference.

    Webhooks are verified by PayPal's ``verify-webhook-signature`` endpoint
    using the configured webhook id as the secret.
    """

    default_base_url = "https://api-m.sandbox.paypal.com"
    default_base_urls = {
        "test": "https://api-m.sandbox.paypal.com",
        "live": "https://api-m.paypal.com",
    }

    _STATUSES = {
        "CREATED": StatusValue.PENDING,
        "SAVED": StatusValue.PENDING,
        "APPROVED": StatusValue.PENDING,
        "PAYER_ACTION_REQUIRED": StatusValue.PENDING,
        "PENDING": StatusValue.PENDING,
        "COMPLETED": StatusValue.COMPLETED,
        "PARTIALLY_REFUNDED": StatusValue.COMPLETED,
        "REFUNDED": StatusValue.COMPLETED,
        "DECLINED": StatusValue.FAILED,
        "FAILED": StatusValue.FAILED,
        "VOIDED": StatusValue.CANCELLED,
        "CANCELLED": StatusValue.CANCELLED,
    }

    _EVENT_KINDS = {
        "PAYMENT.CAPTURE.COMPLETED": WebhookEventKind.PAYMENT_COMPLETED,
        "PAYMENT.CAPTURE.DECLINED": WebhookEventKind.PAYMENT_FAILED,
        "PAYMENT.CAPTURE.DENIED": WebhookEventKind.PAYMENT_FAILED,
        "CHECKOUT.ORDER.VOIDED": WebhookEventKind.PAYMENT_FAILED,
    }

    @classmethod
    def from_config(cls, config: GatewayConfig, **kwargs: Any) -> "PayPalAdapter":
        adapter = super().from_config(config, **kwargs)
        if not config.active_credentials.base_url:
            adapter.base_url = cls.default_base_urls[config.mode]
        return adapter

    @property
    def name(self) -> str:
        return "paypal"

    def _extract_error(self, body: Any) -> Tuple[Optional[str], Optional[str]]:
        if not isinstance(body, dict):
            return None, None
        details = body.get("details") or []
        issue = details[0].get("issue") if details and isinstance(details[0], dict) else None
        return body.get("message"), issue or body.get("name")

    def normalize_status(self, vendor_status: Optional[str]) -> StatusValue:
        return self._STATUSES.get((vendor_status or "").upper(), StatusValue.UNKNOWN)

    def extract_signature(self, headers: Mapping[str, str]) -> Optional[str]:
        """Fold PayPal's transmission headers into one signature string."""
        values = [(name, headers.get(name)) for name in TRANSMISSION_HEADERS]
        if not all(value for _, value in values):
            return None
        return "|".join(f"{name}={value}" for name, value in values)

    async def create_payment(self, request: PaymentRequest) -> Union[CheckoutSession, GatewayError]:
        """Create a PayPal order awaiting buyer approval."""
        experience = {
            "return_url": request.success_url,
            "cancel_url": request.cancel_url,
            "user_action": "PAY_NOW",
        }
        paypal_source: Dict[str, Any] = {"experience_context": experience}
        if request.buyer_email:
            paypal_source["email_address"] = request.buyer_email

        data = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": request.reference,
                # custom_id is the only free-form field echoed back on captures
                "custom_id": request.reference,
                "description": (request.description or request.reference)[:127],
                "amount": {
                    "currency_code": request.currency.upper(),
                    "value": format_major(request.amount, request.currency),
                },
            }],
            "payment_source": {"paypal": paypal_source},
        }

        response = await self._make_request(
            "POST",
            "/v2/checkout/orders",
            json=data,
            headers={"PayPal-Request-Id": f"create-{request.reference}"},
            idempotent=True,
        )
        if isinstance(response, GatewayError):
            return response

        order_id = response.get("id")
        redirect_url = self._link(response, "payer-action") or self._link(response, "approve")
        if not order_id or not redirect_url:
            return self._malformed("order without id or approval link", response)

        logger.info("PayPal order created", reference=request.reference, order_id=order_id)
        return CheckoutSession(redirect_url=redirect_url, external_session_ref=order_id)

    async def verify_payment(self, external_ref: str) -> Union[PaymentVerification, GatewayError]:
        """Report an order's status, capturing it if the buyer approved it."""
        order = await self._make_request("GET", f"/v2/checkout/orders/{external_ref}", idempotent=True)
        if isinstance(order, GatewayError):
            return order

        if order.get("status") == "APPROVED":
            order = await self._make_request(
                "POST",
                f"/v2/checkout/orders/{external_ref}/capture",
                json={},
                headers={"PayPal-Request-Id": f"capture-{external_ref}"},
                idempotent=True,
            )
            if isinstance(order, GatewayError):
                return order

        try:
            return self._verification_from_order(order)
        except ValidationError as e:
            return self._malformed(f"order amount: {e.message}", order)

    async def parse_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookEvent:
        """Verify a PayPal webhook with PayPal and normalize it."""
        webhook_id = self._require_secret()

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError("Webhook body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body is not a JSON object")

        signature_valid = False
        if webhook_id is not None:
            await self._verify_remote(payload, signature_header, webhook_id)
            signature_valid = True

        event_type = payload.get("event_type", "")
        resource = payload.get("resource") or {}

        session_ref = None
        payment_ref = None
        reference = resource.get("custom_id")
        amount = None
        currency = None

        if payload.get("resource_type") == "capture" or event_type.startswith("PAYMENT.CAPTURE."):
            payment_ref = resource.get("id")
            session_ref = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
            amount, currency = self._amount_from(resource.get("amount"))
        elif event_type.startswith("CHECKOUT.ORDER."):
            session_ref = resource.get("id")
            units = resource.get("purchase_units") or [{}]
            reference = reference or units[0].get("custom_id") or units[0].get("reference_id")

        return WebhookEvent(
            gateway_name=self.name,
            event_type=event_type,
            kind=self._EVENT_KINDS.get(event_type, WebhookEventKind.OTHER),
            payload=payload,
            signature_valid=signature_valid,
            event_id=payload.get("id"),
            reference=reference,
            external_session_ref=session_ref,
            external_payment_ref=payment_ref,
            amount=amount,
            currency=currency,
        )

    async def refund(
        self,
        external_payment_ref: str,
        amount: int,
        currency: str,
        idempotency_key: Optional[str] = None,
    ) -> Union[RefundResult, GatewayError]:
        """Refund part or all of a capture."""
        response = await self._make_request(
            "POST",
            f"/v2/payments/captures/{external_payment_ref}/refund",
            json={"amount": {"value": format_major(amount, currency), "currency_code": currency.upper()}},
            headers={"PayPal-Request-Id": idempotency_key} if idempotency_key else None,
            idempotent=idempotency_key is not None,
        )
        if isinstance(response, GatewayError):
            return response

        refund_id = response.get("id")
        if not refund_id:
            return self._malformed("refund without id", response)

        try:
            refunded, _ = self._amount_from(response.get("amount"))
        except ValidationError as e:
            return self._malformed(f"refund amount: {e.message}", response)
        return RefundResult(
            refund_ref=refund_id,
            status=self.normalize_status(response.get("status")),
            amount_refunded=amount if refunded is None else refunded,
            raw_vendor_payload=response,
        )

    async def _verify_remote(self, payload: Dict[str, Any], signature_header: Optional[str], webhook_id: str) -> None:
        if not signature_header:
            raise SignatureError(self.name, "Missing transmission headers")

        fields = {}
        for part in signature_header.split("|"):
            key, _, value = part.partition("=")
            fields[key] = value
        if not all(fields.get(name) for name in TRANSMISSION_HEADERS):
            raise SignatureError(self.name, "Incomplete transmission headers")

        response = await self._make_request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json={
                "auth_algo": fields["paypal-auth-algo"],
                "cert_url": fields["paypal-cert-url"],
                "transmission_id": fields["paypal-transmission-id"],
                "transmission_sig": fields["paypal-transmission-sig"],
                "transmission_time": fields["paypal-transmission-time"],
                "webhook_id": webhook_id,
                "webhook_event": payload,
            },
            idempotent=True,
        )
        if isinstance(response, GatewayError):
            if response.retryable:
                raise GatewayUnavailableError(response)
            raise SignatureError(self.name, f"Verification request rejected: {response.message}")

        if response.get("verification_status") != "SUCCESS":
            raise SignatureError(self.name, "Signature mismatch")

    def _verification_from_order(self, order: Dict[str, Any]) -> PaymentVerification:
        units = order.get("purchase_units") or [{}]
        captures = ((units[0].get("payments") or {}).get("captures")) or []

        if captures:
            capture = captures[0]
            amount, currency = self._amount_from(capture.get("amount"))
            status = self.normalize_status(capture.get("status"))
            return PaymentVerification(
                status=status,
                amount_received=(amount or 0) if status is StatusValue.COMPLETED else 0,
                currency=currency,
                external_payment_ref=capture.get("id"),
                raw_vendor_payload=order,
            )

        _, currency = self._amount_from(units[0].get("amount"))
        return PaymentVerification(
            status=self.normalize_status(order.get("status")),
            amount_received=0,
            currency=currency,
            raw_vendor_payload=order,
        )

    @staticmethod
    def _amount_from(amount: Optional[Dict[str, Any]]) -> Tuple[Optional[int], Optional[str]]:
        if not amount or "value" not in amount or "currency_code" not in amount:
            return None, None
        currency = amount["currency_code"]
        return from_major_units(amount["value"], currency), currency

    @staticmethod
    def _link(response: Dict[str, Any], rel: str) -> Optional[str]:
        for link in response.get("links") or []:
            if link.get("rel") == rel:
                return link.get("href")
        return None
