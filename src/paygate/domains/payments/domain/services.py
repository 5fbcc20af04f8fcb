"""Gateway adapter contract."""

from abc import ABC, abstractmethod
from typing import Mapping, Optional, Union

from .value_objects import (
    CheckoutSession,
    GatewayError,
    PaymentRequest,
    PaymentVerification,
    RefundResult,
    StatusValue,
    WebhookEvent,
)


class GatewayAdapter(ABC):
    """Common payment capability set, one implementation per processor.

    ``create_payment``, ``verify_payment`` and ``refund`` return a
    ``GatewayError`` instead of raising when the vendor fails.
    ``parse_webhook`` raises ``SignatureError`` for unverifiable deliveries.
    No vendor field name crosses this boundary unmapped.
    """

    # Request header carrying the vendor's webhook signature.
    signature_header: str = ""

    @property
    @abstractmethod
    def name(self) -> str:
        """Gateway name."""
        pass

    @abstractmethod
    async def create_payment(self, request: PaymentRequest) -> Union[CheckoutSession, GatewayError]:
        """Open a hosted checkout for the request."""
        pass

    @abstractmethod
    async def verify_payment(self, external_ref: str) -> Union[PaymentVerification, GatewayError]:
        """Report the normalized status behind a session or payment reference."""
        pass

    @abstractmethod
    async def parse_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookEvent:
        """Verify and normalize an inbound webhook delivery."""
        pass

    @abstractmethod
    async def refund(
        self,
        external_payment_ref: str,
        amount: int,
        currency: str,
        idempotency_key: Optional[str] = None,
    ) -> Union[RefundResult, GatewayError]:
        """Refund ``amount`` minor units of a captured payment.

        Repeating a call with the same ``idempotency_key`` must not refund twice.
        """
        pass

    @abstractmethod
    def normalize_status(self, vendor_status: Optional[str]) -> StatusValue:
        """Map a vendor status string onto the shared vocabulary."""
        pass

    async def cancel_checkout(self, external_ref: str) -> Optional[GatewayError]:
        """Close an unpaid checkout so it can no longer be paid.

        Vendors whose checkout only moves money on an explicit capture need
        nothing here. A rejected error means the checkout was already settled.
        """
        return None

    def extract_signature(self, headers: Mapping[str, str]) -> Optional[str]:
        """Pull this vendor's signature out of the inbound request headers."""
        return headers.get(self.signature_header)

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""
        return None
