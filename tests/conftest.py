"""
Shared test fixtures and configuration for the paygate test suite.
"""

import json
from typing import Callable, List, Optional

import httpx
import pytest

from paygate.domains.payments.application.orchestrator import PaymentOrchestrator
from paygate.domains.payments.application.registry import GatewayRegistry
from paygate.domains.payments.domain.exceptions import SignatureError
from paygate.domains.payments.domain.services import GatewayAdapter
from paygate.domains.payments.domain.value_objects import (
    CheckoutSession,
    PaymentVerification,
    RefundResult,
    StatusValue,
    WebhookEvent,
    WebhookEventKind,
)
from paygate.domains.payments.infrastructure.providers.paypal_provider import PayPalAdapter
from paygate.domains.payments.infrastructure.providers.stripe_provider import StripeAdapter
from paygate.domains.payments.infrastructure.repositories import InMemoryPaymentIntentRepository
from paygate.infrastructure.config.settings import GatewayConfig
from paygate.infrastructure.messaging.in_memory_bus import InMemoryEventBus

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
PAYPAL_WEBHOOK_ID = "WH-TEST-0001"
VALID_SIGNATURE = "good-signature"


class FakeGateway(GatewayAdapter):
    """In-process gateway whose answers are set by the test.

    Webhook bodies are JSON objects with ``kind``, ``reference`` and
    optional ``amount``/``currency``; the only accepted signature is
    ``VALID_SIGNATURE``.
    """

    signature_header = "x-fake-signature"

    def __init__(self, name: str = "fake") -> None:
        self._name = name
        self.create_result = None
        self.verification = PaymentVerification(status=StatusValue.PENDING, amount_received=0, currency="USD")
        self.refund_result = None
        self.cancel_result = None
        self.requests = []
        self.verify_calls: List[str] = []
        self.refund_calls = []
        self.cancel_calls: List[str] = []

    @property
    def name(self) -> str:
        return self._name

    async def create_payment(self, request):
        self.requests.append(request)
        if self.create_result is not None:
            return self.create_result
        return CheckoutSession(
            redirect_url=f"https://checkout.example/{request.reference}",
            external_session_ref=f"sess_{request.reference}",
        )

    async def verify_payment(self, external_ref):
        self.verify_calls.append(external_ref)
        return self.verification

    async def parse_webhook(self, raw_body, signature_header):
        if signature_header != VALID_SIGNATURE:
            raise SignatureError(self.name, "Signature mismatch")
        payload = json.loads(raw_body)
        return WebhookEvent(
            gateway_name=self.name,
            event_type=payload.get("type", "fake.event"),
            kind=WebhookEventKind(payload.get("kind", "other")),
            payload=payload,
            signature_valid=True,
            event_id=payload.get("id"),
            reference=payload.get("reference"),
            external_session_ref=payload.get("session"),
            external_payment_ref=payload.get("payment"),
            amount=payload.get("amount"),
            currency=payload.get("currency"),
        )

    async def refund(self, external_payment_ref, amount, currency, idempotency_key=None):
        self.refund_calls.append((external_payment_ref, amount, currency, idempotency_key))
        if self.refund_result is not None:
            return self.refund_result
        return RefundResult(
            refund_ref=f"re_{len(self.refund_calls)}",
            status=StatusValue.COMPLETED,
            amount_refunded=amount,
        )

    async def cancel_checkout(self, external_ref):
        self.cancel_calls.append(external_ref)
        return self.cancel_result

    def normalize_status(self, vendor_status: Optional[str]) -> StatusValue:
        try:
            return StatusValue(vendor_status)
        except ValueError:
            return StatusValue.UNKNOWN


def gateway_config(enabled: bool = True, **overrides) -> GatewayConfig:
    """Factory for a gateway configuration with test credentials."""
    data = {
        "enabled": enabled,
        "mode": "test",
        "credentials": {"test": {"api_key": "sk_test_123"}},
    }
    data.update(overrides)
    return GatewayConfig(**data)


def webhook_body(**fields) -> bytes:
    return json.dumps(fields).encode()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def registry(fake_gateway) -> GatewayRegistry:
    registry = GatewayRegistry({"fake": gateway_config()})
    registry.register("fake", fake_gateway)
    registry.freeze()
    return registry


@pytest.fixture
def repository() -> InMemoryPaymentIntentRepository:
    return InMemoryPaymentIntentRepository()


class RecordingEventBus(InMemoryEventBus):
    """In-memory bus that also keeps every published event for assertions."""

    def __init__(self) -> None:
        super().__init__()
        self.published = []

    async def publish(self, event) -> None:
        self.published.append(event)
        await super().publish(event)


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def orchestrator(registry, repository, event_bus) -> PaymentOrchestrator:
    return PaymentOrchestrator(registry, repository, event_bus, default_gateway="fake")


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """HTTP client answering every request through ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def make_stripe():
    """Build a StripeAdapter whose HTTP calls go to ``handler``."""
    def factory(handler, **kwargs) -> StripeAdapter:
        options = {
            "api_key": "sk_test_123",
            "webhook_secret": STRIPE_WEBHOOK_SECRET,
            "retry_backoff_seconds": 0,
            "http_client": mock_client(handler),
        }
        options.update(kwargs)
        return StripeAdapter(**options)
    return factory


@pytest.fixture
def make_paypal():
    """Build a PayPalAdapter whose HTTP calls go to ``handler``."""
    def factory(handler, **kwargs) -> PayPalAdapter:
        options = {
            "api_key": "A21AAtest",
            "webhook_secret": PAYPAL_WEBHOOK_ID,
            "retry_backoff_seconds": 0,
            "http_client": mock_client(handler),
        }
        options.update(kwargs)
        return PayPalAdapter(**options)
    return factory


# Custom pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "api: mark test as an API endpoint test")
