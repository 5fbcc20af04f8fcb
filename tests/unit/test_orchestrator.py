"""Unit tests for the payment orchestrator."""

import asyncio

import pytest

from paygate.domains.payments.application.orchestrator import PaymentOrchestrator
from paygate.domains.payments.application.registry import GatewayRegistry
from paygate.domains.payments.domain.entities import IntentStatus
from paygate.domains.payments.domain.exceptions import (
    ConcurrentUpdateError,
    DuplicateReferenceError,
    GatewayDisabledError,
    GatewayRejectedError,
    GatewayUnavailableError,
    PaymentIntentNotFoundError,
    RefundNotAllowedError,
    SignatureError,
    UnknownGatewayError,
)
from paygate.domains.payments.domain.repositories import PaymentIntentRepository
from paygate.domains.payments.domain.value_objects import (
    GatewayError,
    PaymentVerification,
    StatusValue,
)
from paygate.domains.payments.infrastructure.repositories import (
    InMemoryPaymentIntentRepository,
    SqlAlchemyPaymentIntentRepository,
)
from paygate.infrastructure.persistence.database import DatabaseManager
from paygate.shared.events.event_bus import EventHandler
from tests.conftest import VALID_SIGNATURE, gateway_config, webhook_body


def published(event_bus, event_type):
    return [e for e in event_bus.published if e.event_type == event_type]


async def start(orchestrator, reference="order-1", amount=2000, currency="USD", **kwargs):
    return await orchestrator.start_payment(
        reference=reference,
        amount=amount,
        currency=currency,
        success_url="https://shop.example/payment/success/fake",
        cancel_url="https://shop.example/payment/cancel/fake",
        **kwargs,
    )


def completed(amount=2000, currency="USD", payment_ref="pay_1"):
    return PaymentVerification(
        status=StatusValue.COMPLETED,
        amount_received=amount,
        currency=currency,
        external_payment_ref=payment_ref,
    )


class TestStartPayment:
    """Test cases for starting payments."""

    @pytest.mark.asyncio
    async def test_start_payment_moves_to_pending(self, orchestrator, fake_gateway, event_bus):
        intent = await start(orchestrator, description="Pro plan", buyer_name="Sam Buyer")

        assert intent.status == IntentStatus.PENDING
        assert intent.redirect_url == "https://checkout.example/order-1"
        assert intent.external_session_ref == "sess_order-1"
        assert intent.gateway_name == "fake"
        assert fake_gateway.requests[0].buyer_name == "Sam Buyer"
        assert [e.event_type for e in event_bus.published] == ["PaymentIntentCreated", "PaymentIntentPending"]

    @pytest.mark.asyncio
    async def test_create_then_verify_is_pending(self, orchestrator):
        await start(orchestrator)

        intent = await orchestrator.verify_payment("order-1")

        assert intent.status == IntentStatus.PENDING

    @pytest.mark.asyncio
    async def test_same_reference_and_parameters_returns_existing_checkout(self, orchestrator, fake_gateway):
        first = await start(orchestrator)
        second = await start(orchestrator)

        assert second.id == first.id
        assert second.redirect_url == first.redirect_url
        assert len(fake_gateway.requests) == 1

    @pytest.mark.asyncio
    async def test_reused_reference_with_other_amount_fails(self, orchestrator):
        await start(orchestrator)

        with pytest.raises(DuplicateReferenceError):
            await start(orchestrator, amount=2500)

    @pytest.mark.asyncio
    async def test_retryable_create_error_keeps_intent_created(self, orchestrator, fake_gateway, repository):
        fake_gateway.create_result = GatewayError.unavailable("fake", "Request timed out")

        with pytest.raises(GatewayUnavailableError) as exc_info:
            await start(orchestrator)

        assert exc_info.value.retryable
        intent = await repository.find_by_reference("order-1")
        assert intent.status == IntentStatus.CREATED

        fake_gateway.create_result = None
        intent = await start(orchestrator)
        assert intent.status == IntentStatus.PENDING
        assert len(fake_gateway.requests) == 2

    @pytest.mark.asyncio
    async def test_terminal_create_error_fails_intent(self, orchestrator, fake_gateway, repository, event_bus):
        fake_gateway.create_result = GatewayError.rejected("fake", "Currency not supported", vendor_code="currency")

        with pytest.raises(GatewayRejectedError) as exc_info:
            await start(orchestrator)

        assert not exc_info.value.retryable
        intent = await repository.find_by_reference("order-1")
        assert intent.status == IntentStatus.FAILED
        assert intent.failure_reason == "Currency not supported"
        assert len(published(event_bus, "PaymentFailed")) == 1

    @pytest.mark.asyncio
    async def test_unknown_gateway(self, orchestrator):
        with pytest.raises(UnknownGatewayError):
            await start(orchestrator, gateway_name="unknown-gateway")

    @pytest.mark.asyncio
    async def test_disabled_gateway(self, fake_gateway, repository, event_bus):
        registry = GatewayRegistry({"fake": gateway_config(enabled=False)})
        registry.register("fake", fake_gateway)
        orchestrator = PaymentOrchestrator(registry, repository, event_bus, default_gateway="fake")

        with pytest.raises(GatewayDisabledError):
            await start(orchestrator)


class TestCompletion:
    """Test cases for return verification and webhooks."""

    @pytest.mark.asyncio
    async def test_completed_scenario_2000_usd(self, orchestrator, fake_gateway, event_bus):
        pending = await start(orchestrator, amount=2000, currency="USD")
        assert pending.redirect_url
        fake_gateway.verification = completed(amount=2000)

        intent = await orchestrator.confirm_return("fake", pending.external_session_ref)

        assert intent.status == IntentStatus.COMPLETED
        assert intent.amount == 2000
        assert intent.external_payment_ref == "pay_1"
        assert fake_gateway.verify_calls == ["sess_order-1"]
        assert len(published(event_bus, "PaymentCompleted")) == 1

    @pytest.mark.asyncio
    async def test_return_for_unknown_session(self, orchestrator):
        with pytest.raises(PaymentIntentNotFoundError):
            await orchestrator.confirm_return("fake", "sess_missing")

    @pytest.mark.asyncio
    async def test_return_vendor_outage_is_retryable(self, orchestrator, fake_gateway, repository):
        await start(orchestrator)
        fake_gateway.verification = GatewayError.unavailable("fake", "Gateway unreachable")

        with pytest.raises(GatewayUnavailableError):
            await orchestrator.confirm_return("fake", "sess_order-1")

        assert (await repository.find_by_reference("order-1")).status == IntentStatus.PENDING

    @pytest.mark.asyncio
    async def test_duplicate_webhook_is_a_no_op(self, orchestrator, repository, event_bus):
        await start(orchestrator)
        body = webhook_body(kind="payment_completed", reference="order-1", amount=2000, currency="usd")

        first = await orchestrator.handle_webhook("fake", body, VALID_SIGNATURE)
        stored = await repository.find_by_reference("order-1")
        second = await orchestrator.handle_webhook("fake", body, VALID_SIGNATURE)

        assert first.status == second.status == IntentStatus.COMPLETED
        assert second.last_transition_at == stored.last_transition_at
        assert len(published(event_bus, "PaymentCompleted")) == 1

    @pytest.mark.asyncio
    async def test_return_and_webhook_race_complete_once(self, orchestrator, fake_gateway, event_bus):
        await start(orchestrator)
        fake_gateway.verification = completed()
        body = webhook_body(kind="payment_completed", session="sess_order-1", payment="pay_1", amount=2000)

        from_return, from_webhook = await asyncio.gather(
            orchestrator.confirm_return("fake", "sess_order-1"),
            orchestrator.handle_webhook("fake", body, VALID_SIGNATURE),
        )

        assert from_return.status == IntentStatus.COMPLETED
        assert from_webhook.status == IntentStatus.COMPLETED
        assert len(published(event_bus, "PaymentCompleted")) == 1

    @pytest.mark.asyncio
    async def test_entitlement_handler_runs_exactly_once(self, orchestrator, fake_gateway, event_bus):
        granted = []

        class GrantEntitlement(EventHandler):
            async def handle(self, event):
                granted.append(event.reference)

        event_bus.subscribe("PaymentCompleted", GrantEntitlement())
        await start(orchestrator)
        fake_gateway.verification = completed()
        body = webhook_body(kind="payment_completed", reference="order-1")

        await asyncio.gather(
            orchestrator.confirm_return("fake", "sess_order-1"),
            orchestrator.confirm_return("fake", "sess_order-1"),
            orchestrator.handle_webhook("fake", body, VALID_SIGNATURE),
        )

        assert granted == ["order-1"]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_undo_completion(self, orchestrator, repository, event_bus):
        class BrokenHandler(EventHandler):
            async def handle(self, event):
                raise RuntimeError("entitlement service down")

        event_bus.subscribe("PaymentCompleted", BrokenHandler())
        await start(orchestrator)

        intent = await orchestrator.handle_webhook(
            "fake", webhook_body(kind="payment_completed", reference="order-1"), VALID_SIGNATURE
        )

        assert intent.status == IntentStatus.COMPLETED
        assert (await repository.find_by_reference("order-1")).status == IntentStatus.COMPLETED
        assert len(event_bus.get_dead_letter_queue()) == 1

    @pytest.mark.asyncio
    async def test_completion_after_failure_is_left_failed(self, orchestrator, event_bus):
        await start(orchestrator)
        await orchestrator.handle_webhook(
            "fake", webhook_body(kind="payment_failed", reference="order-1"), VALID_SIGNATURE
        )

        intent = await orchestrator.handle_webhook(
            "fake", webhook_body(kind="payment_completed", reference="order-1"), VALID_SIGNATURE
        )

        assert intent.status == IntentStatus.FAILED
        assert intent.failure_reason == "Webhook fake.event"
        assert published(event_bus, "PaymentCompleted") == []

    @pytest.mark.asyncio
    async def test_amount_mismatch_leaves_intent_pending(self, orchestrator, fake_gateway, event_bus):
        await start(orchestrator, amount=2000)
        fake_gateway.verification = completed(amount=1)

        intent = await orchestrator.confirm_return("fake", "sess_order-1")

        assert intent.status == IntentStatus.PENDING
        assert published(event_bus, "PaymentCompleted") == []

    @pytest.mark.asyncio
    async def test_currency_mismatch_leaves_intent_pending(self, orchestrator):
        await start(orchestrator, amount=2000, currency="USD")

        intent = await orchestrator.handle_webhook(
            "fake",
            webhook_body(kind="payment_completed", reference="order-1", amount=2000, currency="EUR"),
            VALID_SIGNATURE,
        )

        assert intent.status == IntentStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_vendor_status_changes_nothing(self, orchestrator, fake_gateway):
        await start(orchestrator)
        fake_gateway.verification = PaymentVerification(
            status=StatusValue.UNKNOWN, amount_received=0, currency="USD"
        )

        intent = await orchestrator.confirm_return("fake", "sess_order-1")

        assert intent.status == IntentStatus.PENDING

    @pytest.mark.asyncio
    async def test_bad_signature_mutates_nothing(self, orchestrator, repository, event_bus):
        await start(orchestrator)
        before = len(event_bus.published)

        with pytest.raises(SignatureError):
            await orchestrator.handle_webhook(
                "fake", webhook_body(kind="payment_completed", reference="order-1"), "forged"
            )

        assert (await repository.find_by_reference("order-1")).status == IntentStatus.PENDING
        assert len(event_bus.published) == before

    @pytest.mark.asyncio
    async def test_irrelevant_and_unmatched_webhooks_are_acknowledged(self, orchestrator):
        await start(orchestrator)

        assert await orchestrator.handle_webhook(
            "fake", webhook_body(kind="other", reference="order-1"), VALID_SIGNATURE
        ) is None
        assert await orchestrator.handle_webhook(
            "fake", webhook_body(kind="payment_completed", reference="someone-else"), VALID_SIGNATURE
        ) is None


class TestCancelAndRefund:
    """Test cases for cancellation and refunds."""

    @pytest.mark.asyncio
    async def test_cancel_pending_payment(self, orchestrator, fake_gateway, event_bus):
        await start(orchestrator)

        intent = await orchestrator.cancel_payment("order-1")

        assert intent.status == IntentStatus.CANCELLED
        assert len(published(event_bus, "PaymentCancelled")) == 1
        assert fake_gateway.verify_calls == ["sess_order-1"]
        assert fake_gateway.cancel_calls == ["sess_order-1"]

    @pytest.mark.asyncio
    async def test_cancel_of_paid_checkout_completes(self, orchestrator, fake_gateway, event_bus):
        await start(orchestrator)
        fake_gateway.verification = completed()

        intent = await orchestrator.cancel_payment("order-1")

        assert intent.status == IntentStatus.COMPLETED
        assert len(published(event_bus, "PaymentCompleted")) == 1
        assert published(event_bus, "PaymentCancelled") == []
        assert fake_gateway.cancel_calls == []

    @pytest.mark.asyncio
    async def test_checkout_paid_while_closing_completes(self, orchestrator, fake_gateway, event_bus):
        await start(orchestrator)
        answers = [fake_gateway.verification, completed()]

        async def verify(external_ref):
            fake_gateway.verify_calls.append(external_ref)
            return answers.pop(0)

        fake_gateway.verify_payment = verify
        fake_gateway.cancel_result = GatewayError.rejected("fake", "Session is already complete")

        intent = await orchestrator.cancel_payment("order-1")

        assert intent.status == IntentStatus.COMPLETED
        assert fake_gateway.verify_calls == ["sess_order-1", "sess_order-1"]
        assert published(event_bus, "PaymentCancelled") == []

    @pytest.mark.asyncio
    async def test_paid_webhook_after_cancel_cannot_reopen(self, orchestrator, fake_gateway, event_bus):
        await start(orchestrator)
        await orchestrator.cancel_payment("order-1")

        intent = await orchestrator.handle_webhook(
            "fake", webhook_body(kind="payment_completed", reference="order-1", amount=2000), VALID_SIGNATURE
        )

        # The checkout was closed at the vendor before the intent was cancelled
        assert fake_gateway.cancel_calls == ["sess_order-1"]
        assert intent.status == IntentStatus.CANCELLED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stage", ["verify", "close"])
    async def test_cancel_while_vendor_unreachable(self, orchestrator, fake_gateway, repository, stage):
        await start(orchestrator)
        outage = GatewayError.unavailable("fake", "Request timed out")
        if stage == "verify":
            fake_gateway.verification = outage
        else:
            fake_gateway.cancel_result = outage

        with pytest.raises(GatewayUnavailableError):
            await orchestrator.cancel_payment("order-1")

        assert (await repository.find_by_reference("order-1")).status == IntentStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_ignored(self, orchestrator, fake_gateway):
        await start(orchestrator)
        fake_gateway.verification = completed()
        await orchestrator.confirm_return("fake", "sess_order-1")

        intent = await orchestrator.cancel_payment("order-1")

        assert intent.status == IntentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_unknown_reference(self, orchestrator):
        with pytest.raises(PaymentIntentNotFoundError):
            await orchestrator.cancel_payment("missing")

    @pytest.mark.asyncio
    async def test_partial_refunds_up_to_captured_amount(self, orchestrator, fake_gateway, repository):
        await start(orchestrator, amount=2000)
        fake_gateway.verification = completed()
        await orchestrator.confirm_return("fake", "sess_order-1")

        await orchestrator.refund("order-1", 1500)
        refund = await orchestrator.refund("order-1", 500)

        assert refund.amount == 500
        assert fake_gateway.refund_calls == [
            ("pay_1", 1500, "USD", "refund-order-1-1"),
            ("pay_1", 500, "USD", "refund-order-1-2"),
        ]
        with pytest.raises(RefundNotAllowedError):
            await orchestrator.refund("order-1", 1)

        intent = await repository.find_by_reference("order-1")
        assert intent.status == IntentStatus.COMPLETED
        assert intent.total_refunded == 2000

    @pytest.mark.asyncio
    async def test_refund_of_pending_payment_is_refused(self, orchestrator, fake_gateway):
        await start(orchestrator)

        with pytest.raises(RefundNotAllowedError):
            await orchestrator.refund("order-1", 100)
        assert fake_gateway.refund_calls == []

    @pytest.mark.asyncio
    async def test_refund_rejected_by_vendor_records_nothing(self, orchestrator, fake_gateway, repository):
        await start(orchestrator)
        fake_gateway.verification = completed()
        await orchestrator.confirm_return("fake", "sess_order-1")
        fake_gateway.refund_result = GatewayError.rejected("fake", "Charge already refunded")

        with pytest.raises(GatewayRejectedError):
            await orchestrator.refund("order-1", 100)

        assert (await repository.find_by_reference("order-1")).refunds == []


class InterleavedSaves(PaymentIntentRepository):
    """Runs ``before_next_save`` once, just ahead of the next save.

    Stands in for a second worker that writes between this worker's load
    and its save.
    """

    def __init__(self, inner: PaymentIntentRepository) -> None:
        self.inner = inner
        self.before_next_save = None

    async def add(self, intent):
        await self.inner.add(intent)

    async def save(self, intent):
        hook, self.before_next_save = self.before_next_save, None
        if hook is not None:
            await hook()
        await self.inner.save(intent)

    async def find_by_reference(self, reference):
        return await self.inner.find_by_reference(reference)

    async def find_by_external_ref(self, gateway_name, external_ref):
        return await self.inner.find_by_external_ref(gateway_name, external_ref)


class CountingHandler(EventHandler):
    def __init__(self):
        self.events = []

    async def handle(self, event):
        self.events.append(event)


class TestConcurrentWorkers:
    """Two orchestrators (separate processes) writing the same intent."""

    async def _race(self, worker_a, worker_b, fake_gateway, event_bus):
        entitlements = CountingHandler()
        event_bus.subscribe("PaymentCompleted", entitlements)

        await start(worker_b, reference="ord-9")
        fake_gateway.verification = completed()
        worker_a.repository.before_next_save = lambda: worker_b.handle_webhook(
            "fake", webhook_body(kind="payment_completed", reference="ord-9", amount=2000), VALID_SIGNATURE
        )

        intent = await worker_a.confirm_return("fake", "sess_ord-9")
        return intent, entitlements

    @pytest.mark.asyncio
    async def test_in_memory_store_completes_once(self, registry, fake_gateway, event_bus):
        shared = InMemoryPaymentIntentRepository()
        worker_a = PaymentOrchestrator(registry, InterleavedSaves(shared), event_bus, default_gateway="fake")
        worker_b = PaymentOrchestrator(registry, shared, event_bus, default_gateway="fake")

        intent, entitlements = await self._race(worker_a, worker_b, fake_gateway, event_bus)

        assert intent.status == IntentStatus.COMPLETED
        assert len(entitlements.events) == 1
        assert entitlements.events[0].source == "webhook"

    @pytest.mark.asyncio
    async def test_sql_store_completes_once(self, registry, fake_gateway, event_bus, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'paygate.db'}"
        db_a, db_b = DatabaseManager(url), DatabaseManager(url)
        await db_a.create_tables()
        try:
            worker_a = PaymentOrchestrator(
                registry, InterleavedSaves(SqlAlchemyPaymentIntentRepository(db_a.session_factory)), event_bus,
                default_gateway="fake",
            )
            worker_b = PaymentOrchestrator(
                registry, SqlAlchemyPaymentIntentRepository(db_b.session_factory), event_bus, default_gateway="fake"
            )

            intent, entitlements = await self._race(worker_a, worker_b, fake_gateway, event_bus)

            assert intent.status == IntentStatus.COMPLETED
            assert len(entitlements.events) == 1
            stored = await worker_b.repository.find_by_reference("ord-9")
            assert stored.status == IntentStatus.COMPLETED
            assert stored.version == 2
        finally:
            await db_a.close()
            await db_b.close()

    @pytest.mark.asyncio
    async def test_persistent_conflicts_give_up(self, registry, fake_gateway, event_bus):
        shared = InMemoryPaymentIntentRepository()
        worker = PaymentOrchestrator(registry, shared, event_bus, default_gateway="fake", conflict_retries=0)
        await start(worker)

        class AlwaysStale(InterleavedSaves):
            async def save(self, intent):
                raise ConcurrentUpdateError(intent.reference, intent.version)

        worker.repository = AlwaysStale(shared)
        fake_gateway.verification = completed()

        with pytest.raises(ConcurrentUpdateError):
            await worker.confirm_return("fake", "sess_order-1")
        assert published(event_bus, "PaymentCompleted") == []
