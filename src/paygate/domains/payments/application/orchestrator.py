"""Payment orchestration: intent lifecycle across gateways."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from weakref import WeakValueDictionary

import structlog

from ....shared.events.event_bus import EventBus
from ....shared.exceptions.base import ConfigurationError
from ....shared.utils.money import normalize_currency
from ..domain.entities import IntentStatus, PaymentIntent, Refund
from ..domain.exceptions import (
    ConcurrentUpdateError,
    DuplicateReferenceError,
    GatewayCallError,
    GatewayRejectedError,
    GatewayUnavailableError,
    PaymentIntentNotFoundError,
    RefundNotAllowedError,
    SignatureError,
)
from ..domain.repositories import PaymentIntentRepository
from ..domain.services import GatewayAdapter
from ..domain.value_objects import (
    GatewayError,
    PaymentRequest,
    StatusValue,
    WebhookEvent,
    WebhookEventKind,
)
from .registry import GatewayRegistry

logger = structlog.get_logger(__name__)


def gateway_call_error(error: GatewayError, reference: Optional[str] = None) -> GatewayCallError:
    """Turn an adapter's returned error into the matching exception."""
    if error.retryable:
        return GatewayUnavailableError(error, reference)
    return GatewayRejectedError(error, reference)


class PaymentOrchestrator:
    """Drives payment intents from creation to a terminal status.

    Every status change for a reference happens under that reference's lock:
    the intent is reloaded, the transition is checked against the stored
    status, then the intent is saved and its events are published. A
    transition into the status the intent already holds is a no-op, so the
    return callback and the webhook can race freely and ``PaymentCompleted``
    is still published once. The lock only covers this process; across
    processes the repository's version check rejects the slower save, which
    is then decided again against the reloaded intent.
    """

    def __init__(
        self,
        registry: GatewayRegistry,
        repository: PaymentIntentRepository,
        event_bus: EventBus,
        default_gateway: Optional[str] = None,
        conflict_retries: int = 3,
    ) -> None:
        self.registry = registry
        self.repository = repository
        self.event_bus = event_bus
        self.default_gateway = default_gateway
        self.conflict_retries = conflict_retries
        self._locks: "WeakValueDictionary[str, asyncio.Lock]" = WeakValueDictionary()

    def _lock_for(self, reference: str) -> asyncio.Lock:
        lock = self._locks.get(reference)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[reference] = lock
        return lock

    async def start_payment(
        self,
        reference: str,
        amount: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        gateway_name: Optional[str] = None,
        description: str = "",
        buyer_email: Optional[str] = None,
        buyer_name: Optional[str] = None,
        buyer_phone: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentIntent:
        """Create an intent and open a hosted checkout for it.

        Calling again with the same reference and the same amount, currency
        and gateway returns the stored intent; an intent still in ``created``
        (the previous vendor call was retryable) contacts the vendor again.

        Raises:
            ConfigurationError: unknown or disabled gateway.
            DuplicateReferenceError: reference bound to different parameters.
            GatewayUnavailableError: vendor unreachable; intent stays ``created``.
            GatewayRejectedError: vendor refused; intent is ``failed``.
        """
        name = (gateway_name or self.default_gateway or "").lower()
        if not name:
            raise ConfigurationError("No gateway requested and no default gateway configured")
        adapter = self.registry.resolve_enabled(name)
        currency = normalize_currency(currency)

        async with self._lock_for(reference):
            intent = await self.repository.find_by_reference(reference)
            if intent is None:
                intent = PaymentIntent.create(reference, amount, currency, name, description)
                await self.repository.add(intent)
                await self._publish(intent)
            elif (intent.amount, intent.currency, intent.gateway_name) != (amount, currency, name):
                raise DuplicateReferenceError(reference)
            elif intent.status != IntentStatus.CREATED:
                logger.info("Payment already started", reference=reference, status=intent.status)
                return intent

            request = PaymentRequest(
                reference=reference,
                amount=amount,
                currency=currency,
                description=description,
                success_url=success_url,
                cancel_url=cancel_url,
                buyer_email=buyer_email,
                buyer_name=buyer_name,
                buyer_phone=buyer_phone,
                metadata=metadata,
            )
            result = await adapter.create_payment(request)

            if isinstance(result, GatewayError):
                if result.retryable:
                    logger.warning(
                        "Checkout creation failed, retryable",
                        reference=reference,
                        gateway=name,
                        error=result.message,
                    )
                    raise GatewayUnavailableError(result, reference)

                intent.mark_failed(result.message, source="create")
                await self._commit(intent)
                logger.info("Checkout creation rejected", reference=reference, gateway=name,
                            vendor_code=result.vendor_code)
                raise GatewayRejectedError(result, reference)

            intent.mark_pending(
                result.external_session_ref,
                result.external_payment_ref,
                result.redirect_url,
            )
            await self._commit(intent)

        logger.info(
            "Payment started",
            reference=reference,
            gateway=name,
            amount=amount,
            currency=currency,
            session_ref=intent.external_session_ref,
        )
        return intent

    async def confirm_return(self, gateway_name: str, session_ref: str) -> PaymentIntent:
        """Reconcile the buyer's return from the hosted checkout.

        The reference is re-derived from the vendor session and the status is
        asked of the vendor; nothing in the query string is trusted.
        """
        adapter = self.registry.resolve(gateway_name)
        intent = await self.repository.find_by_external_ref(gateway_name, session_ref)
        if intent is None:
            raise PaymentIntentNotFoundError(session_ref)

        return await self._verify_and_apply(adapter, intent.reference, session_ref, source="return")

    async def verify_payment(self, reference: str) -> PaymentIntent:
        """Ask the vendor for the current status of a stored intent and apply it."""
        intent = await self.get_intent(reference)
        # Session refs resolve to the payment object, so prefer them
        external_ref = intent.external_session_ref or intent.external_payment_ref
        if not external_ref:
            return intent

        adapter = self.registry.resolve(intent.gateway_name)
        return await self._verify_and_apply(adapter, reference, external_ref, source="verify")

    async def handle_webhook(
        self,
        gateway_name: str,
        raw_body: bytes,
        signature_header: Optional[str],
    ) -> Optional[PaymentIntent]:
        """Verify a webhook delivery and apply it.

        Returns the affected intent, or None when the event is irrelevant or
        refers to a payment this service does not know.
        """
        adapter = self.registry.resolve(gateway_name)
        try:
            event = await adapter.parse_webhook(raw_body, signature_header)
        except SignatureError as e:
            logger.warning("Webhook signature rejected", gateway=gateway_name, reason=e.reason)
            raise

        log = logger.bind(gateway=gateway_name, event_type=event.event_type, event_id=event.event_id)
        if event.kind is WebhookEventKind.OTHER:
            log.info("Webhook acknowledged without action")
            return None

        intent = await self._find_for_event(event)
        if intent is None:
            log.warning("Webhook for unknown payment", reference=event.reference,
                        session_ref=event.external_session_ref)
            return None

        status = (
            StatusValue.COMPLETED
            if event.kind is WebhookEventKind.PAYMENT_COMPLETED
            else StatusValue.FAILED
        )
        return await self._apply_status(
            intent.reference,
            status,
            source="webhook",
            amount=event.amount,
            currency=event.currency,
            external_payment_ref=event.external_payment_ref,
            reason=f"Webhook {event.event_type}",
        )

    async def cancel_payment(self, reference: str) -> PaymentIntent:
        """Buyer abandoned the hosted checkout.

        The vendor is asked first: a checkout that was paid in the meantime
        completes instead. Otherwise the vendor's checkout is closed, so it
        cannot be paid later, and the intent moves to ``cancelled``. Only a
        pending intent is cancelled.
        """
        intent = await self.get_intent(reference)
        if intent.status != IntentStatus.PENDING:
            logger.info("Cancel ignored", reference=reference, status=intent.status)
            return intent

        adapter = self.registry.resolve(intent.gateway_name)
        external_ref = intent.external_session_ref or intent.external_payment_ref
        if external_ref:
            intent = await self._verify_and_apply(adapter, reference, external_ref, source="cancel")
            if intent.status != IntentStatus.PENDING:
                logger.info("Cancel superseded by vendor status", reference=reference, status=intent.status)
                return intent

            closed = await adapter.cancel_checkout(external_ref)
            if isinstance(closed, GatewayError):
                if closed.retryable:
                    raise gateway_call_error(closed, reference)
                # Vendor would not close it: the checkout settled in between
                logger.info("Vendor refused to close checkout", reference=reference, error=closed.message)
                return await self._verify_and_apply(adapter, reference, external_ref, source="cancel")

        intent = await self._apply_status(
            reference, StatusValue.CANCELLED, source="cancel", reason="Buyer cancelled"
        )
        if intent.status == IntentStatus.CANCELLED:
            logger.info("Payment cancelled", reference=reference)
        return intent

    async def refund(self, reference: str, amount: int) -> Refund:
        """Refund part or all of a completed payment.

        Raises:
            RefundNotAllowedError: intent not completed or amount above what is left.
            GatewayUnavailableError / GatewayRejectedError: vendor failure.
        """
        async with self._lock_for(reference):
            intent = await self.get_intent(reference)
            intent.ensure_refundable(amount)
            if not intent.external_payment_ref:
                raise RefundNotAllowedError(
                    f"Payment '{reference}' has no vendor payment reference",
                    context={"reference": reference},
                )

            adapter = self.registry.resolve(intent.gateway_name)
            # Same key on a retry after a lost response, so the vendor refunds once
            result = await adapter.refund(
                intent.external_payment_ref,
                amount,
                intent.currency,
                idempotency_key=f"refund-{reference}-{len(intent.refunds) + 1}",
            )
            if isinstance(result, GatewayError):
                raise gateway_call_error(result, reference)

            refund = Refund(
                refund_ref=result.refund_ref,
                amount=result.amount_refunded,
                status=result.status.value,
                created_at=datetime.now(timezone.utc),
            )
            intent.record_refund(refund)
            await self._commit(intent)

        logger.info(
            "Payment refunded",
            reference=reference,
            refund_ref=refund.refund_ref,
            amount=refund.amount,
            total_refunded=intent.total_refunded,
        )
        return refund

    async def get_intent(self, reference: str) -> PaymentIntent:
        intent = await self.repository.find_by_reference(reference)
        if intent is None:
            raise PaymentIntentNotFoundError(reference)
        return intent

    async def _verify_and_apply(
        self,
        adapter: GatewayAdapter,
        reference: str,
        external_ref: str,
        source: str,
    ) -> PaymentIntent:
        verification = await adapter.verify_payment(external_ref)
        if isinstance(verification, GatewayError):
            raise gateway_call_error(verification, reference)

        return await self._apply_status(
            reference,
            verification.status,
            source=source,
            amount=verification.amount_received,
            currency=verification.currency,
            external_payment_ref=verification.external_payment_ref,
            reason=f"Vendor reported {verification.status.value}",
        )

    async def _apply_status(
        self,
        reference: str,
        status: StatusValue,
        source: str,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        external_payment_ref: Optional[str] = None,
        reason: str = "",
    ) -> PaymentIntent:
        """Move the intent toward the status the vendor reported.

        A save that loses to another process reloads the intent and decides
        again, so the loser of a completion race lands on the duplicate rule.
        """
        target = IntentStatus.from_status_value(status)
        log = logger.bind(reference=reference, source=source, reported=status.value)

        attempt = 0
        while True:
            try:
                return await self._apply_once(
                    reference, target, log, source, amount, currency, external_payment_ref, reason
                )
            except ConcurrentUpdateError:
                attempt += 1
                if attempt > self.conflict_retries:
                    raise
                log.info("Intent changed by another writer, reloading", attempt=attempt)

    async def _apply_once(
        self,
        reference: str,
        target: Optional[str],
        log: Any,
        source: str,
        amount: Optional[int],
        currency: Optional[str],
        external_payment_ref: Optional[str],
        reason: str,
    ) -> PaymentIntent:
        async with self._lock_for(reference):
            intent = await self.get_intent(reference)

            if target is None:
                log.warning("Vendor status not recognised, intent unchanged", status=intent.status)
                return intent

            if intent.status == target:
                log.info("Duplicate transition ignored", status=intent.status)
                return intent

            if not IntentStatus.can_transition(intent.status, target):
                if intent.status == IntentStatus.FAILED and target == IntentStatus.COMPLETED:
                    log.error("Completion reported for failed payment, left failed",
                              failure_reason=intent.failure_reason)
                elif target != IntentStatus.PENDING:
                    log.warning("Transition not allowed, intent unchanged",
                                status=intent.status, requested=target)
                return intent

            if target == IntentStatus.COMPLETED:
                if not self._amount_matches(intent, amount, currency):
                    log.error(
                        "Completed amount does not match intent, left pending",
                        expected_amount=intent.amount,
                        expected_currency=intent.currency,
                        received_amount=amount,
                        received_currency=currency,
                    )
                    return intent
                intent.mark_completed(external_payment_ref, source=source)
            elif target == IntentStatus.FAILED:
                intent.mark_failed(reason, source=source)
            elif target == IntentStatus.CANCELLED:
                intent.cancel()
            else:
                return intent

            await self._commit(intent)

        log.info("Payment status changed", status=intent.status)
        return intent

    @staticmethod
    def _amount_matches(intent: PaymentIntent, amount: Optional[int], currency: Optional[str]) -> bool:
        # Some notifications omit the amount; the status alone then decides
        if amount is not None and amount != intent.amount:
            return False
        if currency is not None and currency.upper() != intent.currency:
            return False
        return True

    async def _find_for_event(self, event: WebhookEvent) -> Optional[PaymentIntent]:
        if event.reference:
            intent = await self.repository.find_by_reference(event.reference)
            if intent is not None and intent.gateway_name == event.gateway_name:
                return intent
        for external_ref in (event.external_session_ref, event.external_payment_ref):
            if external_ref:
                intent = await self.repository.find_by_external_ref(event.gateway_name, external_ref)
                if intent is not None:
                    return intent
        return None

    async def _commit(self, intent: PaymentIntent) -> None:
        await self.repository.save(intent)
        await self._publish(intent)

    async def _publish(self, intent: PaymentIntent) -> None:
        events = intent.domain_events
        intent.clear_domain_events()
        await self.event_bus.publish_batch(events)
