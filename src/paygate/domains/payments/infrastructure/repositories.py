"""Payment infrastructure repositories."""

import asyncio
import copy
from datetime import datetime, timezone
from typing import Dict, Optional

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..domain.entities import PaymentIntent, Refund
from ..domain.exceptions import ConcurrentUpdateError, DuplicateReferenceError, PaymentIntentNotFoundError
from ..domain.repositories import PaymentIntentRepository
from .models import PaymentIntentModel, RefundModel

logger = structlog.get_logger(__name__)


class InMemoryPaymentIntentRepository(PaymentIntentRepository):
    """Process-local store; holds detached copies so callers cannot mutate it in place."""

    def __init__(self) -> None:
        self._intents: Dict[str, PaymentIntent] = {}
        self._lock = asyncio.Lock()

    async def add(self, intent: PaymentIntent) -> None:
        async with self._lock:
            if intent.reference in self._intents:
                raise DuplicateReferenceError(intent.reference)
            self._intents[intent.reference] = self._detach(intent)

    async def save(self, intent: PaymentIntent) -> None:
        async with self._lock:
            stored = self._intents.get(intent.reference)
            if stored is None:
                raise PaymentIntentNotFoundError(intent.reference)
            if stored.version != intent.version:
                raise ConcurrentUpdateError(intent.reference, intent.version)
            intent.version += 1
            self._intents[intent.reference] = self._detach(intent)

    async def find_by_reference(self, reference: str) -> Optional[PaymentIntent]:
        intent = self._intents.get(reference)
        return copy.deepcopy(intent) if intent else None

    async def find_by_external_ref(self, gateway_name: str, external_ref: str) -> Optional[PaymentIntent]:
        for intent in self._intents.values():
            if intent.gateway_name != gateway_name:
                continue
            if external_ref in (intent.external_session_ref, intent.external_payment_ref):
                return copy.deepcopy(intent)
        return None

    @staticmethod
    def _detach(intent: PaymentIntent) -> PaymentIntent:
        stored = copy.deepcopy(intent)
        # Pending events belong to the caller's copy, which publishes them
        stored.clear_domain_events()
        return stored


class SqlAlchemyPaymentIntentRepository(PaymentIntentRepository):
    """SQLAlchemy implementation of PaymentIntentRepository.

    Each call runs in its own session and transaction.
    """

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory

    async def add(self, intent: PaymentIntent) -> None:
        """Insert a new intent."""
        async with self.session_factory() as session:
            existing = await self._get_model(session, PaymentIntentModel.reference == intent.reference)
            if existing:
                raise DuplicateReferenceError(intent.reference)

            model = PaymentIntentModel(
                id=intent.id, reference=intent.reference, version=intent.version, refunds=[]
            )
            self._apply(intent, model)
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as e:
                # Lost a race with another writer on the same reference
                await session.rollback()
                raise DuplicateReferenceError(intent.reference) from e

    async def save(self, intent: PaymentIntent) -> None:
        """Update an existing intent and its refunds.

        The version bump runs first as a conditional UPDATE, so a concurrent
        writer holding the same version matches no row.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(PaymentIntentModel)
                .where(
                    PaymentIntentModel.id == intent.id,
                    PaymentIntentModel.version == intent.version,
                )
                .values(version=intent.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                if await self._get_model(session, PaymentIntentModel.id == intent.id) is None:
                    raise PaymentIntentNotFoundError(intent.reference)
                raise ConcurrentUpdateError(intent.reference, intent.version)

            model = await self._get_model(session, PaymentIntentModel.id == intent.id)
            self._apply(intent, model)
            await session.commit()

        intent.version += 1

    async def find_by_reference(self, reference: str) -> Optional[PaymentIntent]:
        """Find intent by caller reference."""
        async with self.session_factory() as session:
            model = await self._get_model(session, PaymentIntentModel.reference == reference)
            return self._model_to_entity(model) if model else None

    async def find_by_external_ref(self, gateway_name: str, external_ref: str) -> Optional[PaymentIntent]:
        """Find intent by the vendor's session or payment reference."""
        async with self.session_factory() as session:
            model = await self._get_model(
                session,
                PaymentIntentModel.gateway_name == gateway_name,
                or_(
                    PaymentIntentModel.external_session_ref == external_ref,
                    PaymentIntentModel.external_payment_ref == external_ref,
                ),
            )
            return self._model_to_entity(model) if model else None

    async def _get_model(self, session: AsyncSession, *criteria) -> Optional[PaymentIntentModel]:
        result = await session.execute(select(PaymentIntentModel).where(*criteria).limit(1))
        return result.scalar_one_or_none()

    @staticmethod
    def _apply(intent: PaymentIntent, model: PaymentIntentModel) -> None:
        """Copy entity state onto the model."""
        model.amount = intent.amount
        model.currency = intent.currency
        model.description = intent.description
        model.gateway_name = intent.gateway_name
        model.external_session_ref = intent.external_session_ref
        model.external_payment_ref = intent.external_payment_ref
        model.redirect_url = intent.redirect_url
        model.status = intent.status
        model.failure_reason = intent.failure_reason
        model.created_at = intent.created_at
        model.last_transition_at = intent.last_transition_at

        # Refunds are append-only; statuses may still move
        known = {refund.refund_ref: refund for refund in model.refunds}
        for refund in intent.refunds:
            if refund.refund_ref in known:
                known[refund.refund_ref].status = refund.status
            else:
                model.refunds.append(RefundModel(
                    refund_ref=refund.refund_ref,
                    amount=refund.amount,
                    status=refund.status,
                    created_at=refund.created_at,
                ))

    @staticmethod
    def _model_to_entity(model: PaymentIntentModel) -> PaymentIntent:
        """Convert model to domain entity."""
        return PaymentIntent(
            reference=model.reference,
            amount=model.amount,
            currency=model.currency,
            gateway_name=model.gateway_name,
            description=model.description or "",
            intent_id=model.id,
            status=model.status,
            external_session_ref=model.external_session_ref,
            external_payment_ref=model.external_payment_ref,
            redirect_url=model.redirect_url,
            failure_reason=model.failure_reason,
            created_at=_as_utc(model.created_at),
            last_transition_at=_as_utc(model.last_transition_at),
            version=model.version,
            refunds=[
                Refund(
                    refund_ref=r.refund_ref,
                    amount=r.amount,
                    status=r.status,
                    created_at=_as_utc(r.created_at),
                )
                for r in model.refunds
            ],
        )


def _as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
