"""Unit tests for PaymentIntent repositories (in-memory and SQLAlchemy on SQLite)."""

from datetime import timedelta, timezone

import pytest
import pytest_asyncio

from paygate.domains.payments.domain.entities import IntentStatus, PaymentIntent, Refund
from paygate.domains.payments.domain.exceptions import (
    ConcurrentUpdateError,
    DuplicateReferenceError,
    PaymentIntentNotFoundError,
)
from paygate.domains.payments.infrastructure.repositories import (
    InMemoryPaymentIntentRepository,
    SqlAlchemyPaymentIntentRepository,
)
from paygate.infrastructure.persistence.database import DatabaseManager


@pytest_asyncio.fixture(params=["memory", "sqlalchemy"])
async def repo(request, tmp_path):
    if request.param == "memory":
        yield InMemoryPaymentIntentRepository()
        return

    db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'paygate.db'}")
    await db.create_tables()
    yield SqlAlchemyPaymentIntentRepository(db.session_factory)
    await db.close()


def new_intent(reference="order-1", gateway="stripe") -> PaymentIntent:
    return PaymentIntent.create(reference, 2000, "USD", gateway, "Pro plan")


class TestPaymentIntentRepository:
    """Test cases shared by both repository implementations."""

    @pytest.mark.asyncio
    async def test_add_and_find_by_reference(self, repo):
        intent = new_intent()
        await repo.add(intent)

        found = await repo.find_by_reference("order-1")

        assert found.id == intent.id
        assert found.amount == 2000
        assert found.currency == "USD"
        assert found.status == IntentStatus.CREATED
        assert found.description == "Pro plan"
        assert found.created_at.tzinfo is not None
        assert found.domain_events == []

    @pytest.mark.asyncio
    async def test_missing_reference(self, repo):
        assert await repo.find_by_reference("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_reference_is_rejected(self, repo):
        await repo.add(new_intent())

        with pytest.raises(DuplicateReferenceError):
            await repo.add(new_intent(gateway="paypal"))

    @pytest.mark.asyncio
    async def test_save_persists_transitions(self, repo):
        intent = new_intent()
        await repo.add(intent)

        intent.mark_pending("cs_1", None, "https://checkout.example/cs_1")
        await repo.save(intent)
        intent.mark_completed("pi_1", source="webhook")
        await repo.save(intent)

        found = await repo.find_by_reference("order-1")
        assert found.status == IntentStatus.COMPLETED
        assert found.external_session_ref == "cs_1"
        assert found.external_payment_ref == "pi_1"
        assert found.redirect_url == "https://checkout.example/cs_1"
        assert found.last_transition_at.astimezone(timezone.utc) == intent.last_transition_at

    @pytest.mark.asyncio
    async def test_save_persists_refunds(self, repo):
        intent = new_intent()
        await repo.add(intent)
        intent.mark_pending("cs_1", "pi_1", "https://checkout.example/cs_1")
        intent.mark_completed("pi_1", source="return")
        intent.record_refund(Refund("re_1", 500, "pending", intent.created_at))
        await repo.save(intent)

        intent.refunds[0].status = "completed"
        intent.record_refund(Refund("re_2", 700, "completed", intent.created_at + timedelta(seconds=1)))
        await repo.save(intent)

        found = await repo.find_by_reference("order-1")
        assert [(r.refund_ref, r.amount, r.status) for r in found.refunds] == [
            ("re_1", 500, "completed"),
            ("re_2", 700, "completed"),
        ]
        assert found.total_refunded == 1200

    @pytest.mark.asyncio
    async def test_save_unknown_intent(self, repo):
        with pytest.raises(PaymentIntentNotFoundError):
            await repo.save(new_intent())

    @pytest.mark.asyncio
    async def test_find_by_external_ref(self, repo):
        intent = new_intent()
        await repo.add(intent)
        intent.mark_pending("cs_1", "pi_1", "https://checkout.example/cs_1")
        await repo.save(intent)

        assert (await repo.find_by_external_ref("stripe", "cs_1")).reference == "order-1"
        assert (await repo.find_by_external_ref("stripe", "pi_1")).reference == "order-1"
        assert await repo.find_by_external_ref("paypal", "cs_1") is None
        assert await repo.find_by_external_ref("stripe", "cs_other") is None

    @pytest.mark.asyncio
    async def test_stored_copy_is_detached(self, repo):
        intent = new_intent()
        await repo.add(intent)

        intent.mark_pending("cs_1", None, "https://checkout.example/cs_1")

        assert (await repo.find_by_reference("order-1")).status == IntentStatus.CREATED

    @pytest.mark.asyncio
    async def test_stale_copy_cannot_overwrite_newer_save(self, repo):
        intent = new_intent()
        await repo.add(intent)
        intent.mark_pending("cs_1", None, "https://checkout.example/cs_1")
        await repo.save(intent)

        first = await repo.find_by_reference("order-1")
        second = await repo.find_by_reference("order-1")
        first.mark_completed("pi_1", source="return")
        await repo.save(first)
        second.mark_failed("Session expired", source="webhook")

        with pytest.raises(ConcurrentUpdateError):
            await repo.save(second)

        found = await repo.find_by_reference("order-1")
        assert found.status == IntentStatus.COMPLETED
        assert found.version == first.version == 2

    @pytest.mark.asyncio
    async def test_save_advances_version(self, repo):
        intent = new_intent()
        await repo.add(intent)
        assert intent.version == 0

        intent.mark_pending("cs_1", None, "https://checkout.example/cs_1")
        await repo.save(intent)

        assert intent.version == 1
        assert (await repo.find_by_reference("order-1")).version == 1
