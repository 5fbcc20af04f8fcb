"""Payment SQLAlchemy models."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, relationship

from ....infrastructure.persistence.database import Base


class PaymentIntentModel(Base):
    """SQLAlchemy model for the PaymentIntent aggregate."""

    __tablename__ = "payment_intents"

    # Primary key
    id: Mapped[UUID] = Column(Uuid(as_uuid=True), primary_key=True)

    # Caller's reference, unique across all gateways
    reference: Mapped[str] = Column(String(255), unique=True, nullable=False, index=True)

    # Money, minor units
    amount: Mapped[int] = Column(BigInteger, nullable=False)
    currency: Mapped[str] = Column(String(3), nullable=False)
    description: Mapped[str] = Column(Text, nullable=False, default="")

    # Gateway
    gateway_name: Mapped[str] = Column(String(50), nullable=False, index=True)
    external_session_ref: Mapped[Optional[str]] = Column(String(255), index=True)
    external_payment_ref: Mapped[Optional[str]] = Column(String(255), index=True)
    redirect_url: Mapped[Optional[str]] = Column(Text)

    # Status
    status: Mapped[str] = Column(String(20), nullable=False, index=True)
    failure_reason: Mapped[Optional[str]] = Column(Text)

    # Optimistic concurrency; bumped on every save
    version: Mapped[int] = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at: Mapped[datetime] = Column(DateTime(timezone=True), nullable=False)
    last_transition_at: Mapped[datetime] = Column(DateTime(timezone=True), nullable=False)

    refunds: Mapped[List["RefundModel"]] = relationship(
        "RefundModel",
        back_populates="intent",
        cascade="all, delete-orphan",
        order_by="RefundModel.created_at",
        lazy="selectin",
    )


class RefundModel(Base):
    """SQLAlchemy model for refunds recorded against an intent."""

    __tablename__ = "payment_refunds"

    refund_ref: Mapped[str] = Column(String(255), primary_key=True)
    intent_id: Mapped[UUID] = Column(
        Uuid(as_uuid=True), ForeignKey("payment_intents.id"), nullable=False, index=True
    )

    amount: Mapped[int] = Column(BigInteger, nullable=False)
    status: Mapped[str] = Column(String(20), nullable=False)
    created_at: Mapped[datetime] = Column(DateTime(timezone=True), nullable=False)

    intent: Mapped["PaymentIntentModel"] = relationship("PaymentIntentModel", back_populates="refunds")
