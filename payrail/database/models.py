"""SQLAlchemy database models for payments, identities and the transaction ledger."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentModel(Base):
    """
    Payment records table.

    One row per idempotency key (unique_ref). Rail binding columns are
    written once; status and transaction_status follow the ledger.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tag: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    unique_ref: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    fiat_service_name: Mapped[str | None] = mapped_column(String(32), nullable=True)
    crypto_currency: Mapped[str | None] = mapped_column(Text, nullable=True)
    crypto_currency_rate: Mapped[Decimal | None] = mapped_column(Numeric(20, 6), nullable=True)
    meta: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="INITIATED")
    transaction_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    client_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="non_negative_amount"),
        CheckConstraint(
            "status IN ('INITIATED', 'PENDING_DEPOSIT', 'DEPOSITED', 'ON_HOLD', "
            "'PAID_OUT', 'CANCELED', 'REFUNDED')",
            name="valid_payment_status",
        ),
        CheckConstraint("type IS NULL OR type IN ('FIAT', 'CRYPTO')", name="valid_payment_type"),
        Index("idx_payments_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentModel."""
        return (
            f"<PaymentModel(id={self.id}, unique_ref={self.unique_ref}, "
            f"amount={self.total_amount}, status={self.status})>"
        )


class PaymentIdentityModel(Base):
    """Parties attached to a payment, in attachment order."""

    __tablename__ = "payment_identities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    identity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    role_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    account: Mapped[str] = mapped_column(Text, nullable=False)
    allocated_amount: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    meta: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("payment_id", "position", name="uq_payment_identity_position"),
    )


class TransactionModel(Base):
    """
    Transaction ledger table.

    Append-only: a row is inserted PENDING and updated at most once into a
    terminal state (VERIFIED or CANCELED).
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    identity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    tx_id: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tag: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    fee: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False, default=Decimal("0"))
    discount: Mapped[Decimal] = mapped_column(
        Numeric(20, 6), nullable=False, default=Decimal("0")
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="DEPOSIT")
    meta: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'VERIFIED', 'CANCELED', 'ACTION_REQUIRED')",
            name="valid_transaction_status",
        ),
        UniqueConstraint("payment_id", "position", name="uq_transaction_position"),
        Index("idx_transactions_tx_id", "tx_id"),
    )

    def __repr__(self) -> str:
        """String representation of TransactionModel."""
        return (
            f"<TransactionModel(id={self.id}, payment_id={self.payment_id}, "
            f"status={self.status})>"
        )
