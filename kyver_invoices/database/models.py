"""SQLAlchemy database models for invoices and payment events."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from kyver_invoices.core.enums import InvoiceStatus, PaymentOutcome


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _in_clause(values: Any) -> str:
    return ", ".join(f"'{member.value}'" for member in values)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Invoice(Base):
    """
    Invoice records table.

    Single source of truth for invoice state. Rows are never deleted;
    an invoice ends in one of the terminal statuses instead.
    """

    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="Payment Request")
    amount_cents: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), nullable=False
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.DRAFT.value
    )
    provider: Mapped[str | None] = mapped_column(String(20), nullable=True)
    provider_reference: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    payment_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    channel_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    pending_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_amount"),
        CheckConstraint(f"status IN ({_in_clause(InvoiceStatus)})", name="valid_status"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_invoices_status_pending_at", "status", "pending_at"),
        Index("idx_invoices_provider_reference", "provider", "provider_reference"),
    )

    def __repr__(self) -> str:
        """String representation of Invoice."""
        return (
            f"<Invoice(id={self.id}, payer_id={self.payer_id}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class PaymentEvent(Base):
    """
    Provider payment events audit trail.

    One row per distinct (provider, external_event_id). Immutable once
    written; a redelivered event resolves to the stored row.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("invoices.id"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    result: Mapped[str] = mapped_column(String(20), nullable=False)
    invoice_status: Mapped[str] = mapped_column(String(20), nullable=False)
    event_data: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        UniqueConstraint("provider", "external_event_id", name="uq_payment_events_provider_event"),
        CheckConstraint(f"outcome IN ({_in_clause(PaymentOutcome)})", name="valid_outcome"),
        CheckConstraint("result IN ('applied', 'ignored')", name="valid_result"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, provider={self.provider}, "
            f"event={self.external_event_id}, outcome={self.outcome})>"
        )
