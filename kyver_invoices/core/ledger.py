"""
Invoice ledger: the only writer of invoice state.

Lifecycle:

    Draft --mark_pending--> Pending --succeeded--> Paid --refunded--> Refunded
      ^                        |
      +-------failed-----------+
    Draft/Pending --cancel--> Cancelled
    Pending --expire--> Expired

Every mutation runs in one store transaction and locks the invoice row
before reading its status, so concurrent requests for the same invoice
are serialized.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kyver_invoices.config import Settings, get_settings
from kyver_invoices.core.enums import InvoiceStatus, PaymentOutcome, PaymentProviderName
from kyver_invoices.core.exceptions import (
    InvalidTransitionError,
    InvoiceNotFoundError,
    InvoiceValidationError,
)
from kyver_invoices.core.money import format_amount
from kyver_invoices.database import Invoice, Store, utcnow
from kyver_invoices.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_DESCRIPTION_LENGTH = 1000
# Largest amount Stripe and PayPal accept in a single charge
MAX_AMOUNT_CENTS = 99_999_999
DEFAULT_DESCRIPTION = "Payment Request"

# outcome -> (required status, resulting status)
_PAYMENT_TRANSITIONS = {
    PaymentOutcome.SUCCEEDED: (InvoiceStatus.PENDING, InvoiceStatus.PAID),
    PaymentOutcome.FAILED: (InvoiceStatus.PENDING, InvoiceStatus.DRAFT),
    PaymentOutcome.REFUNDED: (InvoiceStatus.PAID, InvoiceStatus.REFUNDED),
}


@dataclass
class TransitionResult:
    """Outcome of a state-changing ledger call."""

    invoice: Invoice
    previous_status: InvoiceStatus
    changed: bool

    @property
    def status(self) -> InvoiceStatus:
        return InvoiceStatus(self.invoice.status)


def parse_invoice_id(invoice_id: str | uuid.UUID) -> uuid.UUID:
    """
    Parse an invoice id as typed by a user.

    Raises:
        InvoiceValidationError: If the value is not a UUID
    """
    if isinstance(invoice_id, uuid.UUID):
        return invoice_id
    try:
        return uuid.UUID(str(invoice_id).strip())
    except ValueError:
        raise InvoiceValidationError(f"'{invoice_id}' is not a valid invoice id") from None


class InvoiceLedger:
    """
    Creates invoices and applies every status transition.

    Methods that take an optional ``session`` join the caller's
    transaction when one is given; otherwise they open their own. A caller
    that supplies the session passes the result to ``record_committed``
    after its own commit.
    """

    def __init__(self, store: Store, settings: Optional[Settings] = None):
        """
        Initialize the ledger.

        Args:
            store: Persistent store adapter
            settings: Optional settings (uses cached settings if not provided)
        """
        self.store = store
        self.settings = settings or get_settings()

    @staticmethod
    def _validate_invoice_request(
        payer_id: str,
        amount_cents: int,
        currency: str,
        description: Optional[str],
    ) -> str:
        """
        Validate invoice parameters.

        Returns:
            str: Normalized (upper-case) currency code

        Raises:
            InvoiceValidationError: If validation fails
        """
        if not payer_id or not payer_id.strip():
            raise InvoiceValidationError("Payer is required")

        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
            raise InvoiceValidationError("Amount must be a whole number of minor units")

        if amount_cents <= 0:
            raise InvoiceValidationError("Amount must be positive")

        if not currency or len(currency) != 3 or not currency.isalpha():
            raise InvoiceValidationError("Currency must be 3-letter code")

        if amount_cents > MAX_AMOUNT_CENTS:
            raise InvoiceValidationError(
                f"Amount must be at most {format_amount(MAX_AMOUNT_CENTS, currency)}"
            )

        if description is not None and len(description) > MAX_DESCRIPTION_LENGTH:
            raise InvoiceValidationError(
                f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters"
            )

        return currency.upper()

    @staticmethod
    async def _lock(session: AsyncSession, invoice_id: uuid.UUID) -> Invoice:
        """Load an invoice with a row lock held until the transaction ends."""
        result = await session.execute(
            select(Invoice).where(Invoice.id == invoice_id).with_for_update()
        )
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return invoice

    @staticmethod
    def _transition(invoice: Invoice, new_status: InvoiceStatus) -> InvoiceStatus:
        previous = InvoiceStatus(invoice.status)
        invoice.status = new_status.value
        invoice.updated_at = utcnow()
        logger.info(
            "invoice_status_changed",
            invoice_id=str(invoice.id),
            from_status=previous.value,
            to_status=new_status.value,
        )
        return previous

    @staticmethod
    def record_committed(*results: TransitionResult) -> None:
        """Count transitions once their transaction has committed."""
        for result in results:
            if result.changed:
                metrics.record_transition(result.previous_status.value, result.status.value)

    async def create(
        self,
        payer_id: str,
        amount_cents: int,
        currency: Optional[str] = None,
        description: Optional[str] = None,
        *,
        payer_name: Optional[str] = None,
        created_by: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> Invoice:
        """
        Create a Draft invoice.

        Args:
            payer_id: Chat user id of the payer
            amount_cents: Amount in minor units (must be positive)
            currency: ISO 4217 code (defaults to ``invoice_default_currency``)
            description: Free text shown to the payer
            payer_name: Payer display name
            created_by: Chat user id of the issuing admin
            channel_id: Channel notified about payment updates

        Returns:
            Invoice: The new invoice

        Raises:
            InvoiceValidationError: If validation fails
            StoreUnavailableError: If the store stays unavailable
        """
        currency = self._validate_invoice_request(
            payer_id,
            amount_cents,
            currency or self.settings.invoice_default_currency,
            description,
        )
        invoice_id = uuid.uuid4()

        async def _create(session: AsyncSession) -> Invoice:
            now = utcnow()
            invoice = Invoice(
                id=invoice_id,
                payer_id=payer_id.strip(),
                payer_name=payer_name,
                description=(description or "").strip() or DEFAULT_DESCRIPTION,
                amount_cents=amount_cents,
                currency=currency,
                status=InvoiceStatus.DRAFT.value,
                created_by=created_by,
                channel_id=channel_id,
                created_at=now,
                updated_at=now,
            )
            session.add(invoice)
            await session.flush()
            return invoice

        invoice = await self.store.with_transaction(_create)

        metrics.record_invoice_created(currency, amount_cents)
        logger.info(
            "invoice_created",
            invoice_id=str(invoice.id),
            payer_id=invoice.payer_id,
            amount_cents=amount_cents,
            currency=currency,
            created_by=created_by,
        )
        return invoice

    async def get(self, invoice_id: str | uuid.UUID) -> Invoice:
        """
        Fetch an invoice.

        Raises:
            InvoiceValidationError: If the id is malformed
            InvoiceNotFoundError: If no invoice has this id
        """
        parsed = parse_invoice_id(invoice_id)

        async def _get(session: AsyncSession) -> Invoice:
            invoice = await session.get(Invoice, parsed)
            if invoice is None:
                raise InvoiceNotFoundError(str(parsed))
            return invoice

        return await self.store.with_transaction(_get)

    async def list_for_payer(self, payer_id: str, limit: int = 10) -> List[Invoice]:
        """Most recent invoices addressed to a payer, newest first."""

        async def _list(session: AsyncSession) -> List[Invoice]:
            result = await session.execute(
                select(Invoice)
                .where(Invoice.payer_id == payer_id)
                .order_by(Invoice.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

        return await self.store.with_transaction(_list)

    @staticmethod
    async def find_by_provider_reference(
        session: AsyncSession,
        provider: str,
        provider_reference: str,
    ) -> Optional[Invoice]:
        """
        Find and lock the invoice owning a provider reference.

        Must be called inside the caller's transaction.
        """
        result = await session.execute(
            select(Invoice)
            .where(
                Invoice.provider == provider,
                Invoice.provider_reference == provider_reference,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def mark_pending(
        self,
        invoice_id: str | uuid.UUID,
        provider: PaymentProviderName | str,
        provider_reference: str,
        payment_url: str,
    ) -> TransitionResult:
        """
        Record that a payment attempt started: Draft -> Pending.

        Raises:
            InvalidTransitionError: If the invoice is not Draft
            InvoiceNotFoundError: If the invoice does not exist
        """
        parsed = parse_invoice_id(invoice_id)
        provider_name = PaymentProviderName(provider).value

        async def _mark(session: AsyncSession) -> TransitionResult:
            invoice = await self._lock(session, parsed)
            if invoice.status != InvoiceStatus.DRAFT.value:
                raise InvalidTransitionError(str(parsed), invoice.status, "mark_pending")

            invoice.provider = provider_name
            invoice.provider_reference = provider_reference
            invoice.payment_url = payment_url
            invoice.pending_at = utcnow()
            previous = self._transition(invoice, InvoiceStatus.PENDING)
            await session.flush()
            return TransitionResult(invoice=invoice, previous_status=previous, changed=True)

        result = await self.store.with_transaction(_mark)
        self.record_committed(result)
        return result

    async def apply_payment(
        self,
        invoice_id: str | uuid.UUID,
        outcome: PaymentOutcome,
        session: Optional[AsyncSession] = None,
    ) -> TransitionResult:
        """
        Apply a provider-reported payment outcome.

        - SUCCEEDED: Pending -> Paid (already Paid is a no-op)
        - FAILED: Pending -> Draft (already Draft is a no-op)
        - REFUNDED: Paid -> Refunded (already Refunded is a no-op)

        Args:
            invoice_id: Invoice to update
            outcome: Payment outcome
            session: Caller's transaction, if any

        Returns:
            TransitionResult: ``changed`` is False for idempotent no-ops

        Raises:
            InvalidTransitionError: For any other combination
        """
        parsed = parse_invoice_id(invoice_id)
        outcome = PaymentOutcome(outcome)
        required, target = _PAYMENT_TRANSITIONS[outcome]

        async def _apply(session: AsyncSession) -> TransitionResult:
            invoice = await self._lock(session, parsed)
            current = InvoiceStatus(invoice.status)

            if current == target:
                return TransitionResult(invoice=invoice, previous_status=current, changed=False)

            if current != required:
                raise InvalidTransitionError(str(parsed), current.value, outcome.value)

            if outcome == PaymentOutcome.FAILED:
                invoice.payment_url = None
                invoice.pending_at = None

            previous = self._transition(invoice, target)
            await session.flush()
            return TransitionResult(invoice=invoice, previous_status=previous, changed=True)

        if session is not None:
            return await _apply(session)
        result = await self.store.with_transaction(_apply)
        self.record_committed(result)
        return result

    async def cancel(self, invoice_id: str | uuid.UUID) -> TransitionResult:
        """
        Cancel an unpaid invoice: Draft/Pending -> Cancelled.

        Raises:
            InvalidTransitionError: If the invoice is Paid, Expired or Refunded
        """
        parsed = parse_invoice_id(invoice_id)

        async def _cancel(session: AsyncSession) -> TransitionResult:
            invoice = await self._lock(session, parsed)
            current = InvoiceStatus(invoice.status)

            if current == InvoiceStatus.CANCELLED:
                return TransitionResult(invoice=invoice, previous_status=current, changed=False)

            if current not in (InvoiceStatus.DRAFT, InvoiceStatus.PENDING):
                raise InvalidTransitionError(str(parsed), current.value, "cancel")

            previous = self._transition(invoice, InvoiceStatus.CANCELLED)
            await session.flush()
            return TransitionResult(invoice=invoice, previous_status=previous, changed=True)

        result = await self.store.with_transaction(_cancel)
        self.record_committed(result)
        return result

    async def expire(
        self,
        invoice_id: str | uuid.UUID,
        session: Optional[AsyncSession] = None,
    ) -> TransitionResult:
        """
        Expire a Pending invoice.

        Any other status is left untouched and reported with ``changed=False``.
        """
        parsed = parse_invoice_id(invoice_id)

        async def _expire(session: AsyncSession) -> TransitionResult:
            invoice = await self._lock(session, parsed)
            current = InvoiceStatus(invoice.status)
            if current != InvoiceStatus.PENDING:
                return TransitionResult(invoice=invoice, previous_status=current, changed=False)

            previous = self._transition(invoice, InvoiceStatus.EXPIRED)
            await session.flush()
            return TransitionResult(invoice=invoice, previous_status=previous, changed=True)

        if session is not None:
            return await _expire(session)
        result = await self.store.with_transaction(_expire)
        self.record_committed(result)
        return result

    async def expire_stale(self, now: Optional[datetime] = None) -> List[TransitionResult]:
        """
        Expire every Pending invoice whose payment attempt is too old.

        Rows locked by a concurrent transaction (for example a payment being
        reconciled) are skipped and picked up by the next sweep.

        Args:
            now: Reference time (defaults to current UTC time)

        Returns:
            List[TransitionResult]: One entry per expired invoice
        """
        cutoff = (now or utcnow()) - timedelta(
            seconds=self.settings.invoice_pending_timeout_seconds
        )

        async def _sweep(session: AsyncSession) -> List[TransitionResult]:
            result = await session.execute(
                select(Invoice)
                .where(
                    Invoice.status == InvoiceStatus.PENDING.value,
                    Invoice.pending_at < cutoff,
                )
                .with_for_update(skip_locked=True)
            )
            expired = []
            for invoice in result.scalars().all():
                previous = self._transition(invoice, InvoiceStatus.EXPIRED)
                expired.append(
                    TransitionResult(invoice=invoice, previous_status=previous, changed=True)
                )
            await session.flush()
            return expired

        expired = await self.store.with_transaction(_sweep)
        self.record_committed(*expired)
        if expired:
            logger.info("stale_invoices_expired", count=len(expired), cutoff=cutoff.isoformat())
        return expired
