"""
Payment reconciler: applies provider payment events to invoices exactly once.

Flow for one event (single transaction):
1. Return the recorded outcome if (provider, event id) was already handled
2. Find and lock the invoice by provider reference
3. Re-check step 1 under the lock
4. Apply the outcome through the ledger (partial refunds are recorded only)
5. Record the event
Chat notification happens after commit and never undoes the transition.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kyver_invoices.core.enums import InvoiceStatus, PaymentOutcome
from kyver_invoices.core.exceptions import (
    InvalidTransitionError,
    StoreUnavailableError,
    UnknownInvoiceError,
)
from kyver_invoices.core.ledger import InvoiceLedger, TransitionResult
from kyver_invoices.database import Invoice, PaymentEvent, Store, utcnow

logger = structlog.get_logger(__name__)

RESULT_APPLIED = "applied"
RESULT_IGNORED = "ignored"

# Attempts when a concurrent delivery of the same event commits first
MAX_RECONCILE_ATTEMPTS = 3


class ChatNotifier(Protocol):
    """Receives invoice updates worth telling chat users about."""

    async def invoice_updated(self, invoice: Invoice, previous_status: InvoiceStatus) -> None: ...


@dataclass
class ProviderEvent:
    """A verified provider webhook event, normalized across providers."""

    provider: str
    external_event_id: str
    provider_reference: str
    outcome: PaymentOutcome
    event_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    received_at: datetime = field(default_factory=utcnow)
    # Total refunded so far, in minor units, when the provider reports partial refunds
    refunded_amount_cents: Optional[int] = None


@dataclass
class ReconcileResult:
    """What happened to one provider event."""

    invoice_id: uuid.UUID
    outcome: PaymentOutcome
    invoice_status: InvoiceStatus
    applied: bool
    duplicate: bool = False


def _is_partial_refund(event: ProviderEvent, invoice: Invoice) -> bool:
    """A refund that leaves part of the invoice amount with the payee."""
    return (
        event.outcome == PaymentOutcome.REFUNDED
        and event.refunded_amount_cents is not None
        and event.refunded_amount_cents < invoice.amount_cents
    )


class PaymentReconciler:
    """
    Reconciles provider events with the invoice ledger.

    Redelivered events (same provider and external event id) return the
    previously computed result and never cause a second transition.
    """

    def __init__(
        self,
        store: Store,
        ledger: InvoiceLedger,
        notifier: Optional[ChatNotifier] = None,
    ):
        """
        Initialize the reconciler.

        Args:
            store: Persistent store adapter
            ledger: Invoice ledger
            notifier: Optional chat notifier for applied transitions
        """
        self.store = store
        self.ledger = ledger
        self.notifier = notifier

    @staticmethod
    async def _find_recorded(session: AsyncSession, event: ProviderEvent) -> Optional[PaymentEvent]:
        result = await session.execute(
            select(PaymentEvent).where(
                PaymentEvent.provider == event.provider,
                PaymentEvent.external_event_id == event.external_event_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _from_record(record: PaymentEvent) -> ReconcileResult:
        return ReconcileResult(
            invoice_id=record.invoice_id,
            outcome=PaymentOutcome(record.outcome),
            invoice_status=InvoiceStatus(record.invoice_status),
            applied=record.result == RESULT_APPLIED,
            duplicate=True,
        )

    async def _reconcile(
        self, session: AsyncSession, event: ProviderEvent
    ) -> Tuple[ReconcileResult, Optional[TransitionResult]]:
        recorded = await self._find_recorded(session, event)
        if recorded is not None:
            return self._from_record(recorded), None

        invoice = await self.ledger.find_by_provider_reference(
            session, event.provider, event.provider_reference
        )
        if invoice is None:
            raise UnknownInvoiceError(event.provider, event.provider_reference)

        # A concurrent delivery may have committed while we waited for the lock
        recorded = await self._find_recorded(session, event)
        if recorded is not None:
            return self._from_record(recorded), None

        transition: Optional[TransitionResult] = None
        applied = False
        status = InvoiceStatus(invoice.status)
        if _is_partial_refund(event, invoice):
            logger.info(
                "partial_refund_ignored",
                invoice_id=str(invoice.id),
                provider=event.provider,
                event_id=event.external_event_id,
                refunded_amount_cents=event.refunded_amount_cents,
                amount_cents=invoice.amount_cents,
            )
        else:
            try:
                transition = await self.ledger.apply_payment(
                    invoice.id, event.outcome, session=session
                )
                applied = transition.changed
                status = transition.status
            except InvalidTransitionError as e:
                logger.info(
                    "payment_event_ignored",
                    invoice_id=str(invoice.id),
                    provider=event.provider,
                    event_id=event.external_event_id,
                    current_status=e.current_status,
                    outcome=event.outcome.value,
                )

        session.add(
            PaymentEvent(
                provider=event.provider,
                external_event_id=event.external_event_id,
                invoice_id=invoice.id,
                event_type=event.event_type,
                outcome=event.outcome.value,
                result=RESULT_APPLIED if applied else RESULT_IGNORED,
                invoice_status=status.value,
                event_data=event.data,
                received_at=event.received_at,
            )
        )
        await session.flush()

        result = ReconcileResult(
            invoice_id=invoice.id,
            outcome=event.outcome,
            invoice_status=status,
            applied=applied,
        )
        return result, transition if applied else None

    async def handle(self, event: ProviderEvent) -> ReconcileResult:
        """
        Reconcile one provider event.

        Args:
            event: Verified, normalized provider event

        Returns:
            ReconcileResult: ``duplicate`` is True for redeliveries

        Raises:
            UnknownInvoiceError: If no invoice owns the provider reference
            StoreUnavailableError: If the store stays unavailable
        """
        log = logger.bind(
            provider=event.provider,
            event_id=event.external_event_id,
            event_type=event.event_type,
        )

        async def _run(session: AsyncSession) -> Tuple[ReconcileResult, Optional[TransitionResult]]:
            return await self._reconcile(session, event)

        attempt = 0
        while True:
            attempt += 1
            try:
                result, transition = await self.store.with_transaction(_run)
            except IntegrityError as e:
                # Lost the insert race; the next attempt reads the winner's record
                log.info("payment_event_insert_conflict", attempt=attempt)
                if attempt >= MAX_RECONCILE_ATTEMPTS:
                    raise StoreUnavailableError(
                        f"payment event {event.external_event_id} kept conflicting",
                        original_error=e,
                    ) from e
                continue
            break

        if result.duplicate:
            log.info(
                "payment_event_duplicate",
                invoice_id=str(result.invoice_id),
                invoice_status=result.invoice_status.value,
            )
            return result

        log.info(
            "payment_event_reconciled",
            invoice_id=str(result.invoice_id),
            outcome=result.outcome.value,
            invoice_status=result.invoice_status.value,
            applied=result.applied,
        )

        if transition is not None:
            self.ledger.record_committed(transition)
            await self._notify(transition)

        return result

    async def _notify(self, transition: TransitionResult) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.invoice_updated(transition.invoice, transition.previous_status)
        except Exception as e:
            logger.error(
                "invoice_notification_failed",
                invoice_id=str(transition.invoice.id),
                error=str(e),
                error_type=type(e).__name__,
            )
