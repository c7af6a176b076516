"""
Provider webhook intake.

Implements:
- Routing deliveries to the provider variant by name
- Signature verification before anything is read
- Provider follow-up actions (PayPal order capture)
- Reconciliation with event deduplication in the database
"""
import time
from typing import Any, Dict, Mapping

import structlog

from kyver_invoices.core.exceptions import UnknownInvoiceError
from kyver_invoices.core.reconciler import PaymentReconciler
from kyver_invoices.integrations.base import PaymentProvider, WebhookError
from kyver_invoices.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class UnknownProviderError(Exception):
    """Raised when a webhook names a provider that is not enabled."""

    def __init__(self, provider: str):
        super().__init__(f"Unknown payment provider '{provider}'")
        self.provider = provider


class WebhookHandler:
    """
    Handles provider webhook deliveries.

    Every delivery is verified first. Redeliveries are answered from the
    recorded payment event rather than applied again.
    """

    def __init__(self, providers: Mapping[str, PaymentProvider], reconciler: PaymentReconciler):
        """
        Initialize webhook handler.

        Args:
            providers: Enabled providers by name
            reconciler: Payment reconciler
        """
        self.providers = providers
        self.reconciler = reconciler

        logger.info("webhook_handler_initialized", providers=sorted(providers))

    async def handle(
        self,
        provider_name: str,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> Dict[str, Any]:
        """
        Process one webhook delivery.

        Args:
            provider_name: Provider from the webhook URL
            payload: Raw request body
            headers: Request headers

        Returns:
            Dict[str, Any]: Response body; ``status`` is one of
                processed, duplicate, ignored, unknown_invoice

        Raises:
            UnknownProviderError: If the provider is not enabled
            WebhookError: If verification fails
            ProviderError: If a provider API call needed for the delivery fails
            StoreUnavailableError: If the store stays unavailable
        """
        provider = self.providers.get(provider_name)
        if provider is None:
            raise UnknownProviderError(provider_name)

        start = time.time()
        status = "error"
        try:
            try:
                document = await provider.verify_signature(payload, headers)
            except WebhookError:
                status = "rejected"
                raise

            event_id = document.get("id")
            log = logger.bind(provider=provider_name, event_id=event_id)
            log.info("webhook_received")

            await provider.follow_up(document)

            event = provider.parse_event(document)
            if event is None:
                status = "ignored"
                log.info("webhook_event_not_reconciled")
                return {"status": status, "event_id": event_id}

            try:
                result = await self.reconciler.handle(event)
            except UnknownInvoiceError as e:
                status = "unknown_invoice"
                log.warning(
                    "webhook_unknown_invoice",
                    provider_reference=e.provider_reference,
                    event_type=event.event_type,
                )
                return {"status": status, "event_id": event_id}

            if result.duplicate:
                status = "duplicate"
            elif result.applied:
                status = "processed"
            else:
                status = "ignored"

            return {
                "status": status,
                "event_id": event_id,
                "invoice_id": str(result.invoice_id),
                "invoice_status": result.invoice_status.value,
                "applied": result.applied,
            }
        finally:
            metrics.record_webhook_event(provider_name, status, time.time() - start)
