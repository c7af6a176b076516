"""
Stripe payment provider.

Implements:
- Checkout Session creation with idempotency keys
- Exponential backoff for transient errors
- Circuit breaker pattern
- Webhook signature verification and event mapping
"""
import asyncio
import json
import time
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from kyver_invoices.config import Settings, get_settings
from kyver_invoices.core.enums import PaymentOutcome, PaymentProviderName
from kyver_invoices.core.reconciler import ProviderEvent
from kyver_invoices.database import Invoice
from kyver_invoices.integrations.base import (
    Checkout,
    CircuitBreaker,
    PaymentProvider,
    ProviderError,
    ProviderErrorType,
    WebhookError,
    is_retryable_provider_error,
)
from kyver_invoices.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

REFERENCE_METADATA_KEY = "checkout_reference"

# Stripe event type -> outcome
_EVENT_OUTCOMES = {
    "checkout.session.completed": PaymentOutcome.SUCCEEDED,
    "checkout.session.async_payment_succeeded": PaymentOutcome.SUCCEEDED,
    "checkout.session.async_payment_failed": PaymentOutcome.FAILED,
    "checkout.session.expired": PaymentOutcome.FAILED,
    "charge.refunded": PaymentOutcome.REFUNDED,
}


class StripeProvider(PaymentProvider):
    """
    Stripe Checkout integration with production-grade error handling.

    The provider reference travels as the session's ``client_reference_id``
    and as ``checkout_reference`` metadata on the session and its
    PaymentIntent, so refund events can be traced back as well.
    """

    name = PaymentProviderName.STRIPE

    def __init__(self, settings: Optional[Settings] = None) -> None:
        """Initialize Stripe provider."""
        self.settings = settings or get_settings()
        stripe.api_key = self.settings.stripe_secret_key
        stripe.api_version = self.settings.stripe_api_version
        self.circuit_breaker = CircuitBreaker(self.name.value)

        logger.info(
            "stripe_provider_initialized",
            api_version=stripe.api_version,
            test_mode=self.settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> ProviderErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            ProviderErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return ProviderErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return ProviderErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
            ),
        ):
            return ProviderErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return ProviderErrorType.TRANSIENT

    def _to_provider_error(self, error: stripe.StripeError) -> ProviderError:
        error_type = self._classify_error(error)
        metrics.record_provider_api_error(self.name.value, error_type.value)

        logger.error(
            "stripe_api_error",
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )

        return ProviderError(
            message=str(error),
            provider=self.name.value,
            error_type=error_type,
            original_error=error,
        )

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run a blocking Stripe SDK call in the executor behind the circuit breaker."""
        start = time.time()

        async def _run() -> T:
            try:
                return await asyncio.get_running_loop().run_in_executor(None, func)
            except stripe.StripeError as e:
                raise self._to_provider_error(e) from e

        try:
            result = await self.circuit_breaker.call(_run)
        except ProviderError:
            metrics.record_provider_api_call(self.name.value, operation, "error", time.time() - start)
            raise

        metrics.record_provider_api_call(self.name.value, operation, "success", time.time() - start)
        return result

    @retry(
        retry=retry_if_exception(is_retryable_provider_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        reraise=True,
    )
    async def create_checkout(self, invoice: Invoice, reference: str) -> Checkout:
        """
        Create a Stripe Checkout Session for an invoice.

        Args:
            invoice: Invoice being paid
            reference: Provider reference for this attempt

        Returns:
            Checkout: Hosted checkout URL and session id

        Raises:
            ProviderError: If session creation fails
        """
        base_url = self.settings.public_base_url.rstrip("/")
        metadata = {"invoice_id": str(invoice.id), REFERENCE_METADATA_KEY: reference}

        logger.info(
            "creating_checkout_session",
            invoice_id=str(invoice.id),
            amount_cents=invoice.amount_cents,
            currency=invoice.currency,
            reference=reference,
        )

        def _create() -> stripe.checkout.Session:
            return stripe.checkout.Session.create(
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": invoice.currency.lower(),
                            "unit_amount": invoice.amount_cents,
                            "product_data": {"name": invoice.description},
                        },
                        "quantity": 1,
                    }
                ],
                client_reference_id=reference,
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                success_url=f"{base_url}/payments/success?reference={reference}",
                cancel_url=f"{base_url}/payments/cancelled?reference={reference}",
                # Same key on every retry of this attempt
                idempotency_key=f"checkout-{reference}",
            )

        session = await self._call("create_checkout_session", _create)

        logger.info(
            "checkout_session_created",
            invoice_id=str(invoice.id),
            session_id=session.id,
        )

        return Checkout(reference=reference, url=session.url, provider_id=session.id)

    async def verify_signature(self, payload: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """
        Verify the ``Stripe-Signature`` header and decode the event.

        Raises:
            WebhookError: If signature verification fails
        """
        signature = headers.get("stripe-signature")
        if not signature:
            raise WebhookError("Missing Stripe-Signature header")
        if not self.settings.stripe_webhook_secret:
            raise WebhookError("Stripe webhook secret is not configured")

        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                text,
                signature,
                self.settings.stripe_webhook_secret,
                self.settings.stripe_webhook_tolerance,
            )
            document = json.loads(text)
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_verification_failed", provider="stripe", error=str(e))
            raise WebhookError(f"Invalid webhook signature: {e}") from e
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise WebhookError(f"Invalid webhook payload: {e}") from e

        if not isinstance(document, dict) or "id" not in document or "type" not in document:
            raise WebhookError("Webhook payload is not a Stripe event")
        return document

    def parse_event(self, document: Dict[str, Any]) -> Optional[ProviderEvent]:
        """Map a Stripe event to a provider event; None for unhandled types."""
        event_type = document.get("type", "")
        outcome = _EVENT_OUTCOMES.get(event_type)
        if outcome is None:
            return None

        obj = (document.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        if event_type == "checkout.session.completed" and obj.get("payment_status") == "unpaid":
            # Delayed payment methods report later via async_payment_* events
            logger.info("stripe_checkout_awaiting_payment", session_id=obj.get("id"))
            return None

        if event_type == "charge.refunded":
            if not obj.get("refunded"):
                logger.info("stripe_partial_refund_ignored", charge_id=obj.get("id"))
                return None
            reference = metadata.get(REFERENCE_METADATA_KEY)
        else:
            reference = obj.get("client_reference_id") or metadata.get(REFERENCE_METADATA_KEY)

        if not reference:
            logger.info(
                "stripe_event_without_reference",
                event_id=document.get("id"),
                event_type=event_type,
            )
            return None

        return ProviderEvent(
            provider=self.name.value,
            external_event_id=document["id"],
            provider_reference=reference,
            outcome=outcome,
            event_type=event_type,
            data={
                "object_id": obj.get("id"),
                "amount": obj.get("amount_total", obj.get("amount_refunded")),
                "currency": obj.get("currency"),
                "livemode": document.get("livemode"),
            },
        )
