"""
PayPal payment provider over the REST API.

Implements:
- OAuth client-credentials token caching
- Orders v2 checkout creation and capture with PayPal-Request-Id idempotency
- Webhook verification through the verify-webhook-signature API
- Error classification, retries and circuit breaker shared with Stripe
"""
import asyncio
import json
import time
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from kyver_invoices.config import Settings, get_settings
from kyver_invoices.core.enums import PaymentOutcome, PaymentProviderName
from kyver_invoices.core.exceptions import InvoiceValidationError
from kyver_invoices.core.money import to_decimal_string, to_minor_units
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

# PayPal event type -> outcome
_EVENT_OUTCOMES = {
    "PAYMENT.CAPTURE.COMPLETED": PaymentOutcome.SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": PaymentOutcome.FAILED,
    "PAYMENT.CAPTURE.DECLINED": PaymentOutcome.FAILED,
    "PAYMENT.CAPTURE.REFUNDED": PaymentOutcome.REFUNDED,
}

ORDER_APPROVED = "CHECKOUT.ORDER.APPROVED"

_SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

# Refresh tokens this many seconds before PayPal expires them
TOKEN_EXPIRY_MARGIN = 60


def _total_refunded_cents(refund: Dict[str, Any]) -> int:
    """
    Amount refunded on the capture so far, in minor units.

    PAYMENT.CAPTURE.REFUNDED is sent for partial refunds too. The refund
    resource carries the running total in its payable breakdown; older
    payloads only carry the amount of this refund.
    """
    breakdown = refund.get("seller_payable_breakdown") or {}
    total = breakdown.get("total_refunded_amount") or refund.get("amount") or {}
    try:
        return to_minor_units(total.get("value", ""), total.get("currency_code", ""))
    except InvoiceValidationError:
        raise WebhookError("PayPal refund has no valid amount") from None


class PayPalProvider(PaymentProvider):
    """
    PayPal Orders v2 integration.

    The provider reference travels as the purchase unit ``custom_id`` and
    comes back on capture and refund resources.
    """

    name = PaymentProviderName.PAYPAL

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize PayPal provider.

        Args:
            settings: Optional settings (uses cached settings if not provided)
            client: Optional HTTP client (created from settings if not provided)
        """
        self.settings = settings or get_settings()
        self.client = client or httpx.AsyncClient(
            base_url=self.settings.paypal_base_url,
            timeout=self.settings.paypal_timeout,
        )
        self.circuit_breaker = CircuitBreaker(self.name.value)
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

        logger.info("paypal_provider_initialized", mode=self.settings.paypal_mode)

    def _error(
        self,
        message: str,
        error_type: ProviderErrorType,
        original_error: Optional[Exception] = None,
    ) -> ProviderError:
        metrics.record_provider_api_error(self.name.value, error_type.value)
        logger.error("paypal_api_error", error_type=error_type.value, error_message=message)
        return ProviderError(message, self.name.value, error_type, original_error)

    def _classify_response(self, response: httpx.Response) -> ProviderError:
        if response.status_code == 429:
            error_type = ProviderErrorType.RATE_LIMIT
        elif response.status_code >= 500 or response.status_code == 401:
            error_type = ProviderErrorType.TRANSIENT
        else:
            error_type = ProviderErrorType.PERMANENT
        return self._error(
            f"PayPal API returned {response.status_code}: {response.text[:500]}",
            error_type,
        )

    async def _get_access_token(self) -> str:
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            try:
                response = await self.client.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
                )
            except httpx.TransportError as e:
                raise self._error(f"PayPal token request failed: {e}", ProviderErrorType.TRANSIENT, e) from e

            if response.status_code != 200:
                raise self._classify_response(response)

            body = response.json()
            self._access_token = body["access_token"]
            self._token_expires_at = (
                time.monotonic() + float(body.get("expires_in", 0)) - TOKEN_EXPIRY_MARGIN
            )
            logger.info("paypal_access_token_refreshed")
            return self._access_token

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> httpx.Response:
        """Authenticated REST call behind the circuit breaker; returns the raw response."""
        start = time.time()

        async def _send() -> httpx.Response:
            token = await self._get_access_token()
            headers = {"Authorization": f"Bearer {token}"}
            if request_id:
                headers["PayPal-Request-Id"] = request_id
            try:
                response = await self.client.request(method, path, json=json_body, headers=headers)
            except httpx.TransportError as e:
                raise self._error(f"PayPal request failed: {e}", ProviderErrorType.TRANSIENT, e) from e

            if response.status_code == 401:
                self._access_token = None
            if response.status_code == 429 or response.status_code >= 500 or response.status_code == 401:
                raise self._classify_response(response)
            return response

        try:
            response = await self.circuit_breaker.call(_send)
        except ProviderError:
            metrics.record_provider_api_call(self.name.value, operation, "error", time.time() - start)
            raise

        status = "success" if response.is_success else "error"
        metrics.record_provider_api_call(self.name.value, operation, status, time.time() - start)
        return response

    @retry(
        retry=retry_if_exception(is_retryable_provider_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        reraise=True,
    )
    async def create_checkout(self, invoice: Invoice, reference: str) -> Checkout:
        """
        Create a PayPal order for an invoice.

        Args:
            invoice: Invoice being paid
            reference: Provider reference for this attempt

        Returns:
            Checkout: Approval URL and order id

        Raises:
            ProviderError: If order creation fails
        """
        base_url = self.settings.public_base_url.rstrip("/")
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": str(invoice.id),
                    "custom_id": reference,
                    "description": invoice.description[:127],
                    "amount": {
                        "currency_code": invoice.currency,
                        "value": to_decimal_string(invoice.amount_cents, invoice.currency),
                    },
                }
            ],
            "application_context": {
                "return_url": f"{base_url}/payments/success?reference={reference}",
                "cancel_url": f"{base_url}/payments/cancelled?reference={reference}",
                "user_action": "PAY_NOW",
            },
        }

        logger.info(
            "creating_paypal_order",
            invoice_id=str(invoice.id),
            amount_cents=invoice.amount_cents,
            currency=invoice.currency,
            reference=reference,
        )

        response = await self._request(
            "create_order", "POST", "/v2/checkout/orders",
            json_body=body, request_id=f"checkout-{reference}",
        )
        if not response.is_success:
            raise self._classify_response(response)

        order = response.json()
        approve_url = next(
            (
                link["href"]
                for link in order.get("links", [])
                if link.get("rel") in ("approve", "payer-action")
            ),
            None,
        )
        if not approve_url:
            raise self._error("PayPal order has no approval link", ProviderErrorType.PERMANENT)

        logger.info("paypal_order_created", invoice_id=str(invoice.id), order_id=order.get("id"))
        return Checkout(reference=reference, url=approve_url, provider_id=order.get("id"))

    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        """
        Capture an approved order.

        An order that was already captured is not an error.

        Raises:
            ProviderError: If the capture fails
        """
        response = await self._request(
            "capture_order", "POST", f"/v2/checkout/orders/{order_id}/capture",
            json_body={}, request_id=f"capture-{order_id}",
        )
        if response.status_code == 422 and "ORDER_ALREADY_CAPTURED" in response.text:
            logger.info("paypal_order_already_captured", order_id=order_id)
            return {"id": order_id, "status": "COMPLETED"}
        if not response.is_success:
            raise self._classify_response(response)

        result = response.json()
        logger.info("paypal_order_captured", order_id=order_id, status=result.get("status"))
        return result

    async def verify_signature(self, payload: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """
        Verify a delivery through PayPal's verify-webhook-signature API.

        Raises:
            WebhookError: If headers are missing or PayPal rejects the signature
            ProviderError: If PayPal could not be asked
        """
        try:
            document = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise WebhookError(f"Invalid webhook payload: {e}") from e
        if not isinstance(document, dict) or "id" not in document or "event_type" not in document:
            raise WebhookError("Webhook payload is not a PayPal event")

        if not self.settings.paypal_webhook_id:
            raise WebhookError("PayPal webhook id is not configured")

        verification: Dict[str, Any] = {}
        for field, header in _SIGNATURE_HEADERS.items():
            value = headers.get(header)
            if not value:
                raise WebhookError(f"Missing {header} header")
            verification[field] = value
        verification["webhook_id"] = self.settings.paypal_webhook_id
        verification["webhook_event"] = document

        response = await self._request(
            "verify_webhook_signature", "POST",
            "/v1/notifications/verify-webhook-signature",
            json_body=verification,
        )
        if not response.is_success:
            raise self._classify_response(response)

        if response.json().get("verification_status") != "SUCCESS":
            logger.warning(
                "webhook_signature_verification_failed",
                provider="paypal",
                event_id=document.get("id"),
            )
            raise WebhookError("Invalid webhook signature")

        return document

    def parse_event(self, document: Dict[str, Any]) -> Optional[ProviderEvent]:
        """Map a PayPal event to a provider event; None for unhandled types."""
        event_type = document.get("event_type", "")
        outcome = _EVENT_OUTCOMES.get(event_type)
        if outcome is None:
            return None

        resource = document.get("resource") or {}
        reference = resource.get("custom_id")
        if not reference:
            logger.info(
                "paypal_event_without_reference",
                event_id=document.get("id"),
                event_type=event_type,
            )
            return None

        amount = resource.get("amount") or {}
        refunded_amount_cents = None
        if outcome == PaymentOutcome.REFUNDED:
            refunded_amount_cents = _total_refunded_cents(resource)

        return ProviderEvent(
            provider=self.name.value,
            external_event_id=document["id"],
            provider_reference=reference,
            outcome=outcome,
            event_type=event_type,
            refunded_amount_cents=refunded_amount_cents,
            data={
                "object_id": resource.get("id"),
                "amount": amount.get("value"),
                "currency": amount.get("currency_code"),
                "status": resource.get("status"),
            },
        )

    async def follow_up(self, document: Dict[str, Any]) -> None:
        """Capture orders as soon as the payer approves them."""
        if document.get("event_type") != ORDER_APPROVED:
            return
        order_id = (document.get("resource") or {}).get("id")
        if order_id:
            await self.capture_order(order_id)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
