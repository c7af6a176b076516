"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from kyver_invoices.config import Settings
from kyver_invoices.core.enums import InvoiceStatus, PaymentOutcome, PaymentProviderName
from kyver_invoices.core.ledger import InvoiceLedger
from kyver_invoices.core.reconciler import PaymentReconciler, ProviderEvent
from kyver_invoices.database import Invoice, Store
from kyver_invoices.integrations.base import Checkout, PaymentProvider, WebhookError

STRIPE_WEBHOOK_SECRET = "whsec_test_fake_secret"
PAYPAL_WEBHOOK_ID = "WH-TEST-0001"

ADMIN_ID = "UADMIN0001"
PAYER_ID = "UPAYER0001"
OTHER_USER_ID = "UOTHER0001"
CHANNEL_ID = "CCHANNEL01"


def pytest_configure(config: Any) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: fast tests without I/O")
    config.addinivalue_line("markers", "integration: tests against a real database file")
    config.addinivalue_line("markers", "race: concurrent delivery tests")


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings backed by a temporary SQLite file."""
    return Settings(
        _env_file=None,
        stripe_enabled=True,
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        paypal_enabled=True,
        paypal_client_id="paypal-client",
        paypal_client_secret="paypal-secret",
        paypal_webhook_id=PAYPAL_WEBHOOK_ID,
        admin_user_ids=ADMIN_ID,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'invoices.db'}",
        database_pool_size=5,
        database_pool_timeout=2.0,
        store_retry_attempts=3,
        store_retry_base_delay=0.01,
        invoice_pending_timeout_seconds=3600,
        public_base_url="https://invoices.example.com",
        app_name="kyver-invoices-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def store(test_settings: Settings) -> AsyncGenerator[Store, Any]:
    """Create an initialized store and dispose of it afterwards."""
    store = Store(test_settings)
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def ledger(store: Store, test_settings: Settings) -> InvoiceLedger:
    """Invoice ledger over the test store."""
    return InvoiceLedger(store, test_settings)


@pytest.fixture
def notifier() -> AsyncMock:
    """Chat notifier double."""
    return AsyncMock()


@pytest.fixture
def reconciler(store: Store, ledger: InvoiceLedger, notifier: AsyncMock) -> PaymentReconciler:
    """Payment reconciler with a mocked notifier."""
    return PaymentReconciler(store, ledger, notifier)


@pytest.fixture
def invoice_factory(ledger: InvoiceLedger) -> Callable[..., Awaitable[Invoice]]:
    """
    Create invoices in a given status through the ledger.

    Pending and later invoices get a provider reference, returned on
    ``invoice.provider_reference``.
    """

    async def _make(
        status: InvoiceStatus = InvoiceStatus.DRAFT,
        provider: str = "stripe",
        reference: str | None = None,
        payer_id: str = PAYER_ID,
        amount_cents: int = 1250,
        currency: str = "USD",
    ) -> Invoice:
        invoice = await ledger.create(
            payer_id,
            amount_cents,
            currency,
            "Team lunch",
            created_by=ADMIN_ID,
            channel_id=CHANNEL_ID,
        )
        if status == InvoiceStatus.DRAFT:
            return invoice

        if status == InvoiceStatus.CANCELLED:
            return (await ledger.cancel(invoice.id)).invoice

        reference = reference or f"kyv_{uuid.uuid4().hex}"
        invoice = (
            await ledger.mark_pending(
                invoice.id, provider, reference, f"https://pay.example.com/{reference}"
            )
        ).invoice

        if status == InvoiceStatus.EXPIRED:
            return (await ledger.expire(invoice.id)).invoice
        if status in (InvoiceStatus.PAID, InvoiceStatus.REFUNDED):
            invoice = (await ledger.apply_payment(invoice.id, PaymentOutcome.SUCCEEDED)).invoice
        if status == InvoiceStatus.REFUNDED:
            invoice = (await ledger.apply_payment(invoice.id, PaymentOutcome.REFUNDED)).invoice
        return invoice

    return _make


@pytest.fixture
def stripe_signature() -> Callable[[str], str]:
    """Sign a payload the way Stripe does (v1 scheme)."""

    def _sign(payload: str, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        timestamp = timestamp or int(time.time())
        signed = f"{timestamp}.{payload}".encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"

    return _sign


class FakeProvider(PaymentProvider):
    """Payment provider double that issues local checkout links."""

    def __init__(self, name: PaymentProviderName = PaymentProviderName.STRIPE) -> None:
        self.name = name
        self.checkouts: list[Checkout] = []
        self.create_checkout_error: Exception | None = None

    async def verify_signature(self, payload: bytes, headers: Any) -> Dict[str, Any]:
        if headers.get("x-fake-signature") != "valid":
            raise WebhookError("Invalid webhook signature")
        return json.loads(payload)

    def parse_event(self, document: Dict[str, Any]) -> ProviderEvent | None:
        if document.get("type") != "payment.succeeded":
            return None
        return ProviderEvent(
            provider=self.name.value,
            external_event_id=document["id"],
            provider_reference=document["reference"],
            outcome=PaymentOutcome.SUCCEEDED,
            event_type=document["type"],
        )

    async def create_checkout(self, invoice: Invoice, reference: str) -> Checkout:
        if self.create_checkout_error is not None:
            raise self.create_checkout_error
        checkout = Checkout(
            reference=reference,
            url=f"https://checkout.example.com/{reference}",
            provider_id=f"fake_{len(self.checkouts)}",
        )
        self.checkouts.append(checkout)
        return checkout


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()
