"""
Tests for the /invoice command gateway.
"""
import asyncio
import uuid
from typing import Any

import pytest

from kyver_invoices.chat.gateway import (
    USAGE,
    ChatInteraction,
    CommandGateway,
    parse_mention,
)
from kyver_invoices.config import Settings
from kyver_invoices.core.enums import InvoiceStatus
from kyver_invoices.core.exceptions import InvoiceValidationError
from kyver_invoices.core.ledger import InvoiceLedger
from kyver_invoices.core.qr_codes import PNG_SIGNATURE
from kyver_invoices.integrations.base import ProviderError, ProviderErrorType

from .conftest import ADMIN_ID, CHANNEL_ID, OTHER_USER_ID, PAYER_ID, FakeProvider


@pytest.fixture
def gateway(ledger: InvoiceLedger, fake_provider: FakeProvider, test_settings: Settings) -> CommandGateway:
    return CommandGateway(ledger, {"stripe": fake_provider}, test_settings)


def command(user_id: str, text: str) -> ChatInteraction:
    return ChatInteraction.from_text(user_id, text, channel_id=CHANNEL_ID)


class TestChatInteraction:
    """Parsing of raw command text."""

    @pytest.mark.unit
    def test_quoted_description_is_one_argument(self) -> None:
        """Test that shell-style quotes group words."""
        interaction = ChatInteraction.from_text(ADMIN_ID, 'create <@UPAYER0001> 10 "Team lunch"')

        assert interaction.command == "create"
        assert interaction.arguments == ["<@UPAYER0001>", "10", "Team lunch"]

    @pytest.mark.unit
    def test_empty_text_is_help(self) -> None:
        assert ChatInteraction.from_text(ADMIN_ID, "").command == "help"

    @pytest.mark.unit
    def test_unbalanced_quotes_fall_back_to_split(self) -> None:
        interaction = ChatInteraction.from_text(ADMIN_ID, 'status "abc')
        assert interaction.arguments == ['"abc']

    @pytest.mark.unit
    def test_parse_mention(self) -> None:
        """Test escaped mentions, raw ids and rejects."""
        assert parse_mention("<@UPAYER0001|pat>") == ("UPAYER0001", "pat")
        assert parse_mention("<@UPAYER0001>") == ("UPAYER0001", None)
        assert parse_mention("UPAYER0001") == ("UPAYER0001", None)
        with pytest.raises(InvoiceValidationError):
            parse_mention("@pat")


class TestCreateCommand:
    """Test suite for /invoice create."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_creates_invoice(self, gateway: CommandGateway, ledger: InvoiceLedger) -> None:
        """Test that an admin can bill a user in a given currency."""
        reply = await gateway.dispatch(
            command(ADMIN_ID, "create <@UPAYER0001|pat> 12.50 EUR Team lunch")
        )

        assert reply.ephemeral is False
        assert "<@UPAYER0001>" in reply.text
        assert "12.50 EUR" in reply.text

        invoices = await ledger.list_for_payer(PAYER_ID)
        assert len(invoices) == 1
        invoice = invoices[0]
        assert invoice.amount_cents == 1250
        assert invoice.currency == "EUR"
        assert invoice.description == "Team lunch"
        assert invoice.payer_name == "pat"
        assert invoice.created_by == ADMIN_ID
        assert invoice.channel_id == CHANNEL_ID
        assert invoice.status == InvoiceStatus.DRAFT.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_default_currency_and_description(
        self, gateway: CommandGateway, ledger: InvoiceLedger
    ) -> None:
        """Test that a description word is not mistaken for a currency."""
        await gateway.dispatch(command(ADMIN_ID, "create <@UPAYER0001> 5 coffee beans"))

        invoice = (await ledger.list_for_payer(PAYER_ID))[0]
        assert invoice.currency == "USD"
        assert invoice.description == "coffee beans"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_non_admin_cannot_create(self, gateway: CommandGateway, ledger: InvoiceLedger) -> None:
        """Test that ordinary users are denied before anything is stored."""
        reply = await gateway.dispatch(command(PAYER_ID, "create <@UOTHER0001> 5"))

        assert "Permission denied" in reply.text
        assert await ledger.list_for_payer(OTHER_USER_ID) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "text,message",
        [
            ("create <@UPAYER0001> abc", "not a valid amount"),
            ("create <@UPAYER0001> -5", "Amount must be positive"),
            ("create <@UPAYER0001> 1.999", "at most 2 decimal places"),
            ("create <@UPAYER0001> 1e20 USD", "at most 999999.99 USD"),
            ("create <@UPAYER0001> 30000000", "at most 999999.99 USD"),
            ("create <@UPAYER0001> 100000000 JPY", "at most 99999999 JPY"),
            ("create pat 10", "not a user mention"),
            ("create <@UPAYER0001>", "Usage"),
        ],
    )
    async def test_invalid_input(self, gateway: CommandGateway, text: str, message: str) -> None:
        """Test that validation errors come back as plain replies."""
        reply = await gateway.dispatch(command(ADMIN_ID, text))
        assert message in reply.text


class TestPayCommand:
    """Test suite for /invoice pay."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pay_issues_link_and_qr(
        self,
        gateway: CommandGateway,
        ledger: InvoiceLedger,
        invoice_factory,
        fake_provider: FakeProvider,
    ) -> None:
        """Test that paying a draft moves it to Pending with a QR code."""
        invoice = await invoice_factory()

        reply = await gateway.dispatch(command(PAYER_ID, f"pay {invoice.id}"))

        checkout = fake_provider.checkouts[0]
        assert checkout.url in reply.text
        assert reply.image is not None
        assert reply.image.startswith(PNG_SIGNATURE)
        assert reply.ephemeral is True

        stored = await ledger.get(invoice.id)
        assert stored.status == InvoiceStatus.PENDING.value
        assert stored.provider == "stripe"
        assert stored.provider_reference == checkout.reference
        assert stored.payment_url == checkout.url

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pay_again_reuses_link(
        self, gateway: CommandGateway, invoice_factory, fake_provider: FakeProvider
    ) -> None:
        """Test that a second pay command shows the existing checkout."""
        invoice = await invoice_factory()

        await gateway.dispatch(command(PAYER_ID, f"pay {invoice.id}"))
        reply = await gateway.dispatch(command(PAYER_ID, f"pay {invoice.id}"))

        assert len(fake_provider.checkouts) == 1
        assert "already in progress" in reply.text
        assert fake_provider.checkouts[0].url in reply.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_other_user_cannot_pay(
        self, gateway: CommandGateway, invoice_factory, fake_provider: FakeProvider
    ) -> None:
        """Test that only the payer or an admin may start a payment."""
        invoice = await invoice_factory()

        reply = await gateway.dispatch(command(OTHER_USER_ID, f"pay {invoice.id}"))

        assert "Permission denied" in reply.text
        assert fake_provider.checkouts == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pay_paid_invoice(self, gateway: CommandGateway, invoice_factory) -> None:
        """Test that settled invoices cannot be paid again."""
        invoice = await invoice_factory(InvoiceStatus.PAID)

        reply = await gateway.dispatch(command(PAYER_ID, f"pay {invoice.id}"))

        assert reply.text == f"Invoice `{invoice.id}` is paid."

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pay_unknown_provider(self, gateway: CommandGateway, invoice_factory) -> None:
        """Test that only configured providers can be chosen."""
        invoice = await invoice_factory()

        reply = await gateway.dispatch(command(PAYER_ID, f"pay {invoice.id} paypal"))

        assert "Unknown payment provider 'paypal'" in reply.text
        assert "stripe" in reply.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_provider_outage_keeps_draft(
        self,
        gateway: CommandGateway,
        ledger: InvoiceLedger,
        invoice_factory,
        fake_provider: FakeProvider,
    ) -> None:
        """Test that a failed checkout leaves the invoice payable later."""
        fake_provider.create_checkout_error = ProviderError(
            "API down", "stripe", ProviderErrorType.TRANSIENT
        )
        invoice = await invoice_factory()

        reply = await gateway.dispatch(command(PAYER_ID, f"pay {invoice.id}"))

        assert "provider is unavailable" in reply.text
        assert (await ledger.get(invoice.id)).status == InvoiceStatus.DRAFT.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_qr_failure_still_returns_link(
        self, ledger: InvoiceLedger, fake_provider: FakeProvider, test_settings: Settings, invoice_factory
    ) -> None:
        """Test that an unrenderable QR code degrades to a link-only reply."""
        gateway = CommandGateway(
            ledger,
            {"stripe": fake_provider},
            test_settings.model_copy(update={"qr_max_uri_length": 10}),
        )
        invoice = await invoice_factory()

        reply = await gateway.dispatch(command(PAYER_ID, f"pay {invoice.id}"))

        assert reply.image is None
        assert "QR code generation failed" in reply.text
        assert fake_provider.checkouts[0].url in reply.text
        assert (await ledger.get(invoice.id)).status == InvoiceStatus.PENDING.value


class TestOtherCommands:
    """Test suite for status, cancel, list and help."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_status(self, gateway: CommandGateway, invoice_factory) -> None:
        """Test that the payer can see their invoice."""
        invoice = await invoice_factory()

        reply = await gateway.dispatch(command(PAYER_ID, f"status {invoice.id}"))

        assert str(invoice.id) in reply.text
        assert "Status: Draft" in reply.text
        assert "12.50 USD" in reply.text
        assert reply.image is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_status_pending_includes_qr(self, gateway: CommandGateway, invoice_factory) -> None:
        invoice = await invoice_factory(InvoiceStatus.PENDING)

        reply = await gateway.dispatch(command(PAYER_ID, f"status {invoice.id}"))

        assert "Awaiting payment" in reply.text
        assert reply.image is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_status_unknown_and_malformed_ids(self, gateway: CommandGateway) -> None:
        missing = uuid.uuid4()
        reply = await gateway.dispatch(command(PAYER_ID, f"status {missing}"))
        assert reply.text == f"Invoice `{missing}` not found."

        reply = await gateway.dispatch(command(PAYER_ID, "status nope"))
        assert "not a valid invoice id" in reply.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_sees_any_invoice(self, gateway: CommandGateway, invoice_factory) -> None:
        invoice = await invoice_factory()

        reply = await gateway.dispatch(command(ADMIN_ID, f"status {invoice.id}"))

        assert "Permission denied" not in reply.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel(self, gateway: CommandGateway, ledger: InvoiceLedger, invoice_factory) -> None:
        """Test cancel by the payer, then again."""
        invoice = await invoice_factory(InvoiceStatus.PENDING)

        reply = await gateway.dispatch(command(PAYER_ID, f"cancel {invoice.id}"))
        again = await gateway.dispatch(command(PAYER_ID, f"cancel {invoice.id}"))

        assert reply.text == f"Invoice `{invoice.id}` cancelled."
        assert "already cancelled" in again.text
        assert (await ledger.get(invoice.id)).status == InvoiceStatus.CANCELLED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_denied_and_paid(
        self, gateway: CommandGateway, ledger: InvoiceLedger, invoice_factory
    ) -> None:
        draft = await invoice_factory()
        paid = await invoice_factory(InvoiceStatus.PAID)

        denied = await gateway.dispatch(command(OTHER_USER_ID, f"cancel {draft.id}"))
        rejected = await gateway.dispatch(command(ADMIN_ID, f"cancel {paid.id}"))

        assert "Permission denied" in denied.text
        assert (await ledger.get(draft.id)).status == InvoiceStatus.DRAFT.value
        assert rejected.text == f"Invoice `{paid.id}` is paid."

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list(self, gateway: CommandGateway, invoice_factory) -> None:
        """Test own list, admin list of another user and denied list."""
        invoice = await invoice_factory()

        own = await gateway.dispatch(command(PAYER_ID, "list"))
        by_admin = await gateway.dispatch(command(ADMIN_ID, "list <@UPAYER0001>"))
        denied = await gateway.dispatch(command(OTHER_USER_ID, "list <@UPAYER0001>"))
        empty = await gateway.dispatch(command(OTHER_USER_ID, "list"))

        assert str(invoice.id) in own.text
        assert str(invoice.id) in by_admin.text
        assert "Permission denied" in denied.text
        assert empty.text == f"No invoices for <@{OTHER_USER_ID}>."

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_help_and_unknown_commands(self, gateway: CommandGateway) -> None:
        assert (await gateway.dispatch(command(PAYER_ID, "help"))).text == USAGE
        assert (await gateway.dispatch(command(PAYER_ID, "frobnicate"))).text == USAGE

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_command_timeout(
        self, ledger: InvoiceLedger, fake_provider: FakeProvider, test_settings: Settings, invoice_factory
    ) -> None:
        """Test that slow commands are abandoned with a reply."""

        async def slow_checkout(*args: Any, **kwargs: Any) -> Any:
            await asyncio.sleep(5)

        fake_provider.create_checkout = slow_checkout  # type: ignore[method-assign]
        gateway = CommandGateway(
            ledger,
            {"stripe": fake_provider},
            test_settings.model_copy(update={"chat_command_timeout_seconds": 0.1}),
        )
        invoice = await invoice_factory()

        reply = await gateway.dispatch(command(PAYER_ID, f"pay {invoice.id}"))

        assert "took too long" in reply.text
        assert (await ledger.get(invoice.id)).status == InvoiceStatus.DRAFT.value
