"""
Chat command gateway for ``/invoice``.

Subcommands:
- create <@user> <amount> [CUR] [description...]   (admins only)
- pay <invoice-id> [stripe|paypal]
- status <invoice-id>
- cancel <invoice-id>
- list [<@user>]
- help

Every command runs under a timeout, checks permissions before any
mutation and turns domain errors into plain replies.
"""
import asyncio
import re
import shlex
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import structlog

from kyver_invoices.config import Settings, get_settings
from kyver_invoices.core.enums import InvoiceStatus
from kyver_invoices.core.exceptions import (
    EncodingError,
    InvalidTransitionError,
    InvoiceNotFoundError,
    InvoiceValidationError,
    StoreUnavailableError,
    UnauthorizedError,
)
from kyver_invoices.core.ledger import InvoiceLedger
from kyver_invoices.core.money import format_amount, to_minor_units
from kyver_invoices.core.qr_codes import render
from kyver_invoices.database import Invoice
from kyver_invoices.integrations.base import PaymentProvider, ProviderError, new_checkout_reference
from kyver_invoices.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

USAGE = """*Invoice commands*
• `/invoice create @user <amount> [CUR] [description]` create an invoice (admins)
• `/invoice pay <invoice-id> [stripe|paypal]` get a payment link and QR code
• `/invoice status <invoice-id>` show an invoice
• `/invoice cancel <invoice-id>` cancel an unpaid invoice
• `/invoice list [@user]` recent invoices
• `/invoice help` this message"""

_MENTION = re.compile(r"^<@([UW][A-Z0-9]+)(?:\|([^>]*))?>$")
_RAW_USER_ID = re.compile(r"^[UW][A-Z0-9]{2,}$")
_CURRENCY = re.compile(r"^[A-Z]{3}$")

LIST_LIMIT = 10


@dataclass
class ChatInteraction:
    """One slash-command invocation, independent of the chat platform."""

    user_id: str
    command: str
    arguments: List[str] = field(default_factory=list)
    channel_id: Optional[str] = None
    user_name: Optional[str] = None

    @classmethod
    def from_text(
        cls,
        user_id: str,
        text: str,
        channel_id: Optional[str] = None,
        user_name: Optional[str] = None,
    ) -> "ChatInteraction":
        """Split command text; quoted descriptions stay one argument."""
        try:
            tokens = shlex.split(text or "")
        except ValueError:
            tokens = (text or "").split()
        command = tokens[0].lower() if tokens else "help"
        return cls(
            user_id=user_id,
            command=command,
            arguments=tokens[1:],
            channel_id=channel_id,
            user_name=user_name,
        )


@dataclass
class ChatReply:
    """Text reply with an optional PNG attachment."""

    text: str
    image: Optional[bytes] = None
    image_name: str = "invoice-qr.png"
    ephemeral: bool = True


def parse_mention(token: str) -> Tuple[str, Optional[str]]:
    """
    Extract a user id (and display name) from ``<@U123|name>``.

    Raises:
        InvoiceValidationError: If the token is not a user mention
    """
    match = _MENTION.match(token)
    if match:
        return match.group(1), match.group(2) or None
    if _RAW_USER_ID.match(token):
        return token, None
    raise InvoiceValidationError(f"'{token}' is not a user mention; use @someone")


def describe_invoice(invoice: Invoice) -> str:
    """Multi-line summary of an invoice for chat."""
    lines = [
        f"*Invoice* `{invoice.id}`",
        f"Amount: {format_amount(invoice.amount_cents, invoice.currency)}",
        f"Status: {invoice.status.capitalize()}",
        f"Payer: <@{invoice.payer_id}>",
        f"Description: {invoice.description}",
    ]
    if invoice.provider and invoice.status == InvoiceStatus.PENDING.value:
        lines.append(f"Provider: {invoice.provider.capitalize()}")
    return "\n".join(lines)


class CommandGateway:
    """
    Dispatches chat interactions to ledger operations.

    Admins may act on any invoice; other users only on invoices
    addressed to them.
    """

    def __init__(
        self,
        ledger: InvoiceLedger,
        providers: Mapping[str, PaymentProvider],
        settings: Optional[Settings] = None,
        renderer: Callable[..., bytes] = render,
    ):
        """
        Initialize the gateway.

        Args:
            ledger: Invoice ledger
            providers: Enabled payment providers by name
            settings: Optional settings (uses cached settings if not provided)
            renderer: QR code renderer
        """
        self.ledger = ledger
        self.providers = providers
        self.settings = settings or get_settings()
        self.renderer = renderer
        self._admins = frozenset(self.settings.get_admin_user_ids())
        self._commands: Dict[str, Callable[[ChatInteraction], Awaitable[ChatReply]]] = {
            "create": self._create,
            "pay": self._pay,
            "status": self._status,
            "cancel": self._cancel,
            "list": self._list,
            "help": self._help,
        }

    def is_admin(self, user_id: str) -> bool:
        return user_id in self._admins

    def _check_access(self, user_id: str, invoice: Invoice) -> None:
        if invoice.payer_id != user_id and not self.is_admin(user_id):
            raise UnauthorizedError("You can only manage invoices addressed to you.")

    async def dispatch(self, interaction: ChatInteraction) -> ChatReply:
        """
        Handle one chat interaction.

        Never raises for domain errors; every failure becomes a reply.
        """
        command = interaction.command if interaction.command in self._commands else "help"
        handler = self._commands[command]
        log = logger.bind(command=command, user_id=interaction.user_id)

        start = time.time()
        status = "ok"
        try:
            reply = await asyncio.wait_for(
                handler(interaction), timeout=self.settings.chat_command_timeout_seconds
            )
        except UnauthorizedError as e:
            status = "denied"
            log.info("chat_command_denied")
            reply = ChatReply(f":no_entry: Permission denied. {e}")
        except InvoiceNotFoundError as e:
            status = "not_found"
            reply = ChatReply(f"Invoice `{e.invoice_id}` not found.")
        except InvoiceValidationError as e:
            status = "invalid"
            reply = ChatReply(str(e))
        except InvalidTransitionError as e:
            status = "invalid"
            reply = ChatReply(f"Invoice `{e.invoice_id}` is {e.current_status}.")
        except ProviderError as e:
            status = "provider_error"
            log.warning("chat_command_provider_error", provider=e.provider, error=str(e))
            reply = ChatReply("The payment provider is unavailable right now. Please try again later.")
        except StoreUnavailableError as e:
            status = "unavailable"
            log.warning("chat_command_store_unavailable", error=str(e))
            reply = ChatReply("Invoices are temporarily unavailable. Please try again in a moment.")
        except asyncio.TimeoutError:
            status = "timeout"
            log.warning("chat_command_timeout", timeout=self.settings.chat_command_timeout_seconds)
            reply = ChatReply("That took too long. Please check the invoice status and try again.")
        finally:
            metrics.record_chat_command(command, status, time.time() - start)

        log.info("chat_command_handled", status=status)
        return reply

    def _render_qr(self, url: str) -> Optional[bytes]:
        try:
            return self.renderer(
                url,
                size=self.settings.qr_code_size,
                max_length=self.settings.qr_max_uri_length,
            )
        except EncodingError:
            return None

    def _payment_reply(self, invoice: Invoice, intro: str) -> ChatReply:
        url = invoice.payment_url or ""
        image = self._render_qr(url)
        text = (
            f"{intro}\n{describe_invoice(invoice)}\n"
            f"<{url}|Pay {format_amount(invoice.amount_cents, invoice.currency)}>"
        )
        if image is None:
            text += "\n_QR code generation failed; use the link above._"
        return ChatReply(text=text, image=image)

    async def _create(self, interaction: ChatInteraction) -> ChatReply:
        if not self.is_admin(interaction.user_id):
            raise UnauthorizedError("Only invoice admins can create invoices.")

        args = interaction.arguments
        if len(args) < 2:
            raise InvoiceValidationError(
                "Usage: `/invoice create @user <amount> [CUR] [description]`"
            )

        payer_id, payer_name = parse_mention(args[0])
        rest = args[2:]
        currency = self.settings.invoice_default_currency
        if rest and _CURRENCY.match(rest[0]):
            currency, rest = rest[0], rest[1:]

        amount_cents = to_minor_units(args[1], currency)
        invoice = await self.ledger.create(
            payer_id,
            amount_cents,
            currency,
            " ".join(rest) or None,
            payer_name=payer_name,
            created_by=interaction.user_id,
            channel_id=interaction.channel_id,
        )

        return ChatReply(
            text=(
                f"<@{payer_id}>, you have a new invoice from <@{interaction.user_id}>.\n"
                f"{describe_invoice(invoice)}\n"
                f"Pay with `/invoice pay {invoice.id}`"
            ),
            ephemeral=False,
        )

    def _select_provider(self, requested: Optional[str]) -> PaymentProvider:
        if not self.providers:
            raise InvoiceValidationError("No payment providers are configured.")
        if requested is None:
            return self.providers.get("stripe") or next(iter(self.providers.values()))
        provider = self.providers.get(requested.lower())
        if provider is None:
            choices = ", ".join(sorted(self.providers))
            raise InvoiceValidationError(f"Unknown payment provider '{requested}'. Choose one of: {choices}")
        return provider

    async def _pay(self, interaction: ChatInteraction) -> ChatReply:
        args = interaction.arguments
        if not args:
            raise InvoiceValidationError("Usage: `/invoice pay <invoice-id> [stripe|paypal]`")

        invoice = await self.ledger.get(args[0])
        self._check_access(interaction.user_id, invoice)

        if invoice.status == InvoiceStatus.PENDING.value and invoice.payment_url:
            return self._payment_reply(invoice, "A payment is already in progress for this invoice.")
        if invoice.status != InvoiceStatus.DRAFT.value:
            raise InvalidTransitionError(str(invoice.id), invoice.status, "pay")

        provider = self._select_provider(args[1] if len(args) > 1 else None)
        checkout = await provider.create_checkout(invoice, new_checkout_reference())

        try:
            transition = await self.ledger.mark_pending(
                invoice.id, provider.name, checkout.reference, checkout.url
            )
        except InvalidTransitionError:
            # A concurrent pay command won; show its link
            invoice = await self.ledger.get(invoice.id)
            if invoice.status == InvoiceStatus.PENDING.value and invoice.payment_url:
                return self._payment_reply(invoice, "A payment is already in progress for this invoice.")
            raise

        logger.info(
            "payment_link_issued",
            invoice_id=str(invoice.id),
            provider=provider.name.value,
            reference=checkout.reference,
        )
        return self._payment_reply(
            transition.invoice, f"Pay with {provider.display_name} using the link or QR code."
        )

    async def _status(self, interaction: ChatInteraction) -> ChatReply:
        if not interaction.arguments:
            raise InvoiceValidationError("Usage: `/invoice status <invoice-id>`")

        invoice = await self.ledger.get(interaction.arguments[0])
        self._check_access(interaction.user_id, invoice)

        if invoice.status == InvoiceStatus.PENDING.value and invoice.payment_url:
            return self._payment_reply(invoice, "Awaiting payment.")
        return ChatReply(describe_invoice(invoice))

    async def _cancel(self, interaction: ChatInteraction) -> ChatReply:
        if not interaction.arguments:
            raise InvoiceValidationError("Usage: `/invoice cancel <invoice-id>`")

        invoice = await self.ledger.get(interaction.arguments[0])
        self._check_access(interaction.user_id, invoice)

        result = await self.ledger.cancel(invoice.id)
        if not result.changed:
            return ChatReply(f"Invoice `{invoice.id}` was already cancelled.")

        logger.info("invoice_cancelled", invoice_id=str(invoice.id), cancelled_by=interaction.user_id)
        return ChatReply(f"Invoice `{invoice.id}` cancelled.")

    async def _list(self, interaction: ChatInteraction) -> ChatReply:
        payer_id = interaction.user_id
        if interaction.arguments:
            payer_id, _ = parse_mention(interaction.arguments[0])
            if payer_id != interaction.user_id and not self.is_admin(interaction.user_id):
                raise UnauthorizedError("Only invoice admins can list other users' invoices.")

        invoices = await self.ledger.list_for_payer(payer_id, limit=LIST_LIMIT)
        if not invoices:
            return ChatReply(f"No invoices for <@{payer_id}>.")

        lines = [f"*Recent invoices for <@{payer_id}>*"]
        for invoice in invoices:
            lines.append(
                f"• `{invoice.id}` {format_amount(invoice.amount_cents, invoice.currency)}"
                f" {invoice.status} {invoice.description}"
            )
        return ChatReply("\n".join(lines))

    async def _help(self, interaction: ChatInteraction) -> ChatReply:
        return ChatReply(USAGE)
