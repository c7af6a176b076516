"""
Slack session for the ``/invoice`` command.

Runs a slack_bolt async app over Socket Mode. The session is created at
startup, started and closed explicitly by the application lifespan, and
handed to the components that need it.
"""
from typing import Any, Dict, Optional

import structlog
from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp
from slack_sdk.web.async_client import AsyncWebClient

from kyver_invoices.chat.gateway import ChatInteraction, ChatReply, CommandGateway
from kyver_invoices.config import Settings, get_settings
from kyver_invoices.core.enums import InvoiceStatus
from kyver_invoices.core.money import format_amount
from kyver_invoices.database import Invoice

logger = structlog.get_logger(__name__)

SLASH_COMMAND = "/invoice"


def interaction_from_command(command: Dict[str, Any]) -> ChatInteraction:
    """Build a ChatInteraction from a Slack slash-command payload."""
    return ChatInteraction.from_text(
        user_id=command["user_id"],
        text=command.get("text", ""),
        channel_id=command.get("channel_id"),
        user_name=command.get("user_name"),
    )


class SlackChatSession:
    """Owns the Slack app and its Socket Mode connection."""

    def __init__(self, settings: Optional[Settings] = None, app: Optional[AsyncApp] = None):
        """
        Initialize the session without connecting.

        Args:
            settings: Optional settings (uses cached settings if not provided)
            app: Optional pre-built slack_bolt app
        """
        self.settings = settings or get_settings()
        self.app = app or AsyncApp(
            token=self.settings.slack_bot_token,
            signing_secret=self.settings.slack_signing_secret or None,
        )
        self.gateway: Optional[CommandGateway] = None
        self._handler: Optional[AsyncSocketModeHandler] = None

    @property
    def is_running(self) -> bool:
        return self._handler is not None

    @property
    def client(self) -> AsyncWebClient:
        return self.app.client

    def register(self, gateway: CommandGateway) -> None:
        """Route ``/invoice`` commands to the gateway."""
        self.gateway = gateway
        self.app.command(SLASH_COMMAND)(self.on_command)

    async def start(self, gateway: CommandGateway) -> None:
        """Register the command and open the Socket Mode connection."""
        self.register(gateway)
        self._handler = AsyncSocketModeHandler(self.app, self.settings.slack_app_token)
        await self._handler.connect_async()
        logger.info("slack_session_started")

    async def close(self) -> None:
        """Close the Socket Mode connection."""
        if self._handler is not None:
            await self._handler.close_async()
            self._handler = None
            logger.info("slack_session_closed")

    async def on_command(self, ack: Any, command: Dict[str, Any], respond: Any) -> None:
        """slack_bolt listener for the slash command."""
        # Slack expects an ack within three seconds
        await ack()
        if self.gateway is None:
            raise RuntimeError("Slack session has no command gateway")

        interaction = interaction_from_command(command)
        reply = await self.gateway.dispatch(interaction)
        await self.deliver_reply(interaction, reply, respond)

    async def deliver_reply(self, interaction: ChatInteraction, reply: ChatReply, respond: Any) -> None:
        """
        Post a gateway reply.

        Slack has no ephemeral file uploads, so a QR image goes to the
        user's direct messages alongside the ephemeral text reply.
        """
        response_type = "ephemeral" if reply.ephemeral else "in_channel"
        if reply.image is None:
            await respond(text=reply.text, response_type=response_type)
            return

        conversation = await self.client.conversations_open(users=interaction.user_id)
        await self.client.files_upload_v2(
            channel=conversation["channel"]["id"],
            content=reply.image,
            filename=reply.image_name,
            title="Payment QR code",
        )
        await respond(
            text=f"{reply.text}\n_QR code sent to your direct messages._",
            response_type=response_type,
        )

    @property
    def notifier(self) -> "SlackNotifier":
        return SlackNotifier(self.client)


_UPDATE_MESSAGES = {
    InvoiceStatus.PAID: ":white_check_mark: Invoice `{id}` for {amount} has been paid.",
    InvoiceStatus.DRAFT: (
        ":warning: Payment for invoice `{id}` ({amount}) failed. "
        "Use `/invoice pay {id}` to try again."
    ),
    InvoiceStatus.REFUNDED: ":leftwards_arrow_with_hook: Invoice `{id}` ({amount}) was refunded.",
    InvoiceStatus.EXPIRED: ":hourglass: Invoice `{id}` ({amount}) expired before it was paid.",
    InvoiceStatus.CANCELLED: ":x: Invoice `{id}` ({amount}) was cancelled.",
}


class SlackNotifier:
    """Tells the payer and the invoice's channel about status changes."""

    def __init__(self, client: AsyncWebClient):
        self.client = client

    async def invoice_updated(self, invoice: Invoice, previous_status: InvoiceStatus) -> None:
        template = _UPDATE_MESSAGES.get(InvoiceStatus(invoice.status))
        if template is None:
            return

        text = template.format(
            id=invoice.id,
            amount=format_amount(invoice.amount_cents, invoice.currency),
        )
        # Posting to a user id delivers to the bot's direct message with them
        await self.client.chat_postMessage(channel=invoice.payer_id, text=text)
        if invoice.channel_id:
            await self.client.chat_postMessage(channel=invoice.channel_id, text=text)

        logger.info(
            "invoice_update_notified",
            invoice_id=str(invoice.id),
            from_status=previous_status.value,
            to_status=invoice.status,
        )
