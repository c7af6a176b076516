"""Service wiring for the API process."""
import asyncio
import contextlib
from dataclasses import dataclass
from typing import Dict, Optional

import structlog

from kyver_invoices.chat.gateway import CommandGateway
from kyver_invoices.chat.slack_bot import SlackChatSession
from kyver_invoices.config import Settings
from kyver_invoices.core.ledger import InvoiceLedger
from kyver_invoices.core.reconciler import ChatNotifier, PaymentReconciler
from kyver_invoices.database import Store
from kyver_invoices.integrations import PaymentProvider, WebhookHandler, build_providers
from kyver_invoices.monitoring.health import HealthCheck
from kyver_invoices.workers.expiry_worker import expiry_loop

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    """Every long-lived component of the API process."""

    settings: Settings
    store: Store
    ledger: InvoiceLedger
    providers: Dict[str, PaymentProvider]
    reconciler: PaymentReconciler
    webhook_handler: WebhookHandler
    gateway: CommandGateway
    health_check: HealthCheck
    chat_session: Optional[SlackChatSession] = None
    notifier: Optional[ChatNotifier] = None
    expiry_task: Optional["asyncio.Task[None]"] = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        store: Optional[Store] = None,
        providers: Optional[Dict[str, PaymentProvider]] = None,
        chat_session: Optional[SlackChatSession] = None,
    ) -> "ServiceContainer":
        """Construct components without opening any connection."""
        store = store or Store(settings)
        ledger = InvoiceLedger(store, settings)
        providers = build_providers(settings) if providers is None else providers

        if chat_session is None and settings.chat_enabled:
            chat_session = SlackChatSession(settings)
        notifier = chat_session.notifier if chat_session is not None else None

        reconciler = PaymentReconciler(store, ledger, notifier)
        return cls(
            settings=settings,
            store=store,
            ledger=ledger,
            providers=providers,
            reconciler=reconciler,
            webhook_handler=WebhookHandler(providers, reconciler),
            gateway=CommandGateway(ledger, providers, settings),
            health_check=HealthCheck(store, chat_session),
            chat_session=chat_session,
            notifier=notifier,
        )

    async def start(self, run_expiry_sweep: bool = True) -> None:
        """Create tables, connect the chat session and start the sweep."""
        await self.store.init()

        if self.chat_session is not None:
            await self.chat_session.start(self.gateway)

        if run_expiry_sweep:
            self.expiry_task = asyncio.create_task(
                expiry_loop(
                    self.ledger,
                    self.notifier,
                    self.settings.expiry_sweep_interval_seconds,
                )
            )

        logger.info(
            "services_started",
            providers=sorted(self.providers),
            chat_enabled=self.chat_session is not None,
        )

    async def close(self) -> None:
        """Stop the sweep and release every connection."""
        if self.expiry_task is not None:
            self.expiry_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.expiry_task
            self.expiry_task = None

        if self.chat_session is not None:
            await self.chat_session.close()

        for provider in self.providers.values():
            await provider.close()

        await self.store.close()
        logger.info("services_closed")
