"""
Expiry sweep background worker.

Expires Pending invoices whose payment attempt is older than
``invoice_pending_timeout_seconds``. Runs inside the API process as a
lifespan-owned task, or standalone:

    python -m kyver_invoices.workers.expiry_worker --interval 60
"""
import asyncio
import signal
from datetime import datetime
from typing import Optional

import structlog

from kyver_invoices.config import Settings, get_settings
from kyver_invoices.core.ledger import InvoiceLedger
from kyver_invoices.core.reconciler import ChatNotifier
from kyver_invoices.database import Store
from kyver_invoices.monitoring.logging import setup_logging
from kyver_invoices.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


async def run_expiry_sweep(
    ledger: InvoiceLedger,
    notifier: Optional[ChatNotifier] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Expire stale Pending invoices once.

    Args:
        ledger: Invoice ledger
        notifier: Optional chat notifier told about each expired invoice
        now: Reference time (defaults to current UTC time)

    Returns:
        int: Number of invoices expired
    """
    expired = await ledger.expire_stale(now)
    metrics.record_expiry_sweep(len(expired))

    if notifier is not None:
        for result in expired:
            try:
                await notifier.invoice_updated(result.invoice, result.previous_status)
            except Exception as e:
                logger.error(
                    "expiry_notification_failed",
                    invoice_id=str(result.invoice.id),
                    error=str(e),
                )

    return len(expired)


async def expiry_loop(
    ledger: InvoiceLedger,
    notifier: Optional[ChatNotifier],
    interval_seconds: float,
    stop: Optional[asyncio.Event] = None,
) -> None:
    """
    Sweep every ``interval_seconds`` until ``stop`` is set or the task is cancelled.

    A failed sweep is logged and retried on the next tick.
    """
    stop = stop or asyncio.Event()
    logger.info("expiry_worker_started", interval_seconds=interval_seconds)

    try:
        while not stop.is_set():
            try:
                count = await run_expiry_sweep(ledger, notifier)
                if count:
                    logger.info("expiry_sweep_completed", expired=count)
            except Exception as e:
                logger.error("expiry_sweep_failed", error=str(e), error_type=type(e).__name__)
                # Continue running even if one sweep fails

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
    finally:
        logger.info("expiry_worker_stopped")


async def start_expiry_worker(
    settings: Optional[Settings] = None,
    interval_seconds: Optional[float] = None,
    once: bool = False,
) -> None:
    """
    Run the sweep as a standalone process.

    Args:
        settings: Optional settings (uses cached settings if not provided)
        interval_seconds: Override for ``expiry_sweep_interval_seconds``
        once: Run a single sweep and exit
    """
    settings = settings or get_settings()
    setup_logging(settings)

    store = Store(settings)
    await store.init()
    ledger = InvoiceLedger(store, settings)

    notifier: Optional[ChatNotifier] = None
    if settings.slack_bot_token:
        from slack_sdk.web.async_client import AsyncWebClient

        from kyver_invoices.chat.slack_bot import SlackNotifier

        notifier = SlackNotifier(AsyncWebClient(token=settings.slack_bot_token))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        if once:
            count = await run_expiry_sweep(ledger, notifier)
            logger.info("expiry_sweep_completed", expired=count)
        else:
            await expiry_loop(
                ledger,
                notifier,
                interval_seconds or settings.expiry_sweep_interval_seconds,
                stop,
            )
    finally:
        await store.close()


def main() -> None:
    """Command-line entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Invoice expiry worker")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between sweeps"
    )
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    args = parser.parse_args()

    asyncio.run(start_expiry_worker(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
