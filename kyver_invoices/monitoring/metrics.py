"""
Prometheus metrics for invoice monitoring.

Tracks:
- Invoices created and status transitions
- Webhook deliveries by provider and result
- Provider API calls, errors and circuit breaker state
- Store transaction retries
- Chat commands and QR renders
- Expiry sweep results
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Invoice metrics
invoices_created_total = Counter(
    "invoices_created_total",
    "Total number of invoices created",
    ["currency"],
)

invoice_amount_cents = Histogram(
    "invoice_amount_cents",
    "Invoice amounts in minor units",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

invoice_transitions_total = Counter(
    "invoice_transitions_total",
    "Total invoice status transitions",
    ["from_status", "to_status"],
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook deliveries received",
    ["provider"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook deliveries processed",
    ["provider", "status"],  # processed, duplicate, ignored, unknown_invoice, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Provider API metrics
provider_api_requests_total = Counter(
    "provider_api_requests_total",
    "Total payment provider API requests",
    ["provider", "operation", "status"],
)

provider_api_errors_total = Counter(
    "provider_api_errors_total",
    "Total payment provider API errors",
    ["provider", "error_type"],  # transient, permanent, rate_limit
)

provider_api_duration_seconds = Histogram(
    "provider_api_duration_seconds",
    "Payment provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Circuit breaker metrics
stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Store metrics
store_transaction_retries_total = Counter(
    "store_transaction_retries_total",
    "Total store transactions retried after the store was unavailable",
)

# Chat metrics
chat_commands_total = Counter(
    "chat_commands_total",
    "Total chat commands handled",
    ["command", "status"],  # ok, denied, invalid, not_found, unavailable, timeout, error
)

chat_command_duration_seconds = Histogram(
    "chat_command_duration_seconds",
    "Chat command handling duration in seconds",
    ["command"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

qr_codes_rendered_total = Counter(
    "qr_codes_rendered_total",
    "Total QR codes rendered",
    ["status"],  # success, failed
)

# Expiry sweep metrics
invoices_expired_total = Counter(
    "invoices_expired_total",
    "Total pending invoices expired by the sweep",
)

expiry_sweep_last_run_timestamp = Gauge(
    "expiry_sweep_last_run_timestamp",
    "Timestamp of last expiry sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_invoice_created(currency: str, amount_cents: int) -> None:
        """Record a newly created invoice."""
        invoices_created_total.labels(currency=currency).inc()
        invoice_amount_cents.observe(amount_cents)

    @staticmethod
    def record_transition(from_status: str, to_status: str) -> None:
        """Record an invoice status transition."""
        invoice_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_webhook_event(provider: str, status: str, duration_seconds: float) -> None:
        """Record webhook delivery processing."""
        webhook_events_received_total.labels(provider=provider).inc()
        webhook_events_processed_total.labels(provider=provider, status=status).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_provider_api_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record payment provider API call."""
        provider_api_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_api_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_provider_api_error(provider: str, error_type: str) -> None:
        """Record payment provider API error."""
        provider_api_errors_total.labels(provider=provider, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_store_retry() -> None:
        """Record a retried store transaction."""
        store_transaction_retries_total.inc()

    @staticmethod
    def record_chat_command(command: str, status: str, duration_seconds: float) -> None:
        """Record chat command handling."""
        chat_commands_total.labels(command=command, status=status).inc()
        chat_command_duration_seconds.labels(command=command).observe(duration_seconds)

    @staticmethod
    def record_qr_render(status: str) -> None:
        """Record QR code rendering."""
        qr_codes_rendered_total.labels(status=status).inc()

    @staticmethod
    def record_expiry_sweep(expired_count: int) -> None:
        """Record an expiry sweep run."""
        if expired_count:
            invoices_expired_total.inc(expired_count)
        expiry_sweep_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
