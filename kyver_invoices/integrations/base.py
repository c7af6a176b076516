"""
Payment provider capability set and shared error handling.

Implements:
- Provider error classification (transient / permanent / rate limit)
- Circuit breaker shared by provider API clients
- The ``PaymentProvider`` interface every provider variant implements
"""
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

import structlog

from kyver_invoices.core.enums import PaymentProviderName
from kyver_invoices.core.reconciler import ProviderEvent
from kyver_invoices.database import Invoice
from kyver_invoices.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ProviderErrorType(Enum):
    """Classification of provider errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class ProviderError(Exception):
    """Raised when a payment provider API call fails."""

    def __init__(
        self,
        message: str,
        provider: str,
        error_type: ProviderErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize provider error.

        Args:
            message: Error message
            provider: Provider name
            error_type: Classification of error
            original_error: Original provider exception
        """
        super().__init__(message)
        self.provider = provider
        self.error_type = error_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type != ProviderErrorType.PERMANENT


class WebhookError(Exception):
    """Raised when a webhook delivery fails verification or cannot be decoded."""

    pass


def is_retryable_provider_error(error: BaseException) -> bool:
    """tenacity predicate: retry transient and rate-limit provider errors."""
    return isinstance(error, ProviderError) and error.retryable


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold. Permanent errors (bad requests)
    do not count as failures.
    """

    def __init__(
        self,
        provider: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            provider: Provider name used in errors and logs
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        if self.provider == PaymentProviderName.STRIPE.value:
            metrics.set_circuit_breaker_state(state)

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute a coroutine function with circuit breaker protection.

        Raises:
            ProviderError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", provider=self.provider)
            else:
                raise ProviderError(
                    "Circuit breaker is open",
                    self.provider,
                    ProviderErrorType.TRANSIENT,
                )

        try:
            result = await func()
        except ProviderError as e:
            if e.retryable:
                self.on_failure()
            raise
        except Exception:
            self.on_failure()
            raise

        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", provider=self.provider)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold and self.state != "open":
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                provider=self.provider,
                failure_count=self.failure_count,
            )


@dataclass
class Checkout:
    """A hosted checkout page for one payment attempt."""

    reference: str
    url: str
    provider_id: Optional[str] = None


def new_checkout_reference() -> str:
    """Opaque token tying a provider checkout back to an invoice."""
    return f"kyv_{uuid.uuid4().hex}"


class PaymentProvider(ABC):
    """
    One payment provider variant.

    Webhook deliveries are handled as verify_signature -> follow_up ->
    parse_event; checkouts are started with create_checkout.
    """

    name: PaymentProviderName

    @property
    def display_name(self) -> str:
        return self.name.value.capitalize()

    @abstractmethod
    async def verify_signature(self, payload: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """
        Verify a webhook delivery and decode it.

        Args:
            payload: Raw request body
            headers: Request headers (case-insensitive mapping)

        Returns:
            Dict[str, Any]: Decoded event document

        Raises:
            WebhookError: If the signature is invalid or the body is not JSON
        """

    @abstractmethod
    def parse_event(self, document: Dict[str, Any]) -> Optional[ProviderEvent]:
        """
        Normalize a verified event document.

        Returns:
            ProviderEvent, or None for event types that are not reconciled
        """

    @abstractmethod
    async def create_checkout(self, invoice: Invoice, reference: str) -> Checkout:
        """
        Start a hosted checkout for an invoice.

        Raises:
            ProviderError: If the provider API call fails
        """

    async def follow_up(self, document: Dict[str, Any]) -> None:
        """Provider-specific action after a verified delivery."""
        return None

    async def close(self) -> None:
        """Release provider resources."""
        return None
