"""Invoice lifecycle enums."""
from enum import Enum


class InvoiceStatus(str, Enum):
    """Lifecycle states of an invoice."""

    DRAFT = "draft"
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        """Terminal invoices accept no further payment attempts."""
        return self in (
            InvoiceStatus.PAID,
            InvoiceStatus.EXPIRED,
            InvoiceStatus.CANCELLED,
            InvoiceStatus.REFUNDED,
        )


class PaymentOutcome(str, Enum):
    """Provider-reported result of a payment attempt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentProviderName(str, Enum):
    """Supported payment providers."""

    STRIPE = "stripe"
    PAYPAL = "paypal"
