"""
Exception classes for invoice handling.

Every error is scoped to a single chat command or webhook delivery; the
callers decide how each one is surfaced:

- InvoiceValidationError: bad command input, shown to the user as-is
- UnauthorizedError: permission denied message
- UnknownInvoiceError: logged, webhook acknowledged so the provider stops retrying
- InvalidTransitionError: idempotent no-op, never surfaced as a failure
- StoreUnavailableError: retried with backoff, then a transient-failure reply
- EncodingError: QR generation failed, the invoice stays valid
"""
from typing import Optional


class InvoiceError(Exception):
    """Base exception for invoice processing errors."""

    pass


class InvoiceValidationError(InvoiceError):
    """Raised when invoice input validation fails."""

    pass


class InvoiceNotFoundError(InvoiceError):
    """Raised when an invoice id does not exist."""

    def __init__(self, invoice_id: str):
        super().__init__(f"Invoice {invoice_id} not found")
        self.invoice_id = invoice_id


class UnauthorizedError(InvoiceError):
    """Raised when a chat user may not act on an invoice."""

    pass


class UnknownInvoiceError(InvoiceError):
    """Raised when a provider event references no known invoice."""

    def __init__(self, provider: str, provider_reference: str):
        super().__init__(
            f"No invoice for {provider} reference {provider_reference!r}"
        )
        self.provider = provider
        self.provider_reference = provider_reference


class InvalidTransitionError(InvoiceError):
    """Raised when an invoice is not in a state compatible with a request."""

    def __init__(self, invoice_id: str, current_status: str, requested: str):
        super().__init__(
            f"Invoice {invoice_id} is {current_status}; cannot apply {requested}"
        )
        self.invoice_id = invoice_id
        self.current_status = current_status
        self.requested = requested


class StoreUnavailableError(InvoiceError):
    """Raised when the database cannot be reached or the pool is exhausted."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class EncodingError(InvoiceError):
    """Raised when a payment URI cannot be rendered as a QR code."""

    pass
