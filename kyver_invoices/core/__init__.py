"""Core invoice logic: ledger, reconciler and QR codes."""
from .enums import InvoiceStatus, PaymentOutcome, PaymentProviderName
from .exceptions import (
    EncodingError,
    InvalidTransitionError,
    InvoiceError,
    InvoiceNotFoundError,
    InvoiceValidationError,
    StoreUnavailableError,
    UnauthorizedError,
    UnknownInvoiceError,
)

__all__ = [
    "EncodingError",
    "InvalidTransitionError",
    "InvoiceError",
    "InvoiceNotFoundError",
    "InvoiceStatus",
    "InvoiceValidationError",
    "PaymentOutcome",
    "PaymentProviderName",
    "StoreUnavailableError",
    "UnauthorizedError",
    "UnknownInvoiceError",
]
