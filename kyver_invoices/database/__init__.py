"""Database package for KyverInvoices."""
from .connection import Store, create_engine
from .models import Base, Invoice, PaymentEvent, utcnow

__all__ = [
    "Base",
    "Invoice",
    "PaymentEvent",
    "Store",
    "create_engine",
    "utcnow",
]
