"""KyverInvoices: chat-driven invoicing with Stripe and PayPal reconciliation."""

__version__ = "1.0.0"
