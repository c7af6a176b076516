"""Payment provider integrations."""
from typing import Dict, Optional

from kyver_invoices.config import Settings, get_settings

from .base import (
    Checkout,
    PaymentProvider,
    ProviderError,
    ProviderErrorType,
    WebhookError,
    new_checkout_reference,
)
from .paypal_provider import PayPalProvider
from .stripe_provider import StripeProvider
from .webhook_handler import UnknownProviderError, WebhookHandler


def build_providers(settings: Optional[Settings] = None) -> Dict[str, PaymentProvider]:
    """Instantiate the providers enabled in settings, keyed by name."""
    settings = settings or get_settings()
    providers: Dict[str, PaymentProvider] = {}
    if settings.stripe_enabled:
        providers[StripeProvider.name.value] = StripeProvider(settings)
    if settings.paypal_enabled:
        providers[PayPalProvider.name.value] = PayPalProvider(settings)
    return providers


__all__ = [
    "Checkout",
    "PayPalProvider",
    "PaymentProvider",
    "ProviderError",
    "ProviderErrorType",
    "StripeProvider",
    "UnknownProviderError",
    "WebhookError",
    "WebhookHandler",
    "build_providers",
    "new_checkout_reference",
]
