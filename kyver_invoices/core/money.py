"""Conversions between user-facing amounts and minor units."""
from decimal import Decimal, InvalidOperation

from kyver_invoices.core.exceptions import InvoiceValidationError

# Currencies without a fractional unit at Stripe and PayPal
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "HUF", "JPY", "KMF", "KRW", "MGA", "PYG",
     "RWF", "TWD", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
)


def currency_exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_minor_units(amount: str | Decimal, currency: str) -> int:
    """
    Convert a decimal amount such as ``"12.50"`` to minor units.

    Raises:
        InvoiceValidationError: If the amount is not a positive number with
            at most as many decimals as the currency allows
    """
    try:
        value = Decimal(str(amount).strip().replace(",", ""))
    except InvalidOperation:
        raise InvoiceValidationError(f"'{amount}' is not a valid amount") from None

    if not value.is_finite() or value <= 0:
        raise InvoiceValidationError("Amount must be positive")

    exponent = currency_exponent(currency)
    try:
        minor = value.scaleb(exponent)
    except ArithmeticError:
        raise InvoiceValidationError(f"'{amount}' is too large") from None
    if minor != minor.to_integral_value():
        raise InvoiceValidationError(
            f"{currency.upper()} amounts allow at most {exponent} decimal places"
        )
    return int(minor)


def to_decimal_string(amount_minor: int, currency: str) -> str:
    """Minor units as a plain decimal string, e.g. ``1250 -> "12.50"``."""
    exponent = currency_exponent(currency)
    return f"{Decimal(amount_minor).scaleb(-exponent):.{exponent}f}"


def format_amount(amount_minor: int, currency: str) -> str:
    """Human-readable amount, e.g. ``"12.50 USD"``."""
    return f"{to_decimal_string(amount_minor, currency)} {currency.upper()}"
