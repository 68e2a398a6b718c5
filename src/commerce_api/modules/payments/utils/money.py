"""Minor-unit money helpers.

All amounts inside the payment subsystem are integers in the currency's
minor unit (cents for USD/EUR). Providers that speak decimal strings get
converted at the adapter boundary.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
)


def percentage_of(amount_cents: int, percentage: Decimal | float | str) -> int:
    """Return ``amount * percentage / 100`` rounded half-up to a whole minor unit.

    >>> percentage_of(1999, "1.5")
    30
    """
    raw = Decimal(amount_cents) * Decimal(str(percentage)) / Decimal(100)
    return int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_major_units(amount_cents: int, currency: str) -> str:
    """Format minor units as the decimal string providers expect ("10.50")."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return str(amount_cents)
    return f"{Decimal(amount_cents) / Decimal(100):.2f}"


def to_minor_units(value: str | float | Decimal, currency: str) -> int:
    amount = Decimal(str(value))
    if currency.upper() not in ZERO_DECIMAL_CURRENCIES:
        amount = amount * 100
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))
