"""
Module: approval_kernel.db.types
Responsibility: Annotated type aliases and money helpers shared by the models
    and the engines.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/ and approval_engines.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats for amounts.  Invoice amounts, rule thresholds, delegation
      caps and role approval limits all use Money (Numeric(38, 9)).
    - to_base_currency() is the ONLY sanctioned conversion from an invoice
      currency to the base currency used for rule matching.
"""

from collections.abc import Mapping
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated

from sqlalchemy import Numeric, String

from approval_kernel.exceptions import UnknownCurrencyError

# Monetary amount: 38 digits total, 9 decimal places
Money = Annotated[Decimal, Numeric(38, 9)]

# ISO 4217 currency code (e.g., "INR", "USD")
Currency = Annotated[str, String(3)]

# Role name as used in rules, actions and delegations
RoleName = Annotated[str, String(100)]

# Opaque principal identifier supplied by the caller
PrincipalId = Annotated[str, String(255)]

# SHA-256 hash as hex string (64 characters)
PayloadHash = Annotated[str, String(64)]

MONEY_DECIMAL_PLACES = 9


def round_money(value: Decimal, decimal_places: int = 2) -> Decimal:
    """Round a monetary value half-up to ``decimal_places``."""
    quantize_str = "0." + "0" * decimal_places
    return value.quantize(Decimal(quantize_str), rounding=ROUND_HALF_UP)


def normalize_currency(currency: str) -> str:
    """Return the upper-cased, trimmed 3-letter currency code.

    Raises:
        ValueError: If the code is not three ASCII letters.
    """
    normalized = (currency or "").strip().upper()
    if len(normalized) != 3 or not normalized.isascii() or not normalized.isalpha():
        raise ValueError(f"Invalid ISO 4217 currency code: {currency!r}")
    return normalized


def to_base_currency(
    amount: Decimal,
    currency: str,
    base_currency: str,
    rates: Mapping[str, Decimal],
) -> Decimal:
    """
    Convert ``amount`` in ``currency`` to the base currency.

    ``rates`` maps a currency code to the number of base-currency units per
    one unit of that currency.  The base currency converts at 1 without a
    table entry.

    Raises:
        UnknownCurrencyError: If no rate exists for ``currency``.
    """
    code = normalize_currency(currency)
    base = normalize_currency(base_currency)
    if code == base:
        return amount
    rate = rates.get(code)
    if rate is None:
        raise UnknownCurrencyError(code, base)
    return amount * Decimal(rate)
