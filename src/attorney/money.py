"""Exact decimal money helpers. Amounts never pass through binary floats."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional


_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
ZERO = Decimal("0")


def to_amount(value: Decimal | int | str | float, field_name: str = "amount") -> Decimal:
    """Parse a money value into a finite Decimal (floats go through their repr)."""
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be a decimal amount")
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"{field_name} must be a decimal amount: {value!r}") from e
    if not dec.is_finite():
        raise ValueError(f"{field_name} must be finite: {value!r}")
    return dec


def non_negative_amount(value: Decimal | int | str | float, field_name: str = "amount") -> Decimal:
    dec = to_amount(value, field_name)
    if dec < ZERO:
        raise ValueError(f"{field_name} must be >= 0, got {dec}")
    return dec


def normalize_currency(code: str) -> str:
    """Validate an ISO 4217 style alphabetic currency code."""
    candidate = str(code).strip().upper()
    if not _CURRENCY_RE.match(candidate):
        raise ValueError(f"Invalid currency code: {code!r}")
    return candidate


def amounts_equal(left: Decimal, right: Decimal) -> bool:
    """Exact value equality. 105.00 == 105.0, but scales are not normalized to minor units."""
    return left.compare(right) == ZERO


def sum_amounts(values: Iterable[Decimal]) -> Decimal:
    return sum(values, ZERO)


def format_amount(amount: Decimal, currency_code: Optional[str] = None) -> str:
    text = f"{amount:.2f}"
    return f"{text} {currency_code}" if currency_code else text
