"""Utilities for working with monetary values in KidGoals."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from .exceptions import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

AmountLike = Union[Decimal, int, float, str]


def to_decimal(value: AmountLike) -> Decimal:
    """Convert ``value`` to a :class:`~decimal.Decimal` with two decimal places."""

    return round_minor(exact(value))


def to_amount(value: AmountLike) -> Decimal:
    """Convert a caller supplied money amount, rejecting fractions of a cent."""

    amount = exact(value)
    rounded = round_minor(amount)
    if amount != rounded:
        raise ValidationError(f"Amount {value!r} has fractions of a cent.")
    return rounded


def exact(value: AmountLike) -> Decimal:
    """Convert ``value`` to a :class:`~decimal.Decimal` without rounding.

    Floats go through ``str`` so ``0.1`` becomes ``Decimal("0.1")`` rather than
    its binary expansion.
    """

    if isinstance(value, bool):
        raise ValidationError(f"Unsupported amount type: {type(value)!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValidationError(f"Invalid amount: {value!r}") from exc
    else:
        raise ValidationError(f"Unsupported amount type: {type(value)!r}")
    if not result.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return result


def round_minor(amount: Decimal) -> Decimal:
    """Round ``amount`` to whole cents using round-half-up."""

    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def require_positive(amount: Decimal, *, allow_zero: bool = False) -> Decimal:
    """Ensure ``amount`` is positive (or non-negative when ``allow_zero`` is true)."""

    if allow_zero:
        if amount < Decimal("0"):
            raise ValidationError("Amount must be zero or greater.")
    else:
        if amount <= Decimal("0"):
            raise ValidationError("Amount must be greater than zero.")
    return amount


def to_cents(amount: AmountLike) -> int:
    """Return ``amount`` as an integer number of cents."""

    return int(to_decimal(amount) * 100)


def from_cents(cents: int) -> Decimal:
    """Return ``cents`` as a two decimal place dollar amount."""

    return (Decimal(cents) / 100).quantize(CENT)


def format_currency(amount: Decimal) -> str:
    """Return ``amount`` as a currency formatted string (e.g. ``$12.34``)."""

    return f"${amount.quantize(CENT, rounding=ROUND_HALF_UP):,.2f}"


__all__ = [
    "AmountLike",
    "CENT",
    "ZERO",
    "exact",
    "format_currency",
    "from_cents",
    "require_positive",
    "round_minor",
    "to_amount",
    "to_cents",
    "to_decimal",
]
