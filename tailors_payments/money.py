"""Conversion between major-unit decimals and the minor units we persist."""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    """Parse an amount into a two-place Decimal.

    Floats go through ``str`` so ``150.5`` becomes ``Decimal("150.50")``
    rather than its binary expansion. Raises ``ValueError`` for anything
    that is not a finite number.
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor(value) -> int:
    return int(to_decimal(value) * 100)


def to_major(minor: int) -> Decimal:
    return (Decimal(minor) / 100).quantize(CENT)


def format_amount(minor: int) -> str:
    return f"{to_major(minor):.2f}"
