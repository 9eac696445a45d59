from decimal import Decimal

import pytest

from tailors_payments.money import format_amount, to_decimal, to_major, to_minor


@pytest.mark.parametrize("value,expected", [
    ("150.50", 15050),
    (150.5, 15050),
    (Decimal("0.01"), 1),
    (20, 2000),
    ("0.005", 1),
    (" 12.30 ", 1230),
])
def test_to_minor(value, expected):
    assert to_minor(value) == expected


@pytest.mark.parametrize("value", [None, True, "abc", "", "NaN", "Infinity", [1]])
def test_to_decimal_rejects_non_numbers(value):
    with pytest.raises(ValueError):
        to_decimal(value)


def test_to_major_and_format():
    assert to_major(15050) == Decimal("150.50")
    assert to_major(0) == Decimal("0.00")
    assert format_amount(10050) == "100.50"
    assert format_amount(7) == "0.07"
