"""Currency rounding and display helpers."""
from decimal import Decimal, ROUND_HALF_UP


def round_half_up(value) -> int:
    """Round to whole currency units, halves away from zero."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of(amount, percent) -> int:
    return round_half_up(Decimal(str(amount)) * Decimal(str(percent)) / Decimal("100"))


def format_amount(value) -> str:
    # 1000.0 -> "1000", 99.5 -> "99.5"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
