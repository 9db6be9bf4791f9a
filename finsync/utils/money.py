"""
Money arithmetic for derived summaries.

Usage:
    from finsync.utils.money import to_money, percent_change

    to_money("1200.505")          -> Decimal("1200.51")
    percent_change(100, 150)      -> Decimal("50.00")
    percent_change(0, 150)        -> Decimal("0.00")
"""
from decimal import Decimal, DecimalException, InvalidOperation, ROUND_HALF_UP

CENT = Decimal("0.01")
ZERO = Decimal("0")

# Numeric(20, 2) money columns hold at most 18 integer digits
MAX_MONEY = Decimal(10) ** 18


class MoneyRangeError(ValueError):
    """Amount cannot be stored as money (too large or not a finite number)"""
    pass


def parse_decimal(value) -> Decimal | None:
    """
    Lenient Decimal conversion for upstream values.

    Accepts int / float / str / Decimal, strips thousands separators.
    Returns None for empty, unparseable or non-finite input (NaN, Infinity)
    instead of raising.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            return None
        try:
            amount = Decimal(text)
        except InvalidOperation:
            return None
    return amount if amount.is_finite() else None


def _quantize(amount: Decimal) -> Decimal:
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except DecimalException:
        raise MoneyRangeError(f"Amount out of range: {amount}")


def to_money(value) -> Decimal:
    """
    Round to two places (ROUND_HALF_UP); None counts as zero.

    Raises:
        MoneyRangeError: the amount does not fit a money column
    """
    amount = parse_decimal(value)
    if amount is None:
        return ZERO.quantize(CENT)
    if abs(amount) >= MAX_MONEY:
        raise MoneyRangeError(f"Amount out of range: {amount}")
    return _quantize(amount)


def percent_change(start, end) -> Decimal:
    """
    (end - start) / start * 100, rounded to two places.

    Defined as 0 when start is 0.

    Raises:
        MoneyRangeError: the ratio is too large to round to cents
    """
    start_amount = parse_decimal(start) or ZERO
    end_amount = parse_decimal(end) or ZERO
    if start_amount == ZERO:
        return ZERO.quantize(CENT)
    try:
        ratio = (end_amount - start_amount) / start_amount * Decimal(100)
    except DecimalException:
        raise MoneyRangeError(f"Percent change out of range: {start_amount} -> {end_amount}")
    return _quantize(ratio)
