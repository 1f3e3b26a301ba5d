"""Integer-cents money helpers.

Every amount inside the ledger is a signed ``int`` of cents.  The only place
major units appear is report/export output, via :func:`to_major`.
"""

from decimal import Decimal, ROUND_HALF_UP

CENTS_PER_UNIT = 100


def to_major(cents: int) -> Decimal:
    """1048_00 → Decimal('1048.00')."""
    return (Decimal(int(cents)) / CENTS_PER_UNIT).quantize(Decimal("0.01"))


def from_major(amount: Decimal | str | int) -> int:
    """Parse a major-unit amount into cents, rounding half up."""
    value = Decimal(str(amount)) * CENTS_PER_UNIT
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def round_div(numerator: int, denominator: int) -> int:
    """Integer division rounded half up (toward +infinity on ties)."""
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    return (2 * numerator + denominator) // (2 * denominator)


def percent_floor(amount: int, percent: int) -> int:
    return amount * percent // 100


def split_two(amount: int) -> tuple[int, int]:
    """Split into (first, second) with the first rounded and the second taking the rest."""
    first = round_div(amount, 2)
    return first, amount - first


def format_amount(cents: int, currency: str = "KES") -> str:
    return f"{currency} {to_major(cents):,.2f}"


def ensure_cents(value, field: str = "amount") -> int:
    """Reject anything that is not a plain integer (floats, Decimals, bools)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{field} must be integer cents, got {type(value).__name__}")
    return value
