"""
Decimal arithmetic for every monetary and percentage value.

Responsibility:
    Single route for parsing and combining decimals. All arithmetic runs in
    a dedicated ``decimal.Context`` (20 significant digits, ROUND_HALF_UP),
    independent of whatever the thread-local default context happens to be.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Binary floats are rejected at the boundary. A float has already lost
      precision by the time it arrives, so accepting it would make replay
      equality depend on float formatting.
    - Values cross the persistence boundary as fixed-point strings
      (``to_decimal_string``), never as JSON numbers.

Failure modes:
    - InvalidDecimalError for empty strings, floats, NaN/Infinity or any
      unparsable value.
    - ZeroDivisionError from ``divide`` when the divisor is zero.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Context, Decimal, InvalidOperation

from capital_kernel.exceptions import InvalidDecimalError

DECIMAL_PRECISION = 20
MONETARY_PLACES = 4

DECIMAL_CONTEXT = Context(prec=DECIMAL_PRECISION, rounding=ROUND_HALF_UP)

ZERO = Decimal("0")
ONE_HUNDRED = Decimal("100")
DEFAULT_TOLERANCE = Decimal("0.0001")


def parse_decimal(value: str | int | Decimal, field: str = "value") -> Decimal:
    """
    Parse a value into a finite Decimal.

    Preconditions:
        ``value`` is a decimal string, an int, or a Decimal.
    Raises:
        InvalidDecimalError: empty string, float, bool, non-finite or
            unparsable input.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or isinstance(value, float):
        raise InvalidDecimalError(value, field)
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, str):
        if not value.strip():
            raise InvalidDecimalError(value, field)
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise InvalidDecimalError(value, field) from None
    else:
        raise InvalidDecimalError(value, field)

    if not result.is_finite():
        raise InvalidDecimalError(value, field)
    return result


def add(*values: Decimal) -> Decimal:
    """Sum any number of decimals; the empty sum is zero."""
    total = ZERO
    for val in values:
        total = DECIMAL_CONTEXT.add(total, val)
    return total


def subtract(a: Decimal, b: Decimal) -> Decimal:
    return DECIMAL_CONTEXT.subtract(a, b)


def multiply(a: Decimal, b: Decimal) -> Decimal:
    return DECIMAL_CONTEXT.multiply(a, b)


def divide(a: Decimal, b: Decimal) -> Decimal:
    """Divide ``a`` by ``b``.

    Raises:
        ZeroDivisionError: if ``b`` is zero.
    """
    if b.is_zero():
        raise ZeroDivisionError("Cannot divide by zero")
    return DECIMAL_CONTEXT.divide(a, b)


def round_to(value: Decimal, places: int = MONETARY_PLACES) -> Decimal:
    """Quantize to ``places`` decimal places with ROUND_HALF_UP."""
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def fits_precision(value: Decimal, places: int = MONETARY_PLACES) -> bool:
    """
    True when ``value`` rounded to ``places`` fits the arithmetic context.

    Sums and shares of a value that does not fit are silently rounded to
    ``DECIMAL_PRECISION`` significant digits, so callers reject it instead.
    """
    if value.is_zero():
        return True
    if value.adjusted() + 1 + places > DECIMAL_PRECISION:
        return False
    # rounding up can carry into one more digit (9999.99995 -> 10000.0000)
    return round_to(value, places).adjusted() + 1 + places <= DECIMAL_PRECISION


def is_positive(value: Decimal) -> bool:
    """True when strictly greater than zero."""
    return value > ZERO


def is_negative(value: Decimal) -> bool:
    return value < ZERO


def to_decimal_string(value: Decimal, places: int = MONETARY_PLACES) -> str:
    """Fixed-point string with exactly ``places`` digits after the point."""
    return f"{round_to(value, places):.{places}f}"


def decimals_equal(a: str | Decimal, b: str | Decimal) -> bool:
    """Value equality: ``"1.50"`` equals ``"1.5000"``."""
    return parse_decimal(a) == parse_decimal(b)


def within_tolerance(
    expected: Decimal,
    actual: Decimal,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> bool:
    """True when ``|expected - actual| <= tolerance``."""
    return abs(subtract(expected, actual)) <= tolerance
