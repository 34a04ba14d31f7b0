"""
Money -- integer minor units and the engine-boundary rounding policy.

Responsibility:
    Converts between decimal major-unit amounts and 64-bit integer minor
    units, multiplies amounts by rational rates, and rounds.  Rounding is
    always half-even to the target currency's minor unit and is applied only
    here; engines never round at call sites.

Architecture position:
    Kernel > Domain -- pure functions, zero I/O.
"""

from decimal import ROUND_HALF_EVEN, Decimal
from fractions import Fraction

from erp_kernel.domain.currency import currency_exponent, validate_currency

ROUNDING = ROUND_HALF_EVEN

# 64-bit signed range for persisted minor units
MAX_MINOR_UNITS = 2**63 - 1


def round_half_even(value: Decimal | Fraction | int) -> int:
    """Round a (possibly fractional) minor-unit value to an integer."""
    if isinstance(value, int):
        return value
    if isinstance(value, Fraction):
        value = Decimal(value.numerator) / Decimal(value.denominator)
    result = int(value.quantize(Decimal(1), rounding=ROUNDING))
    if abs(result) > MAX_MINOR_UNITS:
        raise OverflowError(f"Amount {result} exceeds 64-bit minor units")
    return result


def to_minor(amount: Decimal | str | int, currency: str) -> int:
    """Major-unit amount to integer minor units (``Decimal("1.50")`` -> 150)."""
    exponent = currency_exponent(currency)
    return round_half_even(Decimal(str(amount)) * (Decimal(10) ** exponent))


def from_minor(amount: int, currency: str) -> Decimal:
    """Integer minor units to a major-unit Decimal (150 -> ``Decimal("1.50")``)."""
    exponent = currency_exponent(currency)
    return (Decimal(amount) / (Decimal(10) ** exponent)).quantize(
        Decimal(1).scaleb(-exponent)
    )


def multiply(amount: int, factor: Decimal | Fraction | int) -> int:
    """Multiply minor units by an exact factor and round once."""
    if isinstance(factor, Fraction):
        return round_half_even(Fraction(amount) * factor)
    return round_half_even(Decimal(amount) * Decimal(factor))


def convert(
    amount: int,
    rate: Decimal | Fraction | str,
    from_currency: str,
    to_currency: str,
) -> int:
    """
    Convert minor units between currencies at a rational rate.

    ``rate`` is target major units per source major unit.  The product is
    computed exactly and rounded half-even to the target minor unit.
    """
    validate_currency(from_currency)
    validate_currency(to_currency)
    exact_rate = Fraction(str(rate)) if isinstance(rate, str) else Fraction(rate)
    shift = currency_exponent(to_currency) - currency_exponent(from_currency)
    return round_half_even(Fraction(amount) * exact_rate * Fraction(10) ** shift)


def allocate(total: int, weights: list[int]) -> list[int]:
    """Split ``total`` by integer weights; remainders go to the largest shares."""
    if not weights or sum(weights) == 0:
        raise ValueError("weights must be non-empty with a positive sum")
    weight_sum = sum(weights)
    shares = [total * w // weight_sum for w in weights]
    remainder = total - sum(shares)
    order = sorted(range(len(weights)), key=lambda i: (-weights[i], i))
    for i in order[:remainder]:
        shares[i] += 1
    return shares
