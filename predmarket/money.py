"""Money helpers — decimal-safe amounts and the proportional split.

Amounts are ``Decimal`` in Python and INTEGER minor units (cents) in
storage, so pot increments are exact single-statement updates.

Rounding policy:
  - Platform fee is rounded UP to the cent; the payout pool is therefore
    a whole number of cents and any sub-cent dust belongs to the platform.
  - Proportional payouts use the largest-remainder method: floor every
    share, then hand the leftover cents one at a time to the largest
    fractional remainders (ties → earlier position in the input order).
    The shares always sum to exactly the pool being split.
  - Refunds are floored to the cent; the remainder accrues to the fee.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Sequence

DECIMAL_PLACES = 2
QUANTUM = Decimal(1).scaleb(-DECIMAL_PLACES)
UNITS_PER_WHOLE = 10 ** DECIMAL_PLACES
ZERO = Decimal(0).quantize(QUANTUM)

SHARE_QUANTUM = Decimal("0.00000001")


def to_decimal(value: Any) -> Decimal:
    """Coerce int/str/float/Decimal to a finite Decimal.

    Floats go through ``str`` so ``0.1`` becomes ``Decimal('0.1')``.
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a monetary value: {value!r}")
    if isinstance(value, float):
        value = str(value)
    try:
        dec = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValueError(f"Not a monetary value: {value!r}") from e
    if not dec.is_finite():
        raise ValueError(f"Amount must be finite: {value!r}")
    return dec


def parse_amount(value: Any) -> Decimal:
    """Parse a stake/credit amount, rejecting sub-cent precision."""
    dec = to_decimal(value)
    quantized = dec.quantize(QUANTUM, rounding=ROUND_FLOOR)
    if quantized != dec:
        raise ValueError(f"Amount {dec} has more than {DECIMAL_PLACES} decimal places")
    return quantized


def parse_fee_rate(value: Any) -> Decimal:
    rate = to_decimal(value)
    if not Decimal(0) <= rate < Decimal(1):
        raise ValueError(f"Fee rate must be in [0, 1), got {rate}")
    return rate


def to_units(amount: Decimal) -> int:
    """Decimal → integer minor units. The amount must already be on the cent grid."""
    scaled = amount * UNITS_PER_WHOLE
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {amount} is not a whole number of minor units")
    return int(scaled)


def from_units(units: int) -> Decimal:
    return Decimal(units).scaleb(-DECIMAL_PLACES).quantize(QUANTUM)


def fee_units(total_units: int, fee_rate: Decimal) -> int:
    """Platform fee on ``total_units``, rounded up to a whole minor unit."""
    if total_units <= 0:
        return 0
    raw = Decimal(total_units) * fee_rate
    return min(total_units, int(raw.to_integral_value(rounding=ROUND_CEILING)))


def net_of_fee_units(amount_units: int, fee_rate: Decimal) -> int:
    """``amount * (1 - fee_rate)`` floored to a whole minor unit."""
    raw = Decimal(amount_units) * (Decimal(1) - fee_rate)
    return int(raw.to_integral_value(rounding=ROUND_FLOOR))


def split_proportional(pool_units: int, weights: Sequence[int]) -> list[int]:
    """Split ``pool_units`` across ``weights`` by the largest-remainder method.

    Integer arithmetic throughout; the result sums to ``pool_units`` exactly
    whenever the total weight is positive.
    """
    if pool_units < 0:
        raise ValueError("pool_units must be non-negative")
    if any(w < 0 for w in weights):
        raise ValueError("weights must be non-negative")
    total_weight = sum(weights)
    if total_weight == 0:
        return [0] * len(weights)

    floors: list[int] = []
    remainders: list[int] = []
    for w in weights:
        q, r = divmod(pool_units * w, total_weight)
        floors.append(q)
        remainders.append(r)

    leftover = pool_units - sum(floors)
    # leftover < number of positive weights, so one cent each is enough
    order = sorted(range(len(weights)), key=lambda i: (-remainders[i], i))
    for i in order[:leftover]:
        floors[i] += 1
    return floors


def share_of(amount_units: int, pool_units: int) -> Decimal:
    if pool_units <= 0:
        return Decimal(0)
    return (Decimal(amount_units) / Decimal(pool_units)).quantize(SHARE_QUANTUM)


def fmt(amount: Decimal) -> str:
    return f"{amount:,.{DECIMAL_PLACES}f}"
