"""Integer minor-unit money helpers.

Amounts are stored and compared as integers in minor units (cents).
Decimal is used only at the edges: parsing user input and applying a
supplied conversion rate.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Sequence, Union

from .exceptions import InvalidAmount

# ISO 4217 currencies without a two-digit minor unit that we expect to see.
_MINOR_EXPONENTS = {
    "JPY": 0,
    "KRW": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
}

Number = Union[int, str, Decimal, float]


def minor_exponent(currency: str) -> int:
    return _MINOR_EXPONENTS.get(currency.upper(), 2)


def to_minor(value: Number, currency: str = "USD") -> int:
    """Convert a major-unit value ("12.34", Decimal, float) to minor units.

    Floats are routed through ``str`` so 0.1 + 0.2 style noise never
    reaches the ledger.
    """
    if isinstance(value, bool):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    try:
        dec = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    if not dec.is_finite():
        raise InvalidAmount(f"Invalid amount: {value!r}")
    scale = Decimal(10) ** minor_exponent(currency)
    return int((dec * scale).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_minor(amount: int, currency: str = "USD") -> str:
    """Render minor units as a fixed-point major-unit string."""
    exponent = minor_exponent(currency)
    if exponent == 0:
        return str(amount)
    sign = "-" if amount < 0 else ""
    whole, frac = divmod(abs(amount), 10 ** exponent)
    return f"{sign}{whole}.{frac:0{exponent}d}"


def convert_minor(amount: int, rate: Union[str, Decimal]) -> int:
    """Apply an already-computed conversion rate to a minor-unit amount."""
    rate_dec = Decimal(str(rate))
    if rate_dec <= 0:
        raise InvalidAmount(f"Conversion rate must be positive, got {rate}")
    return int((Decimal(amount) * rate_dec).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def require_positive(amount: int) -> int:
    """Validate a minor-unit amount; returns it unchanged."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"Amount must be an integer in minor units, got {amount!r}")
    if amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount}")
    return amount


def allocate_proportionally(total: int, weights: Sequence[int]) -> List[int]:
    """Split ``total`` across ``weights`` so the parts sum exactly to ``total``.

    Uses largest-remainder rounding. A part that would round to zero is
    bumped to 1 and the unit is taken back from the largest part, so every
    line stays non-zero. When ``total`` is smaller than the number of parts
    there is no such split and a single part is returned.
    """
    require_positive(total)
    weight_sum = sum(weights)
    if not weights or weight_sum <= 0 or any(w < 0 for w in weights):
        return [total]
    if total < len(weights):
        return [total]

    shares = [total * w // weight_sum for w in weights]
    leftover = total - sum(shares)
    by_remainder = sorted(
        range(len(weights)),
        key=lambda i: (-(total * weights[i] % weight_sum), i),
    )
    for i in by_remainder[:leftover]:
        shares[i] += 1

    for i, share in enumerate(shares):
        if share == 0:
            shares[i] = 1
            donor = max(range(len(shares)), key=lambda j: (shares[j], -j))
            shares[donor] -= 1
    return shares
