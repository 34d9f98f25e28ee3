from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, localcontext

BPS_DENOMINATOR = 10_000


def min_output_with_slippage(expected: int, slippage_bps: int) -> int:
    """Lowest acceptable output for ``expected`` given a tolerance in basis points."""
    if expected < 0:
        raise ValueError("expected output must be >= 0")
    if not 0 <= slippage_bps <= BPS_DENOMINATOR:
        raise ValueError("slippage_bps must be within [0, 10000]")
    return expected - (expected * slippage_bps) // BPS_DENOMINATOR


def usd_to_base_units(
    usd_amount: float,
    *,
    balance: int,
    balance_usd: float,
    decimals: int,
) -> int:
    """Convert a USD amount into base units using the unit price implied by a snapshot.

    The result is rounded down and never exceeds ``balance``.
    """
    if usd_amount <= 0 or balance <= 0 or balance_usd <= 0:
        return 0
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    with localcontext() as ctx:
        ctx.prec = max(50, decimals + 30)
        scale = Decimal(10) ** decimals
        unit_price = Decimal(str(balance_usd)) / (Decimal(balance) / scale)
        units = (Decimal(str(usd_amount)) / unit_price * scale).quantize(
            Decimal("1"), rounding=ROUND_DOWN
        )
    return min(int(units), balance)


def parse_base_units(value: object) -> int:
    if isinstance(value, bool):
        raise TypeError("booleans are not amounts")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        parsed = int(value.strip())
    else:
        raise TypeError(f"Cannot parse base-unit amount from {type(value)!r}")
    if parsed < 0:
        raise ValueError("base-unit amounts must be >= 0")
    return parsed
