"""Money conversion helpers using integer wei precision."""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR


WEI_PER_ETHER = 10**18
_ETHER_QUANT = Decimal("0.000000000000000001")


def ether_to_wei(value: Decimal | float | int | str) -> int:
    """Convert an ether amount to wei, rounding down (conservative for prices)."""
    dec = Decimal(str(value)).quantize(_ETHER_QUANT, rounding=ROUND_FLOOR)
    return int(dec * WEI_PER_ETHER)


def wei_to_ether_decimal(value: int) -> Decimal:
    """Convert integer wei to Decimal ether."""
    return (Decimal(value) / Decimal(WEI_PER_ETHER)).quantize(_ETHER_QUANT)


def format_ether(value: int, places: int = 6) -> str:
    """Format integer wei as an ether string with fixed places."""
    return f"{wei_to_ether_decimal(value):.{places}f} ETH"


def minimum_acceptable(expected_wei: int, tolerance: Decimal | float | str) -> int:
    """
    Smallest delta accepted for an expected amount.

    ceil(expected * (1 - tolerance)), so the exact boundary is accepted and
    one wei below it is not.
    """
    tol = Decimal(str(tolerance))
    if tol < 0 or tol >= 1:
        raise ValueError(f"tolerance must be in [0, 1): {tolerance}")
    floor = (Decimal(expected_wei) * (Decimal(1) - tol)).to_integral_value(rounding=ROUND_CEILING)
    return int(floor)
