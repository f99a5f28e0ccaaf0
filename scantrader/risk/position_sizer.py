"""Position sizing — pure math, no I/O.

Sizes an order from a fixed margin allocation and formats quantities to
the precision the exchange accepts.
"""

import math


def calculate_quantity(
    margin: float,
    leverage: int,
    price: float,
) -> float:
    """Calculate order quantity in base-asset units.

    Formula::

        notional = margin × leverage
        quantity = notional / price

    Args:
        margin: Quote-currency margin committed to the trade (e.g. 50.0).
        leverage: Leverage multiplier (e.g. 10).
        price: Latest traded price.

    Returns:
        Unrounded quantity (always positive).

    Raises:
        ValueError: If any input is non-positive.
    """
    if margin <= 0:
        raise ValueError(f"margin must be positive, got {margin}")
    if leverage <= 0:
        raise ValueError(f"leverage must be positive, got {leverage}")
    if not price or price <= 0:
        raise ValueError(f"price must be positive, got {price}")

    return margin * leverage / price


def floor_to_precision(value: float, precision: int) -> str:
    """Format *value* truncated (never rounded up) to *precision* decimals.

    >>> floor_to_precision(0.12399, 3)
    '0.123'
    >>> floor_to_precision(7.9, 0)
    '7'
    """
    if not value or math.isnan(value):
        return "0"
    if precision <= 0:
        return str(math.floor(value))
    factor = 10 ** precision
    # Nudge by a tiny epsilon so 0.3 × 1000 = 299.999… floors to 300
    floored = math.floor(value * factor + 1e-9) / factor
    return f"{floored:.{precision}f}"
