"""Stop-loss and take-profit calculation — pure math, no I/O.

Bracket prices are fixed percentages of the latest close, placed on the
loss and profit side of the entry respectively.
"""

from dataclasses import dataclass

from scantrader.broker.models import OrderSide


@dataclass(frozen=True)
class BracketPrices:
    """Computed stop-loss and take-profit trigger prices."""
    sl: float
    tp: float


def calculate_bracket_prices(
    price: float,
    side: OrderSide,
    stop_loss_pct: float,
    take_profit_pct: float,
) -> BracketPrices:
    """Derive SL / TP from percentage distances.

    Formula::

        BUY :  sl = price × (1 − sl%)   tp = price × (1 + tp%)
        SELL:  sl = price × (1 + sl%)   tp = price × (1 − tp%)

    Raises:
        ValueError: If *price* or either percentage is non-positive.
    """
    if price <= 0:
        raise ValueError(f"price must be positive, got {price}")
    if stop_loss_pct <= 0:
        raise ValueError(f"stop_loss_pct must be positive, got {stop_loss_pct}")
    if take_profit_pct <= 0:
        raise ValueError(f"take_profit_pct must be positive, got {take_profit_pct}")

    sl_frac = stop_loss_pct / 100.0
    tp_frac = take_profit_pct / 100.0
    if side is OrderSide.BUY:
        return BracketPrices(sl=price * (1 - sl_frac), tp=price * (1 + tp_frac))
    return BracketPrices(sl=price * (1 + sl_frac), tp=price * (1 - tp_frac))
