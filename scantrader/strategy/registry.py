"""Indicator registry — maps each ``IndicatorKind`` to its evaluator.

Kinds without an evaluator are listed in ``UNIMPLEMENTED_INDICATORS``.
They may be configured and enabled, but they never add to a score.
"""

from typing import Callable

from scantrader.models.profile import IndicatorConfig, IndicatorKind
from scantrader.strategy.indicators import (
    calculate_macd_line,
    calculate_rsi,
    calculate_sma,
)
from scantrader.strategy.models import IndicatorVote

IndicatorEvaluator = Callable[[list[float], IndicatorConfig], IndicatorVote]

DEFAULT_RSI_PERIOD = 14
DEFAULT_RSI_LOW = 30.0
DEFAULT_RSI_HIGH = 70.0
DEVIATION_PERIOD = 20
DEVIATION_BAND = 0.02


def evaluate_rsi(closes: list[float], config: IndicatorConfig) -> IndicatorVote:
    """Oversold adds to buy, overbought adds to sell; neutral in between."""
    rsi = calculate_rsi(closes, config.period or DEFAULT_RSI_PERIOD)
    low = config.threshold_low or DEFAULT_RSI_LOW
    high = config.threshold_high or DEFAULT_RSI_HIGH
    if rsi < low:
        return IndicatorVote(buy=config.weight, reason=f"RSI {rsi:.1f} (oversold)")
    if rsi > high:
        return IndicatorVote(sell=config.weight, reason=f"RSI {rsi:.1f} (overbought)")
    return IndicatorVote()


def evaluate_macd(closes: list[float], config: IndicatorConfig) -> IndicatorVote:
    """Coarse trend filter: positive MACD line buys, anything else sells."""
    if calculate_macd_line(closes) > 0:
        return IndicatorVote(buy=config.weight)
    return IndicatorVote(sell=config.weight)


def evaluate_bollinger(closes: list[float], config: IndicatorConfig) -> IndicatorVote:
    """Deviation of the last close from its 20-period average.

    Only the buy branch carries a reason string.
    """
    sma = calculate_sma(closes, DEVIATION_PERIOD)
    price = closes[-1]
    if price <= sma * (1 - DEVIATION_BAND):
        return IndicatorVote(buy=config.weight, reason="Dip below 20-period average")
    if price >= sma * (1 + DEVIATION_BAND):
        return IndicatorVote(sell=config.weight)
    return IndicatorVote()


INDICATOR_REGISTRY: dict[IndicatorKind, IndicatorEvaluator] = {
    IndicatorKind.RSI: evaluate_rsi,
    IndicatorKind.MACD: evaluate_macd,
    IndicatorKind.BOLLINGER: evaluate_bollinger,
}

UNIMPLEMENTED_INDICATORS: frozenset[IndicatorKind] = frozenset(
    kind for kind in IndicatorKind if kind not in INDICATOR_REGISTRY
)


def get_evaluator(kind: IndicatorKind) -> IndicatorEvaluator:
    """Look up the evaluator for *kind*.

    Raises ``KeyError`` if the indicator has no evaluator.
    """
    if kind not in INDICATOR_REGISTRY:
        raise KeyError(
            f"Indicator '{kind.value}' has no evaluator. "
            f"Available: {', '.join(k.value for k in INDICATOR_REGISTRY)}"
        )
    return INDICATOR_REGISTRY[kind]
