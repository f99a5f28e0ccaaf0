"""Signal engine — weighted multi-indicator scoring.

Turns a candle window and a profile's indicator configuration into a
directional ``AnalysisResult``.  Pure: no I/O, no state.
"""

from typing import Sequence

from scantrader.broker.models import Candle
from scantrader.models.profile import StrategyProfile
from scantrader.strategy.models import AnalysisResult, Signal
from scantrader.strategy.registry import INDICATOR_REGISTRY

MIN_CANDLES = 50
INSUFFICIENT_DATA = "insufficient data"


def evaluate(candles: Sequence[Candle], profile: StrategyProfile) -> AnalysisResult:
    """Score *candles* against *profile* and pick a side.

    Each enabled indicator with an evaluator adds its weight to the buy or
    sell score.  Scores are normalised by the total weight of every enabled
    indicator (floor 1) and capped at 100.  The strictly higher side wins if
    it reaches the profile's confidence threshold; otherwise the result is
    NEUTRAL with zero confidence and no reasons.

    Fewer than ``MIN_CANDLES`` candles yields NEUTRAL with the
    ``"insufficient data"`` reason.  Never raises on short input.
    """
    if not candles or len(candles) < MIN_CANDLES:
        return AnalysisResult.neutral(INSUFFICIENT_DATA)

    closes = [c.close for c in candles]
    score_buy = 0.0
    score_sell = 0.0
    reasons: list[str] = []

    for kind, evaluator in INDICATOR_REGISTRY.items():
        config = profile.indicators[kind]
        if not config.enabled:
            continue
        vote = evaluator(closes, config)
        score_buy += vote.buy
        score_sell += vote.sell
        if vote.reason:
            reasons.append(vote.reason)

    total_weight = profile.indicators.enabled_weight or 1
    confidence_buy = min(score_buy / total_weight * 100, 100.0)
    confidence_sell = min(score_sell / total_weight * 100, 100.0)
    threshold = profile.confidence_threshold

    if confidence_buy > confidence_sell and confidence_buy >= threshold:
        return AnalysisResult(Signal.LONG, confidence_buy, tuple(reasons))
    if confidence_sell > confidence_buy and confidence_sell >= threshold:
        return AnalysisResult(Signal.SHORT, confidence_sell, tuple(reasons))
    return AnalysisResult.neutral()
