"""Strategy data models — typed representations for signal engine outputs."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from scantrader.broker.models import OrderSide


class Signal(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    NEUTRAL = "NEUTRAL"

    @property
    def order_side(self) -> Optional[OrderSide]:
        """Entry side for a directional signal, ``None`` for NEUTRAL."""
        if self is Signal.LONG:
            return OrderSide.BUY
        if self is Signal.SHORT:
            return OrderSide.SELL
        return None


@dataclass(frozen=True)
class IndicatorVote:
    """What one indicator contributed to the buy and sell scores."""

    buy: float = 0.0
    sell: float = 0.0
    reason: Optional[str] = None


@dataclass(frozen=True)
class AnalysisResult:
    """Directional signal with a 0-100 confidence and ordered reasons."""

    signal: Signal
    confidence: float
    reasons: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_directional(self) -> bool:
        return self.signal is not Signal.NEUTRAL

    @classmethod
    def neutral(cls, *reasons: str) -> "AnalysisResult":
        return cls(Signal.NEUTRAL, 0.0, tuple(reasons))
