"""Strategy profile configuration.

A profile is one independently-configured strategy the scanner evaluates
against every symbol batch.  Profiles are read-only to the core.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Mapping, Optional


class IndicatorKind(str, Enum):
    """Every indicator a profile can configure."""

    RSI = "rsi"
    MACD = "macd"
    STOCHASTIC = "stochastic"
    BOLLINGER = "bollinger"
    ICHIMOKU = "ichimoku"
    SAR = "sar"
    CCI = "cci"
    VOLUME = "volume"


@dataclass(frozen=True)
class IndicatorConfig:
    """Settings for a single indicator within a profile."""

    enabled: bool = False
    weight: float = 0.0  # relative importance, 0-100
    period: Optional[int] = None
    threshold_low: Optional[float] = None
    threshold_high: Optional[float] = None

    def __post_init__(self) -> None:
        if not 0 <= self.weight <= 100:
            raise ValueError(f"weight must be within 0-100, got {self.weight}")
        if self.period is not None and self.period <= 0:
            raise ValueError(f"period must be positive, got {self.period}")

    @classmethod
    def from_dict(cls, data: Mapping) -> "IndicatorConfig":
        return cls(
            enabled=bool(data.get("enabled", False)),
            weight=float(data.get("weight", 0)),
            period=_opt_int(data.get("period")),
            threshold_low=_opt_float(_pick(data, "threshold_low", "thresholdLow")),
            threshold_high=_opt_float(_pick(data, "threshold_high", "thresholdHigh")),
        )


class IndicatorSet:
    """Fixed collection of one ``IndicatorConfig`` per ``IndicatorKind``.

    Kinds not supplied are present but disabled, so lookups never miss.
    """

    def __init__(self, configs: Optional[Mapping[IndicatorKind, IndicatorConfig]] = None) -> None:
        configs = dict(configs or {})
        unknown = [k for k in configs if not isinstance(k, IndicatorKind)]
        if unknown:
            raise ValueError(f"Unknown indicator keys: {unknown}")
        self._configs: dict[IndicatorKind, IndicatorConfig] = {
            kind: configs.get(kind, IndicatorConfig()) for kind in IndicatorKind
        }

    def __getitem__(self, kind: IndicatorKind) -> IndicatorConfig:
        return self._configs[kind]

    def __iter__(self) -> Iterator[tuple[IndicatorKind, IndicatorConfig]]:
        return iter(self._configs.items())

    def __eq__(self, other: object) -> bool:
        return isinstance(other, IndicatorSet) and self._configs == other._configs

    def __repr__(self) -> str:
        enabled = [k.value for k, c in self._configs.items() if c.enabled]
        return f"IndicatorSet(enabled={enabled})"

    @property
    def enabled_weight(self) -> float:
        """Sum of weights of every enabled indicator."""
        return sum(c.weight for c in self._configs.values() if c.enabled)

    @classmethod
    def from_dict(cls, data: Mapping) -> "IndicatorSet":
        """Build from ``{"rsi": {...}, "macd": {...}, ...}``.

        Raises ``ValueError`` on an indicator name that is not an
        ``IndicatorKind``.
        """
        configs: dict[IndicatorKind, IndicatorConfig] = {}
        for name, raw in data.items():
            try:
                kind = IndicatorKind(str(name).lower())
            except ValueError:
                raise ValueError(f"Unknown indicator '{name}'") from None
            configs[kind] = IndicatorConfig.from_dict(raw)
        return cls(configs)


@dataclass(frozen=True)
class StrategyProfile:
    """An independently configured strategy.

    ``stop_loss`` and ``take_profit`` are percentages relative to the entry
    price; ``confidence_threshold`` is the minimum normalised score (0-100)
    for a signal to be acted upon.
    """

    id: str
    name: str
    active: bool
    confidence_threshold: float
    leverage: int
    stop_loss: float
    take_profit: float
    indicators: IndicatorSet = field(default_factory=IndicatorSet)

    def __post_init__(self) -> None:
        if not 0 <= self.confidence_threshold <= 100:
            raise ValueError(
                f"confidence_threshold must be within 0-100, got {self.confidence_threshold}"
            )
        if self.leverage < 1:
            raise ValueError(f"leverage must be >= 1, got {self.leverage}")
        if self.stop_loss <= 0:
            raise ValueError(f"stop_loss must be positive, got {self.stop_loss}")
        if self.take_profit <= 0:
            raise ValueError(f"take_profit must be positive, got {self.take_profit}")

    @classmethod
    def from_dict(cls, data: Mapping) -> "StrategyProfile":
        """Build a profile from a JSON object (camelCase or snake_case)."""
        profile_id = str(data["id"])
        return cls(
            id=profile_id,
            name=str(data.get("name", profile_id)),
            active=bool(data.get("active", False)),
            confidence_threshold=float(
                _pick(data, "confidence_threshold", "confidenceThreshold", default=60)
            ),
            leverage=int(data.get("leverage", 10)),
            stop_loss=float(_pick(data, "stop_loss", "stopLoss", default=3)),
            take_profit=float(_pick(data, "take_profit", "takeProfit", default=6)),
            indicators=IndicatorSet.from_dict(data.get("indicators", {})),
        )


def _pick(data: Mapping, *keys: str, default=None):
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return default


def _opt_int(value) -> Optional[int]:
    return None if value is None else int(value)


def _opt_float(value) -> Optional[float]:
    return None if value is None else float(value)
