"""ScanTrader — application configuration.

Loads .env variables into a typed config object and reads the
profile / symbol universe from ``profiles.json``.
Validates required variables on startup.
"""

import json
import logging
import os
import pathlib
from dataclasses import dataclass

from dotenv import load_dotenv

from scantrader.models.profile import (
    IndicatorConfig,
    IndicatorKind,
    IndicatorSet,
    StrategyProfile,
)

logger = logging.getLogger("scantrader.config")

_REQUIRED_VARS = [
    "BINANCE_API_KEY",
    "BINANCE_API_SECRET",
]

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    binance_api_key: str
    binance_api_secret: str
    binance_testnet: bool
    scan_interval_seconds: float
    batch_size: int
    candle_interval: str
    candle_limit: int
    candle_cache_ttl_seconds: float
    margin_per_trade: float
    portfolio_refresh_seconds: float
    db_path: str
    profiles_path: str
    log_level: str
    api_port: int

    @property
    def futures_base_url(self) -> str:
        """Return the USD-M futures REST base URL for the environment."""
        if self.binance_testnet:
            return "https://testnet.binancefuture.com"
        return "https://fapi.binance.com"


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    return Config(
        binance_api_key=os.environ["BINANCE_API_KEY"],
        binance_api_secret=os.environ["BINANCE_API_SECRET"],
        binance_testnet=os.environ.get("BINANCE_TESTNET", "true").lower() in _TRUTHY,
        scan_interval_seconds=float(os.environ.get("SCAN_INTERVAL_SECONDS", "6")),
        batch_size=int(os.environ.get("BATCH_SIZE", "20")),
        candle_interval=os.environ.get("CANDLE_INTERVAL", "15m"),
        candle_limit=int(os.environ.get("CANDLE_LIMIT", "100")),
        candle_cache_ttl_seconds=float(os.environ.get("CANDLE_CACHE_TTL_SECONDS", "5")),
        margin_per_trade=float(os.environ.get("MARGIN_PER_TRADE", "50.0")),
        portfolio_refresh_seconds=float(os.environ.get("PORTFOLIO_REFRESH_SECONDS", "10")),
        db_path=os.environ.get("DB_PATH", "data/scantrader.db"),
        profiles_path=os.environ.get("PROFILES_PATH", "profiles.json"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        api_port=int(os.environ.get("API_PORT", "8080")),
    )


# ── Profiles / symbol universe ───────────────────────────────────────────


def default_indicators() -> IndicatorSet:
    """Indicator weights every built-in profile starts from."""
    return IndicatorSet({
        IndicatorKind.RSI: IndicatorConfig(
            enabled=True, weight=20, period=14, threshold_low=30, threshold_high=70,
        ),
        IndicatorKind.MACD: IndicatorConfig(enabled=True, weight=15),
        IndicatorKind.STOCHASTIC: IndicatorConfig(enabled=False, weight=10),
        IndicatorKind.BOLLINGER: IndicatorConfig(enabled=True, weight=15),
        IndicatorKind.ICHIMOKU: IndicatorConfig(enabled=False, weight=20),
        IndicatorKind.SAR: IndicatorConfig(enabled=False, weight=10),
        IndicatorKind.CCI: IndicatorConfig(enabled=False, weight=10),
        IndicatorKind.VOLUME: IndicatorConfig(enabled=True, weight=10),
    })


def default_profiles() -> list[StrategyProfile]:
    """The stock profile line-up, ordered from safest to most aggressive."""
    rows = [
        # id, name, threshold, leverage, stop_loss, take_profit, active
        ("SAFE", "Safe", 80, 2, 2, 5, False),
        ("MODERATE", "Moderate", 65, 5, 5, 10, True),
        ("BOLD", "Bold", 50, 10, 10, 20, False),
        ("SPECIALIST", "Specialist", 85, 20, 5, 15, False),
        ("ALPHA", "Alpha Predator", 50, 50, 2, 4, True),
        ("CUSTOM", "Custom", 60, 10, 3, 6, False),
    ]
    return [
        StrategyProfile(
            id=pid,
            name=name,
            active=active,
            confidence_threshold=threshold,
            leverage=leverage,
            stop_loss=sl,
            take_profit=tp,
            indicators=default_indicators(),
        )
        for pid, name, threshold, leverage, sl, tp, active in rows
    ]


def load_profiles(
    path: str | pathlib.Path,
) -> tuple[list[StrategyProfile], list[str]]:
    """Load ``(profiles, selected_symbols)`` from a JSON file.

    The file shape is ``{"symbols": [...], "profiles": [...]}``.  Profile
    keys may be camelCase or snake_case.  A missing file falls back to the
    built-in profiles scanning ``BTCUSDT`` only.

    Raises ``ValueError`` if a profile entry is invalid.
    """
    path = pathlib.Path(path)
    if not path.is_file():
        logger.info("No profile file at %s — using built-in profiles.", path)
        return default_profiles(), ["BTCUSDT"]

    data = json.loads(path.read_text(encoding="utf-8"))
    symbols = [str(s).upper() for s in data.get("symbols", [])]
    raw_profiles = data.get("profiles")
    if raw_profiles is None:
        profiles = default_profiles()
    else:
        profiles = [StrategyProfile.from_dict(p) for p in raw_profiles]
    return profiles, symbols
