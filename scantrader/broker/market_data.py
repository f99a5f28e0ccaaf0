"""Candle source — public Binance klines with a short-lived cache.

The scanner asks for one symbol at a time once per tick; the cache keeps
repeated requests for the same ``(symbol, interval)`` off the wire.
"""

import logging
import time
from typing import Callable, Optional

import httpx

from scantrader.broker.models import Candle

logger = logging.getLogger("scantrader.market_data")

_SPOT_KLINES_URL = "https://api.binance.com/api/v3/klines"
_FUTURES_KLINES_URL = "https://fapi.binance.com/fapi/v1/klines"


class CandleSource:
    """Fetches OHLCV history, spot first with a futures fallback.

    Args:
        ttl_seconds: How long a fetched window is reused.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        ttl_seconds: float = 5.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock or time.monotonic
        self._cache: dict[tuple[str, str], tuple[float, list[Candle]]] = {}

    async def fetch(
        self,
        symbol: str,
        interval: str = "15m",
        limit: int = 100,
    ) -> list[Candle]:
        """Return candles ordered oldest-first, or ``[]`` if unavailable."""
        key = (symbol, interval)
        now = self._clock()
        cached = self._cache.get(key)
        if cached and now - cached[0] < self._ttl:
            return cached[1]

        params = {"symbol": symbol, "interval": interval, "limit": limit}
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.get(_SPOT_KLINES_URL, params=params, timeout=15.0)
                if resp.status_code != 200:
                    # Futures-only listings are missing from spot
                    resp = await client.get(
                        _FUTURES_KLINES_URL, params=params, timeout=15.0,
                    )
                resp.raise_for_status()
                rows = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Candle fetch failed for %s %s: %s", symbol, interval, exc)
            return []

        try:
            candles = [_parse_kline(row) for row in rows]
        except (IndexError, TypeError, ValueError) as exc:
            logger.warning("Malformed klines for %s %s: %s", symbol, interval, exc)
            return []

        self._cache[key] = (now, candles)
        return candles

    def clear(self) -> None:
        self._cache.clear()


def _parse_kline(row: list) -> Candle:
    return Candle(
        time=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )
