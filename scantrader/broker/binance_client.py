"""Binance USD-M futures REST async client.

Implements the exchange account handle the order gateway and scheduler
talk to: position mode, leverage, order placement, prices, symbol
precision, and account / position queries.
"""

import asyncio
import hashlib
import hmac
import logging
import time
from typing import Optional
from urllib.parse import urlencode

import httpx

from scantrader.broker.errors import ExchangeError
from scantrader.broker.models import (
    AccountSnapshot,
    PositionMode,
    Position,
    SymbolPrecision,
)
from scantrader.config import Config

logger = logging.getLogger("scantrader.broker")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}
_RECV_WINDOW = 60000


class BinanceFuturesClient:
    """Async client wrapping the Binance USD-M futures REST API."""

    def __init__(self, config: Config) -> None:
        self._config = config
        self._base_url = config.futures_base_url
        self._api_key = config.binance_api_key
        self._api_secret = config.binance_api_secret
        self._headers = {
            "X-MBX-APIKEY": config.binance_api_key,
            "Content-Type": "application/x-www-form-urlencoded",
        }
        self._precision_cache: dict[str, SymbolPrecision] = {}

    @property
    def is_testnet(self) -> bool:
        return self._config.binance_testnet

    # ── Signing / retry helper ───────────────────────────────────────────

    def _sign(self, params: dict) -> str:
        """Return the HMAC-SHA256 signed query string for *params*."""
        params = {k: v for k, v in params.items() if v is not None}
        params["recvWindow"] = _RECV_WINDOW
        params["timestamp"] = int(time.time() * 1000)
        query = urlencode(params)
        signature = hmac.new(
            self._api_secret.encode(), query.encode(), hashlib.sha256
        ).hexdigest()
        return f"{query}&signature={signature}"

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        signed: bool = False,
        retry: bool = True,
    ):
        """Execute a REST call with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504) and rate-limits
        (429).  Exchange-side rejections raise ``ExchangeError`` immediately
        with the Binance error code attached.

        With ``retry=False`` the call is attempted once and a transport
        error or transient status raises straight away.
        """
        params = dict(params or {})
        last_exc: Optional[Exception] = None
        attempts = _MAX_RETRIES if retry else 1

        for attempt in range(attempts):
            # Re-sign every attempt so the timestamp stays inside recvWindow
            if signed:
                query = self._sign(params)
            else:
                query = urlencode({k: v for k, v in params.items() if v is not None})
            url = f"{self._base_url}{path}"
            if query:
                url = f"{url}?{query}"

            try:
                async with httpx.AsyncClient() as client:
                    resp = await client.request(
                        method.upper(),
                        url,
                        headers=self._headers,
                        timeout=30.0,
                    )
            except httpx.TransportError as exc:
                if not retry:
                    raise ExchangeError(
                        f"Binance {method.upper()} {path} outcome unknown: {exc}"
                    ) from exc
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "Binance %s %s transport error (%s) — retry %d/%d in %.1fs",
                    method.upper(), path, exc,
                    attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)
                continue

            if resp.status_code in _RETRYABLE_STATUS_CODES:
                if not retry:
                    raise ExchangeError(
                        f"Server error '{resp.status_code}'",
                        status_code=resp.status_code,
                    )
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "Binance %s %s returned %d — retry %d/%d in %.1fs",
                    method.upper(), path, resp.status_code,
                    attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = ExchangeError(
                    f"Server error '{resp.status_code}'",
                    status_code=resp.status_code,
                )
                await asyncio.sleep(delay)
                continue

            return self._decode(resp)

        # All retries exhausted
        raise last_exc  # type: ignore[misc]

    @staticmethod
    def _decode(resp: httpx.Response):
        try:
            data = resp.json()
        except ValueError:
            raise ExchangeError(
                f"Non-JSON response ({resp.status_code}): {resp.text[:200]}",
                status_code=resp.status_code,
            ) from None

        if resp.status_code >= 400:
            if isinstance(data, dict):
                raise ExchangeError.from_payload(data, status_code=resp.status_code)
            raise ExchangeError(str(data), status_code=resp.status_code)
        # Some endpoints answer 200 with an error body
        if isinstance(data, dict) and isinstance(data.get("code"), int) and data["code"] < 0:
            raise ExchangeError.from_payload(data, status_code=resp.status_code)
        return data

    # ── Account handle ───────────────────────────────────────────────────

    async def get_position_mode(self) -> PositionMode:
        """Query whether the account runs hedge (dual-side) or one-way mode."""
        data = await self._request_with_retry(
            "get", "/fapi/v1/positionSide/dual", signed=True,
        )
        if data.get("dualSidePosition") in (True, "true"):
            return PositionMode.HEDGE
        return PositionMode.ONE_WAY

    async def set_leverage(self, symbol: str, leverage: int) -> dict:
        return await self._request_with_retry(
            "post",
            "/fapi/v1/leverage",
            params={"symbol": symbol, "leverage": int(leverage)},
            signed=True,
        )

    async def place_order(self, params: dict) -> dict:
        """Submit a raw order parameter dict; returns the Binance order body.

        Sent once: a timeout or 5xx may still have filled, so a resend
        could open a second position.
        """
        return await self._request_with_retry(
            "post", "/fapi/v1/order", params=params, signed=True, retry=False,
        )

    async def get_latest_price(self, symbol: str) -> float:
        data = await self._request_with_retry(
            "get", "/fapi/v1/ticker/price", params={"symbol": symbol},
        )
        return float(data["price"])

    async def get_symbol_precision(self, symbol: str) -> SymbolPrecision:
        """Return quantity / price precision from exchange metadata.

        The whole ``exchangeInfo`` table is cached on first use.

        Raises ``ExchangeError`` if the symbol is not trading.
        """
        if not self._precision_cache:
            data = await self._request_with_retry("get", "/fapi/v1/exchangeInfo")
            for s in data.get("symbols", []):
                if s.get("status") != "TRADING":
                    continue
                self._precision_cache[s["symbol"]] = SymbolPrecision(
                    quantity_precision=int(s["quantityPrecision"]),
                    price_precision=int(s["pricePrecision"]),
                )
        try:
            return self._precision_cache[symbol]
        except KeyError:
            raise ExchangeError(f"Unknown or non-trading symbol: {symbol}") from None

    async def get_account(self) -> AccountSnapshot:
        """Query margin balance, unrealised PnL and every non-zero position."""
        data = await self._request_with_retry("get", "/fapi/v2/account", signed=True)

        positions: list[Position] = []
        for p in data.get("positions", []):
            amount = float(p.get("positionAmt", "0"))
            if amount == 0:
                continue
            positions.append(
                Position(
                    symbol=p["symbol"],
                    amount=amount,
                    entry_price=float(p.get("entryPrice", "0")),
                    notional=float(p.get("notional", "0")),
                    unrealized_pnl=float(p.get("unrealizedProfit", "0")),
                    initial_margin=float(p.get("initialMargin", "0")),
                    position_side=p.get("positionSide", "BOTH"),
                )
            )
        return AccountSnapshot(
            total_balance=float(data.get("totalMarginBalance", "0")),
            unrealized_pnl=float(data.get("totalUnrealizedProfit", "0")),
            positions=positions,
            is_testnet=self.is_testnet,
        )
