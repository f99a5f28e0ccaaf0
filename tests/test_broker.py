"""Tests for scantrader.broker — Binance futures client with mocked HTTP."""

import hashlib
import hmac
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from scantrader.broker import binance_client
from scantrader.broker.base import ExchangeHandle
from scantrader.broker.binance_client import BinanceFuturesClient
from scantrader.broker.errors import POSITION_SIDE_MISMATCH, ExchangeError
from scantrader.broker.models import AccountSnapshot, PositionMode, SymbolPrecision
from scantrader.config import Config


def _make_config(testnet: bool = True) -> Config:
    return Config(
        binance_api_key="test-key",
        binance_api_secret="test-secret",
        binance_testnet=testnet,
        scan_interval_seconds=6,
        batch_size=20,
        candle_interval="15m",
        candle_limit=100,
        candle_cache_ttl_seconds=5,
        margin_per_trade=50,
        portfolio_refresh_seconds=10,
        db_path=":memory:",
        profiles_path="profiles.json",
        log_level="INFO",
        api_port=8080,
    )


# ── Mock Binance responses ───────────────────────────────────────────────

MOCK_EXCHANGE_INFO = {
    "symbols": [
        {"symbol": "BTCUSDT", "status": "TRADING", "quantityPrecision": 3, "pricePrecision": 1},
        {"symbol": "DOGEUSDT", "status": "TRADING", "quantityPrecision": 0, "pricePrecision": 5},
        {"symbol": "OLDUSDT", "status": "SETTLING", "quantityPrecision": 2, "pricePrecision": 2},
    ]
}

MOCK_ACCOUNT = {
    "totalMarginBalance": "1050.25",
    "totalUnrealizedProfit": "12.50",
    "positions": [
        {
            "symbol": "BTCUSDT",
            "positionAmt": "0.020",
            "entryPrice": "25000.0",
            "notional": "502.0",
            "unrealizedProfit": "2.0",
            "initialMargin": "50.2",
            "positionSide": "BOTH",
        },
        {
            "symbol": "ETHUSDT",
            "positionAmt": "-1.5",
            "entryPrice": "1600.0",
            "notional": "-2385.0",
            "unrealizedProfit": "10.5",
            "initialMargin": "238.5",
            "positionSide": "BOTH",
        },
        {"symbol": "SOLUSDT", "positionAmt": "0", "entryPrice": "0"},
    ],
}


def _install(monkeypatch, responder):
    """Route every ``AsyncClient.request`` call to *responder(method, url)*."""
    calls = []

    async def _mock_request(self, method, url, *, headers=None, timeout=None):
        calls.append({"method": method, "url": url, "headers": headers})
        status, body = responder(method, url)
        return httpx.Response(status, json=body, request=httpx.Request(method, url))

    monkeypatch.setattr(httpx.AsyncClient, "request", _mock_request)
    return calls


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


# ── Tests ────────────────────────────────────────────────────────────────


def test_satisfies_exchange_handle():
    assert isinstance(BinanceFuturesClient(_make_config()), ExchangeHandle)


def test_environment_switching():
    assert BinanceFuturesClient(_make_config(True))._base_url == "https://testnet.binancefuture.com"
    assert BinanceFuturesClient(_make_config(False))._base_url == "https://fapi.binance.com"


@pytest.mark.asyncio
async def test_signed_request(monkeypatch):
    """Signed calls carry the API key header, recvWindow and a valid HMAC."""
    calls = _install(monkeypatch, lambda m, u: (200, {"dualSidePosition": False}))
    client = BinanceFuturesClient(_make_config())

    mode = await client.get_position_mode()

    assert mode is PositionMode.ONE_WAY
    call = calls[0]
    assert call["method"] == "GET"
    assert call["headers"]["X-MBX-APIKEY"] == "test-key"
    query = urlsplit(call["url"]).query
    payload, signature = query.rsplit("&signature=", 1)
    expected = hmac.new(b"test-secret", payload.encode(), hashlib.sha256).hexdigest()
    assert signature == expected
    assert _query(call["url"])["recvWindow"] == "60000"


@pytest.mark.asyncio
async def test_hedge_mode_detected(monkeypatch):
    _install(monkeypatch, lambda m, u: (200, {"dualSidePosition": True}))
    client = BinanceFuturesClient(_make_config())
    assert await client.get_position_mode() is PositionMode.HEDGE


@pytest.mark.asyncio
async def test_place_order_payload(monkeypatch):
    calls = _install(monkeypatch, lambda m, u: (200, {"orderId": 42, "status": "NEW"}))
    client = BinanceFuturesClient(_make_config())

    resp = await client.place_order({
        "symbol": "BTCUSDT",
        "side": "BUY",
        "type": "MARKET",
        "quantity": "0.020",
        "newClientOrderId": "st_Alpha_1",
    })

    assert resp["orderId"] == 42
    assert calls[0]["method"] == "POST"
    assert urlsplit(calls[0]["url"]).path == "/fapi/v1/order"
    params = _query(calls[0]["url"])
    assert params["quantity"] == "0.020"
    assert params["newClientOrderId"] == "st_Alpha_1"


@pytest.mark.asyncio
async def test_error_code_decoded(monkeypatch):
    """A rejected order surfaces the exchange code on ``ExchangeError``."""
    _install(
        monkeypatch,
        lambda m, u: (400, {"code": -4061, "msg": "Order's position side does not match user's setting."}),
    )
    client = BinanceFuturesClient(_make_config())

    with pytest.raises(ExchangeError) as exc_info:
        await client.place_order({"symbol": "BTCUSDT"})

    assert exc_info.value.code == POSITION_SIDE_MISMATCH
    assert exc_info.value.status_code == 400
    assert exc_info.value.is_position_side_mismatch
    assert str(exc_info.value).startswith("[-4061]")


@pytest.mark.asyncio
async def test_retries_transient_errors(monkeypatch):
    attempts = {"n": 0}

    def _responder(method, url):
        attempts["n"] += 1
        if attempts["n"] < 3:
            return 503, {"msg": "busy"}
        return 200, {"symbol": "BTCUSDT", "price": "25000.5"}

    _install(monkeypatch, _responder)

    async def _no_sleep(delay):
        return None

    monkeypatch.setattr(binance_client.asyncio, "sleep", _no_sleep)
    client = BinanceFuturesClient(_make_config())

    assert await client.get_latest_price("BTCUSDT") == pytest.approx(25000.5)
    assert attempts["n"] == 3


@pytest.mark.asyncio
async def test_retries_exhausted_raise(monkeypatch):
    _install(monkeypatch, lambda m, u: (502, {"msg": "bad gateway"}))

    async def _no_sleep(delay):
        return None

    monkeypatch.setattr(binance_client.asyncio, "sleep", _no_sleep)
    client = BinanceFuturesClient(_make_config())

    with pytest.raises(ExchangeError) as exc_info:
        await client.get_latest_price("BTCUSDT")
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_symbol_precision_cached(monkeypatch):
    calls = _install(monkeypatch, lambda m, u: (200, MOCK_EXCHANGE_INFO))
    client = BinanceFuturesClient(_make_config())

    assert await client.get_symbol_precision("BTCUSDT") == SymbolPrecision(3, 1)
    assert await client.get_symbol_precision("DOGEUSDT") == SymbolPrecision(0, 5)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_symbol_precision_unknown(monkeypatch):
    _install(monkeypatch, lambda m, u: (200, MOCK_EXCHANGE_INFO))
    client = BinanceFuturesClient(_make_config())

    with pytest.raises(ExchangeError, match="OLDUSDT"):
        await client.get_symbol_precision("OLDUSDT")


@pytest.mark.asyncio
async def test_account_snapshot(monkeypatch):
    _install(monkeypatch, lambda m, u: (200, MOCK_ACCOUNT))
    client = BinanceFuturesClient(_make_config())

    snapshot = await client.get_account()

    assert isinstance(snapshot, AccountSnapshot)
    assert snapshot.total_balance == pytest.approx(1050.25)
    assert snapshot.unrealized_pnl == pytest.approx(12.5)
    assert snapshot.is_testnet is True
    assert [p.symbol for p in snapshot.positions] == ["BTCUSDT", "ETHUSDT"]
    assert snapshot.positions[1].amount == pytest.approx(-1.5)


class TestExchangeError:
    def test_mismatch_by_message(self):
        err = ExchangeError("Order's position side does not match user's setting.")
        assert err.is_position_side_mismatch

    def test_other_code_not_mismatch(self):
        err = ExchangeError.from_payload({"code": -2019, "msg": "Margin is insufficient."})
        assert err.code == -2019
        assert not err.is_position_side_mismatch

    def test_no_change_codes(self):
        err = ExchangeError.from_payload({"code": -4059, "msg": "No need to change position side."})
        assert err.is_no_change
        assert not err.is_position_side_mismatch
        assert ExchangeError.from_payload({"code": -4046, "msg": "No need to change margin type."}).is_no_change


@pytest.mark.asyncio
async def test_order_not_resent_after_server_error(monkeypatch):
    """An order POST that got a 503 may have filled; it is sent only once."""
    attempts = {"n": 0}

    def _responder(method, url):
        attempts["n"] += 1
        if attempts["n"] == 1:
            return 503, {"msg": "Unknown error, please check your request or try again later."}
        return 200, {"orderId": 7}

    calls = _install(monkeypatch, _responder)
    client = BinanceFuturesClient(_make_config())

    with pytest.raises(ExchangeError) as exc_info:
        await client.place_order({"symbol": "BTCUSDT", "side": "BUY", "type": "MARKET"})

    assert exc_info.value.status_code == 503
    assert [c["method"] for c in calls] == ["POST"]


@pytest.mark.asyncio
async def test_order_not_resent_after_timeout(monkeypatch):
    calls = []

    async def _timeout(self, method, url, *, headers=None, timeout=None):
        calls.append(method)
        raise httpx.ReadTimeout("timed out", request=httpx.Request(method, url))

    monkeypatch.setattr(httpx.AsyncClient, "request", _timeout)
    client = BinanceFuturesClient(_make_config())

    with pytest.raises(ExchangeError, match="outcome unknown"):
        await client.place_order({"symbol": "BTCUSDT", "side": "BUY", "type": "MARKET"})

    assert calls == ["POST"]
