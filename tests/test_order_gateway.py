"""Tests for scantrader.broker.order_gateway — entries, brackets, closes."""

import pytest

from scantrader.audit import AuditAction, AuditLevel
from scantrader.broker.errors import POSITION_SIDE_MISMATCH, ExchangeError
from scantrader.broker.models import (
    AccountSnapshot,
    OrderRequest,
    OrderSide,
    Position,
    PositionMode,
    SymbolPrecision,
)
from scantrader.broker.order_gateway import (
    OrderGateway,
    build_client_order_id,
    mismatch_retry_params,
)


# ── Helpers ──────────────────────────────────────────────────────────────


class FakeAudit:
    def __init__(self):
        self.records = []

    def record(self, action, level=AuditLevel.INFO, details=None):
        self.records.append((action, level, details or {}))

    def actions(self):
        return [a for a, _, _ in self.records]


class FakeTradeRepo:
    def __init__(self):
        self.inserted = []
        self.closed = []

    def insert_trade(self, **kwargs):
        self.inserted.append(kwargs)
        return len(self.inserted)

    def mark_closed(self, symbol, side=None):
        self.closed.append((symbol, side))
        return 1


class MockExchange:
    """Duck-typed exchange handle recording every order it receives."""

    def __init__(
        self,
        mode=PositionMode.ONE_WAY,
        price=25_000.0,
        precision=SymbolPrecision(3, 2),
        order_errors=None,
    ):
        self.mode = mode
        self.price = price
        self.precision = precision
        # Errors raised by successive place_order calls (None = succeed)
        self.order_errors = list(order_errors or [])
        self.orders = []
        self.leverage_calls = []
        self.mode_error = None
        self.precision_error = None

    async def get_position_mode(self):
        if self.mode_error:
            raise self.mode_error
        return self.mode

    async def set_leverage(self, symbol, leverage):
        self.leverage_calls.append((symbol, leverage))
        raise ExchangeError("No need to change leverage", code=-4059)

    async def place_order(self, params):
        self.orders.append(dict(params))
        if self.order_errors:
            error = self.order_errors.pop(0)
            if error is not None:
                raise error
        return {"orderId": 1000 + len(self.orders), "avgPrice": "25010.0"}

    async def get_latest_price(self, symbol):
        return self.price

    async def get_symbol_precision(self, symbol):
        if self.precision_error:
            raise self.precision_error
        return self.precision

    async def get_account(self):
        return AccountSnapshot(total_balance=1000.0, unrealized_pnl=0.0, positions=[])


def _mismatch():
    return ExchangeError(
        "Order's position side does not match user's setting.",
        code=POSITION_SIDE_MISMATCH,
        status_code=400,
    )


def _gateway(audit=None, trade_repo=None):
    return OrderGateway(
        audit or FakeAudit(), trade_repo=trade_repo, margin=50.0, clock=lambda: 1700000000.0,
    )


def _order(**overrides):
    fields = dict(
        symbol="BTCUSDT",
        side=OrderSide.BUY,
        quantity=0.0,
        leverage=10,
        stop_loss_price=24_500.123,
        take_profit_price=26_000.987,
    )
    fields.update(overrides)
    return OrderRequest(**fields)


# ── Client order ids / retry params ──────────────────────────────────────


class TestHelpers:
    def test_client_order_id_is_tagged(self):
        assert build_client_order_id("Alpha Predator", 1700000000123) == "st_AlphaPredator_1700000000123"

    def test_client_order_id_fits_exchange_limit(self):
        assert len(build_client_order_id("x" * 100, 1700000000123)) <= 36

    def test_retry_without_position_side_adds_hedge_leg(self):
        params = {"symbol": "BTCUSDT", "side": "SELL", "reduceOnly": "true", "newClientOrderId": "c1"}
        retry = mismatch_retry_params(params, OrderSide.BUY)
        assert retry["positionSide"] == "LONG"
        assert "reduceOnly" not in retry
        assert retry["newClientOrderId"] == "c1_r"
        assert params == {"symbol": "BTCUSDT", "side": "SELL", "reduceOnly": "true", "newClientOrderId": "c1"}

    def test_retry_with_position_side_flips_leg(self):
        params = {"symbol": "BTCUSDT", "positionSide": "LONG", "newClientOrderId": "c1"}
        assert mismatch_retry_params(params, OrderSide.BUY)["positionSide"] == "SHORT"


# ── Entry ────────────────────────────────────────────────────────────────


class TestExecute:
    @pytest.mark.asyncio
    async def test_sizes_from_margin_and_places_brackets(self):
        exchange = MockExchange()
        audit = FakeAudit()
        trades = FakeTradeRepo()

        result = await _gateway(audit, trades).execute(_order(), exchange, "Alpha Predator")

        assert result.success is True
        assert result.order_id == "1001"
        entry, sl, tp = exchange.orders
        # 50 × 10 / 25,000
        assert entry["quantity"] == "0.020"
        assert entry["type"] == "MARKET"
        assert entry["newClientOrderId"] == "st_AlphaPredator_1700000000000"
        assert "positionSide" not in entry

        assert sl["type"] == "STOP_MARKET"
        assert sl["side"] == "SELL"
        assert sl["stopPrice"] == "24500.12"
        assert sl["closePosition"] == "true"
        assert sl["workingType"] == "MARK_PRICE"
        assert tp["type"] == "TAKE_PROFIT_MARKET"
        assert tp["stopPrice"] == "26000.98"

        assert exchange.leverage_calls == [("BTCUSDT", 10)]
        assert audit.actions() == [
            AuditAction.ORDER_PLACED, AuditAction.BRACKET_PLACED, AuditAction.BRACKET_PLACED,
        ]
        assert trades.inserted[0]["profile_name"] == "Alpha Predator"
        assert trades.inserted[0]["entry_price"] == pytest.approx(25010.0)

    @pytest.mark.asyncio
    async def test_explicit_quantity_floored(self):
        exchange = MockExchange(precision=SymbolPrecision(1, 2))
        result = await _gateway().execute(
            _order(quantity=1.99, stop_loss_price=None, take_profit_price=None), exchange,
        )
        assert result.success
        assert exchange.orders[0]["quantity"] == "1.9"
        assert len(exchange.orders) == 1

    @pytest.mark.asyncio
    async def test_hedge_mode_sets_position_side(self):
        exchange = MockExchange(mode=PositionMode.HEDGE)
        await _gateway().execute(_order(side=OrderSide.SELL), exchange)
        entry, sl, tp = exchange.orders
        assert entry["positionSide"] == "SHORT"
        assert sl["positionSide"] == "SHORT"
        assert sl["side"] == "BUY"
        assert tp["positionSide"] == "SHORT"

    @pytest.mark.asyncio
    async def test_mismatch_retried_exactly_once(self):
        exchange = MockExchange(order_errors=[_mismatch()])
        audit = FakeAudit()

        result = await _gateway(audit).execute(_order(), exchange)

        assert result.success is True
        first, retry = exchange.orders[:2]
        assert "positionSide" not in first
        assert retry["positionSide"] == "LONG"
        assert retry["newClientOrderId"].endswith("_r")
        # Brackets follow the leg the retry used
        assert exchange.orders[2]["positionSide"] == "LONG"
        assert AuditAction.ORDER_FAILED not in audit.actions()

    @pytest.mark.asyncio
    async def test_second_mismatch_fails_without_further_retry(self):
        exchange = MockExchange(order_errors=[_mismatch(), _mismatch()])
        audit = FakeAudit()

        result = await _gateway(audit).execute(_order(), exchange)

        assert result.success is False
        assert len(exchange.orders) == 2
        assert audit.actions() == [AuditAction.ORDER_FAILED]
        _, level, details = audit.records[0]
        assert level is AuditLevel.ERROR
        assert "-4061" in details["error"]

    @pytest.mark.asyncio
    async def test_other_error_not_retried(self):
        exchange = MockExchange(
            order_errors=[ExchangeError("Margin is insufficient.", code=-2019)],
        )
        result = await _gateway().execute(_order(), exchange)
        assert result.success is False
        assert "insufficient" in result.message
        assert len(exchange.orders) == 1

    @pytest.mark.asyncio
    async def test_failed_take_profit_keeps_entry(self):
        exchange = MockExchange(
            order_errors=[None, None, ExchangeError("Order would immediately trigger.", code=-2021)],
        )
        audit = FakeAudit()

        result = await _gateway(audit).execute(_order(), exchange)

        assert result.success is True
        assert "take_profit leg failed" in result.message
        assert audit.actions() == [
            AuditAction.ORDER_PLACED, AuditAction.BRACKET_PLACED, AuditAction.BRACKET_FAILED,
        ]

    @pytest.mark.asyncio
    async def test_zero_price_fails_before_submitting(self):
        exchange = MockExchange(price=0.0)
        audit = FakeAudit()

        result = await _gateway(audit).execute(_order(), exchange)

        assert result.success is False
        assert exchange.orders == []
        assert audit.actions() == [AuditAction.ORDER_FAILED]

    @pytest.mark.asyncio
    async def test_quantity_rounding_to_zero_fails(self):
        exchange = MockExchange(price=1_000_000.0, precision=SymbolPrecision(0, 2))
        result = await _gateway().execute(_order(), exchange)
        assert result.success is False
        assert exchange.orders == []

    @pytest.mark.asyncio
    async def test_precision_failure_uses_default(self):
        exchange = MockExchange(price=3.0)
        exchange.precision_error = ExchangeError("Unknown or non-trading symbol: BTCUSDT")
        await _gateway().execute(_order(stop_loss_price=None, take_profit_price=None), exchange)
        # 500 / 3 = 166.666… floored to 3 decimals
        assert exchange.orders[0]["quantity"] == "166.666"

    @pytest.mark.asyncio
    async def test_mode_query_failure_assumes_one_way(self):
        exchange = MockExchange(mode=PositionMode.HEDGE)
        exchange.mode_error = ExchangeError("timeout")
        await _gateway().execute(_order(), exchange)
        assert "positionSide" not in exchange.orders[0]


# ── Close ────────────────────────────────────────────────────────────────


class TestClose:
    @pytest.mark.asyncio
    async def test_close_long_sells_reduce_only(self):
        exchange = MockExchange()
        audit = FakeAudit()
        trades = FakeTradeRepo()

        result = await _gateway(audit, trades).close_position(
            Position(symbol="BTCUSDT", amount=0.02), exchange,
        )

        assert result.success is True
        order = exchange.orders[0]
        assert order["side"] == "SELL"
        assert order["quantity"] == "0.020"
        assert order["reduceOnly"] == "true"
        assert "positionSide" not in order
        assert audit.actions() == [AuditAction.ORDER_CLOSED]
        assert trades.closed == [("BTCUSDT", None)]

    @pytest.mark.asyncio
    async def test_close_short_buys(self):
        exchange = MockExchange()
        await _gateway().close_position(Position(symbol="ETHUSDT", amount=-1.5), exchange)
        order = exchange.orders[0]
        assert order["side"] == "BUY"
        assert order["quantity"] == "1.500"

    @pytest.mark.asyncio
    async def test_hedge_close_uses_position_side_not_reduce_only(self):
        exchange = MockExchange(mode=PositionMode.HEDGE)
        trades = FakeTradeRepo()
        await _gateway(trade_repo=trades).close_position(Position(symbol="ETHUSDT", amount=-1.5), exchange)
        order = exchange.orders[0]
        assert order["positionSide"] == "SHORT"
        assert "reduceOnly" not in order
        # Only the short leg's trades are closed
        assert trades.closed == [("ETHUSDT", "SELL")]

    @pytest.mark.asyncio
    async def test_close_mismatch_retry_drops_reduce_only(self):
        exchange = MockExchange(order_errors=[_mismatch()])
        result = await _gateway().close_position(Position(symbol="BTCUSDT", amount=0.02), exchange)
        assert result.success is True
        retry = exchange.orders[1]
        assert retry["positionSide"] == "LONG"
        assert "reduceOnly" not in retry

    @pytest.mark.asyncio
    async def test_close_failure_audited(self):
        exchange = MockExchange(order_errors=[ExchangeError("ReduceOnly Order is rejected.", code=-2022)])
        audit = FakeAudit()
        result = await _gateway(audit).close("BTCUSDT", 0.02, OrderSide.SELL, exchange)
        assert result.success is False
        assert audit.actions() == [AuditAction.ORDER_FAILED]

    @pytest.mark.asyncio
    async def test_close_many_counts(self):
        exchange = MockExchange(order_errors=[None, ExchangeError("rejected", code=-2022), None])
        positions = [
            Position(symbol="BTCUSDT", amount=0.02),
            Position(symbol="ETHUSDT", amount=-1.5),
            Position(symbol="SOLUSDT", amount=10.0),
        ]
        counts = await _gateway().close_many(positions, exchange)
        assert counts == {"success": 2, "failed": 1}
        assert len(exchange.orders) == 3
