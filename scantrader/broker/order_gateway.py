"""Order gateway — market entries with protective brackets, and closes.

Entry flow:
    1. Resolve quantity precision (default 3 decimals).
    2. Size from the fixed margin when no quantity is given.
    3. Query the position mode fresh (one-way assumed on failure).
    4. Set leverage (failure ignored).
    5. Submit a MARKET order with a strategy-tagged client order id.
    6. On a position-side mismatch, retry exactly once with the other
       mode's parameters.
    7. Place stop-loss / take-profit legs independently; a failed leg
       never undoes the entry.

Every terminal outcome goes to the audit sink.  Public methods never raise.
"""

import logging
import re
import time
from typing import Callable, Iterable, Optional

from scantrader.audit import AuditAction, AuditLevel, AuditLogger
from scantrader.broker.base import ExchangeHandle
from scantrader.broker.errors import ExchangeError
from scantrader.broker.models import (
    ExecutionResult,
    OrderRequest,
    OrderSide,
    Position,
    PositionMode,
    SymbolPrecision,
)
from scantrader.repos.trade_repo import TradeRepo
from scantrader.risk.position_sizer import calculate_quantity, floor_to_precision

logger = logging.getLogger("scantrader.gateway")

DEFAULT_MARGIN = 50.0  # quote currency committed per auto-sized entry
_DEFAULT_PRECISION = SymbolPrecision(quantity_precision=3, price_precision=2)
_CLIENT_ID_PREFIX = "st"
_MAX_PROFILE_TAG = 16  # Binance caps client order ids at 36 chars

_BRACKET_TYPES = (
    ("stop_loss", "STOP_MARKET"),
    ("take_profit", "TAKE_PROFIT_MARKET"),
)


def hedge_position_side(side: OrderSide) -> str:
    """Hedge-mode ``positionSide`` for an order that opens on *side*."""
    return "LONG" if side is OrderSide.BUY else "SHORT"


def build_client_order_id(profile_name: str, timestamp_ms: int) -> str:
    """Deterministic, strategy-tagged id: ``st_<profile>_<ms>``."""
    tag = re.sub(r"[^a-zA-Z0-9]", "", profile_name)[:_MAX_PROFILE_TAG] or "Manual"
    return f"{_CLIENT_ID_PREFIX}_{tag}_{timestamp_ms}"


def mismatch_retry_params(params: dict, side: OrderSide) -> dict:
    """Parameters for the single retry after a position-side mismatch.

    Without a ``positionSide`` the account evidently runs hedge mode, so the
    retry adds the side-matching leg and drops ``reduceOnly`` (the two are
    mutually exclusive).  With one, the exchange rejected that leg, so the
    retry uses the other leg.
    """
    retry = dict(params)
    current = retry.get("positionSide")
    if current in (None, "BOTH"):
        retry.pop("reduceOnly", None)
        retry["positionSide"] = hedge_position_side(side)
    else:
        retry["positionSide"] = "SHORT" if current == "LONG" else "LONG"
    retry["newClientOrderId"] = f"{params['newClientOrderId']}_r"
    return retry


class OrderGateway:
    """Places entries, brackets and closes against an ``ExchangeHandle``.

    Args:
        audit: Audit sink for every terminal outcome.
        trade_repo: Optional ``TradeRepo`` recording filled entries.
        margin: Quote-currency margin used when a request has no quantity.
        clock: Wall-clock seconds source (injectable for tests).
    """

    def __init__(
        self,
        audit: AuditLogger,
        trade_repo: Optional[TradeRepo] = None,
        margin: float = DEFAULT_MARGIN,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._audit = audit
        self._trade_repo = trade_repo
        self._margin = margin
        self._clock = clock or time.time

    # ── Entry ────────────────────────────────────────────────────────────

    async def execute(
        self,
        order: OrderRequest,
        account: ExchangeHandle,
        profile_name: str = "Manual",
    ) -> ExecutionResult:
        """Place a market entry plus any requested bracket legs."""
        details = {
            "symbol": order.symbol,
            "side": order.side.value,
            "leverage": order.leverage,
            "profile": profile_name,
        }
        client_order_id = build_client_order_id(
            profile_name, int(self._clock() * 1000),
        )

        # 1 ── Precision
        precision = await self._resolve_precision(order.symbol, account)

        # 2 ── Quantity
        quantity = order.quantity
        if not quantity or quantity <= 0:
            try:
                price = await account.get_latest_price(order.symbol)
                quantity = calculate_quantity(self._margin, order.leverage, price)
            except Exception as exc:
                return self._entry_failed(details, f"Price unavailable: {exc}")
        qty_str = floor_to_precision(quantity, precision.quantity_precision)
        details["quantity"] = qty_str
        if float(qty_str) <= 0:
            return self._entry_failed(
                details, f"Quantity {quantity} rounds to zero at {precision.quantity_precision} decimals",
            )

        # 3 ── Position mode, re-verified on every order
        mode = await self._resolve_mode(account)

        # 4 ── Leverage
        try:
            await account.set_leverage(order.symbol, order.leverage)
        except ExchangeError as exc:
            if exc.is_no_change:
                logger.debug("Leverage for %s already %d", order.symbol, order.leverage)
            else:
                logger.warning("set_leverage(%s, %d) ignored: %s", order.symbol, order.leverage, exc)
        except Exception as exc:
            logger.warning("set_leverage(%s, %d) ignored: %s", order.symbol, order.leverage, exc)

        # 5 / 6 ── Submit, with one bounded retry on mode mismatch
        params = {
            "symbol": order.symbol,
            "side": order.side.value,
            "type": "MARKET",
            "quantity": qty_str,
            "newClientOrderId": client_order_id,
        }
        if mode is PositionMode.HEDGE:
            params["positionSide"] = hedge_position_side(order.side)

        try:
            response, params = await self._submit(params, order.side, account)
        except Exception as exc:
            return self._entry_failed(details, str(exc))

        order_id = str(response.get("orderId", "")) or None
        details["order_id"] = order_id
        details["client_order_id"] = params["newClientOrderId"]
        self._audit.record(AuditAction.ORDER_PLACED, AuditLevel.SUCCESS, details)
        self._record_trade(order, params, order_id, profile_name, response)

        # 7 ── Brackets (failures isolated per leg)
        failed_legs = await self._place_brackets(
            order, params.get("positionSide"), precision, account, profile_name,
        )

        message = f"Order executed (id {order_id})"
        if failed_legs:
            message += f"; {', '.join(failed_legs)} leg failed"
        return ExecutionResult(success=True, message=message, order_id=order_id)

    async def _place_brackets(
        self,
        order: OrderRequest,
        position_side: Optional[str],
        precision: SymbolPrecision,
        account: ExchangeHandle,
        profile_name: str,
    ) -> list[str]:
        """Submit SL / TP legs.  Returns the names of the legs that failed."""
        failed: list[str] = []
        for leg, order_type in _BRACKET_TYPES:
            trigger = getattr(order, f"{leg}_price")
            if not trigger:
                continue
            params = {
                "symbol": order.symbol,
                "side": order.side.opposite.value,
                "type": order_type,
                "stopPrice": floor_to_precision(trigger, precision.price_precision),
                "closePosition": "true",
                "workingType": "MARK_PRICE",
                "timeInForce": "GTC",
            }
            if position_side:
                params["positionSide"] = position_side
            details = {
                "symbol": order.symbol,
                "leg": leg,
                "side": params["side"],
                "stop_price": params["stopPrice"],
                "profile": profile_name,
            }
            try:
                response = await account.place_order(params)
            except Exception as exc:
                logger.warning("%s %s leg failed: %s", order.symbol, leg, exc)
                details["error"] = str(exc)
                self._audit.record(AuditAction.BRACKET_FAILED, AuditLevel.ERROR, details)
                failed.append(leg)
                continue
            details["order_id"] = str(response.get("orderId", ""))
            self._audit.record(AuditAction.BRACKET_PLACED, AuditLevel.SUCCESS, details)
        return failed

    def _entry_failed(self, details: dict, error: str) -> ExecutionResult:
        logger.error("Entry %s %s failed: %s", details["side"], details["symbol"], error)
        self._audit.record(
            AuditAction.ORDER_FAILED, AuditLevel.ERROR, {**details, "error": error},
        )
        return ExecutionResult(success=False, message=error)

    def _record_trade(
        self,
        order: OrderRequest,
        params: dict,
        order_id: Optional[str],
        profile_name: str,
        response: dict,
    ) -> None:
        if self._trade_repo is None:
            return
        try:
            avg_price = float(response.get("avgPrice") or 0) or None
            self._trade_repo.insert_trade(
                symbol=order.symbol,
                side=order.side.value,
                quantity=float(params["quantity"]),
                leverage=order.leverage,
                order_id=order_id,
                client_order_id=params["newClientOrderId"],
                profile_name=profile_name,
                entry_price=avg_price,
                stop_loss=order.stop_loss_price,
                take_profit=order.take_profit_price,
            )
        except Exception as exc:
            logger.warning("Could not record trade for %s: %s", order.symbol, exc)

    # ── Close ────────────────────────────────────────────────────────────

    async def close(
        self,
        symbol: str,
        quantity: float,
        side: OrderSide,
        account: ExchangeHandle,
        profile_name: str = "Manual",
    ) -> ExecutionResult:
        """Submit a MARKET order on *side* that reduces an open position.

        One-way accounts get ``reduceOnly``; hedge accounts get the
        ``positionSide`` of the leg being closed.  Never both.
        """
        quantity = abs(quantity)
        details = {"symbol": symbol, "side": side.value, "profile": profile_name}

        precision = await self._resolve_precision(symbol, account)
        qty_str = floor_to_precision(quantity, precision.quantity_precision)
        details["quantity"] = qty_str
        if float(qty_str) <= 0:
            return self._close_failed(details, f"Nothing to close for {symbol}")

        mode = await self._resolve_mode(account)
        params = {
            "symbol": symbol,
            "side": side.value,
            "type": "MARKET",
            "quantity": qty_str,
            "newClientOrderId": build_client_order_id(
                f"close{profile_name}", int(self._clock() * 1000),
            ),
        }
        closed_leg = None
        if mode is PositionMode.HEDGE:
            # Closing a long sells the LONG leg, closing a short buys the SHORT leg
            params["positionSide"] = hedge_position_side(side.opposite)
            closed_leg = side.opposite.value
        else:
            params["reduceOnly"] = "true"

        try:
            response, params = await self._submit(params, side.opposite, account)
        except Exception as exc:
            return self._close_failed(details, str(exc))

        order_id = str(response.get("orderId", "")) or None
        details["order_id"] = order_id
        self._audit.record(AuditAction.ORDER_CLOSED, AuditLevel.SUCCESS, details)
        if self._trade_repo is not None:
            try:
                self._trade_repo.mark_closed(symbol, closed_leg)
            except Exception as exc:
                logger.warning("Could not mark %s trades closed: %s", symbol, exc)
        return ExecutionResult(
            success=True, message=f"Position closed (id {order_id})", order_id=order_id,
        )

    async def close_position(
        self,
        position: Position,
        account: ExchangeHandle,
        profile_name: str = "Manual",
    ) -> ExecutionResult:
        """Close *position* entirely: long sells, short buys."""
        side = OrderSide.SELL if position.amount > 0 else OrderSide.BUY
        return await self.close(
            position.symbol, abs(position.amount), side, account, profile_name,
        )

    async def close_many(
        self,
        positions: Iterable[Position],
        account: ExchangeHandle,
        profile_name: str = "Manual",
    ) -> dict[str, int]:
        """Close each position sequentially.

        Returns:
            ``{"success": int, "failed": int}``
        """
        counts = {"success": 0, "failed": 0}
        for position in positions:
            result = await self.close_position(position, account, profile_name)
            counts["success" if result.success else "failed"] += 1
        logger.info(
            "Closed %d position(s), %d failed.", counts["success"], counts["failed"],
        )
        return counts

    def _close_failed(self, details: dict, error: str) -> ExecutionResult:
        logger.error("Close %s %s failed: %s", details["side"], details["symbol"], error)
        self._audit.record(
            AuditAction.ORDER_FAILED, AuditLevel.ERROR, {**details, "error": error},
        )
        return ExecutionResult(success=False, message=error)

    # ── Shared steps ─────────────────────────────────────────────────────

    async def _resolve_precision(
        self, symbol: str, account: ExchangeHandle,
    ) -> SymbolPrecision:
        try:
            return await account.get_symbol_precision(symbol)
        except Exception as exc:
            logger.warning(
                "Precision lookup failed for %s (%s) — using %d decimals",
                symbol, exc, _DEFAULT_PRECISION.quantity_precision,
            )
            return _DEFAULT_PRECISION

    async def _resolve_mode(self, account: ExchangeHandle) -> PositionMode:
        try:
            return await account.get_position_mode()
        except Exception as exc:
            logger.warning("Position mode query failed (%s) — assuming one-way", exc)
            return PositionMode.ONE_WAY

    async def _submit(
        self,
        params: dict,
        opening_side: OrderSide,
        account: ExchangeHandle,
    ) -> tuple[dict, dict]:
        """Place *params*; on a position-side mismatch retry exactly once.

        Returns ``(response, params_actually_used)``.  Any other error, or a
        second failure, propagates.
        """
        try:
            return await account.place_order(params), params
        except ExchangeError as exc:
            if not exc.is_position_side_mismatch:
                raise
            retry = mismatch_retry_params(params, opening_side)
            logger.info(
                "Position side mismatch on %s (%s) — retrying once with positionSide=%s",
                params["symbol"], exc, retry["positionSide"],
            )
            return await account.place_order(retry), retry
