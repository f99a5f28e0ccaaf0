"""ScanTrader — scan scheduler (orchestration loop).

Walks profiles × symbol batches one step per tick.  Each step either
wraps the cursor, skips an inactive profile, or evaluates one profile
against one batch and dispatches orders for qualifying signals.
Steps never overlap, and the cursor is persisted after every mutation.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from scantrader.api.routers import update_portfolio, update_scanner_status
from scantrader.audit import AuditAction, AuditLevel, AuditLogger
from scantrader.broker.base import ExchangeHandle
from scantrader.broker.market_data import CandleSource
from scantrader.broker.models import AccountSnapshot, ExecutionResult, OrderRequest
from scantrader.broker.order_gateway import OrderGateway
from scantrader.config import Config
from scantrader.models.cursor import ScanCursor
from scantrader.models.profile import StrategyProfile
from scantrader.repos.cursor_repo import CursorRepo
from scantrader.risk.sl_tp import calculate_bracket_prices
from scantrader.strategy.signal_engine import MIN_CANDLES, evaluate

logger = logging.getLogger("scantrader")

# Returns the current (profiles, selected_symbols); re-read every step.
UniverseProvider = Callable[[], tuple[list[StrategyProfile], list[str]]]


class ScannerState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"


class ScanScheduler:
    """Periodic profile × symbol-batch scanner.

    Args:
        config: Application configuration (interval, batch size, candles).
        candles: Candle source for market data.
        gateway: Order gateway for qualifying signals.
        cursor_repo: Durable cursor store; loaded once here.
        audit: Audit sink.
        universe: Callable returning ``(profiles, selected_symbols)``.
        account: Connected exchange account, or ``None``.
    """

    def __init__(
        self,
        config: Config,
        candles: CandleSource,
        gateway: OrderGateway,
        cursor_repo: CursorRepo,
        audit: AuditLogger,
        universe: UniverseProvider,
        account: Optional[ExchangeHandle] = None,
    ) -> None:
        self._config = config
        self._candles = candles
        self._gateway = gateway
        self._cursor_repo = cursor_repo
        self._audit = audit
        self._universe = universe
        self._account = account

        self._cursor: ScanCursor = cursor_repo.load()
        self._state = ScannerState.IDLE
        self._step_lock = asyncio.Lock()
        self._wake: Optional[asyncio.Event] = None
        self._loop_tasks: set[asyncio.Task] = set()
        # Bumped on every start; a loop from an older run exits at its next check.
        self._generation = 0
        self._order_tasks: set[asyncio.Task] = set()
        self._portfolio: Optional[AccountSnapshot] = None
        self._last_refresh = 0.0
        self._step_count = 0

        logger.info(
            "Scan cursor loaded: profile %d, batch offset %d",
            self._cursor.profile_index, self._cursor.asset_batch_offset,
        )

    @property
    def state(self) -> ScannerState:
        return self._state

    @property
    def cursor(self) -> ScanCursor:
        return self._cursor

    @property
    def account(self) -> Optional[ExchangeHandle]:
        return self._account

    @property
    def portfolio(self) -> Optional[AccountSnapshot]:
        return self._portfolio

    @property
    def pending_orders(self) -> int:
        return len(self._order_tasks)

    def set_account(self, account: Optional[ExchangeHandle]) -> None:
        """Connect (or disconnect with ``None``) the exchange account."""
        self._account = account

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self) -> None:
        """IDLE → RUNNING: launch the tick loop on the running event loop."""
        if self._state is ScannerState.RUNNING:
            return
        self._begin()
        self._track_loop(asyncio.get_running_loop().create_task(self._loop()))

    def stop(self) -> None:
        """RUNNING → IDLE: cancel the timer immediately.

        A step already in flight finishes its batch; dispatched orders are
        left to complete and are still logged.
        """
        if self._state is ScannerState.IDLE:
            return
        self._state = ScannerState.IDLE
        if self._wake is not None:
            self._wake.set()
        self._audit.record(AuditAction.SCAN_STOPPED, AuditLevel.SYSTEM, {})
        update_scanner_status(state=self._state.value)

    async def wait_stopped(self) -> None:
        """Wait for every loop task and any in-flight orders to finish."""
        loops = self._loop_tasks - {asyncio.current_task()}
        if loops:
            await asyncio.wait(loops)
        await self.wait_for_orders()

    async def wait_for_orders(self) -> None:
        if self._order_tasks:
            await asyncio.wait(set(self._order_tasks))

    # ── Tick loop ────────────────────────────────────────────────────────

    async def run(self, max_steps: int = 0) -> list[dict]:
        """Run steps at a fixed period until stopped.

        Args:
            max_steps: Stop after this many steps (0 = unlimited).

        Returns:
            List of per-step result dicts.
        """
        if self._state is ScannerState.IDLE:
            self._begin()
        else:
            # Take over from a loop launched by start()
            self._generation += 1
        task = asyncio.current_task()
        self._loop_tasks.add(task)
        try:
            return await self._loop(max_steps)
        finally:
            self._loop_tasks.discard(task)

    def _track_loop(self, task: asyncio.Task) -> None:
        self._loop_tasks.add(task)
        task.add_done_callback(self._loop_tasks.discard)

    def _begin(self) -> None:
        self._generation += 1
        self._state = ScannerState.RUNNING
        self._wake = asyncio.Event()
        self._audit.record(AuditAction.SCAN_STARTED, AuditLevel.SYSTEM, {})
        update_scanner_status(
            state=self._state.value,
            started_at=datetime.now(timezone.utc).isoformat(),
        )

    async def _loop(self, max_steps: int = 0) -> list[dict]:
        results: list[dict] = []
        steps = 0
        loop = asyncio.get_running_loop()
        generation = self._generation
        wake = self._wake

        while self._is_current(generation):
            tick_started = loop.time()
            steps += 1
            try:
                result = await self.step()
            except Exception as exc:
                logger.error("Step %d error: %s", steps, exc)
                result = {"action": "error", "reason": str(exc)}
            results.append(result)
            logger.debug("Step %d: %s", steps, result.get("action", "unknown"))

            await self._maybe_refresh_portfolio()

            if max_steps > 0 and steps >= max_steps:
                break
            if not self._is_current(generation):
                break

            # Fixed period; an overrunning step fires the next tick at once.
            remaining = self._config.scan_interval_seconds - (loop.time() - tick_started)
            if remaining > 0:
                try:
                    await asyncio.wait_for(wake.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass

        if self._is_current(generation):
            self._state = ScannerState.IDLE
            update_scanner_status(state=self._state.value)
        return results

    def _is_current(self, generation: int) -> bool:
        return self._state is ScannerState.RUNNING and self._generation == generation

    # ── Single step ──────────────────────────────────────────────────────

    async def step(self) -> dict:
        """Execute one scheduling step unless one is already in flight.

        Returns a dict describing what happened:

        - ``{"action": "skipped", "reason": "busy"}``
        - ``{"action": "halted", "reason": "no_symbols" | "no_account"}``
        - ``{"action": "cycle_advanced" | "cycle_complete", ...}``
        - ``{"action": "skipped_inactive" | "skipped_empty_batch", ...}``
        - ``{"action": "batch_scanned", "analyzed": n, "opportunities": m, ...}``
        """
        if self._step_lock.locked():
            logger.debug("Previous step still in flight — tick skipped.")
            return {"action": "skipped", "reason": "busy"}
        async with self._step_lock:
            result = await self._step_locked()
        self._step_count += 1
        update_scanner_status(
            step_count=self._step_count,
            last_step_at=datetime.now(timezone.utc).isoformat(),
        )
        return result

    async def _step_locked(self) -> dict:
        profiles, symbols = self._universe()
        account = self._account

        # 1 ── Guard
        if not symbols or account is None:
            reason = "no_symbols" if not symbols else "no_account"
            logger.warning("Scanner paused: %s.", reason.replace("_", " "))
            self._audit.record(
                AuditAction.SCAN_WARNING, AuditLevel.WARN, {"reason": reason},
            )
            self._halt()
            return {"action": "halted", "reason": reason}

        update_scanner_status(symbols_selected=len(symbols))
        cursor = self._cursor
        batch_size = self._config.batch_size

        # 2 ── Every profile has seen this batch: move to the next one
        if cursor.needs_wrap(len(profiles)):
            new_cursor, cycle_complete = cursor.wrapped(batch_size, len(symbols))
            self._set_cursor(new_cursor)
            if cycle_complete:
                self._audit.record(
                    AuditAction.CYCLE_COMPLETE,
                    AuditLevel.SYSTEM,
                    {"message": "CYCLE COMPLETE: restarting scan", "symbols": len(symbols)},
                )
                return {"action": "cycle_complete"}
            return {
                "action": "cycle_advanced",
                "asset_batch_offset": new_cursor.asset_batch_offset,
            }

        # 3 ── Inactive profiles still consume a step
        profile = profiles[cursor.profile_index]
        update_scanner_status(current_profile=profile.name)
        if not profile.active:
            self._set_cursor(cursor.next_profile())
            return {"action": "skipped_inactive", "profile": profile.name}

        # 4 ── Current batch
        batch = cursor.batch_of(symbols, batch_size)
        if not batch:
            self._set_cursor(cursor.next_profile())
            return {"action": "skipped_empty_batch", "profile": profile.name}

        logger.info(
            "[SYSTEM] %s — analysing %d to %d of %d symbols (threshold %.0f%%)",
            profile.name.upper(),
            cursor.asset_batch_offset,
            cursor.asset_batch_offset + len(batch),
            len(symbols),
            profile.confidence_threshold,
        )

        # 5 ── Evaluate each symbol sequentially
        analyzed = 0
        opportunities = 0
        order_tasks: list[asyncio.Task] = []

        for symbol in batch:
            candles = await self._candles.fetch(
                symbol, self._config.candle_interval, self._config.candle_limit,
            )
            if len(candles) < MIN_CANDLES:
                logger.warning("%s: insufficient data (%d candles) — skipped", symbol, len(candles))
                continue

            analyzed += 1
            result = evaluate(candles, profile)
            price = candles[-1].close
            if price <= 0:
                logger.warning("%s: no usable last price — skipped", symbol)
                continue

            if not (result.is_directional and result.confidence >= profile.confidence_threshold):
                logger.info(
                    "%s: %s (%.0f%%/%.0f%%) — below threshold",
                    symbol, result.signal.value, result.confidence,
                    profile.confidence_threshold,
                )
                continue

            opportunities += 1
            side = result.signal.order_side
            brackets = calculate_bracket_prices(
                price, side, profile.stop_loss, profile.take_profit,
            )
            self._audit.record(
                AuditAction.SIGNAL_GENERATED,
                AuditLevel.SUCCESS,
                {
                    "symbol": symbol,
                    "signal": result.signal.value,
                    "confidence": round(result.confidence, 2),
                    "price": price,
                    "stop_loss": brackets.sl,
                    "take_profit": brackets.tp,
                    "reasons": list(result.reasons),
                    "profile": profile.name,
                },
            )
            order = OrderRequest(
                symbol=symbol,
                side=side,
                quantity=0.0,
                leverage=profile.leverage,
                stop_loss_price=brackets.sl,
                take_profit_price=brackets.tp,
            )
            order_tasks.append(self._dispatch_order(order, profile.name, account))

        # 6 ── Summary, advance, then join this step's orders
        if opportunities:
            summary = f"{profile.name}: {opportunities} opportunity(ies) in {analyzed} symbols analysed"
        else:
            summary = f"{profile.name}: {analyzed} symbols analysed — no opportunities"
        logger.info(summary)
        update_scanner_status(last_summary=summary)
        self._set_cursor(cursor.next_profile())

        filled = await self._join_orders(order_tasks)
        if filled:
            await self.refresh_portfolio()

        return {
            "action": "batch_scanned",
            "profile": profile.name,
            "batch": batch,
            "analyzed": analyzed,
            "opportunities": opportunities,
            "orders_filled": filled,
        }

    # ── Orders ───────────────────────────────────────────────────────────

    def _dispatch_order(
        self,
        order: OrderRequest,
        profile_name: str,
        account: ExchangeHandle,
    ) -> asyncio.Task:
        """Start the gateway call without blocking the rest of the batch."""
        task = asyncio.get_running_loop().create_task(
            self._execute_order(order, profile_name, account),
            name=f"order-{order.symbol}-{profile_name}",
        )
        self._order_tasks.add(task)
        task.add_done_callback(self._order_tasks.discard)
        return task

    async def _execute_order(
        self,
        order: OrderRequest,
        profile_name: str,
        account: ExchangeHandle,
    ) -> ExecutionResult:
        result = await self._gateway.execute(order, account, profile_name)
        if result.success:
            logger.info(
                "ORDER EXECUTED: %s %s | id %s", order.symbol, order.side.value, result.order_id,
            )
        else:
            logger.error("ORDER FAILED: %s | %s", order.symbol, result.message)
        return result

    async def _join_orders(self, tasks: list[asyncio.Task]) -> int:
        """Wait for this step's orders; returns how many succeeded."""
        if not tasks:
            return 0
        done, _ = await asyncio.wait(tasks)
        filled = 0
        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                logger.error("Order task %s crashed: %s", task.get_name(), exc)
            elif task.result().success:
                filled += 1
        return filled

    # ── Portfolio ────────────────────────────────────────────────────────

    async def refresh_portfolio(self) -> Optional[AccountSnapshot]:
        """Re-read the account snapshot; keeps the previous one on failure."""
        account = self._account
        self._last_refresh = time.monotonic()
        if account is None:
            return self._portfolio
        try:
            snapshot = await account.get_account()
        except Exception as exc:
            logger.warning("Portfolio refresh failed: %s", exc)
            return self._portfolio
        self._portfolio = snapshot
        update_portfolio(snapshot)
        return snapshot

    async def _maybe_refresh_portfolio(self) -> None:
        if time.monotonic() - self._last_refresh >= self._config.portfolio_refresh_seconds:
            await self.refresh_portfolio()

    # ── Helpers ──────────────────────────────────────────────────────────

    def _set_cursor(self, cursor: ScanCursor) -> None:
        """Replace and persist the cursor (best-effort)."""
        self._cursor = cursor
        update_scanner_status(
            profile_index=cursor.profile_index,
            asset_batch_offset=cursor.asset_batch_offset,
        )
        try:
            self._cursor_repo.save(cursor)
        except Exception as exc:
            logger.warning("Cursor persist failed (will retry next step): %s", exc)

    def _halt(self) -> None:
        self._state = ScannerState.IDLE
        if self._wake is not None:
            self._wake.set()
        update_scanner_status(state=self._state.value)
