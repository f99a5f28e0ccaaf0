"""Internal API routers — /status, /scanner, /audit, /positions endpoints.

No business logic, no DB access. Delegates to the scheduler, gateway,
repos, and shared state.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from scantrader.broker.models import AccountSnapshot

logger = logging.getLogger("scantrader.api")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_DEFAULT_SCANNER_STATUS: dict = {
    "state": "IDLE",
    "profile_index": 0,
    "asset_batch_offset": 0,
    "current_profile": None,
    "symbols_selected": 0,
    "step_count": 0,
    "last_step_at": None,
    "last_summary": None,
    "started_at": None,
}

_scanner_status: dict = dict(_DEFAULT_SCANNER_STATUS)
_portfolio: Optional[dict] = None

_scheduler = None    # Set via configure_routers()
_gateway = None      # Set via configure_routers()
_audit_repo = None   # Set via configure_routers()
_trade_repo = None   # Set via configure_routers()


def configure_routers(
    scheduler=None,
    gateway=None,
    audit_repo=None,
    trade_repo=None,
) -> None:
    """Inject dependencies from the application startup.

    Args:
        scheduler: The ``ScanScheduler`` toggled by /scanner endpoints.
        gateway: An ``OrderGateway`` used by the close endpoints.
        audit_repo: An ``AuditRepo`` (or duck-type for tests).
        trade_repo: A ``TradeRepo`` (or duck-type for tests).
    """
    global _scheduler, _gateway, _audit_repo, _trade_repo  # noqa: PLW0603
    _scheduler = scheduler
    _gateway = gateway
    _audit_repo = audit_repo
    _trade_repo = trade_repo


def update_scanner_status(**fields) -> None:
    """Merge *fields* into the scanner status snapshot."""
    _scanner_status.update(fields)


def update_portfolio(snapshot: Optional[AccountSnapshot]) -> None:
    """Replace the published portfolio snapshot."""
    global _portfolio  # noqa: PLW0603
    if snapshot is None:
        _portfolio = None
        return
    _portfolio = {
        "total_balance": snapshot.total_balance,
        "unrealized_pnl": snapshot.unrealized_pnl,
        "is_testnet": snapshot.is_testnet,
        "positions": [_position_dict(p) for p in snapshot.positions],
    }


def reset_state() -> None:
    """Restore default status (used on startup and by tests)."""
    global _portfolio  # noqa: PLW0603
    _scanner_status.clear()
    _scanner_status.update(_DEFAULT_SCANNER_STATUS)
    _portfolio = None


def _position_dict(p) -> dict:
    return {
        "symbol": p.symbol,
        "amount": p.amount,
        "direction": "long" if p.amount > 0 else "short",
        "entry_price": p.entry_price,
        "notional": p.notional,
        "unrealized_pnl": p.unrealized_pnl,
        "initial_margin": p.initial_margin,
    }


# ── Status ───────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Scanner state, cursor, last batch summary and portfolio snapshot."""
    return {"scanner": dict(_scanner_status), "portfolio": _portfolio}


# ── Scanner control ──────────────────────────────────────────────────────


def _require_scheduler():
    if _scheduler is None:
        raise HTTPException(status_code=503, detail="Scanner not configured")
    return _scheduler


@router.post("/scanner/start")
async def start_scanner():
    scheduler = _require_scheduler()
    scheduler.start()
    return {"state": scheduler.state.value}


@router.post("/scanner/stop")
async def stop_scanner():
    scheduler = _require_scheduler()
    scheduler.stop()
    return {"state": scheduler.state.value}


# ── Audit / trades ───────────────────────────────────────────────────────


@router.get("/audit")
async def get_audit(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    action: Optional[str] = None,
):
    if _audit_repo is None:
        return {"records": []}
    return {"records": _audit_repo.list(limit=limit, offset=offset, action=action)}


@router.get("/trades")
async def get_trades(
    limit: int = Query(20, ge=1, le=200),
    status: Optional[str] = None,
    profile: Optional[str] = None,
):
    if _trade_repo is None:
        return {"trades": [], "total": 0}
    return _trade_repo.get_trades(limit=limit, status_filter=status, profile_name=profile)


# ── Positions ────────────────────────────────────────────────────────────


def _require_account():
    scheduler = _require_scheduler()
    if scheduler.account is None or _gateway is None:
        raise HTTPException(status_code=503, detail="No exchange account connected")
    return scheduler.account


async def _fetch_snapshot(account):
    try:
        return await account.get_account()
    except Exception as exc:
        logger.error("Failed to fetch positions: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@router.get("/positions")
async def get_positions():
    """Live open positions from the connected account."""
    account = _require_account()
    snapshot = await _fetch_snapshot(account)
    update_portfolio(snapshot)
    return {"positions": [_position_dict(p) for p in snapshot.positions]}


@router.post("/positions/close")
async def close_position(body: dict):
    """Close the whole open position on ``body["symbol"]``."""
    symbol = str(body.get("symbol", "")).upper()
    if not symbol:
        raise HTTPException(status_code=422, detail="symbol is required")
    account = _require_account()
    snapshot = await _fetch_snapshot(account)
    position = next(
        (p for p in snapshot.positions if p.symbol == symbol), None,
    )
    if position is None:
        raise HTTPException(status_code=404, detail=f"No open position on {symbol}")
    result = await _gateway.close_position(position, account)
    return {"success": result.success, "message": result.message, "order_id": result.order_id}


@router.post("/positions/close-all")
async def close_all_positions():
    account = _require_account()
    snapshot = await _fetch_snapshot(account)
    return await _gateway.close_many(snapshot.positions, account)
