"""ScanTrader — application entry point.

Boots the FastAPI internal server and provides the CLI entry point that
runs the scanner alongside it.
"""

import logging

from fastapi import FastAPI

from scantrader.api.routers import router

app = FastAPI(title="ScanTrader Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("scantrader")


@app.get("/health")
async def health():
    return {"status": "ok"}


def warn_if_live(testnet: bool) -> bool:
    """Log a prominent warning when trading against the production exchange.

    Returns ``True`` when *testnet* is off.
    """
    if not testnet:
        logger.warning(
            "LIVE TRADING — orders go to the production exchange. Real money at risk!"
        )
        return True
    return False


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments, wire the components and run."""
    import argparse
    import asyncio
    import signal

    from scantrader.api.routers import configure_routers, update_scanner_status
    from scantrader.audit import AuditLogger
    from scantrader.broker.binance_client import BinanceFuturesClient
    from scantrader.broker.market_data import CandleSource
    from scantrader.broker.order_gateway import OrderGateway
    from scantrader.config import load_config, load_profiles
    from scantrader.engine import ScanScheduler
    from scantrader.repos.audit_repo import AuditRepo
    from scantrader.repos.cursor_repo import CursorRepo
    from scantrader.repos.db import init_db
    from scantrader.repos.trade_repo import TradeRepo

    parser = argparse.ArgumentParser(description="ScanTrader futures scanner")
    parser.add_argument(
        "--scan-only",
        action="store_true",
        help="Run the scanner without the API server",
    )
    parser.add_argument("--port", type=int, default=None, help="API port (default: API_PORT)")
    args = parser.parse_args()

    config = load_config()

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    init_db(config.db_path)
    warn_if_live(config.binance_testnet)

    audit_repo = AuditRepo(config.db_path)
    trade_repo = TradeRepo(config.db_path)
    audit = AuditLogger(audit_repo)
    client = BinanceFuturesClient(config)
    gateway = OrderGateway(audit, trade_repo=trade_repo, margin=config.margin_per_trade)

    def universe():
        return load_profiles(config.profiles_path)

    scheduler = ScanScheduler(
        config=config,
        candles=CandleSource(ttl_seconds=config.candle_cache_ttl_seconds),
        gateway=gateway,
        cursor_repo=CursorRepo(config.db_path),
        audit=audit,
        universe=universe,
        account=client,
    )

    configure_routers(
        scheduler=scheduler,
        gateway=gateway,
        audit_repo=audit_repo,
        trade_repo=trade_repo,
    )
    cursor = scheduler.cursor
    update_scanner_status(
        profile_index=cursor.profile_index,
        asset_batch_offset=cursor.asset_batch_offset,
    )

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping gracefully.")
        scheduler.stop()

    signal.signal(signal.SIGINT, handle_shutdown)

    port = args.port or config.api_port
    if args.scan_only:
        asyncio.run(_run_scanner_only(scheduler))
    else:
        asyncio.run(_run_with_api(scheduler, port))


async def _run_with_api(scheduler, port: int) -> None:
    """Start the API server and the scanner concurrently."""
    import asyncio
    import uvicorn

    uvi_config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info")
    server = uvicorn.Server(uvi_config)

    async def _run_scanner():
        await scheduler.run()
        await scheduler.wait_stopped()

    logger.info("Internal API available at http://localhost:%d", port)
    results = await asyncio.gather(
        server.serve(),
        _run_scanner(),
        return_exceptions=True,
    )
    logger.info("ScanTrader stopped. Results: %s", results)


async def _run_scanner_only(scheduler) -> None:
    logger.info("Starting ScanTrader scanner (no API).")
    await scheduler.run()
    await scheduler.wait_stopped()
    logger.info("ScanTrader scanner stopped.")


if __name__ == "__main__":
    _run_cli()
