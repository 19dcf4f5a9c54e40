"""
TON DEX auto-trader.

Runs the closed trading loop against DeDust and STON.fi:
- Pool monitor (periodic, drop-if-busy)
- Trading engine (continuous cycles over tokens x active strategies)
- Transaction reconciler (periodic, drop-if-busy)
"""

import asyncio
import signal
import sys

from tontrader.config import settings
from tontrader.db.database import close_db, create_tables, init_db
from tontrader.exchanges import exchange_registry
from tontrader.services.pool_monitor import PoolMonitor
from tontrader.services.reconciler import TransactionReconciler
from tontrader.services.scheduler import PeriodicTask
from tontrader.services.tonapi import tonapi_client
from tontrader.services.trade_executor import TradeExecutor
from tontrader.services.trading_engine import TradingEngine
from tontrader.services.wallet import wallet_service
from tontrader.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


async def run_trader() -> None:
    """Run all loops until SIGINT/SIGTERM, then shut down gracefully."""
    logger.info("Initializing database...")
    await init_db(settings.database_url)
    await create_tables()
    logger.info("Database ready")

    logger.info("Initializing clients...")
    await tonapi_client.initialize()
    await wallet_service.initialize()
    await exchange_registry.initialize()

    executor = TradeExecutor(wallet_service, exchange_registry)
    engine = TradingEngine(executor, tonapi_client)
    monitor = PeriodicTask(
        "pool_monitor",
        PoolMonitor(tonapi_client, exchange_registry).run_once,
        settings.pool_monitor_interval,
    )
    reconciler = PeriodicTask(
        "reconciler",
        TransactionReconciler(tonapi_client, wallet_service).run_once,
        settings.reconcile_interval,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(signal_handler))

    try:
        await monitor.start()
        await reconciler.start()
        await engine.start()
        logger.info("Trader started! Press Ctrl+C to stop.")

        await stop_event.wait()
    finally:
        logger.info("Shutting down services...")
        await engine.stop()
        await monitor.stop()
        await reconciler.stop()
        await executor.wait_for_fees()

        await exchange_registry.close()
        await wallet_service.close()
        await tonapi_client.close()
        await close_db()
        logger.info("Shutdown complete")


def main() -> None:
    """Main entry point."""
    setup_logging(settings.log_level)

    logger.info(
        "TON DEX trader",
        version="1.0.0",
        log_level=settings.log_level,
    )

    try:
        asyncio.run(run_trader())
    except KeyboardInterrupt:
        logger.info("Trader stopped by user")
    except Exception as e:
        logger.error("Fatal error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
