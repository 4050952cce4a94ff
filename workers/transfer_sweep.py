"""
Transfer reconciliation background worker.

Runs a reconciliation pass every ``transfer_sweep_interval_seconds``.
"""
import asyncio
import signal
from typing import Any

import structlog

from config import get_settings
from core.reconciliation import TransferReconciler
from database.connection import close_db
from monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_transfer_sweep() -> None:
    """
    Start the transfer sweep worker.

    Runs continuously until stopped.
    """
    setup_logging()
    settings = get_settings()

    logger.info(
        "transfer_sweep_worker_starting",
        interval_seconds=settings.transfer_sweep_interval_seconds,
        min_age_seconds=settings.transfer_sweep_min_age_seconds,
    )

    reconciler = TransferReconciler()
    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("transfer_sweep_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await reconciler.run_once()
            except Exception as e:
                logger.error("transfer_sweep_execution_error", error=str(e))
                # Continue running even if one pass fails

            # Sleep in short slices so a shutdown signal is noticed promptly
            remaining = float(settings.transfer_sweep_interval_seconds)
            while remaining > 0 and running:
                sleep_time = min(remaining, 5.0)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time

    except Exception as e:
        logger.error("transfer_sweep_worker_error", error=str(e))
        raise
    finally:
        await reconciler.finix_client.close()
        await close_db()
        logger.info("transfer_sweep_worker_stopped")


if __name__ == "__main__":
    asyncio.run(start_transfer_sweep())
