"""
Expiration background worker.

Sweeps stale pending payments to expired at a fixed interval.
"""
import asyncio
import signal
import time
from typing import Any, Optional

import structlog

from municipal_payments.config import get_settings
from municipal_payments.core.expiration import ExpirationSweeper
from municipal_payments.database.connection import close_db, session_scope
from municipal_payments.monitoring.logging import setup_logging
from municipal_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SWEEP_SCOPES = ("payments", "codes")


async def run_expiration_sweep(
    sweeper: Optional[ExpirationSweeper] = None, scope: str = "payments"
) -> int:
    """
    Run one expiration sweep in its own session.

    Args:
        sweeper: Optional sweeper (built from settings if omitted)
        scope: "payments" for every stale pending payment, "codes" for
            stale pending payments holding a redemption code

    Returns:
        int: Number of payments expired
    """
    sweeper = sweeper or ExpirationSweeper()
    start_time = time.time()

    logger.info("expiration_sweep_started", scope=scope)

    async with session_scope() as db:
        if scope == "codes":
            expired = await sweeper.expire_stale_codes(db)
            sweep = "stale_code_sweep"
        else:
            expired = await sweeper.expire_stale_payments(db)
            sweep = "stale_sweep"

    duration = time.time() - start_time
    metrics.record_expiration_sweep(sweep, expired, duration)

    if expired:
        logger.warning("stale_payments_expired", scope=scope, expired_count=expired)

    return expired


async def start_expiration_worker(
    interval_seconds: Optional[int] = None, scope: str = "payments"
) -> None:
    """
    Start the expiration worker.

    Runs a sweep every ``interval_seconds`` until SIGINT/SIGTERM.

    Args:
        interval_seconds: Seconds between sweeps (settings default: 300)
        scope: Sweep scope, see ``run_expiration_sweep``
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.expiration_sweep_interval_seconds

    logger.info("expiration_worker_starting", interval_seconds=interval, scope=scope)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("expiration_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    sweeper = ExpirationSweeper(settings)

    try:
        while running:
            try:
                await run_expiration_sweep(sweeper, scope)
            except Exception as e:
                logger.error("expiration_sweep_execution_error", error=str(e))
                # Continue running even if one sweep fails

            # Wait for the next sweep, checking for shutdown every second
            remaining = float(interval)
            while remaining > 0 and running:
                sleep_time = min(remaining, 1.0)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time

    finally:
        await close_db()
        logger.info("expiration_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Expiration worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between sweeps (default: settings)"
    )
    parser.add_argument(
        "--scope", choices=SWEEP_SCOPES, default="payments", help="Which stale payments to expire"
    )
    args = parser.parse_args()

    asyncio.run(start_expiration_worker(interval_seconds=args.interval, scope=args.scope))


if __name__ == "__main__":
    main()
