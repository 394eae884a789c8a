"""Worker that puts listings back on sale when unpaid PIX holds lapse."""

import asyncio
import logging
from typing import Optional

from config import settings_conf
from database import init_db, close as db_close
from transactions import TransactionService

# Configure logging
logger = logging.getLogger(__name__)


async def expire_reservations(service: Optional[TransactionService] = None) -> int:
    """Run one sweep over lapsed reservations.

    Returns:
        Number of transactions expired
    """
    service = service or TransactionService()
    return await service.expire_stale_reservations()


async def run_worker(
    service: Optional[TransactionService] = None,
    interval: Optional[float] = None,
    stop_event: Optional[asyncio.Event] = None
) -> None:
    """Sweep lapsed reservations every ``interval`` seconds until stopped.

    A failed sweep is logged and retried on the next tick.
    """
    service = service or TransactionService()
    if interval is None:
        interval = settings_conf['reservation_sweep_seconds']
    stop_event = stop_event or asyncio.Event()

    logger.info(f"Reservation expiry worker starting up (every {interval}s)")
    while not stop_event.is_set():
        try:
            await expire_reservations(service)
        except Exception:
            logger.exception("Error in reservation expiry sweep")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    logger.info("Reservation expiry worker stopped")


async def main() -> None:
    await init_db()
    try:
        await run_worker()
    finally:
        await db_close()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
