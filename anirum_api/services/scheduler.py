"""Background job scheduler.

APScheduler-based periodic sweep of the verification session stores.
Sessions already expire lazily on access; the sweep only keeps memory
bounded when abandoned sessions are never read again.
"""

from collections.abc import Iterable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from anirum_api.config import settings
from anirum_api.logging_config import get_logger
from anirum_api.services.session_store import SessionStore

logger = get_logger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def sweep_expired_sessions(stores: Iterable[SessionStore]) -> int:
    """Evict expired sessions from every store.

    Returns:
        Total number of sessions evicted
    """
    evicted = 0
    for store in stores:
        try:
            evicted += await store.sweep()
        except Exception as e:
            logger.error(
                "Session sweep failed",
                store=type(store).__name__,
                error=str(e),
            )

    if evicted:
        logger.info("Expired verification sessions swept", evicted=evicted)
    return evicted


def start_scheduler(stores: Iterable[SessionStore]) -> AsyncIOScheduler:
    """Start the background job scheduler.

    Args:
        stores: Session stores to sweep

    Returns:
        The started scheduler instance
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already running")
        return scheduler

    scheduler = AsyncIOScheduler()

    if settings.session_sweep_enabled:
        scheduler.add_job(
            sweep_expired_sessions,
            trigger=IntervalTrigger(seconds=settings.session_sweep_interval_seconds),
            args=[tuple(stores)],
            id="session_sweep",
            name="Verification Session Sweep",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(
            "Scheduled session sweep job",
            interval_seconds=settings.session_sweep_interval_seconds,
        )

    scheduler.start()
    logger.info("Background scheduler started")

    return scheduler


def stop_scheduler() -> None:
    """Stop the background job scheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the current scheduler instance.

    Returns:
        The scheduler instance or None if not started
    """
    return scheduler
