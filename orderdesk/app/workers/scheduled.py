"""Periodic ingestion ticks."""
import asyncio
import logging
from typing import Awaitable, Callable

from orderdesk.app.events.bus import EventBus, INGESTION_QUEUE
from orderdesk.app.events.schemas import IngestionTickEvent

logger = logging.getLogger(__name__)


async def _periodic_task(interval_seconds: float, coro: Callable[[], Awaitable[None]]):
    while True:
        try:
            await coro()
        except Exception as e:
            logger.error(f"Scheduled task error: {e}", exc_info=True)
        await asyncio.sleep(interval_seconds)


def start_scheduler(interval_seconds: float, coro: Callable[[], Awaitable[None]]) -> asyncio.Task:
    """Start periodic coro as background task and return the task."""
    return asyncio.create_task(_periodic_task(interval_seconds, coro))


def start_ingestion_ticks(bus: EventBus, interval_seconds: float) -> asyncio.Task:
    """
    Publish one IngestionTickEvent per interval. A tick is skipped while an
    earlier one is still queued, so a slow poll never piles up work.
    """

    async def _tick():
        if bus.queue(INGESTION_QUEUE).qsize() > 0:
            logger.info("Previous ingestion tick still queued; skipping this one")
            return
        await bus.publish(IngestionTickEvent())

    logger.info(f"Ingestion scheduler started (interval={interval_seconds}s)")
    return start_scheduler(interval_seconds, _tick)
