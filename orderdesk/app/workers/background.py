"""
Best-effort background side effects.

Work that must never affect the caller's result (source cursor updates,
channel last_used_at stamps) is spawned here after the main transaction
has committed. Failures are logged and dropped.
"""
import asyncio
import logging
from typing import Awaitable, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Owns spawned tasks so they are not garbage collected mid-flight and can be drained at shutdown."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.create_task(self._guard(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Awaitable, name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Background task {name} failed: {e}", exc_info=True)

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for pending tasks, cancelling whatever is still running after `timeout`."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)
