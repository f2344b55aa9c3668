"""
Background Event Consumer.

One consumer per queue runs alongside FastAPI, pulling events and
dispatching them through the handler registry with bounded concurrency.

Delivery is at-least-once:
- TransientError: the event is re-published after a delay, up to
  max_redeliveries times.
- ConfigurationError: logged as a failed job, never retried.
- Anything else: logged with its traceback; the loop keeps running.
"""
import asyncio
import logging
from typing import Optional, Set

from orderdesk.app.core.exceptions import ConfigurationError
from orderdesk.app.core.logging import job_id_ctx
from orderdesk.app.core.resilience import is_transient
from orderdesk.app.events.bus import EventBus
from orderdesk.app.events.schemas import BaseEvent
from orderdesk.app.workers.handlers import HandlerRegistry

logger = logging.getLogger(__name__)


class EventConsumer:
    """Consumes one named queue of the bus."""

    def __init__(
        self,
        bus: EventBus,
        queue_name: str,
        registry: HandlerRegistry,
        concurrency: int = 1,
        max_redeliveries: int = 3,
        redelivery_delay_seconds: float = 30.0,
    ):
        self.bus = bus
        self.queue_name = queue_name
        self.registry = registry
        self.concurrency = concurrency
        self.max_redeliveries = max_redeliveries
        self.redelivery_delay_seconds = redelivery_delay_seconds
        self._semaphore = asyncio.Semaphore(concurrency)
        self._jobs: Set[asyncio.Task] = set()
        self._task: Optional[asyncio.Task] = None

    async def run(self) -> None:
        """
        Main consumer loop: wait for an event, wait for a free slot, run the
        job as its own task. Runs until cancelled.
        """
        queue = self.bus.queue(self.queue_name)
        logger.info(f"🚀 Event consumer started (queue={self.queue_name}, concurrency={self.concurrency})")
        try:
            while True:
                event = await queue.get()
                await self._semaphore.acquire()
                job = asyncio.create_task(self._process(event))
                self._jobs.add(job)
                job.add_done_callback(self._jobs.discard)
        except asyncio.CancelledError:
            logger.info(f"Event consumer cancelled (queue={self.queue_name})")
            raise

    async def _process(self, event: BaseEvent) -> None:
        queue = self.bus.queue(self.queue_name)
        token = job_id_ctx.set(event.event_id)
        try:
            await self.registry.handle_event(event)
        except ConfigurationError as e:
            logger.error(f"Job failed permanently: {event.event_type} (id={event.event_id[:8]}...): {e}")
        except Exception as e:
            if is_transient(e):
                self._redeliver(event, e)
            else:
                logger.error(f"Handler failed for {event.event_type}: {e}", exc_info=True)
        finally:
            job_id_ctx.reset(token)
            queue.task_done()
            self._semaphore.release()

    def _redeliver(self, event: BaseEvent, error: Exception) -> None:
        if event.attempt > self.max_redeliveries:
            logger.error(
                f"Giving up on {event.event_type} (id={event.event_id[:8]}...) "
                f"after {event.attempt} attempts: {error}"
            )
            return

        retry = event.model_copy(update={"attempt": event.attempt + 1})
        logger.warning(
            f"Transient failure on {event.event_type} (attempt {event.attempt}); "
            f"redelivering in {self.redelivery_delay_seconds}s: {error}"
        )

        async def _later():
            await asyncio.sleep(self.redelivery_delay_seconds)
            await self.bus.publish(retry)

        task = asyncio.create_task(_later())
        self._jobs.add(task)
        task.add_done_callback(self._jobs.discard)

    def start(self) -> asyncio.Task:
        """Start the consumer as a background task."""
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """Cancel the loop and any in-flight jobs or pending redeliveries."""
        tasks = [t for t in [self._task, *self._jobs] if t is not None and not t.done()]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
