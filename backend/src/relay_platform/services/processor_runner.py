"""Processor Runner: drives the Queue Processor on a fixed interval.

Runs as a background task inside the FastAPI lifespan. Ticks never overlap:
the timer loop and on-demand triggers (POST /process-queue) share one lock,
so a manual trigger waits for an in-flight tick to finish.
"""

import asyncio
import logging

from relay_platform.domain.contracts import TickSummary
from relay_platform.services.queue_processor import QueueProcessor

logger = logging.getLogger(__name__)


class ProcessorRunner:
    def __init__(self, processor: QueueProcessor, interval_seconds: float = 30):
        self.processor = processor
        self.interval_seconds = interval_seconds
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    @property
    def metrics(self):
        return self.processor.metrics

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> TickSummary | None:
        """Process one batch to completion. Returns None if the tick failed."""
        async with self._lock:
            try:
                return await self.processor.process_due_messages()
            except Exception as e:
                self.processor.metrics.record_tick_failure()
                logger.error("Queue processing tick failed: %s", e)
                return None

    def start(self) -> None:
        """Start the polling loop as a background task."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="queue_processor")
        logger.info("Queue processor started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to exit."""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Queue processor stopped")

    async def _loop(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)
