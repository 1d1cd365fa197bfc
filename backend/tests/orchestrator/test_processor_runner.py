"""Tests for the ProcessorRunner loop and on-demand trigger."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from relay_platform.domain.contracts import TickSummary
from relay_platform.services.delivery_metrics import DeliveryMetrics
from relay_platform.services.processor_runner import ProcessorRunner


def _processor(side_effect=None):
    processor = MagicMock()
    processor.metrics = DeliveryMetrics()
    processor.process_due_messages = AsyncMock(
        side_effect=side_effect,
        return_value=TickSummary(started_at=datetime(2026, 1, 14, tzinfo=timezone.utc)),
    )
    return processor


class TestRunOnce:
    async def test_returns_summary(self):
        runner = ProcessorRunner(_processor())

        summary = await runner.run_once()

        assert summary.units == 0

    async def test_tick_failure_is_recorded_not_raised(self):
        processor = _processor(side_effect=RuntimeError("database is locked"))
        runner = ProcessorRunner(processor)

        assert await runner.run_once() is None
        assert processor.metrics.tick_failures == 1

    async def test_ticks_do_not_overlap(self):
        active = 0
        peak = 0

        async def _slow_tick():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return TickSummary(started_at=datetime(2026, 1, 14, tzinfo=timezone.utc))

        processor = _processor(side_effect=_slow_tick)
        runner = ProcessorRunner(processor)

        await asyncio.gather(runner.run_once(), runner.run_once(), runner.run_once())

        assert peak == 1
        assert processor.process_due_messages.await_count == 3


class TestLoop:
    async def test_start_and_stop(self):
        processor = _processor()
        runner = ProcessorRunner(processor, interval_seconds=0.01)

        runner.start()
        assert runner.running is True
        await asyncio.sleep(0.05)
        await runner.stop()

        assert runner.running is False
        assert processor.process_due_messages.await_count >= 2

    async def test_loop_survives_failing_ticks(self):
        processor = _processor(side_effect=RuntimeError("boom"))
        runner = ProcessorRunner(processor, interval_seconds=0.01)

        runner.start()
        await asyncio.sleep(0.05)
        await runner.stop()

        assert processor.metrics.tick_failures >= 2
