"""Tests for the cron Cycle Scheduler."""

import asyncio
from datetime import datetime

import pytest

from tuning_kernel.models.config import EngineConfig
from tuning_kernel.orchestrator.cycle import CycleSummary
from tuning_kernel.orchestrator.scheduler import CycleScheduler


class _CountingOrchestrator:
    def __init__(self):
        self.runs = 0

    async def execute_autonomous_learning_cycle(self):
        self.runs += 1
        return CycleSummary(operation_id=f"op_{self.runs}", event_count=0, pattern_count=0)


class TestCycleScheduler:
    def setup_method(self):
        self.orchestrator = _CountingOrchestrator()

    def test_invalid_schedule_rejected(self):
        with pytest.raises(ValueError):
            CycleScheduler(self.orchestrator, EngineConfig(cycle_schedule="every quarter hour"))

    def test_next_run_follows_cron(self):
        scheduler = CycleScheduler(self.orchestrator, EngineConfig(cycle_schedule="*/15 * * * *"))
        assert scheduler.next_run(datetime(2026, 3, 1, 12, 7)) == datetime(2026, 3, 1, 12, 15)
        assert scheduler.next_run(datetime(2026, 3, 1, 12, 15)) == datetime(2026, 3, 1, 12, 30)

    @pytest.mark.asyncio
    async def test_run_once_records_summary(self):
        scheduler = CycleScheduler(self.orchestrator)
        summary = await scheduler.run_once()

        assert scheduler.cycle_count == 1
        assert scheduler.last_summary == summary
        assert scheduler.last_run_at is not None

    @pytest.mark.asyncio
    async def test_run_async_stops_on_event(self):
        scheduler = CycleScheduler(self.orchestrator, EngineConfig(cycle_schedule="0 0 1 1 *"))
        stop_event = asyncio.Event()
        task = asyncio.create_task(scheduler.run_async(stop_event))
        await asyncio.sleep(0.01)
        assert scheduler.status == "running"

        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert scheduler.status == "stopped"
        assert self.orchestrator.runs == 0
