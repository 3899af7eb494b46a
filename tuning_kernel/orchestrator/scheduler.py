"""
Cycle Scheduler: runs the autonomous learning cycle on a cron schedule.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from croniter import croniter

from tuning_kernel.models.config import EngineConfig
from tuning_kernel.orchestrator.cycle import CycleSummary, LearningCycleOrchestrator

logger = logging.getLogger(__name__)


class CycleScheduler:
    """Fires ``execute_autonomous_learning_cycle`` at each cron tick."""

    def __init__(
        self,
        orchestrator: LearningCycleOrchestrator,
        config: Optional[EngineConfig] = None,
    ):
        self.orchestrator = orchestrator
        self.config = config or EngineConfig()
        if not croniter.is_valid(self.config.cycle_schedule):
            raise ValueError(f"Invalid cycle schedule: {self.config.cycle_schedule!r}")
        self._running = False
        self.cycle_count = 0
        self.last_summary: Optional[CycleSummary] = None
        self.last_run_at: Optional[datetime] = None

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    def next_run(self, after: Optional[datetime] = None) -> datetime:
        """The first scheduled time strictly after ``after`` (default: now)."""
        return croniter(self.config.cycle_schedule, after or datetime.utcnow()).get_next(datetime)

    async def run_once(self) -> Optional[CycleSummary]:
        self.last_run_at = datetime.utcnow()
        self.last_summary = await self.orchestrator.execute_autonomous_learning_cycle()
        self.cycle_count += 1
        return self.last_summary

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run the schedule until ``stop_event`` is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                now = datetime.utcnow()
                delay = max((self.next_run(now) - now).total_seconds(), 0.0)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass
                await self.run_once()
        finally:
            self._running = False
            logger.info("Cycle scheduler stopped after %d cycles", self.cycle_count)
