"""
Learning Cycle Orchestrator: one full autonomous learning cycle over the
recently completed events.

States:
  LEARNING → PATTERN_DETECTION → (no patterns: READY)
           → OPTIMIZATION → gate → execute → record result → READY
  any failure → operation FAILED, engine ERROR

The cycle never raises: failures are logged and reported as ``None``.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel

from tuning_kernel.detection.detectors import PatternDetector, default_detectors, run_detectors
from tuning_kernel.execution.executor import StrategyExecutor
from tuning_kernel.governance.risk_gate import AutonomousExecutionGate
from tuning_kernel.models.config import EngineConfig
from tuning_kernel.models.engine import EngineOperationType
from tuning_kernel.models.events import LearningEvent, LearningEventStatus
from tuning_kernel.models.learning import EngineLearningResult
from tuning_kernel.models.pattern import LearningPattern
from tuning_kernel.store.repository import EngineRepository
from tuning_kernel.strategy.generator import RuleBasedStrategyGenerator, StrategyGenerator
from tuning_kernel.tracking.tracker import OperationTracker

logger = logging.getLogger(__name__)


class CycleSummary(BaseModel):
    operation_id: str
    event_count: int
    pattern_count: int
    strategy_count: int = 0
    admitted_count: int = 0
    executed_count: int = 0
    failed_count: int = 0
    confidence: float = 0.0
    learning_result_id: Optional[str] = None


def _average_confidence(items) -> float:
    items = list(items)
    if not items:
        return 0.0
    return sum(i.confidence for i in items) / len(items)


class LearningCycleOrchestrator:
    """Runs the periodic autonomous learning cycle."""

    def __init__(
        self,
        repository: EngineRepository,
        tracker: OperationTracker,
        executor: StrategyExecutor,
        detectors: Optional[List[PatternDetector]] = None,
        generator: Optional[StrategyGenerator] = None,
        gate: Optional[AutonomousExecutionGate] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.repository = repository
        self.tracker = tracker
        self.executor = executor
        self.config = config or EngineConfig()
        self.detectors = detectors if detectors is not None else default_detectors(repository)
        self.generator = generator or RuleBasedStrategyGenerator()
        self.gate = gate or AutonomousExecutionGate(self.config)

    def fetch_recent_events(self) -> List[LearningEvent]:
        since = datetime.utcnow() - timedelta(hours=self.config.lookback_hours)
        return self.repository.find_events(
            status=LearningEventStatus.COMPLETED,
            since=since,
            limit=self.config.batch_size,
        )

    async def detect_patterns(self, events: List[LearningEvent]) -> List[LearningPattern]:
        """Run the detectors under their own PATTERN_DETECTION operation."""
        operation = self.tracker.start_operation(EngineOperationType.PATTERN_DETECTION)
        try:
            patterns = await run_detectors(self.detectors, events)
        except Exception as e:
            self.tracker.fail_operation(operation.id, str(e))
            raise
        self.tracker.complete_operation(operation.id, metrics={
            "pattern_count": len(patterns),
            "confidence": _average_confidence(patterns),
        })
        return patterns

    def optimize_from_patterns(self, patterns: List[LearningPattern]) -> list:
        """Generate strategies for every pattern under an OPTIMIZATION operation."""
        operation = self.tracker.start_operation(EngineOperationType.OPTIMIZATION)
        try:
            strategies = []
            for pattern in patterns:
                strategies.extend(self.generator.generate(pattern))
        except Exception as e:
            self.tracker.fail_operation(operation.id, str(e))
            raise
        self.tracker.complete_operation(operation.id, metrics={
            "strategy_count": len(strategies),
            "confidence": _average_confidence(patterns),
        })
        return strategies

    async def execute_strategies(self, strategies: list) -> Tuple[list, list]:
        """Execute each strategy independently. Returns (executed, failed)."""
        executed, failed = [], []
        for strategy in strategies:
            try:
                await self.executor.execute(strategy)
                executed.append(strategy)
            except Exception as e:
                logger.error(
                    "Failed to execute strategy %s: %s", strategy.id, e,
                    extra={"strategy_id": strategy.id, "strategy_type": strategy.type.value},
                )
                failed.append(strategy)
        return executed, failed

    async def execute_autonomous_learning_cycle(self) -> Optional[CycleSummary]:
        operation = None
        try:
            operation = self.tracker.start_learning_cycle()
            events = self.fetch_recent_events()
            patterns = await self.detect_patterns(events)

            if not patterns:
                self.tracker.complete_operation(operation.id, metrics={
                    "pattern_count": 0,
                    "strategy_count": 0,
                    "executed_count": 0,
                })
                logger.info("No patterns detected in %d events", len(events))
                return CycleSummary(
                    operation_id=operation.id,
                    event_count=len(events),
                    pattern_count=0,
                )

            strategies = self.optimize_from_patterns(patterns)
            confidence = _average_confidence(patterns)

            result_id = f"result_{uuid4().hex[:12]}"
            strategies = [s.bind_result(result_id) for s in strategies]
            admitted, _rejected = self.gate.partition(strategies)
            result = self.repository.save_learning_result(EngineLearningResult(
                id=result_id,
                operation_id=operation.id,
                patterns=patterns,
                confidence=confidence,
                recommendations=strategies,
                metadata={
                    "event_count": len(events),
                    "pattern_count": len(patterns),
                    "strategy_count": len(strategies),
                    "admitted_count": len(admitted),
                },
                created_at=datetime.utcnow(),
            ))

            executed, failed = await self.execute_strategies(admitted)

            # Re-read: the executor appended annotations meanwhile
            stored = self.repository.get_learning_result(result.id) or result
            self.repository.save_learning_result(stored.model_copy(update={
                "metadata": {
                    **stored.metadata,
                    "executed_count": len(executed),
                    "failed_count": len(failed),
                    "executed_strategies": [s.id for s in executed],
                },
            }))

            summary = CycleSummary(
                operation_id=operation.id,
                event_count=len(events),
                pattern_count=len(patterns),
                strategy_count=len(strategies),
                admitted_count=len(admitted),
                executed_count=len(executed),
                failed_count=len(failed),
                confidence=confidence,
                learning_result_id=result.id,
            )
            self.tracker.complete_operation(operation.id, metrics={
                "pattern_count": len(patterns),
                "strategy_count": len(strategies),
                "executed_count": len(executed),
                "confidence": confidence,
            })
            logger.info(
                "Completed learning cycle: %d patterns, %d strategies, %d executed",
                len(patterns), len(strategies), len(executed),
                extra={"summary": summary.model_dump()},
            )
            return summary
        except Exception as e:
            logger.exception("Autonomous learning cycle failed")
            if operation is not None:
                try:
                    self.tracker.fail_operation(operation.id, str(e))
                except Exception:
                    logger.exception("Failed to record cycle failure for %s", operation.id)
            return None
