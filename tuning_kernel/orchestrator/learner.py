"""
Real-Time Learner: consumes the learning event stream and applies
low-risk strategies under live validation.

States:
  STOPPED → RUNNING (read → detect → generate → gate → execute → monitor) → STOPPED

Behavioral Contract:
- start() and stop() are idempotent; the redundant call logs a warning
- stop() abandons the in-flight blocking read instead of waiting it out
- A stream or processing error is logged and retried after a fixed delay
- Each executed strategy gets its own monitoring task; a strategy that
  underperforms, or whose monitoring fails, is rolled back
- A strategy holds a lease on its configuration scope until its
  validation ends; strategies for a leased scope are skipped
- A validation cut short by stop() is inconclusive: nothing is rolled back
- Rollback failures are logged, never raised
"""

import asyncio
import logging
from datetime import datetime
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Set, Tuple
from uuid import uuid4

from pydantic import BaseModel

from tuning_kernel.detection.detectors import PatternDetector, default_detectors, run_detectors
from tuning_kernel.execution.executor import StrategyExecutor
from tuning_kernel.governance.risk_gate import AutonomousExecutionGate
from tuning_kernel.metrics.collector import MetricsAdapter
from tuning_kernel.models.config import EngineConfig
from tuning_kernel.models.events import LearningEvent, LearningEventStatus
from tuning_kernel.models.learning import EngineLearningResult, PerformanceRecord
from tuning_kernel.models.pattern import LearningPattern
from tuning_kernel.models.strategy import OptimizationStrategy, StrategyType
from tuning_kernel.models.validation import MetricSample, PerformanceMetrics, ValidationContext
from tuning_kernel.store.repository import EngineRepository
from tuning_kernel.strategy.generator import RuleBasedStrategyGenerator, StrategyGenerator
from tuning_kernel.stream.events import LATEST, EventStream, deserialize_learning_event
from tuning_kernel.validation.impact import ImpactValidator

logger = logging.getLogger(__name__)


class BatchResult(BaseModel):
    """Outcome of processing one batch of stream entries."""

    event_count: int
    patterns: List[LearningPattern] = []
    strategies: List[OptimizationStrategy] = []
    admitted: List[OptimizationStrategy] = []
    learning_result_id: Optional[str] = None


class RealTimeLearner:
    """
    The stream consumer.

    ``start()`` runs the consumer loop until ``stop()`` is called, so it is
    normally wrapped in a task::

        task = asyncio.create_task(learner.start())
        ...
        await learner.stop()
        await task
    """

    def __init__(
        self,
        stream: EventStream,
        repository: EngineRepository,
        executor: StrategyExecutor,
        validator: ImpactValidator,
        metrics: MetricsAdapter,
        detectors: Optional[List[PatternDetector]] = None,
        generator: Optional[StrategyGenerator] = None,
        gate: Optional[AutonomousExecutionGate] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.stream = stream
        self.repository = repository
        self.executor = executor
        self.validator = validator
        self.metrics = metrics
        self.config = config or EngineConfig()
        self.detectors = detectors if detectors is not None else default_detectors(repository)
        self.generator = generator or RuleBasedStrategyGenerator()
        self.gate = gate or AutonomousExecutionGate(self.config)

        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._cursor = LATEST
        self._monitor_tasks: Set[asyncio.Task] = set()
        self._leases: Dict[str, str] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def leases(self) -> Mapping[str, str]:
        """Strategy id holding each configuration scope under validation (read-only)."""
        return MappingProxyType(self._leases)

    @property
    def cursor(self) -> str:
        return self._cursor

    @property
    def validation_queue(self) -> Mapping[str, ValidationContext]:
        """In-flight validation windows keyed by strategy id (read-only)."""
        return self.validator.validation_queue

    async def start(self) -> None:
        """Consume the stream until stopped."""
        if self._running:
            logger.warning("RealTimeLearner is already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        logger.info("Starting RealTimeLearner", extra={"stream_key": self.config.stream_key})
        try:
            await self._consume()
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop consuming; the in-flight read is abandoned."""
        if not self._running:
            logger.warning("RealTimeLearner is not running")
            return

        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        logger.info("RealTimeLearner stopping gracefully")

    async def wait_for_validations(self) -> None:
        """Wait until every launched monitoring task has finished."""
        while self._monitor_tasks:
            await asyncio.gather(*list(self._monitor_tasks), return_exceptions=True)

    # --- Consumer loop ---

    async def _consume(self) -> None:
        while self._running:
            try:
                entries = await self._read_or_stop()
                if entries is None:
                    break
                if not entries:
                    continue
                self._cursor = entries[-1][0]
                events = [
                    event for event in (
                        deserialize_learning_event(entry_id, fields)
                        for entry_id, fields in entries
                    )
                    if event is not None
                ]
                if events:
                    await self.process_learning_batch(events)
            except Exception:
                logger.exception("Stream consumer error")
                if self._running:
                    await self._sleep_or_stop(self.config.retry_delay_seconds)

    async def _read_or_stop(self):
        """Race the blocking read against the stop event. None means stopped."""
        read = asyncio.ensure_future(
            self.stream.read(self._cursor, self.config.read_block_ms, self.config.read_count)
        )
        stopped = asyncio.ensure_future(self._stop_event.wait())
        done, _pending = await asyncio.wait(
            {read, stopped}, return_when=asyncio.FIRST_COMPLETED
        )
        stopped.cancel()
        if read in done:
            return read.result()

        read.cancel()
        await asyncio.gather(read, return_exceptions=True)
        return None

    async def _sleep_or_stop(self, seconds: float) -> bool:
        """Cooperative wait. Returns True if the learner was stopped meanwhile."""
        if self._stop_event is None:
            await asyncio.sleep(seconds)
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    # --- Batch processing ---

    async def process_learning_batch(self, events: List[LearningEvent]) -> BatchResult:
        """
        Claim the events, then detect, generate, gate and apply with
        validation. Claimed events end COMPLETED, or FAILED with the error
        and one more retry counted.
        """
        claimed = self._claim_events(events)
        if not claimed:
            return BatchResult(event_count=0)
        try:
            result = await self._learn_from(claimed)
        except Exception as e:
            self._settle_events(claimed, LearningEventStatus.FAILED, error=str(e))
            raise
        self._settle_events(claimed, LearningEventStatus.COMPLETED)
        return result

    def _claim_events(self, events: List[LearningEvent]) -> List[LearningEvent]:
        """Persist each unprocessed event as PROCESSING; terminal ones are skipped."""
        claimed = []
        for event in events:
            current = self.repository.get_event(event.id) or event
            if current.is_terminal:
                logger.debug(
                    "Skipping %s event %s", current.status.value, current.id,
                    extra={"event_id": current.id},
                )
                continue
            if current.status == LearningEventStatus.PENDING:
                current = current.transition(LearningEventStatus.PROCESSING)
            claimed.append(self.repository.save_event(current))
        return claimed

    def _settle_events(
        self,
        events: List[LearningEvent],
        status: LearningEventStatus,
        error: Optional[str] = None,
    ) -> None:
        for event in events:
            settled = event.transition(status, error=error)
            if status == LearningEventStatus.FAILED:
                settled = settled.model_copy(update={"retry_count": event.retry_count + 1})
            self.repository.save_event(settled)

    async def _learn_from(self, events: List[LearningEvent]) -> BatchResult:
        patterns = await run_detectors(self.detectors, events)
        if not patterns:
            return BatchResult(event_count=len(events))

        strategies = []
        source_patterns: Dict[str, LearningPattern] = {}
        for pattern in patterns:
            for strategy in self.generator.generate(pattern):
                strategies.append(strategy)
                source_patterns[strategy.id] = pattern

        admitted, _rejected = self.gate.partition(strategies)
        result_id = None
        if admitted:
            result = self._create_learning_result(patterns, admitted, len(events))
            result_id = result.id
            admitted = list(result.recommendations)
            await self.apply_strategies_with_validation(admitted, source_patterns)

        logger.info(
            "Processed learning batch: %d events, %d patterns, %d strategies, %d admitted",
            len(events), len(patterns), len(strategies), len(admitted),
        )
        return BatchResult(
            event_count=len(events),
            patterns=patterns,
            strategies=strategies,
            admitted=admitted,
            learning_result_id=result_id,
        )

    def _create_learning_result(
        self, patterns: List[LearningPattern], strategies: list, event_count: int
    ) -> EngineLearningResult:
        result_id = f"result_{uuid4().hex[:12]}"
        result = EngineLearningResult(
            id=result_id,
            patterns=patterns,
            confidence=sum(p.confidence for p in patterns) / len(patterns) if patterns else 0.0,
            recommendations=[s.bind_result(result_id) for s in strategies],
            metadata={"source": "real_time_learner", "event_count": event_count},
            created_at=datetime.utcnow(),
        )
        return self.repository.save_learning_result(result)

    def _ensure_owned(self, strategy):
        """Bind a strategy to a learning result, creating one if needed."""
        if strategy.learning_result_id and self.repository.get_learning_result(
            strategy.learning_result_id
        ):
            return strategy
        result = self._create_learning_result([], [strategy], 0)
        return result.recommendations[0]

    async def apply_strategies_with_validation(
        self,
        strategies: list,
        source_patterns: Optional[Dict[str, LearningPattern]] = None,
    ) -> List[asyncio.Task]:
        """
        Execute each strategy and launch its monitoring task.
        Returns the monitoring tasks launched.

        A strategy whose configuration scope is still leased by a strategy
        under validation is skipped and annotated as such.
        """
        source_patterns = source_patterns or {}
        tasks = []
        for strategy in strategies:
            strategy = self._ensure_owned(strategy)
            scope = self.executor.scope_for(strategy)
            holder = self._leases.get(scope)
            if holder is not None:
                self._skip(strategy, scope, holder)
                continue
            self._leases[scope] = strategy.id

            pattern = source_patterns.get(strategy.id)
            if strategy.type == StrategyType.FEEDBACK_LOOP:
                task = asyncio.create_task(self.implement_feedback_loop(strategy))
            else:
                try:
                    baseline = await self.metrics.collect_current_metrics()
                    await self.executor.execute(strategy)
                except Exception:
                    logger.exception(
                        "Strategy application failed", extra={"strategy_id": strategy.id}
                    )
                    await self._safe_rollback(strategy, "Strategy application failed")
                    self._release(scope, strategy.id)
                    continue
                task = asyncio.create_task(
                    self.monitor_strategy_performance(strategy, baseline, pattern)
                )
            self._monitor_tasks.add(task)
            task.add_done_callback(self._monitor_tasks.discard)
            task.add_done_callback(
                lambda _task, scope=scope, owner=strategy.id: self._release(scope, owner)
            )
            tasks.append(task)
        return tasks

    def _skip(self, strategy, scope: str, holder: str) -> None:
        logger.warning(
            "Skipping strategy %s: %s is under validation for %s",
            strategy.id, scope, holder,
            extra={"strategy_id": strategy.id},
        )
        self.repository.append_execution_annotation(strategy.learning_result_id, {
            "status": "SKIPPED",
            "strategy_id": strategy.id,
            "strategy_type": strategy.type.value,
            "reason": f"{scope} is under validation for {holder}",
            "timestamp": datetime.utcnow().isoformat(),
        })

    def _release(self, scope: str, owner: str) -> None:
        if self._leases.get(scope) == owner:
            del self._leases[scope]

    async def _safe_rollback(self, strategy, reason: str) -> bool:
        try:
            await self.executor.rollback(strategy, reason=reason)
            return True
        except Exception:
            logger.exception("Strategy rollback failed", extra={"strategy_id": strategy.id})
            return False

    # --- Monitoring ---

    async def _collect_samples(self) -> Tuple[List[MetricSample], bool]:
        """
        Sample metrics every interval until the window ends or the learner
        stops. The flag tells whether the learner stopped first.
        """
        samples: List[MetricSample] = []
        loop = asyncio.get_running_loop()
        started = loop.time()
        while loop.time() - started < self.config.monitor_window_seconds:
            samples.append(MetricSample(
                timestamp=datetime.utcnow(),
                metrics=await self.metrics.collect_current_metrics(),
            ))
            if await self._sleep_or_stop(self.config.monitor_sample_interval_seconds):
                return samples, True
        return samples, False

    def analyze_performance_samples(
        self, samples: List[MetricSample], declared_latency: float
    ) -> bool:
        """Mean sampled latency must stay within the tolerance band of the declared latency."""
        if not samples:
            return False
        average = sum(s.metrics.latency for s in samples) / len(samples)
        return average <= declared_latency * self.config.monitor_tolerance

    def _inconclusive(self, strategy) -> None:
        logger.info(
            "Validation of %s inconclusive: learner stopped", strategy.id,
            extra={"strategy_id": strategy.id},
        )

    async def monitor_strategy_performance(
        self,
        strategy,
        baseline: PerformanceMetrics,
        pattern: Optional[LearningPattern] = None,
    ) -> Optional[bool]:
        """
        Watch an executed strategy over the monitoring window. The declared
        latency is the source pattern's latency, or the pre-execution baseline.

        Returns None when the learner stops before the window ends; the
        strategy stays applied and no performance is recorded.
        """
        declared_latency = (
            pattern.metrics.latency if pattern and pattern.metrics.latency else baseline.latency
        )
        self.validator.open_window(
            strategy.id, baseline, self.validator.project_for_strategy(strategy, baseline, pattern)
        )
        try:
            samples, stopped = await self._collect_samples()
            if stopped:
                self._inconclusive(strategy)
                return None
            if not self.analyze_performance_samples(samples, declared_latency):
                await self._safe_rollback(strategy, "Performance degradation")
                logger.warning(
                    "Strategy rolled back due to performance",
                    extra={"strategy_id": strategy.id, "declared_latency": declared_latency},
                )
                return False

            latest = samples[-1].metrics
            self.repository.set_performance(
                strategy.learning_result_id,
                PerformanceRecord(
                    before_metrics=baseline.model_dump(),
                    after_metrics=latest.model_dump(),
                    improvement=(
                        (baseline.latency - latest.latency) / baseline.latency
                        if baseline.latency > 0 else 0.0
                    ),
                    status="VALIDATED",
                    timestamp=datetime.utcnow(),
                ),
            )
            return True
        except Exception:
            logger.exception("Strategy monitoring failed", extra={"strategy_id": strategy.id})
            await self._safe_rollback(strategy, "Monitoring failed")
            return False
        finally:
            self.validator.close_window(strategy.id)

    async def implement_feedback_loop(self, strategy) -> Optional[bool]:
        """
        Execute a feedback-loop strategy, wait out the monitoring window and
        keep it only if the weighted impact reaches half the expected improvement.
        Returns None when the learner stops during the window.
        """
        try:
            before = await self.metrics.collect_raw_metrics()
            await self.executor.execute(strategy)
            if await self._sleep_or_stop(self.config.monitor_window_seconds):
                self._inconclusive(strategy)
                return None
            after = await self.metrics.collect_raw_metrics()
            impact = await self.validator.analyze_strategy_impact(before, after)

            if impact.value < strategy.metadata.expected_improvement * 0.5:
                await self._safe_rollback(strategy, "Strategy did not meet performance expectations")
                logger.warning(
                    "Feedback loop %s rolled back", strategy.id,
                    extra={"impact": impact.value},
                )
                return False

            self.repository.set_performance(
                strategy.learning_result_id,
                PerformanceRecord(
                    before_metrics=before,
                    after_metrics=after,
                    improvement=impact.weighted_improvement,
                    status="VALIDATED",
                    timestamp=datetime.utcnow(),
                ),
            )
            return True
        except Exception:
            logger.exception("Feedback loop failed", extra={"strategy_id": strategy.id})
            await self._safe_rollback(strategy, "Feedback loop failed")
            return False
