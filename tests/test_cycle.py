"""Tests for the Learning Cycle Orchestrator."""

from datetime import datetime

import pytest

from tuning_kernel.detection.detectors import default_detectors
from tuning_kernel.execution.executor import StrategyExecutor
from tuning_kernel.models.config import EngineConfig
from tuning_kernel.models.engine import EngineOperationStatus, EngineOperationType, EngineStatus
from tuning_kernel.models.events import LearningEvent, LearningEventStatus, LearningEventType
from tuning_kernel.models.search_config import SearchWeights
from tuning_kernel.orchestrator.cycle import LearningCycleOrchestrator
from tuning_kernel.store.repository import EngineRepository
from tuning_kernel.tracking.tracker import OperationTracker


def _make_search_event(
    event_id: str,
    status: LearningEventStatus = LearningEventStatus.COMPLETED,
    **metadata,
) -> LearningEvent:
    values = {"relevantHits": 95, "totalHits": 100, "took": 50}
    values.update(metadata)
    return LearningEvent(
        id=event_id,
        type=LearningEventType.SEARCH_PATTERN,
        status=status,
        timestamp=datetime.utcnow(),
        metadata=values,
    )


class _RecordingGenerator:
    def __init__(self):
        self.calls = []

    def generate(self, pattern):
        self.calls.append(pattern.id)
        return []


class _RecordingExecutor:
    def __init__(self):
        self.executed = []

    async def execute(self, strategy):
        self.executed.append(strategy.id)
        return {}


class _BrokenDetector:
    name = "broken"

    async def analyze(self, events):
        raise RuntimeError("detector crashed")


class TestLearningCycle:
    def setup_method(self):
        self.repo = EngineRepository(db_path=":memory:")
        self.repo.create_weights(SearchWeights(
            id="weights_1",
            title_weight=1.0,
            content_weight=1.0,
            tag_weight=0.5,
            created_at=datetime.utcnow(),
        ))
        self.config = EngineConfig()
        self.tracker = OperationTracker(self.repo, self.config)
        self.tracker.initialize()
        self.executor = StrategyExecutor(
            self.repo, config=self.config, risk_tolerance=self.tracker.risk_tolerance
        )

    def _make_orchestrator(self, **overrides) -> LearningCycleOrchestrator:
        components = dict(
            repository=self.repo,
            tracker=self.tracker,
            executor=self.executor,
            detectors=default_detectors(self.repo),
            config=self.config,
        )
        components.update(overrides)
        return LearningCycleOrchestrator(**components)

    @pytest.mark.asyncio
    async def test_no_patterns_completes_without_strategies(self):
        generator = _RecordingGenerator()
        executor = _RecordingExecutor()
        orchestrator = self._make_orchestrator(generator=generator, executor=executor)

        summary = await orchestrator.execute_autonomous_learning_cycle()

        assert summary.pattern_count == 0
        assert summary.event_count == 0
        assert generator.calls == []
        assert executor.executed == []
        assert self.tracker.state.status == EngineStatus.READY
        operation = self.repo.get_operation(summary.operation_id)
        assert operation.status == EngineOperationStatus.COMPLETED
        assert operation.metrics["pattern_count"] == 0

    @pytest.mark.asyncio
    async def test_cycle_executes_admitted_strategies(self):
        self.repo.save_event(_make_search_event("evt_1", searchType="product"))
        self.repo.save_event(_make_search_event("evt_pending", LearningEventStatus.PENDING))

        summary = await self._make_orchestrator().execute_autonomous_learning_cycle()

        assert summary.event_count == 1
        assert summary.strategy_count == 2
        assert summary.admitted_count == 2
        assert summary.executed_count == 2
        assert summary.failed_count == 0

        result = self.repo.get_learning_result(summary.learning_result_id)
        assert result.operation_id == summary.operation_id
        assert result.metadata["executed_count"] == 2
        assert len(result.execution_log) == 2
        assert all(s.learning_result_id == result.id for s in result.recommendations)
        assert self.repo.get_active_weights().version == 2
        assert self.tracker.state.status == EngineStatus.READY

        types = [op.type for op in self.repo.list_operations()]
        assert EngineOperationType.PATTERN_DETECTION in types
        assert EngineOperationType.OPTIMIZATION in types

    @pytest.mark.asyncio
    async def test_gate_holds_back_risky_strategies(self):
        # Slow query: index optimization is MEDIUM risk and never auto-executed
        self.repo.save_event(_make_search_event("evt_1", took=800))

        summary = await self._make_orchestrator().execute_autonomous_learning_cycle()

        assert summary.strategy_count == 2
        assert summary.admitted_count == 1
        result = self.repo.get_learning_result(summary.learning_result_id)
        assert len(result.recommendations) == 2
        assert result.metadata["executed_strategies"] == ["opt_pattern_evt_1_weights"]

    @pytest.mark.asyncio
    async def test_failed_strategy_does_not_stop_others(self):
        # Without active weights the weight adjustment fails; the query rule still runs
        repo = EngineRepository(db_path=":memory:")
        tracker = OperationTracker(repo, self.config)
        tracker.initialize()
        repo.save_event(_make_search_event("evt_1"))
        orchestrator = LearningCycleOrchestrator(
            repo, tracker, StrategyExecutor(repo), config=self.config
        )

        summary = await orchestrator.execute_autonomous_learning_cycle()

        assert summary.executed_count == 1
        assert summary.failed_count == 1

    @pytest.mark.asyncio
    async def test_failure_returns_none_and_marks_error(self):
        real_repo = self.repo

        class BrokenRepository:
            def __getattr__(self, name):
                return getattr(real_repo, name)

            def find_events(self, *args, **kwargs):
                raise RuntimeError("database unavailable")

        orchestrator = self._make_orchestrator(repository=BrokenRepository())

        summary = await orchestrator.execute_autonomous_learning_cycle()

        assert summary is None
        assert self.tracker.state.status == EngineStatus.ERROR
        learning_ops = self.repo.list_operations(operation_type=EngineOperationType.LEARNING)
        assert learning_ops[-1].status == EngineOperationStatus.FAILED
        assert learning_ops[-1].error == "database unavailable"

    @pytest.mark.asyncio
    async def test_broken_detector_is_isolated(self):
        self.repo.save_event(_make_search_event("evt_1"))
        orchestrator = self._make_orchestrator(
            detectors=[_BrokenDetector()] + default_detectors(self.repo)
        )

        summary = await orchestrator.execute_autonomous_learning_cycle()

        assert summary is not None
        assert summary.pattern_count >= 1
