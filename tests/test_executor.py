"""Tests for the Strategy Executor."""

import asyncio
import logging
from datetime import datetime

import pytest

from tuning_kernel.errors import DataIntegrityError, RiskRejectedError
from tuning_kernel.execution.executor import StrategyExecutor
from tuning_kernel.metrics.collector import MetricsAdapter, StaticMetricsSource
from tuning_kernel.models.config import EngineConfig
from tuning_kernel.models.learning import EngineLearningResult
from tuning_kernel.models.search_config import SearchWeights
from tuning_kernel.models.strategy import (
    CacheStrategy,
    IndexOptimizationStrategy,
    RiskLevel,
    StrategyMetadata,
    StrategyType,
    WeightAdjustmentStrategy,
)
from tuning_kernel.store.repository import EngineRepository

RESULT_ID = "result_1"


def _make_metadata(
    risk_level: RiskLevel = RiskLevel.LOW,
    expected_improvement: float = 0.15,
    search_pattern: str = None,
) -> StrategyMetadata:
    return StrategyMetadata(
        target_metrics=["RELEVANCE_SCORE", "SEARCH_LATENCY"],
        expected_improvement=expected_improvement,
        risk_level=risk_level,
        search_pattern=search_pattern,
    )


def _make_weight_strategy(strategy_id: str = "opt_p1_weights", **metadata):
    return WeightAdjustmentStrategy(
        id=strategy_id,
        priority=0.9,
        confidence=0.9,
        impact=0.9,
        metadata=_make_metadata(**metadata),
    ).bind_result(RESULT_ID)


def _make_cache_strategy(search_pattern: str, strategy_id: str = None):
    return CacheStrategy(
        id=strategy_id or f"opt_{search_pattern}_cache",
        priority=0.81,
        confidence=0.9,
        impact=0.6,
        metadata=_make_metadata(expected_improvement=0.3, search_pattern=search_pattern),
    ).bind_result(RESULT_ID)


def _make_weights() -> SearchWeights:
    return SearchWeights(
        id="weights_1",
        title_weight=1.0,
        content_weight=0.8,
        tag_weight=0.5,
        version=1,
        created_at=datetime.utcnow(),
    )


class TestWeightAdjustment:
    def setup_method(self):
        self.repo = EngineRepository(db_path=":memory:")
        self.repo.create_weights(_make_weights())
        self.repo.save_learning_result(
            EngineLearningResult(id=RESULT_ID, created_at=datetime.utcnow())
        )
        self.source = StaticMetricsSource()
        self.executor = StrategyExecutor(self.repo, MetricsAdapter(self.source), EngineConfig())

    @pytest.mark.asyncio
    async def test_execute_creates_new_active_version(self):
        strategy = _make_weight_strategy()
        annotation = await self.executor.execute(strategy)

        active = self.repo.get_active_weights()
        assert active.version == 2
        assert active.title_weight == pytest.approx(1.15)
        assert active.content_weight == pytest.approx(0.8)
        assert active.tag_weight == pytest.approx(0.55)
        assert active.metadata["optimization_id"] == strategy.id
        assert active.metadata["previous_weights"] == {
            "title_weight": 1.0, "content_weight": 0.8, "tag_weight": 0.5,
        }
        assert sum(1 for w in self.repo.list_weights() if w.active) == 1
        assert annotation["status"] == "EXECUTED"

    @pytest.mark.asyncio
    async def test_execute_annotates_result_and_records_metric(self):
        strategy = _make_weight_strategy()
        await self.executor.execute(strategy)

        result = self.repo.get_learning_result(RESULT_ID)
        assert result.execution_log[0]["strategy_id"] == strategy.id
        assert result.applied_at is not None
        assert self.source.recorded[0]["metric_type"] == "RELEVANCE_SCORE"

    @pytest.mark.asyncio
    async def test_rollback_restores_previous_weights_exactly(self):
        original = self.repo.get_active_weights()
        strategy = _make_weight_strategy()
        await self.executor.execute(strategy)
        await self.executor.rollback(strategy, reason="Performance degradation")

        restored = self.repo.get_active_weights()
        assert restored.weights() == original.weights()
        assert restored.version == 3
        assert restored.metadata["rolled_back_from"] == strategy.id

        result = self.repo.get_learning_result(RESULT_ID)
        assert result.performance.rolled_back is True
        assert result.performance.rollback_reason == "Performance degradation"
        assert [a["status"] for a in result.execution_log] == ["EXECUTED", "ROLLED_BACK"]

    @pytest.mark.asyncio
    async def test_rollback_without_matching_version_fails(self):
        with pytest.raises(DataIntegrityError, match="No weights found for rollback"):
            await self.executor.rollback(_make_weight_strategy())

    @pytest.mark.asyncio
    async def test_rollback_after_newer_adjustment_fails(self):
        first = _make_weight_strategy("opt_a_weights")
        second = _make_weight_strategy("opt_b_weights")
        await self.executor.execute(first)
        await self.executor.execute(second)

        with pytest.raises(DataIntegrityError):
            await self.executor.rollback(first)

    @pytest.mark.asyncio
    async def test_execute_without_active_weights_fails(self):
        repo = EngineRepository(db_path=":memory:")
        repo.save_learning_result(EngineLearningResult(id=RESULT_ID, created_at=datetime.utcnow()))
        executor = StrategyExecutor(repo)

        with pytest.raises(DataIntegrityError, match="No active weights found"):
            await executor.execute(_make_weight_strategy())

    @pytest.mark.asyncio
    async def test_concurrent_adjustments_serialize(self):
        strategies = [_make_weight_strategy(f"opt_{i}_weights") for i in range(3)]
        await asyncio.gather(*(self.executor.execute(s) for s in strategies))

        active = self.repo.get_active_weights()
        assert active.version == 4
        assert sum(1 for w in self.repo.list_weights() if w.active) == 1


class TestExecutionGuards:
    def setup_method(self):
        self.repo = EngineRepository(db_path=":memory:")
        self.repo.create_weights(_make_weights())
        self.repo.save_learning_result(
            EngineLearningResult(id=RESULT_ID, created_at=datetime.utcnow())
        )

    @pytest.mark.asyncio
    async def test_high_risk_rejected_without_writes(self):
        executor = StrategyExecutor(self.repo, risk_tolerance=lambda: "low")
        strategy = _make_weight_strategy(risk_level=RiskLevel.HIGH)

        with pytest.raises(RiskRejectedError):
            await executor.execute(strategy)

        assert len(self.repo.list_weights()) == 1
        assert self.repo.get_learning_result(RESULT_ID).execution_log == []

    @pytest.mark.asyncio
    async def test_medium_tolerance_admits_high_risk(self):
        executor = StrategyExecutor(self.repo, risk_tolerance=lambda: "medium")
        await executor.execute(_make_weight_strategy(risk_level=RiskLevel.HIGH))
        assert self.repo.get_active_weights().version == 2

    @pytest.mark.asyncio
    async def test_unowned_strategy_rejected(self):
        executor = StrategyExecutor(self.repo)
        strategy = _make_weight_strategy().bind_result("result_missing")

        with pytest.raises(DataIntegrityError):
            await executor.execute(strategy)
        assert len(self.repo.list_weights()) == 1


class TestConfigRuleStrategies:
    def setup_method(self):
        self.repo = EngineRepository(db_path=":memory:")
        self.repo.save_learning_result(
            EngineLearningResult(id=RESULT_ID, created_at=datetime.utcnow())
        )
        self.executor = StrategyExecutor(self.repo)

    @pytest.mark.asyncio
    async def test_cache_rules_preserved_per_search_pattern(self):
        await self.executor.execute(_make_cache_strategy("product"))
        await self.executor.execute(_make_cache_strategy("category"))

        rules = self.repo.get_config("cacheRules").value
        assert set(rules) == {"product", "category"}
        assert rules["product"]["ttl"] == 3600
        assert rules["product"]["max_size"] == 1000

    @pytest.mark.asyncio
    async def test_rollback_removes_only_own_rule(self):
        product = _make_cache_strategy("product")
        await self.executor.execute(product)
        await self.executor.execute(_make_cache_strategy("category"))
        await self.executor.rollback(product)

        assert set(self.repo.get_config("cacheRules").value) == {"category"}

    @pytest.mark.asyncio
    async def test_rollback_keeps_rule_replaced_by_later_strategy(self, caplog):
        first = _make_cache_strategy("web", strategy_id="opt_a_cache")
        second = _make_cache_strategy("web", strategy_id="opt_b_cache")
        await self.executor.execute(first)
        await self.executor.execute(second)

        with caplog.at_level(logging.WARNING):
            annotation = await self.executor.rollback(first)

        assert annotation["details"]["removed"] is False
        assert self.repo.get_config("cacheRules").value["web"]["strategy_id"] == "opt_b_cache"
        assert "belongs to opt_b_cache" in caplog.text

        await self.executor.rollback(second)
        assert self.repo.get_config("cacheRules").value == {}

    def test_scope_is_per_search_pattern(self):
        assert self.executor.scope_for(_make_cache_strategy("web")) == "cacheRules:web"
        assert self.executor.scope_for(_make_weight_strategy()) == "searchWeights"

    @pytest.mark.asyncio
    async def test_rollback_of_missing_rule_warns(self, caplog):
        with caplog.at_level(logging.WARNING):
            annotation = await self.executor.rollback(_make_cache_strategy("product"))
        assert annotation["details"]["removed"] is False
        assert "No cacheRules rule" in caplog.text

    @pytest.mark.asyncio
    async def test_index_optimization_writes_index_configuration(self):
        executor = StrategyExecutor(self.repo, risk_tolerance=lambda: "low")
        strategy = IndexOptimizationStrategy(
            id="opt_p1_index",
            priority=0.7,
            confidence=0.8,
            impact=0.9,
            metadata=_make_metadata(RiskLevel.MEDIUM, 0.4, "product"),
        ).bind_result(RESULT_ID)
        await executor.execute(strategy)

        rule = self.repo.get_config("indexConfigurations").value["product"]
        assert rule["type"] == "BTREE"
        assert rule["fields"] == ["title", "content", "tags"]

    @pytest.mark.asyncio
    async def test_custom_handler(self):
        calls = []

        class RecordingHandler:
            def resource(self, strategy):
                return "custom"

            async def apply(self, strategy):
                calls.append(("apply", strategy.id))
                return {}

            async def revert(self, strategy):
                calls.append(("revert", strategy.id))
                return {}

        self.executor.register_handler(StrategyType.CACHE_STRATEGY, RecordingHandler())
        strategy = _make_cache_strategy("product")
        await self.executor.execute(strategy)
        await self.executor.rollback(strategy)

        assert calls == [("apply", strategy.id), ("revert", strategy.id)]
        assert self.repo.get_config("cacheRules") is None
        assert self.executor.scope_for(strategy) == "custom"
