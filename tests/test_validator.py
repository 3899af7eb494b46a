"""Tests for the Impact Validator."""

import asyncio
import math
from datetime import datetime

import pytest

from tuning_kernel.metrics.collector import MetricsAdapter, StaticMetricsSource
from tuning_kernel.models.config import EngineConfig
from tuning_kernel.models.pattern import LearningPattern, PatternMetrics
from tuning_kernel.models.strategy import CacheStrategy, RiskLevel, StrategyMetadata
from tuning_kernel.models.validation import ImpactMetrics, PerformanceMetrics
from tuning_kernel.validation.impact import ImpactValidator


def _make_pattern(
    pattern_type: str = "high_relevance_search",
    confidence: float = 0.9,
    metrics: PatternMetrics = None,
    **features,
) -> LearningPattern:
    now = datetime.utcnow()
    return LearningPattern(
        id="p1",
        type=pattern_type,
        confidence=confidence,
        features=features,
        metrics=metrics or PatternMetrics(),
        created_at=now,
        updated_at=now,
    )


def _make_strategy(strategy_id: str = "opt_1", confidence: float = 0.9) -> CacheStrategy:
    return CacheStrategy(
        id=strategy_id,
        priority=confidence,
        confidence=confidence,
        impact=0.6,
        metadata=StrategyMetadata(
            target_metrics=["SEARCH_LATENCY"],
            expected_improvement=0.3,
            risk_level=RiskLevel.LOW,
        ),
    )


def _make_baseline(**overrides) -> PerformanceMetrics:
    values = dict(latency=100.0, throughput=1000.0, error_rate=0.05, resource_utilization=0.5)
    values.update(overrides)
    return PerformanceMetrics(**values)


class TestPatternStrength:
    def setup_method(self):
        self.validator = ImpactValidator(MetricsAdapter(StaticMetricsSource()))

    def test_missing_features_use_neutral_factors(self):
        strength = self.validator.calculate_pattern_strength(_make_pattern(confidence=1.0))
        assert strength == pytest.approx(0.125)

    def test_strength_is_product_of_factors(self):
        pattern = _make_pattern(confidence=0.8, relevantHits=500, totalHits=10000, took=2000)
        strength = self.validator.calculate_pattern_strength(pattern)
        assert strength == pytest.approx(0.8 * 0.5 * 1.0 * 0.5)

    def test_zero_confidence_is_weakest(self):
        features = dict(relevantHits=500, totalHits=5000, took=100)
        zero = self.validator.calculate_pattern_strength(_make_pattern(confidence=0.0, **features))
        low = self.validator.calculate_pattern_strength(_make_pattern(confidence=0.1, **features))
        assert 0 < zero < low

    @pytest.mark.parametrize("features", [
        {"relevantHits": 0, "totalHits": 0, "took": 0},
        {"relevantHits": 10**6, "totalHits": 10**7, "took": 1},
        {"took": -5},
    ])
    def test_strength_stays_in_unit_interval(self, features):
        strength = self.validator.calculate_pattern_strength(_make_pattern(**features))
        assert 0 < strength <= 1

    def test_historical_success_rates(self):
        assert self.validator.historical_success_rate("cache_hit_pattern") == 0.9
        assert self.validator.historical_success_rate("ANOMALY") == 0.7


class TestProjectedImpact:
    def setup_method(self):
        self.validator = ImpactValidator(MetricsAdapter(StaticMetricsSource()))

    def test_declared_metrics_scaled_by_multiplier(self):
        pattern = _make_pattern(
            confidence=1.0,
            relevantHits=1000, totalHits=10000, took=100,
            metrics=PatternMetrics(latency=80.0, throughput=1200.0),
        )
        projected = self.validator.calculate_projected_impact(pattern, _make_baseline())

        # strength 1.0, historical rate 0.85
        assert projected.latency_improvement == pytest.approx(0.2 * 0.85)
        assert projected.throughput_gain == pytest.approx(0.2 * 0.85)
        assert projected.error_rate_reduction == pytest.approx(0.05 * 0.85)
        assert projected.resource_optimization == pytest.approx(0.2 * 0.85)

    def test_zero_baseline_is_inconclusive(self):
        pattern = _make_pattern(metrics=PatternMetrics(error_rate=0.01))
        projected = self.validator.calculate_projected_impact(
            pattern, _make_baseline(error_rate=0.0)
        )
        assert projected.error_rate_reduction is None
        assert projected.latency_improvement is not None

    def test_strategy_without_pattern_uses_confidence(self):
        projected = self.validator.project_for_strategy(_make_strategy(confidence=1.0), _make_baseline())
        assert projected.latency_improvement == pytest.approx(0.1 * 0.7)


class TestRealizedImpact:
    def setup_method(self):
        self.validator = ImpactValidator(MetricsAdapter(StaticMetricsSource()), EngineConfig())

    def test_realized_directionality(self):
        realized = self.validator.realized_impact(
            _make_baseline(),
            _make_baseline(latency=80.0, throughput=1100.0, error_rate=0.04),
        )
        assert realized.latency_improvement == pytest.approx(0.2)
        assert realized.throughput_gain == pytest.approx(0.1)
        assert realized.error_rate_reduction == pytest.approx(0.2)
        assert realized.resource_optimization == pytest.approx(0.0)

    def test_meets_projection_uses_ratio(self):
        projected = ImpactMetrics(latency_improvement=0.2)
        assert self.validator.meets_projection(projected, ImpactMetrics(latency_improvement=0.14))
        assert not self.validator.meets_projection(projected, ImpactMetrics(latency_improvement=0.13))

    def test_inconclusive_metrics_are_skipped(self):
        projected = ImpactMetrics(latency_improvement=0.2, error_rate_reduction=None)
        realized = ImpactMetrics(latency_improvement=0.3, error_rate_reduction=-1.0)
        assert self.validator.meets_projection(projected, realized)


class TestValidateImpact:
    def setup_method(self):
        self.source = StaticMetricsSource()
        self.validator = ImpactValidator(
            MetricsAdapter(self.source), EngineConfig(validation_window_ms=50)
        )

    @pytest.mark.asyncio
    async def test_improvement_passes(self):
        self.source.queue("latency", [100.0, 50.0])
        self.source.queue("throughput", [1000.0, 2000.0])
        self.source.queue("error_rate", [0.05, 0.01])
        self.source.queue("cpu_usage", [0.5, 0.2])

        assert await self.validator.validate_impact(_make_strategy()) is True
        assert len(self.validator.validation_queue) == 0

    @pytest.mark.asyncio
    async def test_no_change_fails(self):
        assert await self.validator.validate_impact(_make_strategy()) is False

    @pytest.mark.asyncio
    async def test_concurrent_windows_tracked_separately(self):
        tasks = [
            asyncio.create_task(self.validator.validate_impact(_make_strategy(f"opt_{i}")))
            for i in range(3)
        ]
        await asyncio.sleep(0.01)
        assert set(self.validator.validation_queue) == {"opt_0", "opt_1", "opt_2"}

        await asyncio.gather(*tasks)
        assert len(self.validator.validation_queue) == 0

    @pytest.mark.asyncio
    async def test_stop_abandons_window(self):
        validator = ImpactValidator(
            MetricsAdapter(self.source), EngineConfig(validation_window_ms=60_000)
        )
        stop_event = asyncio.Event()
        task = asyncio.create_task(validator.validate_impact(_make_strategy(), stop_event=stop_event))
        await asyncio.sleep(0.01)
        stop_event.set()

        assert await asyncio.wait_for(task, timeout=1.0) is False
        assert len(validator.validation_queue) == 0

    def test_validation_queue_is_read_only(self):
        with pytest.raises(TypeError):
            self.validator.validation_queue["x"] = None


class TestStrategyImpact:
    def setup_method(self):
        self.source = StaticMetricsSource()
        self.validator = ImpactValidator(MetricsAdapter(self.source))

    def test_weighted_improvement(self):
        analysis = self.validator.calculate_strategy_impact(
            {"latency": 100, "throughput": 100, "errorRate": 0.1},
            {"latency": 120, "throughput": 80, "errorRate": 0.02},
            load_factor=1.0,
        )
        assert analysis.improvements["latency"] == pytest.approx(0.2)
        assert analysis.improvements["throughput"] == pytest.approx(-0.2)
        assert analysis.improvements["errorRate"] == pytest.approx(-0.8)
        assert analysis.weighted_improvement == pytest.approx(0.08 - 0.06 - 0.16)
        assert analysis.value == analysis.weighted_improvement

    def test_load_adjusted_search_improvement(self):
        analysis = self.validator.calculate_strategy_impact(
            {"latency": 100, "throughput": 1000, "errorRate": 0.05},
            {"latency": 80, "throughput": 1200, "errorRate": 0.03},
            load_factor=0.8,
        )
        # One decimal place of agreement
        assert analysis.improvements["latency"] == pytest.approx(-0.2, abs=0.05)
        assert analysis.improvements["throughput"] == pytest.approx(0.16, abs=0.05)
        assert analysis.improvements["errorRate"] == pytest.approx(-0.32, abs=0.05)
        assert analysis.load_factor == 0.8

    def test_zero_baseline_skipped(self):
        analysis = self.validator.calculate_strategy_impact(
            {"latency": 0, "throughput": 100}, {"latency": 50, "throughput": 110}
        )
        assert "latency" not in analysis.improvements
        assert analysis.improvements["throughput"] == pytest.approx(0.1)
        assert math.isfinite(analysis.weighted_improvement)

    def test_load_factor_scales_improvements(self):
        analysis = self.validator.calculate_strategy_impact(
            {"throughput": 100}, {"throughput": 110}, load_factor=2.0
        )
        assert analysis.improvements["throughput"] == pytest.approx(0.2)

    @pytest.mark.asyncio
    async def test_load_factor_from_metrics(self):
        self.source.set(current_load=3.0, baseline_load=2.0)
        assert await self.validator.calculate_load_factor() == pytest.approx(1.5)

        self.source.set(baseline_load=0.0)
        assert await self.validator.calculate_load_factor() == 1.0

    def test_significance_bounds(self):
        assert self.validator.calculate_statistical_significance({"a": 1}, {"a": 2}) == 0.0
        significance = self.validator.calculate_statistical_significance(
            {"a": 1, "b": 2, "c": 3}, {"a": 2, "b": 4, "c": 3.5}
        )
        assert 0.0 <= significance <= 1.0

    def test_identical_differences_give_zero_significance(self):
        significance = self.validator.calculate_statistical_significance(
            {"a": 1, "b": 2}, {"a": 2, "b": 3}
        )
        assert significance == 0.0

    def test_confidence_interval(self):
        assert self.validator.calculate_confidence_interval([0.1]) == 0.0
        assert self.validator.calculate_confidence_interval([0.1, 0.1, 0.1]) == pytest.approx(1.0)
        assert 0.0 <= self.validator.calculate_confidence_interval([-5.0, 5.0]) <= 1.0


class TestVariantAnalysis:
    def setup_method(self):
        self.source = StaticMetricsSource(metric_variability=0.1, traffic_volume=1000.0)
        self.validator = ImpactValidator(MetricsAdapter(self.source))

    @pytest.mark.asyncio
    async def test_required_sample_size_grows_with_variability(self):
        assert await self.validator.calculate_required_sample_size() == 1100

        self.source.set(metric_variability=0.0)
        assert await self.validator.calculate_required_sample_size() == 1000

    @pytest.mark.asyncio
    async def test_test_duration_from_daily_traffic(self):
        # 1100 samples at 1000 per day
        assert await self.validator.calculate_optimal_test_duration() == 95_040_000

    @pytest.mark.asyncio
    async def test_no_traffic_runs_one_day(self):
        self.source.set(traffic_volume=0.0)
        assert await self.validator.calculate_optimal_test_duration() == 86_400_000

    def test_variant_confidence_and_sample_size(self):
        analysis = self.validator.analyze_variant({"latency": 0.2, "errorRate": 0.4})
        assert analysis.sample_size == 200
        assert analysis.confidence == pytest.approx(0.9)

    def test_widely_spread_readings_have_no_confidence(self):
        analysis = self.validator.analyze_variant({"latency": 100.0, "throughput": 1000.0})
        assert analysis.confidence == 0.0

    def test_winner_requires_significance(self):
        control = self.validator.analyze_variant({"latency": 100.0})
        faster = self.validator.analyze_variant({"latency": 80.0})
        slower = self.validator.analyze_variant({"latency": 120.0})

        assert self.validator.determine_winner(control, faster, 0.9) is None
        assert self.validator.determine_winner(control, faster, 0.99) == "treatment"
        assert self.validator.determine_winner(control, slower, 0.99) == "control"

    def test_net_improvement_skips_non_positive_controls(self):
        control = self.validator.analyze_variant({"latency": 100.0, "throughput": 0.0})
        treatment = self.validator.analyze_variant({"latency": 80.0, "throughput": 10.0})
        assert self.validator.calculate_net_improvement(control, treatment) == pytest.approx(-0.2)

    def test_identical_variants_have_no_winner(self):
        readings = {
            "latency": 100.0, "throughput": 1000.0, "errorRate": 0.05,
            "cpuUsage": 0.5, "memoryUsage": 0.5,
        }
        results = self.validator.compare_variants(readings, dict(readings))

        assert results.significance == pytest.approx(5 / 6)
        assert results.winner is None
        assert results.improvement == 0.0
        assert results.control.sample_size == 500


class TestPatternCorrelation:
    def setup_method(self):
        self.validator = ImpactValidator(MetricsAdapter(StaticMetricsSource()))

    def test_common_metrics_only(self):
        first = _make_pattern(metrics=PatternMetrics(latency=100.0, throughput=1000.0))
        second = _make_pattern(metrics=PatternMetrics(latency=80.0, error_rate=0.1))
        assert self.validator.calculate_pattern_correlation(first, second) == pytest.approx(0.8)

    def test_no_common_metrics(self):
        first = _make_pattern(metrics=PatternMetrics(latency=100.0))
        second = _make_pattern(metrics=PatternMetrics(throughput=1000.0))
        assert self.validator.calculate_pattern_correlation(first, second) == 0.0

    def test_zero_readings_are_identical(self):
        first = _make_pattern(metrics=PatternMetrics(error_rate=0.0, latency=50.0))
        second = _make_pattern(metrics=PatternMetrics(error_rate=0.0, latency=50.0))
        assert self.validator.calculate_pattern_correlation(first, second) == pytest.approx(1.0)
