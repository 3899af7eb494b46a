"""
Impact Validator: statistical before/after judgement of applied strategies.

Three analyses live here:
- Projection: how much a pattern *should* improve each health metric,
  scaled by pattern strength and the pattern type's historical success
  rate. ``validate_impact`` waits out the validation window and requires
  the realized improvement to reach a fraction of that projection.
- Strategy impact: a load-adjusted weighted comparison of two metric
  snapshots with a pseudo p-value and a confidence interval.
- Variant comparison: control against treatment readings of an A/B test,
  with the sample size and duration such a test needs.

A zero or negative baseline never divides: that metric is inconclusive
and skipped.
"""

import asyncio
import logging
import math
from datetime import datetime
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from tuning_kernel.metrics.collector import MetricsAdapter
from tuning_kernel.models.config import EngineConfig
from tuning_kernel.models.experiment import ABTestResults, VariantAnalysis
from tuning_kernel.models.pattern import LearningPattern, PatternMetrics, clamp_unit
from tuning_kernel.models.validation import (
    ImpactAnalysis,
    ImpactMetrics,
    PerformanceMetrics,
    ValidationContext,
)

logger = logging.getLogger(__name__)

HISTORICAL_SUCCESS_RATES: Dict[str, float] = {
    "high_relevance_search": 0.85,
    "performance_optimization": 0.75,
    "cache_hit_pattern": 0.9,
    "index_usage_pattern": 0.8,
}
DEFAULT_SUCCESS_RATE = 0.7

# Projected improvement when a pattern declares no metric
DEFAULT_PROJECTION = ImpactMetrics(
    latency_improvement=0.1,
    throughput_gain=0.15,
    error_rate_reduction=0.05,
    resource_optimization=0.2,
)

METRIC_WEIGHTS: Dict[str, float] = {
    "latency": 0.4,
    "throughput": 0.3,
    "errorRate": 0.2,
    "cpuUsage": 0.05,
    "memoryUsage": 0.05,
}

SIGNIFICANCE_THRESHOLD = 0.95

# Variant experiments
BASE_SAMPLE_SIZE = 1000
VARIANT_SAMPLES_PER_METRIC = 100
DAY_MS = 24 * 60 * 60 * 1000
STRENGTH_FLOOR = 1e-6


def _number(value) -> Optional[float]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


def _relative_change(
    baseline: float, observed: float, higher_is_better: bool
) -> Optional[float]:
    """Relative improvement of ``observed`` over ``baseline``; None if inconclusive."""
    if baseline <= 0:
        return None
    if higher_is_better:
        return (observed - baseline) / baseline
    return (baseline - observed) / baseline


class ImpactValidator:
    """
    Validates strategies over a time window.

    In-flight validations are tracked in ``validation_queue`` for
    observability only.
    """

    def __init__(self, metrics: MetricsAdapter, config: Optional[EngineConfig] = None):
        self.metrics = metrics
        self.config = config or EngineConfig()
        self._contexts: Dict[str, ValidationContext] = {}

    @property
    def validation_queue(self) -> Mapping[str, ValidationContext]:
        return MappingProxyType(self._contexts)

    def open_window(
        self,
        strategy_id: str,
        baseline: PerformanceMetrics,
        projected: ImpactMetrics,
    ) -> ValidationContext:
        context = ValidationContext(
            strategy_id=strategy_id,
            baseline_metrics=baseline,
            projected_impact=projected,
            validation_start_time=datetime.utcnow(),
        )
        self._contexts[strategy_id] = context
        return context

    def close_window(self, strategy_id: str) -> None:
        self._contexts.pop(strategy_id, None)

    # --- Projection ---

    def calculate_pattern_strength(self, pattern: LearningPattern) -> float:
        """Product of confidence and three feature factors, in (0, 1]."""
        features = pattern.features
        relevant = _number(features.get("relevantHits"))
        total = _number(features.get("totalHits"))
        took = _number(features.get("took"))

        factors = [
            pattern.confidence,
            min(relevant / 1000, 1) if relevant is not None else 0.5,
            min(total / 10000, 1) if total is not None else 0.5,
            (1.0 if took <= 0 else min(1000 / took, 1)) if took is not None else 0.5,
        ]
        strength = 1.0
        for factor in factors:
            strength *= max(clamp_unit(factor), STRENGTH_FLOOR)
        return strength

    def historical_success_rate(self, pattern_type: str) -> float:
        return HISTORICAL_SUCCESS_RATES.get(pattern_type, DEFAULT_SUCCESS_RATE)

    def confidence_multiplier(self, pattern: LearningPattern) -> float:
        return min(
            self.calculate_pattern_strength(pattern)
            * self.historical_success_rate(pattern.type),
            1.0,
        )

    def calculate_projected_impact(
        self, pattern: LearningPattern, baseline: PerformanceMetrics
    ) -> ImpactMetrics:
        return self._project(pattern.metrics, baseline, self.confidence_multiplier(pattern))

    def project_for_strategy(
        self,
        strategy,
        baseline: PerformanceMetrics,
        pattern: Optional[LearningPattern] = None,
    ) -> ImpactMetrics:
        """Projection from the source pattern, or from the strategy's confidence alone."""
        if pattern is not None:
            return self.calculate_projected_impact(pattern, baseline)
        multiplier = min(strategy.confidence * DEFAULT_SUCCESS_RATE, 1.0)
        return self._project(PatternMetrics(), baseline, multiplier)

    def _project(
        self,
        declared: PatternMetrics,
        baseline: PerformanceMetrics,
        multiplier: float,
    ) -> ImpactMetrics:
        def projected(base, observed, default, higher_is_better):
            if base <= 0:
                return None
            if not observed:
                return default * multiplier
            return _relative_change(base, observed, higher_is_better) * multiplier

        return ImpactMetrics(
            latency_improvement=projected(
                baseline.latency, declared.latency,
                DEFAULT_PROJECTION.latency_improvement, False,
            ),
            throughput_gain=projected(
                baseline.throughput, declared.throughput,
                DEFAULT_PROJECTION.throughput_gain, True,
            ),
            error_rate_reduction=projected(
                baseline.error_rate, declared.error_rate,
                DEFAULT_PROJECTION.error_rate_reduction, False,
            ),
            resource_optimization=projected(
                baseline.resource_utilization, declared.resource_utilization,
                DEFAULT_PROJECTION.resource_optimization, False,
            ),
        )

    def realized_impact(
        self, baseline: PerformanceMetrics, current: PerformanceMetrics
    ) -> ImpactMetrics:
        return ImpactMetrics(
            latency_improvement=_relative_change(baseline.latency, current.latency, False),
            throughput_gain=_relative_change(baseline.throughput, current.throughput, True),
            error_rate_reduction=_relative_change(baseline.error_rate, current.error_rate, False),
            resource_optimization=_relative_change(
                baseline.resource_utilization, current.resource_utilization, False
            ),
        )

    def meets_projection(self, projected: ImpactMetrics, realized: ImpactMetrics) -> bool:
        """Every conclusive metric must realize the configured share of its projection."""
        ratio = self.config.realized_ratio_threshold
        realized_values = realized.as_dict()
        for name, expected in projected.as_dict().items():
            actual = realized_values.get(name)
            if expected is None or actual is None:
                continue
            if actual < expected * ratio:
                return False
        return True

    async def validate_impact(
        self,
        strategy,
        pattern: Optional[LearningPattern] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> bool:
        """
        Hold a validation window open for the strategy and judge the
        realized improvement. Returns False if the window is abandoned
        through ``stop_event``.
        """
        baseline = await self.metrics.collect_current_metrics()
        projected = self.project_for_strategy(strategy, baseline, pattern)
        self.open_window(strategy.id, baseline, projected)
        try:
            window = self.config.validation_window_ms / 1000.0
            if stop_event is None:
                await asyncio.sleep(window)
            else:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=window)
                    logger.info("Validation of %s abandoned", strategy.id)
                    return False
                except asyncio.TimeoutError:
                    pass

            current = await self.metrics.collect_current_metrics()
            realized = self.realized_impact(baseline, current)
            valid = self.meets_projection(projected, realized)
            logger.info(
                "Validation of %s: %s", strategy.id, "passed" if valid else "failed",
                extra={"projected": projected.as_dict(), "realized": realized.as_dict()},
            )
            return valid
        finally:
            self.close_window(strategy.id)

    # --- Strategy impact ---

    async def calculate_load_factor(self) -> float:
        current = await self.metrics.get_current_load()
        baseline = await self.metrics.get_baseline_load()
        if not baseline:
            return 1.0
        return current / baseline

    def calculate_strategy_impact(
        self,
        before: Dict[str, float],
        after: Dict[str, float],
        load_factor: Optional[float] = None,
    ) -> ImpactAnalysis:
        """Load-adjusted weighted improvement of ``after`` over ``before``."""
        if load_factor is None:
            load_factor = 1.0

        improvements: Dict[str, float] = {}
        weighted = 0.0
        for metric, weight in METRIC_WEIGHTS.items():
            base = _number(before.get(metric))
            observed = _number(after.get(metric))
            if base is None or observed is None or base <= 0:
                continue
            adjusted = (observed - base) / base * load_factor
            improvements[metric] = adjusted
            weighted += adjusted * weight

        significance = self.calculate_statistical_significance(before, after)
        return ImpactAnalysis(
            weighted_improvement=weighted,
            improvements=improvements,
            significance=significance,
            confidence=self.calculate_confidence_interval(list(improvements.values())),
            load_factor=load_factor,
            is_significant=significance > SIGNIFICANCE_THRESHOLD,
            value=weighted,
        )

    async def analyze_strategy_impact(
        self, before: Dict[str, float], after: Dict[str, float]
    ) -> ImpactAnalysis:
        """``calculate_strategy_impact`` with the current load factor."""
        return self.calculate_strategy_impact(
            before, after, await self.calculate_load_factor()
        )

    def calculate_statistical_significance(
        self, before: Dict[str, float], after: Dict[str, float]
    ) -> float:
        """Pseudo p-value ``1 / (1 + e^(t - ln n))`` over per-metric differences."""
        differences = []
        for key, base in before.items():
            base = _number(base)
            observed = _number(after.get(key))
            if base is not None and observed is not None:
                differences.append(observed - base)

        n = len(differences)
        if n < 2:
            return 0.0
        mean = sum(differences) / n
        sd = math.sqrt(sum((d - mean) ** 2 for d in differences) / (n - 1))
        if sd == 0:
            t_score = math.inf if mean != 0 else 0.0
        else:
            t_score = abs(mean / (sd / math.sqrt(n)))

        exponent = t_score - math.log(n)
        if exponent > 700:
            return 0.0
        return clamp_unit(1 / (1 + math.exp(exponent)))

    def calculate_confidence_interval(self, improvements: List[float]) -> float:
        """``1 - 1.96 * sd / sqrt(n)``, clamped to [0, 1]."""
        n = len(improvements)
        if n < 2:
            return 0.0
        mean = sum(improvements) / n
        sd = math.sqrt(sum((v - mean) ** 2 for v in improvements) / (n - 1))
        return clamp_unit(1 - 1.96 * sd / math.sqrt(n))

    # --- Variant experiments ---

    async def calculate_required_sample_size(self) -> int:
        """The base sample grown by the metric's coefficient of variation."""
        variability = await self.metrics.get_metric_variability()
        return math.ceil(BASE_SAMPLE_SIZE * (1 + variability))

    async def calculate_optimal_test_duration(self) -> int:
        """
        Milliseconds of traffic needed to reach the required sample size,
        with the traffic volume given per day. Without traffic the test runs
        for one day.
        """
        traffic = await self.metrics.get_average_traffic_volume()
        sample_size = await self.calculate_required_sample_size()
        if traffic <= 0:
            return DAY_MS
        return math.ceil(sample_size / traffic * DAY_MS)

    def calculate_variant_confidence(self, metrics: Dict[str, float]) -> float:
        """One minus the mean absolute deviation of the readings, clamped to [0, 1]."""
        values = [v for v in (_number(v) for v in metrics.values()) if v is not None]
        if not values:
            return 0.0
        mean = sum(values) / len(values)
        deviation = sum(abs(v - mean) for v in values) / len(values)
        return clamp_unit(1 - deviation)

    def analyze_variant(self, metrics: Dict[str, float]) -> VariantAnalysis:
        return VariantAnalysis(
            metrics=metrics,
            sample_size=len(metrics) * VARIANT_SAMPLES_PER_METRIC,
            confidence=self.calculate_variant_confidence(metrics),
        )

    def determine_winner(
        self, control: VariantAnalysis, treatment: VariantAnalysis, significance: float
    ) -> Optional[str]:
        """No winner below the significance threshold; otherwise lower latency wins."""
        if significance < SIGNIFICANCE_THRESHOLD:
            return None
        if treatment.metrics.get("latency", math.inf) < control.metrics.get("latency", math.inf):
            return "treatment"
        return "control"

    def calculate_net_improvement(
        self, control: VariantAnalysis, treatment: VariantAnalysis
    ) -> float:
        """Mean relative change of treatment over control; non-positive controls are skipped."""
        changes = []
        for metric, base in control.metrics.items():
            base = _number(base)
            observed = _number(treatment.metrics.get(metric))
            if base is None or observed is None or base <= 0:
                continue
            changes.append((observed - base) / base)
        return sum(changes) / len(changes) if changes else 0.0

    def compare_variants(
        self, control_metrics: Dict[str, float], treatment_metrics: Dict[str, float]
    ) -> ABTestResults:
        control = self.analyze_variant(control_metrics)
        treatment = self.analyze_variant(treatment_metrics)
        significance = self.calculate_statistical_significance(control_metrics, treatment_metrics)
        return ABTestResults(
            winner=self.determine_winner(control, treatment, significance),
            improvement=self.calculate_net_improvement(control, treatment),
            significance=significance,
            control=control,
            treatment=treatment,
        )

    # --- Pattern correlation ---

    def calculate_pattern_correlation(self, p1: LearningPattern, p2: LearningPattern) -> float:
        """
        Mean closeness ``1 - |a - b| / max(a, b)`` over the metrics both
        patterns declare. Two zero readings count as identical; a negative
        maximum is skipped. 0 when the patterns share no metric.
        """
        first = p1.metrics.model_dump(exclude_none=True)
        second = p2.metrics.model_dump(exclude_none=True)
        scores = []
        for metric in first.keys() & second.keys():
            a, b = first[metric], second[metric]
            largest = max(a, b)
            if largest == 0 and a == b:
                scores.append(1.0)
            elif largest > 0:
                scores.append(1 - abs(a - b) / largest)
        return sum(scores) / len(scores) if scores else 0.0
