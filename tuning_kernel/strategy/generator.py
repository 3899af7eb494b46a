"""
Strategy Generator: maps a detected pattern to candidate strategies.

Generation is rule-based: each rule looks at one pattern and returns zero
or one strategy. Rules for a pattern type are evaluated in registration
order, so the output order is stable. Unclassified pattern types produce
no strategies.
"""

from typing import Callable, Dict, List, Optional, Protocol

from tuning_kernel.models.pattern import LearningPattern
from tuning_kernel.models.strategy import (
    CacheStrategy,
    IndexOptimizationStrategy,
    QueryTransformationStrategy,
    RiskLevel,
    StrategyMetadata,
    WeightAdjustmentStrategy,
)

FAST_QUERY_MS = 100
SLOW_QUERY_MS = 500
LARGE_RESULT_SET = 1000

StrategyRule = Callable[[LearningPattern], Optional[object]]


class StrategyGenerator(Protocol):
    """Anything that turns one pattern into candidate strategies."""

    def generate(self, pattern: LearningPattern) -> list: ...


def _number(features: dict, key: str) -> Optional[float]:
    value = features.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


class RuleBasedStrategyGenerator:
    """
    Deterministic strategy generator.
    Rules are keyed by pattern type; ``register_rule`` adds one.
    """

    def __init__(self):
        self._rules: Dict[str, List[StrategyRule]] = {}
        self._register_default_rules()

    def _register_default_rules(self) -> None:
        """Register default strategy generation rules."""
        self._rules["high_relevance_search"] = [
            self._rule_weight_adjustment,
            self._rule_query_transformation,
            self._rule_index_optimization,
            self._rule_cache_strategy,
        ]

    def register_rule(self, pattern_type: str, rule: StrategyRule) -> None:
        """Register a custom rule for a pattern type."""
        self._rules.setdefault(pattern_type, []).append(rule)

    def generate(self, pattern: LearningPattern) -> list:
        """Generate the strategies a pattern supports."""
        strategies = []
        for rule in self._rules.get(pattern.type, []):
            strategy = rule(pattern)
            if strategy is not None:
                strategies.append(strategy)
        return strategies

    def _search_pattern(self, pattern: LearningPattern) -> str:
        search_type = pattern.features.get("searchType")
        return str(search_type) if search_type else pattern.id

    def _rule_weight_adjustment(self, pattern: LearningPattern) -> WeightAdjustmentStrategy:
        """Always re-weight ranking fields for highly relevant searches."""
        return WeightAdjustmentStrategy(
            id=f"opt_{pattern.id}_weights",
            priority=pattern.confidence,
            confidence=pattern.confidence,
            impact=pattern.confidence,
            metadata=StrategyMetadata(
                target_metrics=["RELEVANCE_SCORE", "SEARCH_LATENCY"],
                expected_improvement=0.15,
                risk_level=RiskLevel.LOW,
                search_pattern=self._search_pattern(pattern),
            ),
            source_pattern_id=pattern.id,
        )

    def _rule_query_transformation(
        self, pattern: LearningPattern
    ) -> Optional[QueryTransformationStrategy]:
        """Fast queries can afford richer query rewriting."""
        took = _number(pattern.features, "took")
        if took is None or took >= FAST_QUERY_MS:
            return None
        return QueryTransformationStrategy(
            id=f"opt_{pattern.id}_query",
            priority=pattern.confidence * 0.95,
            confidence=pattern.confidence,
            impact=0.7,
            metadata=StrategyMetadata(
                target_metrics=["SEARCH_LATENCY", "RELEVANCE_SCORE"],
                expected_improvement=0.2,
                risk_level=RiskLevel.LOW,
                search_pattern=self._search_pattern(pattern),
            ),
            source_pattern_id=pattern.id,
        )

    def _rule_index_optimization(
        self, pattern: LearningPattern
    ) -> Optional[IndexOptimizationStrategy]:
        """Slow queries point at the index."""
        took = _number(pattern.features, "took")
        if took is None or took <= SLOW_QUERY_MS:
            return None
        return IndexOptimizationStrategy(
            id=f"opt_{pattern.id}_index",
            priority=pattern.confidence * 0.85,
            confidence=pattern.confidence * 0.9,
            impact=0.9,
            metadata=StrategyMetadata(
                target_metrics=["SEARCH_LATENCY"],
                expected_improvement=0.4,
                risk_level=RiskLevel.MEDIUM,
                search_pattern=self._search_pattern(pattern),
            ),
            source_pattern_id=pattern.id,
        )

    def _rule_cache_strategy(self, pattern: LearningPattern) -> Optional[CacheStrategy]:
        """Large result sets are worth caching."""
        total_hits = _number(pattern.features, "totalHits")
        if total_hits is None or total_hits <= LARGE_RESULT_SET:
            return None
        return CacheStrategy(
            id=f"opt_{pattern.id}_cache",
            priority=pattern.confidence * 0.9,
            confidence=pattern.confidence,
            impact=0.6,
            metadata=StrategyMetadata(
                target_metrics=["SEARCH_LATENCY"],
                expected_improvement=0.3,
                risk_level=RiskLevel.LOW,
                search_pattern=self._search_pattern(pattern),
            ),
            source_pattern_id=pattern.id,
        )
