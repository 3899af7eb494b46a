"""Optimization Strategy: a typed configuration change proposed from a pattern.

Strategies form a tagged union discriminated on ``type``. Each variant is
handled by exactly one executor handler, so adding a strategy type means
adding a variant here and a handler in the execution layer.
"""

from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from tuning_kernel.models.pattern import clamp_unit


class StrategyType(str, Enum):
    WEIGHT_ADJUSTMENT = "WEIGHT_ADJUSTMENT"
    QUERY_TRANSFORMATION = "QUERY_TRANSFORMATION"
    INDEX_OPTIMIZATION = "INDEX_OPTIMIZATION"
    CACHE_STRATEGY = "CACHE_STRATEGY"
    FEEDBACK_LOOP = "FEEDBACK_LOOP"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class StrategyMetadata(BaseModel):
    """What a strategy targets and how risky it is."""

    model_config = ConfigDict(frozen=True)

    target_metrics: List[str]               # e.g. ["RELEVANCE_SCORE", "SEARCH_LATENCY"]
    expected_improvement: float
    risk_level: RiskLevel
    dependencies: List[str] = []
    search_pattern: Optional[str] = None


class _BaseStrategy(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    priority: float
    confidence: float
    impact: float                           # Expected weighted benefit
    metadata: StrategyMetadata
    learning_result_id: Optional[str] = None
    result_id: str = ""
    source_pattern_id: Optional[str] = None

    @field_validator("priority", "confidence", "impact", mode="before")
    @classmethod
    def _clamp_scores(cls, value):
        return clamp_unit(value)

    @property
    def risk_level(self) -> RiskLevel:
        return self.metadata.risk_level

    @property
    def search_pattern(self) -> str:
        """Configuration scope for rule-based strategies."""
        return self.metadata.search_pattern or self.source_pattern_id or self.id

    def bind_result(self, learning_result_id: str):
        """Return a copy owned by the given learning result."""
        return self.model_copy(
            update={"learning_result_id": learning_result_id, "result_id": learning_result_id}
        )


class WeightAdjustmentStrategy(_BaseStrategy):
    type: Literal[StrategyType.WEIGHT_ADJUSTMENT] = StrategyType.WEIGHT_ADJUSTMENT


class QueryTransformationStrategy(_BaseStrategy):
    type: Literal[StrategyType.QUERY_TRANSFORMATION] = StrategyType.QUERY_TRANSFORMATION


class IndexOptimizationStrategy(_BaseStrategy):
    type: Literal[StrategyType.INDEX_OPTIMIZATION] = StrategyType.INDEX_OPTIMIZATION


class CacheStrategy(_BaseStrategy):
    type: Literal[StrategyType.CACHE_STRATEGY] = StrategyType.CACHE_STRATEGY


class FeedbackLoopStrategy(_BaseStrategy):
    type: Literal[StrategyType.FEEDBACK_LOOP] = StrategyType.FEEDBACK_LOOP


OptimizationStrategy = Annotated[
    Union[
        WeightAdjustmentStrategy,
        QueryTransformationStrategy,
        IndexOptimizationStrategy,
        CacheStrategy,
        FeedbackLoopStrategy,
    ],
    Field(discriminator="type"),
]

STRATEGY_ADAPTER = TypeAdapter(OptimizationStrategy)

STRATEGY_VARIANTS = {
    StrategyType.WEIGHT_ADJUSTMENT: WeightAdjustmentStrategy,
    StrategyType.QUERY_TRANSFORMATION: QueryTransformationStrategy,
    StrategyType.INDEX_OPTIMIZATION: IndexOptimizationStrategy,
    StrategyType.CACHE_STRATEGY: CacheStrategy,
    StrategyType.FEEDBACK_LOOP: FeedbackLoopStrategy,
}


def parse_strategy(data: dict):
    """Validate a serialized strategy into its concrete variant."""
    return STRATEGY_ADAPTER.validate_python(data)
