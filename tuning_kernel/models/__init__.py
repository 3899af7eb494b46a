"""Tuning Kernel data models."""

from tuning_kernel.models.config import EngineConfig
from tuning_kernel.models.engine import (
    EngineOperation,
    EngineOperationStatus,
    EngineOperationType,
    EngineState,
    EngineStatus,
)
from tuning_kernel.models.events import (
    LearningEvent,
    LearningEventPriority,
    LearningEventStatus,
    LearningEventType,
)
from tuning_kernel.models.experiment import (
    ABTestResults,
    ExperimentConfig,
    ExperimentStatus,
    VariantAnalysis,
)
from tuning_kernel.models.learning import EngineLearningResult, PerformanceRecord
from tuning_kernel.models.pattern import LearningPattern, PatternMetrics
from tuning_kernel.models.search_config import ConfigEntry, SearchWeights
from tuning_kernel.models.strategy import (
    CacheStrategy,
    FeedbackLoopStrategy,
    IndexOptimizationStrategy,
    OptimizationStrategy,
    QueryTransformationStrategy,
    RiskLevel,
    StrategyMetadata,
    StrategyType,
    WeightAdjustmentStrategy,
)
from tuning_kernel.models.validation import (
    ImpactAnalysis,
    ImpactMetrics,
    MetricSample,
    PerformanceMetrics,
    ValidationContext,
)

__all__ = [
    "ABTestResults",
    "CacheStrategy",
    "ConfigEntry",
    "EngineConfig",
    "EngineLearningResult",
    "EngineOperation",
    "EngineOperationStatus",
    "EngineOperationType",
    "EngineState",
    "EngineStatus",
    "ExperimentConfig",
    "ExperimentStatus",
    "FeedbackLoopStrategy",
    "ImpactAnalysis",
    "ImpactMetrics",
    "IndexOptimizationStrategy",
    "LearningEvent",
    "LearningEventPriority",
    "LearningEventStatus",
    "LearningEventType",
    "LearningPattern",
    "MetricSample",
    "OptimizationStrategy",
    "PatternMetrics",
    "PerformanceMetrics",
    "PerformanceRecord",
    "QueryTransformationStrategy",
    "RiskLevel",
    "SearchWeights",
    "StrategyMetadata",
    "StrategyType",
    "ValidationContext",
    "VariantAnalysis",
    "WeightAdjustmentStrategy",
]
