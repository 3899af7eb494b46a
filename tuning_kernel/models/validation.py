"""Validation models: metrics snapshots, projections and impact analyses."""

from datetime import datetime
from typing import Dict, Optional, Set

from pydantic import BaseModel, Field


class PerformanceMetrics(BaseModel):
    """A point-in-time read of the search service's health."""

    latency: float
    throughput: float
    error_rate: float
    resource_utilization: float


class ImpactMetrics(BaseModel):
    """
    Projected (or realized) relative improvement per metric.
    ``None`` marks a metric as inconclusive (zero or negative baseline).
    """

    latency_improvement: Optional[float] = None
    throughput_gain: Optional[float] = None
    error_rate_reduction: Optional[float] = None
    resource_optimization: Optional[float] = None

    def as_dict(self) -> Dict[str, Optional[float]]:
        return self.model_dump()


class ValidationContext(BaseModel):
    """In-flight validation window for one strategy. Never persisted."""

    strategy_id: str
    baseline_metrics: PerformanceMetrics
    projected_impact: ImpactMetrics
    validation_start_time: datetime
    sampled_queries: Set[str] = set()


class MetricSample(BaseModel):
    timestamp: datetime
    metrics: PerformanceMetrics


class ImpactAnalysis(BaseModel):
    """Load-adjusted, weighted before/after comparison."""

    weighted_improvement: float
    improvements: Dict[str, float]
    significance: float = Field(ge=0.0, le=1.0)
    confidence: float
    load_factor: float
    is_significant: bool
    value: float
