"""Variant experiments: A/B test configuration and outcome."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ExperimentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ABORTED = "ABORTED"


class VariantAnalysis(BaseModel):
    """Readings of one variant with their effective sample size and confidence."""

    metrics: Dict[str, float]               # latency, throughput, errorRate, cpuUsage, memoryUsage
    sample_size: int
    confidence: float = Field(ge=0.0, le=1.0)


class ABTestResults(BaseModel):
    winner: Optional[str] = None            # "control" | "treatment"; None when not significant
    improvement: float
    significance: float = Field(ge=0.0, le=1.0)
    control: VariantAnalysis
    treatment: VariantAnalysis


class ExperimentConfig(BaseModel):
    """
    A control/treatment split for one strategy. The treatment variant
    carries the strategy; traffic is split evenly.
    """

    id: str                                 # "ab_<strategy id>"
    strategy_id: str
    learning_result_id: Optional[str] = None
    variants: Dict[str, dict]
    metrics: List[str] = []                 # the strategy's target metrics
    duration_ms: int = Field(gt=0)
    minimum_sample_size: int = Field(gt=0)
    status: ExperimentStatus = ExperimentStatus.ACTIVE
    results: Optional[ABTestResults] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
