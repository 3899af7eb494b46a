"""Engine Learning Result: the durable record of one learning cycle."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from tuning_kernel.models.experiment import ABTestResults
from tuning_kernel.models.pattern import LearningPattern
from tuning_kernel.models.strategy import OptimizationStrategy


class PerformanceRecord(BaseModel):
    """Validated before/after comparison appended once a strategy is judged."""

    before_metrics: Dict[str, float] = {}
    after_metrics: Dict[str, float] = {}
    improvement: float = 0.0
    rolled_back: bool = False
    rollback_reason: Optional[str] = None
    status: Optional[str] = None            # "EXECUTED" | "VALIDATED" | "ROLLED_BACK" | "AB_TESTED"
    ab_test_results: Optional[ABTestResults] = None
    timestamp: datetime


class EngineLearningResult(BaseModel):
    """Patterns found, aggregate confidence and recommended strategies of a cycle."""

    id: str
    operation_id: Optional[str] = None
    patterns: List[LearningPattern] = []
    confidence: float = Field(ge=0.0, le=1.0, default=0.0)
    recommendations: List[OptimizationStrategy] = []
    metadata: dict = {}                     # event_count, executed_strategies, ...
    performance: Optional[PerformanceRecord] = None
    execution_log: List[dict] = []          # Executor annotations, append-only
    applied_at: Optional[datetime] = None
    validated_at: Optional[datetime] = None
    created_at: datetime
