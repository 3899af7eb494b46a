"""Learning Pattern: a detected regularity over a batch of events."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def clamp_unit(value: float) -> float:
    """Clamp a score into [0, 1]."""
    return max(0.0, min(1.0, float(value)))


class PatternMetrics(BaseModel):
    """Performance metrics observed alongside a pattern, where known."""

    model_config = ConfigDict(frozen=True)

    latency: Optional[float] = None
    throughput: Optional[float] = None
    error_rate: Optional[float] = None
    resource_utilization: Optional[float] = None


class LearningPattern(BaseModel):
    """Immutable output of a pattern detector."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: str                               # e.g. "high_relevance_search", "ANOMALY"
    confidence: float = Field(ge=0.0, le=1.0)
    features: dict = {}
    metrics: PatternMetrics = PatternMetrics()
    metadata: dict = {}                     # source, detected_at
    event_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        return clamp_unit(value)
