"""Learning Event: an observed signal ingested from the event stream."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from tuning_kernel.errors import EventTransitionError


class LearningEventType(str, Enum):
    SEARCH_PATTERN = "SEARCH_PATTERN"
    USER_FEEDBACK = "USER_FEEDBACK"
    MODEL_UPDATE = "MODEL_UPDATE"
    ADAPTATION_RULE = "ADAPTATION_RULE"
    SIGNAL_DETECTED = "SIGNAL_DETECTED"
    METRIC_THRESHOLD = "METRIC_THRESHOLD"
    SYSTEM_STATE = "SYSTEM_STATE"
    EXPERIMENT_RESULT = "EXPERIMENT_RESULT"


class LearningEventStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    IGNORED = "IGNORED"


class LearningEventPriority(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


TERMINAL_EVENT_STATUSES = frozenset({
    LearningEventStatus.COMPLETED,
    LearningEventStatus.FAILED,
    LearningEventStatus.IGNORED,
})

_ALLOWED_EVENT_TRANSITIONS = {
    LearningEventStatus.PENDING: {
        LearningEventStatus.PROCESSING,
        LearningEventStatus.IGNORED,
        LearningEventStatus.FAILED,
    },
    LearningEventStatus.PROCESSING: {
        LearningEventStatus.COMPLETED,
        LearningEventStatus.FAILED,
        LearningEventStatus.IGNORED,
    },
}


class LearningEvent(BaseModel):
    """A single search outcome, feedback signal or metric breach."""

    id: str
    type: LearningEventType
    status: LearningEventStatus = LearningEventStatus.PENDING
    priority: LearningEventPriority = LearningEventPriority.MEDIUM
    timestamp: datetime
    metadata: dict = {}                     # relevantHits, totalHits, took, latency, ...
    retry_count: int = Field(ge=0, default=0)
    correlation_id: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    client_id: Optional[str] = None
    tags: List[str] = []
    error: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EVENT_STATUSES

    def transition(
        self, status: LearningEventStatus, error: Optional[str] = None
    ) -> "LearningEvent":
        """Return a copy of this event moved to ``status``."""
        if self.is_terminal:
            raise EventTransitionError(
                f"Event {self.id} is {self.status.value} and cannot change"
            )
        if status not in _ALLOWED_EVENT_TRANSITIONS.get(self.status, set()):
            raise EventTransitionError(
                f"Event {self.id}: {self.status.value} -> {status.value} is not allowed"
            )
        now = datetime.utcnow()
        update = {"status": status, "updated_at": now}
        if status in TERMINAL_EVENT_STATUSES:
            update["processed_at"] = now
        if error is not None:
            update["error"] = error
        return self.model_copy(update=update)
