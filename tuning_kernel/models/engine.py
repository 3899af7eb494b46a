"""Engine State and Engine Operation: lifecycle records of the kernel."""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tuning_kernel.errors import OperationTransitionError
from tuning_kernel.models.pattern import clamp_unit


class EngineStatus(str, Enum):
    INITIALIZING = "INITIALIZING"
    READY = "READY"
    LEARNING = "LEARNING"
    OPTIMIZING = "OPTIMIZING"
    PAUSED = "PAUSED"
    ERROR = "ERROR"


class EngineOperationType(str, Enum):
    LEARNING = "LEARNING"
    OPTIMIZATION = "OPTIMIZATION"
    VALIDATION = "VALIDATION"
    ROLLBACK = "ROLLBACK"
    PATTERN_DETECTION = "PATTERN_DETECTION"


class EngineOperationStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_OPERATION_STATUSES = frozenset({
    EngineOperationStatus.COMPLETED,
    EngineOperationStatus.FAILED,
    EngineOperationStatus.CANCELLED,
})

_ALLOWED_OPERATION_TRANSITIONS = {
    EngineOperationStatus.PENDING: {
        EngineOperationStatus.IN_PROGRESS,
        EngineOperationStatus.COMPLETED,
        EngineOperationStatus.FAILED,
        EngineOperationStatus.CANCELLED,
    },
    EngineOperationStatus.IN_PROGRESS: set(TERMINAL_OPERATION_STATUSES),
}


class EngineState(BaseModel):
    """
    Snapshot of the engine. Never mutated in place: every transition
    produces a new snapshot which the tracker persists as the current one.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    status: EngineStatus
    current_phase: Optional[EngineOperationType] = None
    confidence: float = Field(ge=0.0, le=1.0, default=0.8)
    last_active: datetime
    metadata: dict = {}                     # includes "risk_tolerance"

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        return clamp_unit(value)

    @property
    def risk_tolerance(self) -> str:
        return str(self.metadata.get("risk_tolerance", "low")).lower()

    def transition(
        self,
        status: EngineStatus,
        current_phase: Optional[EngineOperationType] = None,
        confidence: Optional[float] = None,
        metadata: Optional[dict] = None,
    ) -> "EngineState":
        """Return the next snapshot. Metadata is merged, not replaced."""
        merged = dict(self.metadata)
        if metadata:
            merged.update(metadata)
        return self.model_copy(update={
            "status": status,
            "current_phase": current_phase,
            "confidence": clamp_unit(
                self.confidence if confidence is None else confidence
            ),
            "last_active": datetime.utcnow(),
            "metadata": merged,
        })


class EngineOperation(BaseModel):
    """A tracked unit of engine work."""

    id: str
    type: EngineOperationType
    status: EngineOperationStatus = EngineOperationStatus.PENDING
    start_time: datetime
    end_time: Optional[datetime] = None
    metrics: Dict[str, float] = {}
    metadata: dict = {}
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_OPERATION_STATUSES

    def transition(
        self,
        status: EngineOperationStatus,
        metrics: Optional[Dict[str, float]] = None,
        error: Optional[str] = None,
    ) -> "EngineOperation":
        """Return a copy moved to ``status``. Transitions are one-way."""
        if status not in _ALLOWED_OPERATION_TRANSITIONS.get(self.status, set()):
            raise OperationTransitionError(
                f"Operation {self.id}: {self.status.value} -> {status.value} is not allowed"
            )
        update: dict = {"status": status}
        if status in TERMINAL_OPERATION_STATUSES:
            update["end_time"] = datetime.utcnow()
        if metrics:
            update["metrics"] = {**self.metrics, **metrics}
        if error is not None:
            update["error"] = error
        return self.model_copy(update=update)
