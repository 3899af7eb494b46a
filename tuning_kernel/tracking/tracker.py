"""
Operation Tracker: the engine-wide state machine plus per-activity
operation records.

Behavioral Contract:
- Holds the current EngineState snapshot; every change produces and
  persists a new snapshot (never mutates one)
- Operations start IN_PROGRESS and move one way to a terminal status
- While operations are in flight the engine status reflects the most
  recently started one; when the last completes the engine is READY
- A failed operation puts the engine in ERROR
"""

import logging
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

from tuning_kernel.errors import EngineNotInitializedError, OperationTransitionError
from tuning_kernel.models.config import EngineConfig
from tuning_kernel.models.engine import (
    EngineOperation,
    EngineOperationStatus,
    EngineOperationType,
    EngineState,
    EngineStatus,
)
from tuning_kernel.store.repository import EngineRepository

logger = logging.getLogger(__name__)

# Engine status while an operation of each type is running
_STATUS_FOR_OPERATION = {
    EngineOperationType.LEARNING: EngineStatus.LEARNING,
    EngineOperationType.PATTERN_DETECTION: EngineStatus.LEARNING,
    EngineOperationType.OPTIMIZATION: EngineStatus.OPTIMIZING,
    EngineOperationType.VALIDATION: EngineStatus.OPTIMIZING,
    EngineOperationType.ROLLBACK: EngineStatus.OPTIMIZING,
}


class OperationTracker:
    """Tracks engine state and operations through the repository."""

    def __init__(self, repository: EngineRepository, config: Optional[EngineConfig] = None):
        self.repository = repository
        self.config = config or EngineConfig()
        self._state: Optional[EngineState] = None
        self._active: "OrderedDict[str, EngineOperation]" = OrderedDict()

    def initialize(self) -> EngineState:
        """Load the current engine state, or create the first one."""
        state = self.repository.get_current_engine_state()
        if state is None:
            state = EngineState(
                id=f"engine_{uuid4().hex[:12]}",
                status=EngineStatus.INITIALIZING,
                last_active=datetime.utcnow(),
                metadata={"risk_tolerance": self.config.risk_tolerance},
            )
            self.repository.save_engine_state(state)
            state = state.transition(EngineStatus.READY)
            logger.info("Created engine state %s", state.id)
        elif state.status in (EngineStatus.LEARNING, EngineStatus.OPTIMIZING):
            # A previous process died mid-operation
            logger.warning(
                "Engine state %s was left %s; resetting to READY",
                state.id, state.status.value,
            )
            state = state.transition(EngineStatus.READY)
        self._state = self.repository.save_engine_state(state)
        return self._state

    @property
    def state(self) -> EngineState:
        if self._state is None:
            raise EngineNotInitializedError("OperationTracker.initialize() has not been called")
        return self._state

    @property
    def active_operations(self) -> List[EngineOperation]:
        return list(self._active.values())

    def risk_tolerance(self) -> str:
        """Current engine risk tolerance; the configured one before initialization."""
        if self._state is None:
            return self.config.risk_tolerance
        return self._state.metadata.get("risk_tolerance", self.config.risk_tolerance)

    def transition_state(
        self,
        status: EngineStatus,
        current_phase: Optional[EngineOperationType] = None,
        confidence: Optional[float] = None,
        metadata: Optional[dict] = None,
    ) -> EngineState:
        """Persist and return the next engine state snapshot."""
        self._state = self.repository.save_engine_state(
            self.state.transition(status, current_phase, confidence, metadata)
        )
        return self._state

    def start_operation(
        self, operation_type: EngineOperationType, metadata: Optional[dict] = None
    ) -> EngineOperation:
        operation = EngineOperation(
            id=f"op_{uuid4().hex[:12]}",
            type=operation_type,
            start_time=datetime.utcnow(),
            metadata=metadata or {},
        ).transition(EngineOperationStatus.IN_PROGRESS)
        self.repository.save_operation(operation)
        self._active[operation.id] = operation

        self.transition_state(_STATUS_FOR_OPERATION[operation_type], current_phase=operation_type)
        logger.info("Started %s operation %s", operation_type.value, operation.id)
        return operation

    def start_learning_cycle(self) -> EngineOperation:
        return self.start_operation(EngineOperationType.LEARNING)

    def _finish(
        self,
        operation_id: str,
        status: EngineOperationStatus,
        metrics: Optional[Dict[str, float]] = None,
        error: Optional[str] = None,
    ) -> EngineOperation:
        operation = self._active.pop(operation_id, None) or self.repository.get_operation(operation_id)
        if operation is None:
            raise OperationTransitionError(f"Unknown operation: {operation_id}")
        operation = operation.transition(status, metrics=metrics, error=error)
        self.repository.save_operation(operation)
        return operation

    def _resume_state(self, confidence: Optional[float] = None) -> EngineState:
        """Reflect the most recently started in-flight operation, or READY."""
        if self._active:
            latest = next(reversed(self._active.values()))
            return self.transition_state(
                _STATUS_FOR_OPERATION[latest.type], current_phase=latest.type,
                confidence=confidence,
            )
        return self.transition_state(EngineStatus.READY, confidence=confidence)

    def complete_operation(
        self, operation_id: str, metrics: Optional[Dict[str, float]] = None
    ) -> EngineOperation:
        operation = self._finish(operation_id, EngineOperationStatus.COMPLETED, metrics=metrics)
        confidence = (metrics or {}).get("confidence") or None
        self._resume_state(confidence=confidence)
        logger.info(
            "Completed %s operation %s", operation.type.value, operation.id,
            extra={"metrics": operation.metrics},
        )
        return operation

    def fail_operation(self, operation_id: str, error: str) -> EngineOperation:
        operation = self._finish(operation_id, EngineOperationStatus.FAILED, error=error)
        self.transition_state(EngineStatus.ERROR, metadata={"last_error": error})
        logger.error("Operation %s failed: %s", operation.id, error)
        return operation

    def cancel_operation(self, operation_id: str) -> EngineOperation:
        operation = self._finish(operation_id, EngineOperationStatus.CANCELLED)
        self._resume_state()
        logger.info("Cancelled operation %s", operation.id)
        return operation
