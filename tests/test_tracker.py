"""Tests for the Operation Tracker."""

from datetime import datetime

import pytest

from tuning_kernel.errors import EngineNotInitializedError, OperationTransitionError
from tuning_kernel.models.config import EngineConfig
from tuning_kernel.models.engine import (
    EngineOperationStatus,
    EngineOperationType,
    EngineState,
    EngineStatus,
)
from tuning_kernel.store.repository import EngineRepository
from tuning_kernel.tracking.tracker import OperationTracker


class TestInitialization:
    def setup_method(self):
        self.repo = EngineRepository(db_path=":memory:")

    def test_state_unavailable_before_initialize(self):
        tracker = OperationTracker(self.repo)
        with pytest.raises(EngineNotInitializedError):
            tracker.state

    def test_first_start_creates_ready_state(self):
        tracker = OperationTracker(self.repo, EngineConfig(risk_tolerance="medium"))
        state = tracker.initialize()

        assert state.status == EngineStatus.READY
        assert state.metadata["risk_tolerance"] == "medium"
        assert tracker.risk_tolerance() == "medium"
        assert self.repo.get_current_engine_state().status == EngineStatus.READY

    def test_interrupted_state_reset_to_ready(self):
        self.repo.save_engine_state(EngineState(
            id="engine_1",
            status=EngineStatus.OPTIMIZING,
            last_active=datetime.utcnow(),
            metadata={"risk_tolerance": "low"},
        ))
        state = OperationTracker(self.repo).initialize()

        assert state.id == "engine_1"
        assert state.status == EngineStatus.READY

    def test_paused_state_kept(self):
        self.repo.save_engine_state(EngineState(
            id="engine_1", status=EngineStatus.PAUSED, last_active=datetime.utcnow(),
        ))
        assert OperationTracker(self.repo).initialize().status == EngineStatus.PAUSED


class TestOperations:
    def setup_method(self):
        self.repo = EngineRepository(db_path=":memory:")
        self.tracker = OperationTracker(self.repo)
        self.tracker.initialize()

    def test_learning_cycle_moves_engine_to_learning(self):
        operation = self.tracker.start_learning_cycle()

        assert operation.status == EngineOperationStatus.IN_PROGRESS
        assert self.tracker.state.status == EngineStatus.LEARNING
        assert self.tracker.state.current_phase == EngineOperationType.LEARNING

    def test_complete_returns_engine_to_ready(self):
        operation = self.tracker.start_operation(EngineOperationType.OPTIMIZATION)
        assert self.tracker.state.status == EngineStatus.OPTIMIZING

        done = self.tracker.complete_operation(operation.id, metrics={"confidence": 0.6})

        assert done.status == EngineOperationStatus.COMPLETED
        assert done.end_time is not None
        assert self.tracker.state.status == EngineStatus.READY
        assert self.tracker.state.confidence == pytest.approx(0.6)
        assert self.repo.get_operation(operation.id).status == EngineOperationStatus.COMPLETED

    def test_nested_operation_resumes_parent_status(self):
        cycle = self.tracker.start_learning_cycle()
        optimization = self.tracker.start_operation(EngineOperationType.OPTIMIZATION)
        self.tracker.complete_operation(optimization.id)

        assert self.tracker.state.status == EngineStatus.LEARNING
        assert [op.id for op in self.tracker.active_operations] == [cycle.id]

    def test_failure_puts_engine_in_error(self):
        operation = self.tracker.start_learning_cycle()
        failed = self.tracker.fail_operation(operation.id, "database unavailable")

        assert failed.status == EngineOperationStatus.FAILED
        assert failed.error == "database unavailable"
        assert self.tracker.state.status == EngineStatus.ERROR
        assert self.tracker.state.metadata["last_error"] == "database unavailable"

    def test_completed_operation_cannot_fail(self):
        operation = self.tracker.start_learning_cycle()
        self.tracker.complete_operation(operation.id)
        with pytest.raises(OperationTransitionError):
            self.tracker.fail_operation(operation.id, "late failure")

    def test_unknown_operation(self):
        with pytest.raises(OperationTransitionError):
            self.tracker.complete_operation("op_missing")

    def test_cancel_operation(self):
        operation = self.tracker.start_operation(EngineOperationType.VALIDATION)
        cancelled = self.tracker.cancel_operation(operation.id)
        assert cancelled.status == EngineOperationStatus.CANCELLED
        assert self.tracker.state.status == EngineStatus.READY

    def test_state_snapshots_are_not_mutated(self):
        before = self.tracker.state
        self.tracker.start_learning_cycle()
        assert before.status == EngineStatus.READY
