"""
Tuning Kernel API: FastAPI endpoints.

Exposes the kernel to operators:
- Engine state and operation history
- Learning results and in-flight validations
- Manual learning cycles and event ingestion
- A/B experiments for recommended strategies
- The tuned search configuration (weights, rule entries)
- Prometheus metrics
"""

from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from tuning_kernel.detection.detectors import default_detectors
from tuning_kernel.errors import DataIntegrityError, RiskRejectedError
from tuning_kernel.execution.executor import StrategyExecutor
from tuning_kernel.metrics.collector import (
    MetricsAdapter,
    MetricsSource,
    PrometheusMetricsRecorder,
    StaticMetricsSource,
)
from tuning_kernel.models.config import EngineConfig
from tuning_kernel.models.engine import EngineOperationType
from tuning_kernel.models.events import (
    LearningEvent,
    LearningEventPriority,
    LearningEventStatus,
    LearningEventType,
)
from tuning_kernel.models.experiment import ExperimentStatus
from tuning_kernel.models.search_config import SearchWeights
from tuning_kernel.orchestrator.cycle import LearningCycleOrchestrator
from tuning_kernel.orchestrator.experiment import ABTestRunner
from tuning_kernel.orchestrator.learner import RealTimeLearner
from tuning_kernel.orchestrator.scheduler import CycleScheduler
from tuning_kernel.store.repository import EngineRepository
from tuning_kernel.stream.events import EventStream, InMemoryEventStream, serialize_learning_event
from tuning_kernel.tracking.tracker import OperationTracker
from tuning_kernel.validation.impact import ImpactValidator


# --- Request Models ---

class EventCreateRequest(BaseModel):
    type: LearningEventType
    status: LearningEventStatus = LearningEventStatus.PENDING
    priority: LearningEventPriority = LearningEventPriority.MEDIUM
    metadata: dict = {}
    correlation_id: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    client_id: Optional[str] = None
    tags: List[str] = []


class WeightsRequest(BaseModel):
    title_weight: float = Field(gt=0.0)
    content_weight: float = Field(gt=0.0)
    tag_weight: float = Field(gt=0.0)


class ExperimentRequest(BaseModel):
    learning_result_id: str
    strategy_id: str


# --- Application Factory ---

def create_app(
    repository: Optional[EngineRepository] = None,
    config: Optional[EngineConfig] = None,
    stream: Optional[EventStream] = None,
    metrics_source: Optional[MetricsSource] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Tuning Kernel API",
        description="Autonomous search tuning kernel",
        version="0.1.0",
    )

    # Initialize components
    repo = repository or EngineRepository()
    cfg = config or EngineConfig()
    recorder = PrometheusMetricsRecorder(metrics_source or StaticMetricsSource())
    metrics = MetricsAdapter(recorder)
    event_stream = stream or InMemoryEventStream()

    tracker = OperationTracker(repo, cfg)
    tracker.initialize()
    executor = StrategyExecutor(repo, metrics, cfg, risk_tolerance=tracker.risk_tolerance)
    validator = ImpactValidator(metrics, cfg)
    detectors = default_detectors(repo)
    learner = RealTimeLearner(
        event_stream, repo, executor, validator, metrics, detectors=detectors, config=cfg
    )
    orchestrator = LearningCycleOrchestrator(
        repo, tracker, executor, detectors=detectors, config=cfg
    )
    scheduler = CycleScheduler(orchestrator, cfg)
    experiments = ABTestRunner(repo, executor, validator, metrics)

    # Store components on app state for access in endpoints
    app.state.repository = repo
    app.state.config = cfg
    app.state.tracker = tracker
    app.state.executor = executor
    app.state.validator = validator
    app.state.stream = event_stream
    app.state.metrics_recorder = recorder
    app.state.learner = learner
    app.state.orchestrator = orchestrator
    app.state.scheduler = scheduler
    app.state.experiments = experiments

    # === ENGINE STATE ===

    @app.get("/state")
    def get_state():
        """Current engine state snapshot."""
        return tracker.state.model_dump(mode="json")

    @app.get("/operations")
    def list_operations(limit: int = 50, type: Optional[EngineOperationType] = None):
        """Recent engine operations."""
        return [
            op.model_dump(mode="json")
            for op in repo.list_operations(operation_type=type, limit=limit)
        ]

    @app.get("/operations/{operation_id}")
    def get_operation(operation_id: str):
        operation = repo.get_operation(operation_id)
        if not operation:
            raise HTTPException(404, "Operation not found")
        return operation.model_dump(mode="json")

    # === LEARNING ===

    @app.get("/learning-results")
    def list_learning_results(limit: int = 50):
        """Recent learning results."""
        return [r.model_dump(mode="json") for r in repo.list_learning_results(limit=limit)]

    @app.get("/learning-results/{result_id}")
    def get_learning_result(result_id: str):
        result = repo.get_learning_result(result_id)
        if not result:
            raise HTTPException(404, "Learning result not found")
        return result.model_dump(mode="json")

    @app.get("/validations")
    def get_validations():
        """In-flight validation windows."""
        return {
            strategy_id: context.model_dump(mode="json")
            for strategy_id, context in learner.validation_queue.items()
        }

    @app.get("/learner/status")
    def learner_status():
        return {
            "running": learner.is_running,
            "cursor": learner.cursor,
            "in_flight_validations": len(learner.validation_queue),
            "scheduler": scheduler.status,
            "next_cycle_at": scheduler.next_run().isoformat(),
        }

    @app.post("/cycles")
    async def run_cycle():
        """Run one autonomous learning cycle now."""
        summary = await orchestrator.execute_autonomous_learning_cycle()
        if summary is None:
            raise HTTPException(500, "Learning cycle failed")
        return summary.model_dump(mode="json")

    @app.post("/events")
    async def ingest_event(req: EventCreateRequest):
        """Store a learning event and publish it to the stream."""
        now = datetime.utcnow()
        event = LearningEvent(
            id=f"evt_{uuid4().hex[:12]}",
            type=req.type,
            status=req.status,
            priority=req.priority,
            timestamp=now,
            metadata=req.metadata,
            correlation_id=req.correlation_id,
            session_id=req.session_id,
            user_id=req.user_id,
            client_id=req.client_id,
            tags=req.tags,
            created_at=now,
            updated_at=now,
        )
        repo.save_event(event)
        entry_id = await event_stream.publish(serialize_learning_event(event))
        return {"id": event.id, "stream_id": entry_id}

    # === EXPERIMENTS ===

    @app.get("/experiments")
    def list_experiments(limit: int = 50, status: Optional[ExperimentStatus] = None):
        """Recent experiments, newest first."""
        return [
            e.model_dump(mode="json")
            for e in repo.list_experiments(status=status, limit=limit)
        ]

    @app.get("/experiments/{experiment_id}")
    def get_experiment(experiment_id: str):
        experiment = repo.get_experiment(experiment_id)
        if not experiment:
            raise HTTPException(404, "Experiment not found")
        return experiment.model_dump(mode="json")

    @app.post("/experiments")
    async def run_experiment(req: ExperimentRequest):
        """A/B test one recommended strategy; it is applied only if the treatment wins."""
        result = repo.get_learning_result(req.learning_result_id)
        if not result:
            raise HTTPException(404, "Learning result not found")
        strategy = next((s for s in result.recommendations if s.id == req.strategy_id), None)
        if strategy is None:
            raise HTTPException(404, "Strategy not found")
        try:
            results = await experiments.execute_ab_test(strategy)
        except RiskRejectedError as e:
            raise HTTPException(422, str(e))
        except DataIntegrityError as e:
            raise HTTPException(409, str(e))
        return results.model_dump(mode="json")

    # === SEARCH CONFIGURATION ===

    @app.get("/weights/active")
    def get_active_weights():
        weights = repo.get_active_weights()
        if not weights:
            raise HTTPException(404, "No active weights")
        return weights.model_dump(mode="json")

    @app.post("/weights")
    def set_weights(req: WeightsRequest):
        """Install a new active weights version (operator override)."""
        current = repo.get_active_weights()
        weights = SearchWeights(
            id=f"weights_{uuid4().hex[:12]}",
            title_weight=req.title_weight,
            content_weight=req.content_weight,
            tag_weight=req.tag_weight,
            version=current.version + 1 if current else 1,
            metadata={"source": "operator"},
            created_at=datetime.utcnow(),
        )
        if current:
            repo.replace_active_weights(current, weights)
        else:
            repo.create_weights(weights)
        return weights.model_dump(mode="json")

    @app.get("/config/{key}")
    def get_config(key: str):
        entry = repo.get_config(key)
        if not entry:
            raise HTTPException(404, "Config entry not found")
        return entry.model_dump(mode="json")

    # === METRICS ===

    @app.get("/metrics")
    def export_metrics():
        """Prometheus exposition of the engine's metrics."""
        return Response(content=recorder.export(), media_type=CONTENT_TYPE_LATEST)

    return app
