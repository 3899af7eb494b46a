"""
A/B Test Runner: validates a strategy against a control split before
applying it.

States:
  ACTIVE (config written) → COMPLETED (results recorded) | ABORTED (error)

Behavioral Contract:
- The experiment config is written before any variant is read; one
  experiment per strategy id
- The strategy is executed only when the treatment variant wins
- The outcome lands in the experiment, in the strategy's learning result
  and as a COMPLETED EXPERIMENT_RESULT event
- Failures abort the experiment, are logged and propagate
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from tuning_kernel.execution.executor import StrategyExecutor
from tuning_kernel.metrics.collector import MetricsAdapter
from tuning_kernel.models.events import LearningEvent, LearningEventStatus, LearningEventType
from tuning_kernel.models.experiment import ABTestResults, ExperimentConfig, ExperimentStatus
from tuning_kernel.models.learning import PerformanceRecord
from tuning_kernel.store.repository import EngineRepository
from tuning_kernel.validation.impact import ImpactValidator

logger = logging.getLogger(__name__)

CONTROL = "control"
TREATMENT = "treatment"


class ABTestRunner:
    """Runs one control/treatment experiment per strategy."""

    def __init__(
        self,
        repository: EngineRepository,
        executor: StrategyExecutor,
        validator: ImpactValidator,
        metrics: MetricsAdapter,
    ):
        self.repository = repository
        self.executor = executor
        self.validator = validator
        self.metrics = metrics

    async def start_experiment(self, strategy) -> ExperimentConfig:
        """Write the ACTIVE experiment config with an even traffic split."""
        experiment = ExperimentConfig(
            id=f"ab_{strategy.id}",
            strategy_id=strategy.id,
            learning_result_id=strategy.learning_result_id,
            variants={
                CONTROL: {"weight": 0.5},
                TREATMENT: {"weight": 0.5, "strategy_id": strategy.id},
            },
            metrics=list(strategy.metadata.target_metrics),
            duration_ms=await self.validator.calculate_optimal_test_duration(),
            minimum_sample_size=await self.validator.calculate_required_sample_size(),
            created_at=datetime.utcnow(),
        )
        return self.repository.create_experiment(experiment)

    async def monitor_ab_test(self, experiment: ExperimentConfig) -> ABTestResults:
        """Compare both variants over the experiment's duration."""
        since = datetime.utcnow() - timedelta(milliseconds=experiment.duration_ms)
        control = await self.metrics.collect_variant_metrics(CONTROL, since)
        treatment = await self.metrics.collect_variant_metrics(TREATMENT, since)
        return self.validator.compare_variants(control, treatment)

    async def execute_ab_test(self, strategy) -> ABTestResults:
        experiment = await self.start_experiment(strategy)
        try:
            results = await self.monitor_ab_test(experiment)
            if results.winner == TREATMENT:
                await self.executor.execute(strategy)

            now = datetime.utcnow()
            self.repository.save_experiment(experiment.model_copy(update={
                "status": ExperimentStatus.COMPLETED,
                "results": results,
                "completed_at": now,
            }))
            self.repository.set_performance(
                strategy.learning_result_id,
                PerformanceRecord(
                    before_metrics=results.control.metrics,
                    after_metrics=results.treatment.metrics,
                    improvement=results.improvement,
                    status="AB_TESTED",
                    ab_test_results=results,
                    timestamp=now,
                ),
            )
            self._record_result(experiment, results, now)
        except Exception:
            logger.exception("A/B test failed", extra={"strategy_id": strategy.id})
            self._abort(experiment)
            raise

        logger.info(
            "A/B test %s finished: winner %s", experiment.id, results.winner,
            extra={"improvement": results.improvement, "significance": results.significance},
        )
        return results

    def _abort(self, experiment: ExperimentConfig) -> Optional[ExperimentConfig]:
        current = self.repository.get_experiment(experiment.id)
        if current is None or current.status != ExperimentStatus.ACTIVE:
            return current
        return self.repository.save_experiment(current.model_copy(update={
            "status": ExperimentStatus.ABORTED,
            "completed_at": datetime.utcnow(),
        }))

    def _record_result(
        self, experiment: ExperimentConfig, results: ABTestResults, now: datetime
    ) -> LearningEvent:
        return self.repository.save_event(LearningEvent(
            id=f"evt_{uuid4().hex[:12]}",
            type=LearningEventType.EXPERIMENT_RESULT,
            status=LearningEventStatus.COMPLETED,
            timestamp=now,
            correlation_id=experiment.id,
            metadata={
                "experimentId": experiment.id,
                "strategyId": experiment.strategy_id,
                "winner": results.winner,
                "improvement": results.improvement,
                "significance": results.significance,
            },
            processed_at=now,
            created_at=now,
            updated_at=now,
        ))
