"""
Strategy Executor: applies strategies to the tuned search configuration
and reverts them.

Behavioral Contract:
- Enforces the risk policy before anything else; a rejected strategy
  performs no configuration write
- Executes only strategies owned by an existing learning result
- Dispatches by strategy type to exactly one registered handler
- Every write to a configuration resource runs under that resource's lock
- Rollback is the type-specific inverse of execution and fails loudly when
  there is nothing to restore
"""

import asyncio
import contextlib
import logging
from datetime import datetime
from typing import Callable, Dict, Optional, Protocol
from uuid import uuid4

from tuning_kernel.errors import DataIntegrityError, TuningKernelError
from tuning_kernel.governance.risk_gate import enforce_risk_policy
from tuning_kernel.metrics.collector import MetricsAdapter
from tuning_kernel.models.config import EngineConfig
from tuning_kernel.models.learning import PerformanceRecord
from tuning_kernel.models.search_config import SearchWeights
from tuning_kernel.models.strategy import StrategyType
from tuning_kernel.store.repository import EngineRepository

logger = logging.getLogger(__name__)

WEIGHTS_RESOURCE = "searchWeights"
TAG_WEIGHT_BOOST = 1.1


class StrategyHandler(Protocol):
    """Applies and reverts one strategy variant."""

    def resource(self, strategy) -> str: ...

    async def apply(self, strategy) -> dict: ...

    async def revert(self, strategy) -> dict: ...


class WeightAdjustmentHandler:
    """Re-weights ranking fields as a new active weights version."""

    def __init__(self, repository: EngineRepository):
        self.repository = repository

    def resource(self, strategy) -> str:
        return WEIGHTS_RESOURCE

    async def apply(self, strategy) -> dict:
        current = self.repository.get_active_weights()
        if current is None:
            raise DataIntegrityError("No active weights found")

        factor = 1 + strategy.metadata.expected_improvement
        adjusted = SearchWeights(
            id=f"weights_{uuid4().hex[:12]}",
            title_weight=current.title_weight * factor,
            content_weight=current.content_weight,
            tag_weight=current.tag_weight * TAG_WEIGHT_BOOST,
            active=True,
            version=current.version + 1,
            metadata={
                "optimization_id": strategy.id,
                "previous_weights": current.weights(),
                "previous_weights_id": current.id,
                "confidence": strategy.confidence,
            },
            created_at=datetime.utcnow(),
        )
        self.repository.replace_active_weights(current, adjusted)
        return {
            "weights_id": adjusted.id,
            "version": adjusted.version,
            "previous_weights_id": current.id,
        }

    async def revert(self, strategy) -> dict:
        current = self.repository.get_active_weights()
        if current is None or current.metadata.get("optimization_id") != strategy.id:
            raise DataIntegrityError("No weights found for rollback")

        previous = current.metadata.get("previous_weights")
        if not previous:
            raise DataIntegrityError("No weights found for rollback")

        restored = SearchWeights(
            id=f"weights_{uuid4().hex[:12]}",
            title_weight=previous["title_weight"],
            content_weight=previous["content_weight"],
            tag_weight=previous["tag_weight"],
            active=True,
            version=current.version + 1,
            metadata={"rolled_back_from": strategy.id, "replaced_weights_id": current.id},
            created_at=datetime.utcnow(),
        )
        self.repository.replace_active_weights(current, restored)
        return {"weights_id": restored.id, "version": restored.version}


class ConfigRuleHandler:
    """
    Keeps one rule per search pattern inside a flat config entry
    (``cacheRules``, ``queryTransformations``, ``indexConfigurations``...).
    Rules for other search patterns are preserved.
    """

    def __init__(
        self,
        repository: EngineRepository,
        config_key: str,
        build_rule: Callable[[object], dict],
    ):
        self.repository = repository
        self.config_key = config_key
        self.build_rule = build_rule

    def resource(self, strategy) -> str:
        return self.config_key

    async def apply(self, strategy) -> dict:
        entry = self.repository.get_config(self.config_key)
        rules = dict(entry.value) if entry else {}
        rules[strategy.search_pattern] = self.build_rule(strategy)
        updated = self.repository.upsert_config(
            self.config_key, rules, expected_version=entry.version if entry else 0
        )
        return {"config_key": self.config_key, "version": updated.version}

    def scope(self, strategy) -> str:
        return f"{self.config_key}:{strategy.search_pattern}"

    async def revert(self, strategy) -> dict:
        entry = self.repository.get_config(self.config_key)
        if entry is None or strategy.search_pattern not in entry.value:
            logger.warning(
                "No %s rule for search pattern %s to roll back",
                self.config_key, strategy.search_pattern,
                extra={"strategy_id": strategy.id},
            )
            return {"config_key": self.config_key, "removed": False}
        owner = entry.value[strategy.search_pattern].get("strategy_id")
        if owner != strategy.id:
            # A later strategy replaced the rule; it is not ours to remove
            logger.warning(
                "%s rule for search pattern %s belongs to %s, leaving it in place",
                self.config_key, strategy.search_pattern, owner,
                extra={"strategy_id": strategy.id},
            )
            return {"config_key": self.config_key, "removed": False, "owner": owner}
        rules = {k: v for k, v in entry.value.items() if k != strategy.search_pattern}
        updated = self.repository.upsert_config(
            self.config_key, rules, expected_version=entry.version
        )
        return {"config_key": self.config_key, "removed": True, "version": updated.version}


def _cache_rule(strategy) -> dict:
    return {
        "strategy_id": strategy.id,
        "enabled": True,
        "ttl": 3600,
        "max_size": 1000,
        "priority": strategy.priority,
    }


def _query_rule(strategy) -> dict:
    return {
        "strategy_id": strategy.id,
        "boost": strategy.metadata.expected_improvement,
        "priority": strategy.priority,
        "confidence": strategy.confidence,
    }


def _index_rule(strategy) -> dict:
    return {
        "strategy_id": strategy.id,
        "fields": ["title", "content", "tags"],
        "type": "BTREE",
        "priority": strategy.priority,
    }


def _feedback_rule(strategy) -> dict:
    return {
        "strategy_id": strategy.id,
        "source_pattern_id": strategy.source_pattern_id,
        "target_metrics": list(strategy.metadata.target_metrics),
        "confidence": strategy.confidence,
    }


# Engine metric recorded per strategy type on execution
_EXECUTION_METRICS = {
    StrategyType.WEIGHT_ADJUSTMENT: "RELEVANCE_SCORE",
    StrategyType.QUERY_TRANSFORMATION: "MODEL_ACCURACY",
    StrategyType.INDEX_OPTIMIZATION: "SEARCH_LATENCY",
    StrategyType.CACHE_STRATEGY: "CACHE_EFFICIENCY",
    StrategyType.FEEDBACK_LOOP: "MODEL_ACCURACY",
}


class StrategyExecutor:
    """
    Applies strategies through per-type handlers.
    In production the handlers would call the search service's
    configuration API; here they write the repository's config tables.
    """

    def __init__(
        self,
        repository: EngineRepository,
        metrics: Optional[MetricsAdapter] = None,
        config: Optional[EngineConfig] = None,
        risk_tolerance: Optional[Callable[[], str]] = None,
    ):
        self.repository = repository
        self.metrics = metrics
        self.config = config or EngineConfig()
        self._risk_tolerance = risk_tolerance or (lambda: self.config.risk_tolerance)
        self._handlers: Dict[StrategyType, StrategyHandler] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._register_default_handlers()

    def _register_default_handlers(self) -> None:
        """Register the handler for each built-in strategy type."""
        repo = self.repository
        self._handlers[StrategyType.WEIGHT_ADJUSTMENT] = WeightAdjustmentHandler(repo)
        self._handlers[StrategyType.CACHE_STRATEGY] = ConfigRuleHandler(
            repo, "cacheRules", _cache_rule
        )
        self._handlers[StrategyType.QUERY_TRANSFORMATION] = ConfigRuleHandler(
            repo, "queryTransformations", _query_rule
        )
        self._handlers[StrategyType.INDEX_OPTIMIZATION] = ConfigRuleHandler(
            repo, "indexConfigurations", _index_rule
        )
        self._handlers[StrategyType.FEEDBACK_LOOP] = ConfigRuleHandler(
            repo, "feedbackLoops", _feedback_rule
        )

    def register_handler(self, strategy_type: StrategyType, handler: StrategyHandler) -> None:
        """Register a custom handler for a strategy type."""
        self._handlers[strategy_type] = handler

    def _handler_for(self, strategy) -> StrategyHandler:
        handler = self._handlers.get(strategy.type)
        if handler is None:
            raise TuningKernelError(
                f"No handler registered for strategy type: {strategy.type.value}"
            )
        return handler

    def scope_for(self, strategy) -> str:
        """
        The slice of configuration a strategy owns while it is live.
        Handlers without a finer ``scope`` own their whole resource.
        """
        handler = self._handler_for(strategy)
        scope = getattr(handler, "scope", None)
        return scope(strategy) if scope is not None else handler.resource(strategy)

    def _resource_lock(self, resource: str):
        if not self.config.serialize_config_writes:
            return contextlib.nullcontext()
        lock = self._locks.get(resource)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[resource] = lock
        return lock

    async def execute(self, strategy) -> dict:
        """
        Apply a strategy and annotate its learning result.

        GUARD: the risk policy and the learning result ownership are checked
        before any configuration write.
        """
        enforce_risk_policy(strategy, self._risk_tolerance())
        if not strategy.learning_result_id or self.repository.get_learning_result(
            strategy.learning_result_id
        ) is None:
            raise DataIntegrityError(
                f"Strategy {strategy.id} does not reference an existing learning result"
            )
        handler = self._handler_for(strategy)

        async with self._resource_lock(handler.resource(strategy)):
            details = await handler.apply(strategy)

        annotation = {
            "status": "EXECUTED",
            "strategy_id": strategy.id,
            "strategy_type": strategy.type.value,
            "timestamp": datetime.utcnow().isoformat(),
            "details": details,
        }
        self.repository.append_execution_annotation(strategy.learning_result_id, annotation)

        if self.metrics is not None:
            await self.metrics.record_engine_metric(
                _EXECUTION_METRICS.get(strategy.type, "MODEL_ACCURACY"),
                strategy.confidence,
                strategy.confidence,
                {"strategy_id": strategy.id, "strategy_type": strategy.type.value,
                 "impact": strategy.impact},
            )

        logger.info(
            "Executed strategy %s (%s)", strategy.id, strategy.type.value,
            extra={"strategy_id": strategy.id, "details": details},
        )
        return annotation

    async def rollback(self, strategy, reason: str = "rollback requested") -> dict:
        """Revert a strategy's configuration change and annotate its learning result."""
        handler = self._handler_for(strategy)

        async with self._resource_lock(handler.resource(strategy)):
            details = await handler.revert(strategy)

        annotation = {
            "status": "ROLLED_BACK",
            "strategy_id": strategy.id,
            "strategy_type": strategy.type.value,
            "rolled_back": True,
            "rollback_reason": reason,
            "timestamp": datetime.utcnow().isoformat(),
            "details": details,
        }
        if strategy.learning_result_id and self.repository.get_learning_result(
            strategy.learning_result_id
        ):
            self.repository.append_execution_annotation(strategy.learning_result_id, annotation)
            self.repository.set_performance(
                strategy.learning_result_id,
                PerformanceRecord(
                    rolled_back=True,
                    rollback_reason=reason,
                    status="ROLLED_BACK",
                    timestamp=datetime.utcnow(),
                ),
            )

        if self.metrics is not None:
            await self.metrics.record_engine_metric(
                _EXECUTION_METRICS.get(strategy.type, "MODEL_ACCURACY"),
                0.0,
                1.0,
                {"strategy_id": strategy.id, "action": "rollback"},
            )

        logger.warning(
            "Rolled back strategy %s: %s", strategy.id, reason,
            extra={"strategy_id": strategy.id, "details": details},
        )
        return annotation
