"""
Risk Gate: decides which strategies may run without a human.

Behavioral Contract:
- The autonomous execution gate admits a strategy only if its confidence
  and impact clear the configured thresholds and its risk level is LOW
- The risk policy is checked again by the executor, independently of
  the gate: a strategy above the engine's risk tolerance is rejected,
  never downgraded
- Never modifies strategies
"""

from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel

from tuning_kernel.errors import RiskRejectedError
from tuning_kernel.models.config import EngineConfig
from tuning_kernel.models.strategy import RiskLevel

# Risk levels each engine risk tolerance admits
RISK_TOLERANCE_ALLOWS: Dict[str, FrozenSet[RiskLevel]] = {
    "low": frozenset({RiskLevel.LOW, RiskLevel.MEDIUM}),
    "medium": frozenset({RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH}),
    "high": frozenset(RiskLevel),
}


def is_risk_allowed(risk_level: RiskLevel, risk_tolerance: str) -> bool:
    """Unknown tolerances are treated as "low"."""
    allowed = RISK_TOLERANCE_ALLOWS.get(
        (risk_tolerance or "low").lower(), RISK_TOLERANCE_ALLOWS["low"]
    )
    return risk_level in allowed


def enforce_risk_policy(strategy, risk_tolerance: str) -> None:
    """Raise ``RiskRejectedError`` if the strategy exceeds the tolerance."""
    if not is_risk_allowed(strategy.risk_level, risk_tolerance):
        raise RiskRejectedError(
            strategy_id=strategy.id,
            risk_level=strategy.risk_level.value,
            risk_tolerance=risk_tolerance,
        )


class GateDecision(BaseModel):
    strategy_id: str
    admitted: bool
    reasons: List[str] = []


class AutonomousExecutionGate:
    """
    The sole autonomous-execution gate:
    ``confidence > min_confidence and impact > min_impact and risk == LOW``.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def evaluate(self, strategy) -> GateDecision:
        reasons = []
        if not strategy.confidence > self.config.min_strategy_confidence:
            reasons.append(
                f"confidence {strategy.confidence:.2f} <= {self.config.min_strategy_confidence}"
            )
        if not strategy.impact > self.config.min_strategy_impact:
            reasons.append(
                f"impact {strategy.impact:.2f} <= {self.config.min_strategy_impact}"
            )
        if strategy.risk_level != RiskLevel.LOW:
            reasons.append(f"risk level {strategy.risk_level.value} is not LOW")
        return GateDecision(
            strategy_id=strategy.id,
            admitted=not reasons,
            reasons=reasons,
        )

    def admits(self, strategy) -> bool:
        return self.evaluate(strategy).admitted

    def partition(self, strategies: list) -> Tuple[list, List[GateDecision]]:
        """Split strategies into the admitted ones and the rejection decisions."""
        admitted = []
        rejected: List[GateDecision] = []
        for strategy in strategies:
            decision = self.evaluate(strategy)
            if decision.admitted:
                admitted.append(strategy)
            else:
                rejected.append(decision)
        return admitted, rejected
