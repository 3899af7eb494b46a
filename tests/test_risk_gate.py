"""Tests for the autonomous execution gate and the risk policy."""

import pytest

from tuning_kernel.errors import RiskRejectedError
from tuning_kernel.governance.risk_gate import (
    AutonomousExecutionGate,
    enforce_risk_policy,
    is_risk_allowed,
)
from tuning_kernel.models.config import EngineConfig
from tuning_kernel.models.strategy import (
    CacheStrategy,
    IndexOptimizationStrategy,
    RiskLevel,
    StrategyMetadata,
)


def _make_strategy(
    confidence: float = 0.9,
    impact: float = 0.9,
    risk_level: RiskLevel = RiskLevel.LOW,
    strategy_id: str = "opt_1",
):
    cls = CacheStrategy if risk_level == RiskLevel.LOW else IndexOptimizationStrategy
    return cls(
        id=strategy_id,
        priority=confidence,
        confidence=confidence,
        impact=impact,
        metadata=StrategyMetadata(
            target_metrics=["SEARCH_LATENCY"],
            expected_improvement=0.3,
            risk_level=risk_level,
        ),
    )


class TestAutonomousExecutionGate:
    def setup_method(self):
        self.gate = AutonomousExecutionGate(EngineConfig())

    def test_admits_confident_low_risk_strategy(self):
        decision = self.gate.evaluate(_make_strategy())
        assert decision.admitted is True
        assert decision.reasons == []

    def test_thresholds_are_strict(self):
        assert self.gate.admits(_make_strategy(confidence=0.8)) is False
        assert self.gate.admits(_make_strategy(impact=0.5)) is False

    def test_non_low_risk_never_admitted(self):
        decision = self.gate.evaluate(_make_strategy(risk_level=RiskLevel.MEDIUM))
        assert decision.admitted is False
        assert "MEDIUM" in decision.reasons[0]

    def test_partition(self):
        good = _make_strategy(strategy_id="good")
        weak = _make_strategy(confidence=0.3, impact=0.2, strategy_id="weak")
        admitted, rejected = self.gate.partition([good, weak])

        assert admitted == [good]
        assert rejected[0].strategy_id == "weak"
        assert len(rejected[0].reasons) == 2

    def test_custom_thresholds(self):
        gate = AutonomousExecutionGate(EngineConfig(min_strategy_confidence=0.5))
        assert gate.admits(_make_strategy(confidence=0.6)) is True


class TestRiskPolicy:
    @pytest.mark.parametrize("risk_level, tolerance, allowed", [
        (RiskLevel.LOW, "low", True),
        (RiskLevel.MEDIUM, "low", True),
        (RiskLevel.HIGH, "low", False),
        (RiskLevel.CRITICAL, "low", False),
        (RiskLevel.HIGH, "medium", True),
        (RiskLevel.CRITICAL, "medium", False),
        (RiskLevel.CRITICAL, "high", True),
        (RiskLevel.HIGH, "unknown", False),
    ])
    def test_tolerance_table(self, risk_level, tolerance, allowed):
        assert is_risk_allowed(risk_level, tolerance) is allowed

    def test_tolerance_is_case_insensitive(self):
        assert is_risk_allowed(RiskLevel.HIGH, "MEDIUM") is True

    def test_high_risk_rejected_under_low_tolerance(self):
        strategy = _make_strategy(risk_level=RiskLevel.HIGH)
        with pytest.raises(RiskRejectedError) as exc:
            enforce_risk_policy(strategy, "low")
        assert exc.value.strategy_id == "opt_1"
        assert exc.value.risk_level == "HIGH"
