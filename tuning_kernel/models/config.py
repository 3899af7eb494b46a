"""Engine configuration."""

from pydantic import BaseModel, Field


class EngineConfig(BaseModel):
    """Configuration for the learner, the cycle orchestrator and the validator."""

    # Stream consumer
    stream_key: str = "nous:learning:stream"
    read_block_ms: int = 5000
    read_count: int = 100
    retry_delay_seconds: float = 1.0

    # Autonomous execution gate
    min_strategy_confidence: float = 0.8
    min_strategy_impact: float = 0.5
    risk_tolerance: str = "low"             # "low" | "medium" | "high"

    # Validation
    validation_window_ms: int = 300_000
    realized_ratio_threshold: float = Field(ge=0.0, default=0.7)
    monitor_window_seconds: float = 300.0
    monitor_sample_interval_seconds: float = 30.0
    monitor_tolerance: float = Field(ge=1.0, default=1.1)

    # Learning cycle
    lookback_hours: int = 24
    batch_size: int = 100
    cycle_schedule: str = "*/15 * * * *"   # Cron expression

    # Shared configuration writes
    serialize_config_writes: bool = True
