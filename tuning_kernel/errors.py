"""Exception hierarchy shared by the kernel components."""


class TuningKernelError(Exception):
    """Base class for all kernel errors."""
    pass


class RiskRejectedError(TuningKernelError):
    """Raised when a strategy exceeds the engine's risk tolerance."""

    def __init__(self, strategy_id: str, risk_level: str, risk_tolerance: str):
        self.strategy_id = strategy_id
        self.risk_level = risk_level
        self.risk_tolerance = risk_tolerance
        super().__init__(
            f"Strategy {strategy_id} rejected: {risk_level} risk strategies "
            f"are not allowed under risk tolerance '{risk_tolerance}'"
        )


class DataIntegrityError(TuningKernelError):
    """Raised when configuration required for an adjustment or rollback is missing."""
    pass


class ConcurrentModificationError(TuningKernelError):
    """Raised when a versioned configuration row changed underneath a writer."""
    pass


class StreamReadError(TuningKernelError):
    """Transient failure reading from the event stream."""
    pass


class OperationTransitionError(TuningKernelError):
    """Raised on an illegal engine operation status transition."""
    pass


class EventTransitionError(TuningKernelError):
    """Raised on an illegal learning event status transition."""
    pass


class EngineNotInitializedError(TuningKernelError):
    """Raised when the tracker is used before an engine state was loaded."""
    pass
