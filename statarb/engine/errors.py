"""Exceptions raised by the pairs-trading engine."""


class StatArbError(Exception):
    """Base class for engine errors."""


class DataInsufficientError(StatArbError):
    """Not enough aligned price history to analyze a pair."""

    def __init__(self, sample_size: int, required: int):
        super().__init__(f"insufficient data: {sample_size} samples, need {required}")
        self.sample_size = sample_size
        self.required = required


class StatisticalDegenerateError(StatArbError):
    """Zero variance or a regression that cannot be fitted."""


class ExecutionFailure(StatArbError):
    """The trade execution service rejected or timed out a pair trade."""

    def __init__(self, stage: str, error: str):
        super().__init__(f"{stage} execution failed: {error}")
        self.stage = stage
        self.error = error


class ReconciliationRequired(StatArbError):
    """The ledger for a position is uncertain and needs operator reconciliation."""

    def __init__(self, position_id: str, message: str = "reconciliation required"):
        super().__init__(f"position {position_id}: {message}")
        self.position_id = position_id
