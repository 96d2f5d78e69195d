"""Database models."""

from statarb.models.position import PositionRecord
from statarb.models.trade import Trade
from statarb.models.job_log import JobLog
from statarb.models.system_state import SystemState

__all__ = [
    "PositionRecord",
    "Trade",
    "JobLog",
    "SystemState",
]
