"""JobLog model: per-tick analysis and action log for each pair."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class JobLog(SQLModel, table=True):
    __tablename__ = "job_log"

    id: int | None = Field(default=None, primary_key=True)
    pair_id: str = Field(index=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: str  # "success", "error", "skipped", "warning"
    z_score: float | None = None
    correlation: float | None = None
    hedge_ratio: float | None = None
    half_life: float | None = None
    test_statistic: float | None = None
    confidence: float | None = None
    sample_size: int | None = None
    action: str | None = None  # "hold", "entry", "exit_stop_loss", "rejected", "emergency_stop", ...
    message: str | None = None
    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
