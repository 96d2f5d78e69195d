"""SystemState model: process-wide switches that must survive restarts."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class SystemState(SQLModel, table=True):
    __tablename__ = "system_state"

    id: int = Field(default=1, primary_key=True)
    emergency_stop: bool = False
    emergency_reason: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
