"""MonitorLog model: per-invocation record for each monitor."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class MonitorLog(SQLModel, table=True):
    __tablename__ = "monitor_log"

    id: int | None = Field(default=None, primary_key=True)
    monitor: str = Field(index=True)  # "target_sell", "rebuy", "emergency_sell", "limit_order"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: str  # "success", "error"
    checked: int = 0
    executed: int = 0
    expired: int = 0
    failed: int = 0
    skipped_no_price: int = 0
    duration_ms: int | None = None
    executed_ids: list[int] | None = Field(default=None, sa_column=Column(JSON))
    prices: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    message: str | None = None
