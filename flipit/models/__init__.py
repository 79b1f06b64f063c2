"""Database models."""

from flipit.models.position import Position
from flipit.models.limit_order import LimitOrder
from flipit.models.monitor_log import MonitorLog

__all__ = [
    "Position",
    "LimitOrder",
    "MonitorLog",
]
