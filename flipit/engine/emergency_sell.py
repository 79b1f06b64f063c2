"""Emergency sell: stop-loss exit when price falls to the configured floor."""

from datetime import datetime

from sqlmodel import Session

from flipit.config import settings
from flipit.engine.sell_monitor import PositionSellMonitor
from flipit.engine.store import emergency_candidates
from flipit.models import Position
from flipit.utils.constants import EmergencySellStatus, PositionStatus


class EmergencySellMonitor(PositionSellMonitor):
    name = "emergency_sell"
    event = "emergency_sell"
    failure_prefix = "Emergency sell failed"

    def load_candidates(self, session: Session, now: datetime) -> list[Position]:
        return emergency_candidates(session)

    def should_trigger(self, row: Position, price: float) -> bool:
        return row.emergency_sell_price_usd is not None and price <= row.emergency_sell_price_usd

    def claim_conditions(self, row: Position, now: datetime) -> list:
        return [
            Position.status == PositionStatus.HOLDING,
            Position.emergency_sell_status == EmergencySellStatus.WATCHING,
        ]

    def slippage_for(self, row: Position) -> int:
        return settings.emergency_slippage_bps

    def after_sell(self, row: Position) -> dict:
        return {}

    def settled_values(self, row: Position, now: datetime) -> dict:
        return {
            "emergency_sell_status": EmergencySellStatus.EXECUTED,
            "emergency_sell_executed_at": now,
        }

    def describe(self, row: Position, price: float) -> tuple[str, str]:
        label = row.token_symbol or row.token_mint[:8]
        return (
            f"Emergency sell: {label}",
            f"Price ${price:.10g} fell to the ${row.emergency_sell_price_usd:.10g} floor; position sold",
        )
