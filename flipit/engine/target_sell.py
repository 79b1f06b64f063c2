"""Target sell: take profit once price reaches buy price × multiplier."""

from datetime import datetime

from sqlmodel import Session

from flipit.engine.sell_monitor import PositionSellMonitor
from flipit.engine.store import holding_positions
from flipit.models import Position


class TargetSellMonitor(PositionSellMonitor):
    name = "target_sell"
    event = "target_sell"
    failure_prefix = "Sell failed"

    def load_candidates(self, session: Session, now: datetime) -> list[Position]:
        return holding_positions(session)

    def should_trigger(self, row: Position, price: float) -> bool:
        return row.target_price_usd is not None and price >= row.target_price_usd

    def describe(self, row: Position, price: float) -> tuple[str, str]:
        label = row.token_symbol or row.token_mint[:8]
        multiple = price / row.buy_price_usd if row.buy_price_usd else 0
        return (
            f"Target hit: sold {label}",
            f"Sold at ${price:.10g} ({multiple:.2f}x of ${row.buy_price_usd or 0:.10g} entry)",
        )
