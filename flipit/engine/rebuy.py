"""Rebuy: re-enter a sold token when price returns to the operator's range."""

import logging
from datetime import datetime

from sqlmodel import Session

from flipit.engine.monitor import MonitorLoop, Outcome
from flipit.engine.store import buy_in_flight, rebuy_candidates, unclaimed, utcnow
from flipit.engine.trading import open_position, rebuy_config
from flipit.models import Position
from flipit.services.notifier import Notification
from flipit.utils.constants import PositionStatus, RebuyStatus

logger = logging.getLogger(__name__)


class RebuyMonitor(MonitorLoop):
    name = "rebuy"
    model = Position

    def load_candidates(self, session: Session, now: datetime) -> list[Position]:
        return rebuy_candidates(session)

    def should_trigger(self, row: Position, price: float) -> bool:
        if row.rebuy_price_low_usd is None or row.rebuy_price_high_usd is None:
            return False
        return row.rebuy_price_low_usd <= price <= row.rebuy_price_high_usd

    def claim_conditions(self, row: Position, now: datetime) -> list:
        return [
            Position.status == PositionStatus.SOLD,
            Position.rebuy_status == RebuyStatus.WATCHING,
            unclaimed(Position, now),
            ~buy_in_flight(Position),
        ]

    async def execute(self, row: Position, price: float, prices: dict[str, float]) -> Outcome:
        if not row.rebuy_amount_usd or row.rebuy_amount_usd <= 0:
            return Outcome(success=False, error="rebuy amount not configured")

        label = row.token_symbol or row.token_mint[:8]
        logger.info(f"[{self.name}] #{row.id} {label} back in range at ${price:.10g}; rebuying")

        rebuy = rebuy_config(row) if row.rebuy_loop_enabled else None
        new_position = await open_position(
            row.token_mint,
            row.rebuy_amount_usd,
            price,
            target_multiplier=row.rebuy_target_multiplier or row.target_multiplier,
            token_symbol=row.token_symbol,
            token_name=row.token_name,
            wallet_id=row.wallet_id,
            slippage_bps=row.slippage_bps,
            priority_fee_mode=row.priority_fee_mode,
            rebuy=rebuy,
            source_position_id=row.id,
            keep_failed=False,
            engine=self.engine,
            gateway=self.gateway,
        )
        if new_position.status != PositionStatus.HOLDING:
            return Outcome(success=False, error=new_position.error_message or "buy failed")

        return Outcome(
            success=True,
            values={
                "rebuy_status": RebuyStatus.EXECUTED,
                "rebuy_executed_at": utcnow(),
                "rebuy_position_id": new_position.id,
                "error_message": None,
            },
            notification=Notification(
                event="rebuy",
                title=f"Rebought {label}",
                message=(
                    f"${row.rebuy_amount_usd:.2f} at ${price:.10g}, new target "
                    f"${new_position.target_price_usd:.10g} (position #{new_position.id})"
                ),
                token_mint=row.token_mint,
                token_symbol=row.token_symbol,
                signature=new_position.buy_signature,
                data={"position_id": row.id, "rebuy_position_id": new_position.id, "price_usd": price},
            ),
        )

    def failure_values(self, row: Position, message: str, now: datetime) -> dict:
        if message.startswith("Buy failed: "):
            message = message[len("Buy failed: "):]
        return {"error_message": f"Rebuy failed: {message}"}
