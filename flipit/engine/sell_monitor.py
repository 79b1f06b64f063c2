"""Shared claim/execute/settle flow for monitors that sell a holding position."""

import logging
from datetime import datetime

from sqlmodel import Session

from flipit.engine.monitor import MonitorLoop, Outcome
from flipit.engine.recovery import recover_stale_sells
from flipit.engine.store import lease_until, utcnow
from flipit.engine.trading import after_sell_values, benign_sell_values, sell_success_values
from flipit.models import Position
from flipit.services.notifier import Notification
from flipit.utils.constants import PositionStatus

logger = logging.getLogger(__name__)


class PositionSellMonitor(MonitorLoop):
    model = Position
    event = "sell"
    failure_prefix = "Sell failed"

    def sweep(self, session: Session, now: datetime) -> list[int]:
        recover_stale_sells(session, now)
        return []

    def claim_conditions(self, row: Position, now: datetime) -> list:
        return [Position.status == PositionStatus.HOLDING]

    def claim_values(self, row: Position, claim_id: str, now: datetime) -> dict:
        return {
            "status": PositionStatus.PENDING_SELL,
            "claim_id": claim_id,
            "claimed_until": lease_until(now),
        }

    def slippage_for(self, row: Position) -> int:
        return row.slippage_bps

    def settled_values(self, row: Position, now: datetime) -> dict:
        """Extra values written with every successful (or benign) sale."""
        return {}

    def describe(self, row: Position, price: float) -> tuple[str, str]:
        raise NotImplementedError

    async def execute(self, row: Position, price: float, prices: dict[str, float]) -> Outcome:
        label = row.token_symbol or row.token_mint[:8]
        logger.info(f"[{self.name}] #{row.id} {label} triggered at ${price:.10g}; selling")

        result = await self.gateway.sell(
            row.token_mint,
            slippage_bps=self.slippage_for(row),
            priority_fee_mode=row.priority_fee_mode,
            wallet_id=row.wallet_id,
        )
        now = utcnow()

        if result.success:
            values = sell_success_values(row, price, result.signature, now)
        elif result.no_balance:
            logger.info(f"[{self.name}] #{row.id} has no balance left; closing without profit")
            values = benign_sell_values(result, now)
        else:
            return Outcome(success=False, error=result.error)

        values.update(self.after_sell(row))
        values.update(self.settled_values(row, now))

        title, message = self.describe(row, price)
        if not result.success:
            message = f"{message}\n{values['error_message']}"
        return Outcome(
            success=True,
            values=values,
            notification=Notification(
                event=self.event,
                title=title,
                message=message,
                token_mint=row.token_mint,
                token_symbol=row.token_symbol,
                signature=result.signature,
                data={"position_id": row.id, "price_usd": price, "profit_usd": values.get("profit_usd")},
            ),
        )

    def after_sell(self, row: Position) -> dict:
        return after_sell_values(row)

    def failure_values(self, row: Position, message: str, now: datetime) -> dict:
        return {
            "status": PositionStatus.HOLDING,
            "error_message": f"{self.failure_prefix}: {message}",
        }
