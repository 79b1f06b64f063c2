"""Limit order fill: buy (or alert) when price enters the order's range."""

import logging
from datetime import datetime

from sqlmodel import Session

from flipit.engine.monitor import MonitorLoop, Outcome
from flipit.engine.store import (
    buy_in_flight,
    compare_and_set,
    expired_limit_order_ids,
    unclaimed,
    utcnow,
    watching_limit_orders,
)
from flipit.engine.trading import open_position
from flipit.models import LimitOrder
from flipit.services.notifier import Notification
from flipit.utils.constants import SOL_MINT, LimitOrderStatus, PositionStatus

logger = logging.getLogger(__name__)


class LimitOrderFillMonitor(MonitorLoop):
    name = "limit_order"
    model = LimitOrder

    def sweep(self, session: Session, now: datetime) -> list[int]:
        """Expire overdue orders before any price lookup."""
        expired = []
        for order_id in expired_limit_order_ids(session, now):
            if compare_and_set(
                session, LimitOrder, order_id,
                LimitOrder.status == LimitOrderStatus.WATCHING,
                LimitOrder.expires_at <= now,
                unclaimed(LimitOrder, now),
                ~buy_in_flight(LimitOrder),
                status=LimitOrderStatus.EXPIRED,
                expired_at=now,
            ):
                expired.append(order_id)
        if expired:
            logger.info(f"[{self.name}] Expired orders: {expired}")
        return expired

    def load_candidates(self, session: Session, now: datetime) -> list[LimitOrder]:
        return watching_limit_orders(session, now)

    def mints_for(self, rows) -> list[str]:
        mints = [row.token_mint for row in rows]
        if any(not row.alert_only for row in rows):
            mints.append(SOL_MINT)
        return mints

    def price_for(self, row: LimitOrder, prices: dict[str, float]) -> float | None:
        price = prices.get(row.token_mint)
        # Sizing a real buy needs SOL/USD; without it the order cannot be priced
        if price is not None and not row.alert_only and SOL_MINT not in prices:
            return None
        return price

    def should_trigger(self, row: LimitOrder, price: float) -> bool:
        return row.buy_price_min_usd <= price <= row.buy_price_max_usd

    def claim_conditions(self, row: LimitOrder, now: datetime) -> list:
        return [
            LimitOrder.status == LimitOrderStatus.WATCHING,
            LimitOrder.expires_at > now,
            unclaimed(LimitOrder, now),
            ~buy_in_flight(LimitOrder),
        ]

    async def execute(self, row: LimitOrder, price: float, prices: dict[str, float]) -> Outcome:
        label = row.token_symbol or row.token_mint[:8]
        now = utcnow()

        if row.alert_only:
            return Outcome(
                success=True,
                values={"status": LimitOrderStatus.ALERTED, "alerted_at": now},
                notification=Notification(
                    event="limit_order_alert",
                    title=f"Price alert: {label}",
                    message=(
                        f"${price:.10g} is inside ${row.buy_price_min_usd:.10g} - "
                        f"${row.buy_price_max_usd:.10g}"
                    ),
                    token_mint=row.token_mint,
                    token_symbol=row.token_symbol,
                    email=row.notification_email,
                    data={"limit_order_id": row.id, "price_usd": price},
                ),
            )

        sol_price = prices[SOL_MINT]
        amount_usd = row.buy_amount_sol * sol_price
        logger.info(
            f"[{self.name}] #{row.id} {label} in range at ${price:.10g}; "
            f"buying {row.buy_amount_sol} SOL (${amount_usd:.2f})"
        )
        position = await open_position(
            row.token_mint,
            amount_usd,
            price,
            target_multiplier=row.target_multiplier,
            token_symbol=row.token_symbol,
            token_name=row.token_name,
            wallet_id=row.wallet_id,
            slippage_bps=row.slippage_bps,
            priority_fee_mode=row.priority_fee_mode,
            source_limit_order_id=row.id,
            keep_failed=False,
            engine=self.engine,
            gateway=self.gateway,
        )
        if position.status != PositionStatus.HOLDING:
            return Outcome(success=False, error=position.error_message or "buy failed")

        return Outcome(
            success=True,
            values={
                "status": LimitOrderStatus.EXECUTED,
                "executed_at": now,
                "executed_position_id": position.id,
                "last_attempt_at": now,
                "last_error": None,
                "attempt_count": LimitOrder.attempt_count + 1,
            },
            notification=Notification(
                event="limit_order_executed",
                title=f"Limit order filled: {label}",
                message=(
                    f"Bought {row.buy_amount_sol} SOL (${amount_usd:.2f}) at ${price:.10g}, "
                    f"target {row.target_multiplier}x (position #{position.id})"
                ),
                token_mint=row.token_mint,
                token_symbol=row.token_symbol,
                signature=position.buy_signature,
                email=row.notification_email,
                data={"limit_order_id": row.id, "position_id": position.id, "price_usd": price},
            ),
        )

    def failure_values(self, row: LimitOrder, message: str, now: datetime) -> dict:
        return {
            "last_attempt_at": now,
            "last_error": message,
            "attempt_count": LimitOrder.attempt_count + 1,
        }
