"""Buy and sell commands shared by the monitors and operator entry points."""

import logging
from datetime import datetime

from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlmodel import Session

from flipit.config import settings
from flipit.engine.store import compare_and_set, utcnow
from flipit.models import Position
from flipit.services.execution_gateway import ExecutionGateway, ExecutionResult, get_gateway
from flipit.services.notifier import Notification, Notifier
from flipit.utils.constants import EmergencySellStatus, PositionStatus, RebuyStatus

logger = logging.getLogger(__name__)

REBUY_FIELDS = (
    "rebuy_enabled",
    "rebuy_price_low_usd",
    "rebuy_price_high_usd",
    "rebuy_amount_usd",
    "rebuy_target_multiplier",
    "rebuy_loop_enabled",
)


class PriceUnavailable(Exception):
    """No quote source could price the token."""


def _engine(engine: Engine | None) -> Engine:
    if engine is not None:
        return engine
    from flipit.database import engine as default_engine
    return default_engine


def profit_usd(position: Position, sell_price: float | None) -> float | None:
    if sell_price is None or not position.buy_price_usd:
        return None
    return position.buy_amount_usd * (sell_price / position.buy_price_usd - 1)


def rebuy_config(position: Position) -> dict:
    """Rebuy settings to carry onto the position a looping rebuy opens."""
    return {name: getattr(position, name) for name in REBUY_FIELDS}


def after_sell_values(position: Position) -> dict:
    """Sub-state changes that follow any sale: arm rebuy, drop the stop-loss."""
    values = {}
    if (
        position.rebuy_enabled
        and position.rebuy_status in (None, RebuyStatus.PENDING)
        and position.has_valid_rebuy_config()
    ):
        values["rebuy_status"] = RebuyStatus.WATCHING
    if position.emergency_sell_status in (EmergencySellStatus.WATCHING, EmergencySellStatus.PENDING):
        values["emergency_sell_status"] = None
    return values


def sell_success_values(position: Position, price: float | None, signature: str, now: datetime) -> dict:
    return {
        "status": PositionStatus.SOLD,
        "sell_price_usd": price,
        "sell_signature": signature,
        "sell_executed_at": now,
        "profit_usd": profit_usd(position, price),
        "error_message": None,
    }


def benign_sell_values(result: ExecutionResult, now: datetime) -> dict:
    """Values for a sell rejected because the wallet holds none of the token.

    The balance is already gone (an earlier sell landed, or the operator sold
    by hand), so the position is closed without recording a profit.
    """
    return {
        "status": PositionStatus.SOLD,
        "sell_executed_at": now,
        "profit_usd": None,
        "error_message": f"Closed without sale: token balance already empty ({result.error})",
    }


async def open_position(
    token_mint: str,
    amount_usd: float,
    price: float,
    *,
    target_multiplier: float = 2.0,
    token_symbol: str | None = None,
    token_name: str | None = None,
    wallet_id: str | None = None,
    slippage_bps: int | None = None,
    priority_fee_mode: str | None = None,
    rebuy: dict | None = None,
    emergency_sell_price_usd: float | None = None,
    source_position_id: int | None = None,
    source_limit_order_id: int | None = None,
    keep_failed: bool = True,
    engine: Engine | None = None,
    gateway: ExecutionGateway | None = None,
    notifier: Notifier | None = None,
) -> Position:
    """Record a ``pending_buy`` position, execute the buy, and settle it.

    Returns the position after settlement: ``holding`` on success, ``failed``
    with ``error_message`` otherwise. An operator buy keeps the failed row for
    audit. Monitors retry every tick and keep the error on their own row, so
    they pass ``keep_failed=False`` and the failed row is deleted; the returned
    object is then detached.
    """
    engine = _engine(engine)
    gateway = gateway or get_gateway()
    slippage_bps = slippage_bps if slippage_bps is not None else settings.default_slippage_bps
    priority_fee_mode = priority_fee_mode or settings.default_priority_fee_mode

    position = Position(
        token_mint=token_mint,
        token_symbol=token_symbol,
        token_name=token_name,
        wallet_id=wallet_id,
        buy_amount_usd=amount_usd,
        buy_price_usd=price,
        target_multiplier=target_multiplier,
        target_price_usd=price * target_multiplier,
        slippage_bps=slippage_bps,
        priority_fee_mode=priority_fee_mode,
        status=PositionStatus.PENDING_BUY,
        source_position_id=source_position_id,
        source_limit_order_id=source_limit_order_id,
    )
    if rebuy:
        for name in REBUY_FIELDS:
            if name in rebuy:
                setattr(position, name, rebuy[name])
        if position.rebuy_enabled:
            position.rebuy_status = RebuyStatus.PENDING
    if emergency_sell_price_usd is not None:
        position.emergency_sell_enabled = True
        position.emergency_sell_price_usd = emergency_sell_price_usd
        position.emergency_sell_status = EmergencySellStatus.PENDING

    with Session(engine) as session:
        session.add(position)
        session.commit()
        session.refresh(position)
        position_id = position.id

    label = token_symbol or token_mint[:8]
    logger.info(f"[buy] Position {position_id}: buying ${amount_usd:.2f} of {label} at ${price:.10g}")

    result = await gateway.buy(
        token_mint,
        amount_usd,
        slippage_bps=slippage_bps,
        priority_fee_mode=priority_fee_mode,
        wallet_id=wallet_id,
    )

    now = utcnow()
    with Session(engine) as session:
        if result.success:
            compare_and_set(
                session, Position, position_id,
                Position.status == PositionStatus.PENDING_BUY,
                status=PositionStatus.HOLDING,
                buy_signature=result.signature,
                buy_executed_at=now,
                quantity_tokens=amount_usd / price,
                error_message=None,
            )
            # A stop-loss armed before settlement only starts watching once holding
            compare_and_set(
                session, Position, position_id,
                Position.status == PositionStatus.HOLDING,
                Position.emergency_sell_status == EmergencySellStatus.PENDING,
                emergency_sell_status=EmergencySellStatus.WATCHING,
            )
        elif keep_failed:
            logger.warning(f"[buy] Position {position_id} failed: {result.error}")
            compare_and_set(
                session, Position, position_id,
                Position.status == PositionStatus.PENDING_BUY,
                status=PositionStatus.FAILED,
                error_message=f"Buy failed: {result.error}",
            )
        else:
            logger.warning(f"[buy] Position {position_id} failed, discarding row: {result.error}")
            session.connection().execute(
                delete(Position).where(
                    Position.id == position_id,
                    Position.status == PositionStatus.PENDING_BUY,
                )
            )
            session.commit()
            position.status = PositionStatus.FAILED
            position.error_message = f"Buy failed: {result.error}"
            return position
        settled = session.get(Position, position_id)

    if result.success and notifier is not None:
        notifier.publish(Notification(
            event="position_opened",
            title=f"Bought {label}",
            message=f"${amount_usd:.2f} at ${price:.10g}, target ${settled.target_price_usd:.10g}",
            token_mint=token_mint,
            token_symbol=token_symbol,
            signature=result.signature,
            data={"position_id": position_id},
        ))
    return settled
