"""Operator actions on positions and limit orders.

Every mutation is a guarded conditional update so an operator edit can never
clobber a row a monitor has claimed. A guard that no longer matches raises
``InvalidTransition``; the API maps it to 409.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, delete, or_
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from flipit.config import settings
from flipit.engine.store import compare_and_set, lease_until, new_claim_id, release_values, unclaimed, utcnow
from flipit.engine.trading import (
    PriceUnavailable,
    after_sell_values,
    benign_sell_values,
    open_position,
    sell_success_values,
)
from flipit.models import LimitOrder, Position
from flipit.services.execution_gateway import ExecutionGateway, get_gateway
from flipit.services.notifier import Notification, Notifier
from flipit.services.price_resolver import PriceResolver, get_resolver
from flipit.utils.constants import (
    EmergencySellStatus,
    LimitOrderStatus,
    PositionStatus,
    RebuyStatus,
)

logger = logging.getLogger(__name__)

__all__ = [
    "PositionNotFound",
    "LimitOrderNotFound",
    "InvalidTransition",
    "ExecutionFailed",
    "PriceUnavailable",
]


class PositionNotFound(LookupError):
    pass


class LimitOrderNotFound(LookupError):
    pass


class InvalidTransition(Exception):
    """The row is not in a state that allows the requested change."""


class ExecutionFailed(Exception):
    """The Execution Service rejected an operator-initiated trade."""


def get_position(session: Session, position_id: int) -> Position:
    position = session.get(Position, position_id)
    if not position:
        raise PositionNotFound(f"Position {position_id} not found")
    return position


def get_limit_order(session: Session, order_id: int) -> LimitOrder:
    order = session.get(LimitOrder, order_id)
    if not order:
        raise LimitOrderNotFound(f"Limit order {order_id} not found")
    return order


def list_positions(session: Session, status: str | None = None) -> list[Position]:
    query = select(Position).order_by(Position.id.desc())
    if status:
        query = query.where(Position.status == status)
    return list(session.exec(query).all())


def list_limit_orders(session: Session, status: str | None = None) -> list[LimitOrder]:
    query = select(LimitOrder).order_by(LimitOrder.id.desc())
    if status:
        query = query.where(LimitOrder.status == status)
    return list(session.exec(query).all())


def _reload(session: Session, model, row_id: int):
    row = session.get(model, row_id)
    if row is not None:
        session.refresh(row)
    return row


# ------------------------------------------------------------------
# Buy / manual sell
# ------------------------------------------------------------------

async def buy(
    token_mint: str,
    amount_usd: float,
    *,
    engine: Engine,
    resolver: PriceResolver | None = None,
    gateway: ExecutionGateway | None = None,
    notifier: Notifier | None = None,
    **options,
) -> Position:
    """Open a position at the current market price."""
    resolver = resolver or get_resolver()
    price = await resolver.resolve(token_mint)
    if price is None:
        raise PriceUnavailable(f"No price available for {token_mint}")
    return await open_position(
        token_mint, amount_usd, price,
        engine=engine, gateway=gateway, notifier=notifier, **options,
    )


async def close_position(
    position_id: int,
    *,
    engine: Engine,
    resolver: PriceResolver | None = None,
    gateway: ExecutionGateway | None = None,
    notifier: Notifier | None = None,
) -> Position:
    """Sell a holding position now, under the same claim discipline as the monitors."""
    resolver = resolver or get_resolver()
    gateway = gateway or get_gateway()
    claim_id = new_claim_id()
    now = utcnow()

    with Session(engine) as session:
        position = get_position(session, position_id)
        session.expunge(position)
        won = compare_and_set(
            session, Position, position_id,
            Position.status == PositionStatus.HOLDING,
            status=PositionStatus.PENDING_SELL,
            claim_id=claim_id,
            claimed_until=lease_until(now),
        )
    if not won:
        raise InvalidTransition(f"Position {position_id} is {position.status}, not holding")

    # Price is informational for a manual sell; an unpriced token still sells
    price = await resolver.resolve(position.token_mint)
    result = await gateway.sell(
        position.token_mint,
        slippage_bps=position.slippage_bps,
        priority_fee_mode=position.priority_fee_mode,
        wallet_id=position.wallet_id,
    )
    done_at = utcnow()

    if result.success:
        values = sell_success_values(position, price, result.signature, done_at)
    elif result.no_balance:
        values = benign_sell_values(result, done_at)
    else:
        values = {"status": PositionStatus.HOLDING, "error_message": f"Sell failed: {result.error}"}
    if values["status"] == PositionStatus.SOLD:
        values.update(after_sell_values(position))

    with Session(engine) as session:
        compare_and_set(
            session, Position, position_id,
            Position.claim_id == claim_id,
            **release_values(**values),
        )
        position = _reload(session, Position, position_id)

    if not result.success and not result.no_balance:
        raise ExecutionFailed(result.error or "sell failed")

    logger.info(f"[manual] Position {position_id} sold")
    if notifier is not None and result.success:
        label = position.token_symbol or position.token_mint[:8]
        notifier.publish(Notification(
            event="manual_sell",
            title=f"Sold {label}",
            message=f"Manual sell at ${price:.10g}" if price else "Manual sell",
            token_mint=position.token_mint,
            token_symbol=position.token_symbol,
            signature=result.signature,
            data={"position_id": position_id, "price_usd": price},
        ))
    return position


# ------------------------------------------------------------------
# Rebuy / emergency configuration
# ------------------------------------------------------------------

def configure_rebuy(
    session: Session,
    position_id: int,
    price_low_usd: float,
    price_high_usd: float,
    amount_usd: float,
    target_multiplier: float | None = None,
    loop_enabled: bool = False,
) -> Position:
    """Arm a rebuy: ``watching`` on a sold position, ``pending`` before that."""
    if not 0 < price_low_usd <= price_high_usd:
        raise ValueError("rebuy price range must satisfy 0 < low <= high")
    if amount_usd <= 0:
        raise ValueError("rebuy amount must be positive")

    position = get_position(session, position_id)
    if position.status == PositionStatus.FAILED:
        raise InvalidTransition("Cannot configure rebuy on a failed position")
    if position.rebuy_status == RebuyStatus.EXECUTED:
        raise InvalidTransition("Rebuy already executed for this position")

    new_status = RebuyStatus.WATCHING if position.status == PositionStatus.SOLD else RebuyStatus.PENDING
    now = utcnow()
    ok = compare_and_set(
        session, Position, position_id,
        Position.status == position.status,
        Position.rebuy_status.is_distinct_from(RebuyStatus.EXECUTED),
        unclaimed(Position, now),
        rebuy_enabled=True,
        rebuy_price_low_usd=price_low_usd,
        rebuy_price_high_usd=price_high_usd,
        rebuy_amount_usd=amount_usd,
        rebuy_target_multiplier=target_multiplier,
        rebuy_loop_enabled=loop_enabled,
        rebuy_status=new_status,
    )
    if not ok:
        raise InvalidTransition(f"Position {position_id} changed while configuring rebuy; retry")
    return _reload(session, Position, position_id)


def cancel_rebuy(session: Session, position_id: int) -> Position:
    get_position(session, position_id)
    ok = compare_and_set(
        session, Position, position_id,
        Position.rebuy_status.in_([RebuyStatus.PENDING, RebuyStatus.WATCHING]),
        unclaimed(Position, utcnow()),
        rebuy_enabled=False,
        rebuy_status=RebuyStatus.CANCELLED,
    )
    if not ok:
        raise InvalidTransition(f"Position {position_id} has no active rebuy to cancel")
    return _reload(session, Position, position_id)


def arm_emergency_sell(session: Session, position_id: int, price_usd: float) -> Position:
    """Set a stop-loss floor: ``watching`` while holding, ``pending`` until the buy settles."""
    if price_usd <= 0:
        raise ValueError("emergency sell price must be positive")

    position = get_position(session, position_id)
    if position.status == PositionStatus.HOLDING:
        new_status = EmergencySellStatus.WATCHING
    elif position.status == PositionStatus.PENDING_BUY:
        new_status = EmergencySellStatus.PENDING
    else:
        raise InvalidTransition(f"Cannot arm emergency sell on a {position.status} position")

    ok = compare_and_set(
        session, Position, position_id,
        Position.status == position.status,
        Position.emergency_sell_status.is_distinct_from(EmergencySellStatus.EXECUTED),
        emergency_sell_enabled=True,
        emergency_sell_price_usd=price_usd,
        emergency_sell_status=new_status,
    )
    if not ok:
        raise InvalidTransition(f"Position {position_id} changed while arming emergency sell; retry")
    return _reload(session, Position, position_id)


def disarm_emergency_sell(session: Session, position_id: int) -> Position:
    get_position(session, position_id)
    ok = compare_and_set(
        session, Position, position_id,
        Position.emergency_sell_status.in_([EmergencySellStatus.PENDING, EmergencySellStatus.WATCHING]),
        emergency_sell_enabled=False,
        emergency_sell_status=None,
    )
    if not ok:
        raise InvalidTransition(f"Position {position_id} has no armed emergency sell")
    return _reload(session, Position, position_id)


def delete_position(session: Session, position_id: int):
    """Delete a position that is not mid-execution.

    A ``pending_buy`` older than the claim lease can never settle on its own
    (see recovery); deleting it after checking the wallet unblocks the rebuy
    or limit order that opened it.
    """
    get_position(session, position_id)
    now = utcnow()
    stale_buy = and_(
        Position.status == PositionStatus.PENDING_BUY,
        Position.created_at <= now - timedelta(seconds=settings.claim_lease_seconds),
    )
    result = session.connection().execute(
        delete(Position).where(
            Position.id == position_id,
            or_(
                Position.status.not_in([PositionStatus.PENDING_BUY, PositionStatus.PENDING_SELL]),
                stale_buy,
            ),
            unclaimed(Position, now),
        )
    )
    session.commit()
    if result.rowcount != 1:
        raise InvalidTransition(f"Position {position_id} is executing and cannot be deleted")
    logger.info(f"Deleted position {position_id}")


# ------------------------------------------------------------------
# Limit orders
# ------------------------------------------------------------------

def create_limit_order(session: Session, **fields) -> LimitOrder:
    order = LimitOrder(status=LimitOrderStatus.WATCHING, **fields)
    session.add(order)
    session.commit()
    session.refresh(order)
    logger.info(
        f"Limit order {order.id} created for {order.token_symbol or order.token_mint}: "
        f"${order.buy_price_min_usd:.10g} - ${order.buy_price_max_usd:.10g}"
    )
    return order


def update_limit_order(session: Session, order_id: int, **changes) -> LimitOrder:
    """Edit a ``watching`` order that is not currently being filled."""
    order = get_limit_order(session, order_id)
    low = changes.get("buy_price_min_usd", order.buy_price_min_usd)
    high = changes.get("buy_price_max_usd", order.buy_price_max_usd)
    if low > high:
        raise ValueError("buy_price_min_usd must be <= buy_price_max_usd")
    if not changes:
        return order

    ok = compare_and_set(
        session, LimitOrder, order_id,
        LimitOrder.status == LimitOrderStatus.WATCHING,
        unclaimed(LimitOrder, utcnow()),
        **changes,
    )
    if not ok:
        raise InvalidTransition(f"Limit order {order_id} is no longer editable")
    return _reload(session, LimitOrder, order_id)


def cancel_limit_order(session: Session, order_id: int, now: datetime | None = None) -> LimitOrder:
    get_limit_order(session, order_id)
    now = now or utcnow()
    ok = compare_and_set(
        session, LimitOrder, order_id,
        LimitOrder.status == LimitOrderStatus.WATCHING,
        unclaimed(LimitOrder, now),
        status=LimitOrderStatus.CANCELLED,
        cancelled_at=now,
    )
    if not ok:
        raise InvalidTransition(f"Limit order {order_id} is no longer watching")
    return _reload(session, LimitOrder, order_id)
