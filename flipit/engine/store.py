"""Candidate queries and the conditional-update primitive.

Every state change on a Position or LimitOrder goes through
``compare_and_set``: one ``UPDATE ... WHERE id = ? AND <expected state>``
whose rowcount tells the caller whether it won. There are no row locks.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, update
from sqlalchemy.orm import aliased
from sqlmodel import Session, select

from flipit.config import settings
from flipit.models import LimitOrder, Position
from flipit.utils.constants import (
    EmergencySellStatus,
    LimitOrderStatus,
    PositionStatus,
    RebuyStatus,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_claim_id() -> str:
    return uuid.uuid4().hex


def lease_until(now: datetime | None = None, seconds: int | None = None) -> datetime:
    seconds = settings.claim_lease_seconds if seconds is None else seconds
    return (now or utcnow()) + timedelta(seconds=seconds)


def compare_and_set(session: Session, model, row_id: int, *conditions, **values) -> bool:
    """Atomically update one row if it still matches ``conditions``.

    Commits immediately. Returns True when exactly one row matched; False
    means another writer changed the row first (or it no longer exists).
    """
    values.setdefault("updated_at", utcnow())
    stmt = update(model).where(model.id == row_id, *conditions).values(**values)
    result = session.connection().execute(stmt)
    session.commit()
    return result.rowcount == 1


def unclaimed(model, now: datetime):
    """Condition: no live claim lease on the row."""
    return or_(model.claim_id.is_(None), model.claimed_until.is_(None), model.claimed_until <= now)


def buy_in_flight(model):
    """Condition: a buy opened from this row has not settled yet.

    The pending position is written before the gateway is called, so this
    holds for as long as that buy is unresolved, whatever the claim lease
    says. A buy that never settles keeps the row blocked until an operator
    resolves the position.
    """
    child = aliased(Position)
    source = child.source_limit_order_id if model is LimitOrder else child.source_position_id
    return (
        select(child.id)
        .where(source == model.id, child.status == PositionStatus.PENDING_BUY)
        .exists()
    )


def release_values(**values) -> dict:
    return {"claim_id": None, "claimed_until": None, **values}


def record_prices(session: Session, model, rows, prices: dict[str, float], now: datetime) -> int:
    """Unconditional metadata write of the latest observed price per row."""
    written = 0
    for row in rows:
        price = prices.get(row.token_mint)
        if price is None:
            continue
        session.connection().execute(
            update(model)
            .where(model.id == row.id)
            .values(last_price_usd=price, last_price_at=now)
        )
        written += 1
    if written:
        session.commit()
    return written


# ------------------------------------------------------------------
# Candidate queries
# ------------------------------------------------------------------

def holding_positions(session: Session) -> list[Position]:
    return list(session.exec(
        select(Position)
        .where(Position.status == PositionStatus.HOLDING)
        .order_by(Position.id)
    ).all())


def emergency_candidates(session: Session) -> list[Position]:
    return list(session.exec(
        select(Position)
        .where(
            Position.status == PositionStatus.HOLDING,
            Position.emergency_sell_status == EmergencySellStatus.WATCHING,
            Position.emergency_sell_price_usd.is_not(None),
        )
        .order_by(Position.id)
    ).all())


def rebuy_candidates(session: Session) -> list[Position]:
    return list(session.exec(
        select(Position)
        .where(
            Position.status == PositionStatus.SOLD,
            Position.rebuy_status == RebuyStatus.WATCHING,
        )
        .order_by(Position.id)
    ).all())


def watching_limit_orders(session: Session, now: datetime) -> list[LimitOrder]:
    return list(session.exec(
        select(LimitOrder)
        .where(
            LimitOrder.status == LimitOrderStatus.WATCHING,
            LimitOrder.expires_at > now,
        )
        .order_by(LimitOrder.id)
    ).all())


def expired_limit_order_ids(session: Session, now: datetime) -> list[int]:
    return list(session.exec(
        select(LimitOrder.id).where(
            LimitOrder.status == LimitOrderStatus.WATCHING,
            LimitOrder.expires_at <= now,
            unclaimed(LimitOrder, now),
            ~buy_in_flight(LimitOrder),
        )
    ).all())


def stale_pending_sell_ids(session: Session, now: datetime) -> list[int]:
    return list(session.exec(
        select(Position.id).where(
            Position.status == PositionStatus.PENDING_SELL,
            unclaimed(Position, now),
        )
    ).all())


def stale_pending_buy_ids(session: Session, older_than: datetime) -> list[int]:
    return list(session.exec(
        select(Position.id).where(
            Position.status == PositionStatus.PENDING_BUY,
            Position.created_at <= older_than,
            Position.error_message.is_(None),
        )
    ).all())
