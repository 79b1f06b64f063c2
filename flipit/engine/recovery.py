"""Recovery of rows left mid-flight by a crashed or killed invocation.

A process that dies between claiming a row and finalizing it leaves one of:
1. ``pending_sell`` with an expired lease → returned to ``holding`` so the
   sell is retried. If the earlier sell actually landed, the retry hits an
   empty balance and closes the position through the benign path.
2. ``pending_buy`` that never settled → flagged for manual review. The buy
   may or may not have landed on chain, so it is never retried blindly.
3. A rebuy or limit-order claim whose lease lapsed. The row becomes
   claimable again only once the position it opened has left ``pending_buy``.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.engine import Engine
from sqlmodel import Session

from flipit.config import settings
from flipit.engine.store import (
    compare_and_set,
    release_values,
    stale_pending_buy_ids,
    stale_pending_sell_ids,
    unclaimed,
    utcnow,
)
from flipit.models import Position
from flipit.utils.constants import PositionStatus

logger = logging.getLogger(__name__)

STALE_SELL_MESSAGE = "Sell interrupted before confirmation; returned to holding for retry"
STALE_BUY_MESSAGE = "Buy never confirmed; check the wallet and settle this position manually"


def recover_stale_sells(session: Session, now: datetime) -> list[int]:
    """Return expired ``pending_sell`` claims to ``holding``."""
    recovered = []
    for position_id in stale_pending_sell_ids(session, now):
        if compare_and_set(
            session, Position, position_id,
            Position.status == PositionStatus.PENDING_SELL,
            unclaimed(Position, now),
            **release_values(status=PositionStatus.HOLDING, error_message=STALE_SELL_MESSAGE),
        ):
            recovered.append(position_id)
    if recovered:
        logger.warning(f"Recovered stale pending_sell positions: {recovered}")
    return recovered


def flag_stale_buys(session: Session, now: datetime) -> list[int]:
    """Mark ``pending_buy`` rows older than the claim lease for operator review."""
    cutoff = now - timedelta(seconds=settings.claim_lease_seconds)
    flagged = []
    for position_id in stale_pending_buy_ids(session, cutoff):
        if compare_and_set(
            session, Position, position_id,
            Position.status == PositionStatus.PENDING_BUY,
            Position.error_message.is_(None),
            error_message=STALE_BUY_MESSAGE,
        ):
            flagged.append(position_id)
    if flagged:
        logger.warning(f"Pending buys needing manual review: {flagged}")
    return flagged


def recover_on_startup(engine: Engine | None = None) -> dict:
    """Run every recovery pass once. Called from app startup and the CLI."""
    if engine is None:
        from flipit.database import engine as default_engine
        engine = default_engine

    now = utcnow()
    with Session(engine) as session:
        sells = recover_stale_sells(session, now)
        buys = flag_stale_buys(session, now)

    if not sells and not buys:
        logger.info("Recovery: nothing in flight, all clear")
    return {"recovered_sells": sells, "flagged_buys": buys}
