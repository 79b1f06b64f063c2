"""Positions API: open, inspect, sell and configure positions."""

import logging

from fastapi import APIRouter, Depends, Response
from sqlalchemy.engine import Engine
from sqlmodel import Session

from flipit.api.deps import (
    domain_errors,
    get_db,
    get_engine,
    get_gateway,
    get_notifier,
    get_resolver,
    require_operator,
)
from flipit.engine import operations
from flipit.schemas.position import EmergencySellConfig, PositionCreate, PositionRead, RebuyConfig

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/positions", tags=["positions"], dependencies=[Depends(require_operator)])


@router.get("", response_model=list[PositionRead])
def list_positions(status: str | None = None, session: Session = Depends(get_db)):
    return operations.list_positions(session, status)


@router.get("/{position_id}", response_model=PositionRead)
def get_position(position_id: int, session: Session = Depends(get_db)):
    with domain_errors():
        return operations.get_position(session, position_id)


@router.post("", response_model=PositionRead, status_code=201)
async def open_position(
    body: PositionCreate,
    engine: Engine = Depends(get_engine),
    resolver=Depends(get_resolver),
    gateway=Depends(get_gateway),
    notifier=Depends(get_notifier),
):
    """Buy at the current market price. A rejected buy returns the ``failed`` row."""
    with domain_errors():
        return await operations.buy(
            body.token_mint,
            body.amount_usd,
            engine=engine,
            resolver=resolver,
            gateway=gateway,
            notifier=notifier,
            target_multiplier=body.target_multiplier,
            token_symbol=body.token_symbol,
            token_name=body.token_name,
            wallet_id=body.wallet_id,
            slippage_bps=body.slippage_bps,
            priority_fee_mode=body.priority_fee_mode,
            rebuy=body.rebuy.as_position_fields() if body.rebuy else None,
            emergency_sell_price_usd=body.emergency_sell_price_usd,
        )


@router.post("/{position_id}/sell", response_model=PositionRead)
async def sell_position(
    position_id: int,
    engine: Engine = Depends(get_engine),
    resolver=Depends(get_resolver),
    gateway=Depends(get_gateway),
    notifier=Depends(get_notifier),
):
    """Manually sell a holding position."""
    with domain_errors():
        return await operations.close_position(
            position_id, engine=engine, resolver=resolver, gateway=gateway, notifier=notifier,
        )


@router.put("/{position_id}/rebuy", response_model=PositionRead)
def configure_rebuy(position_id: int, body: RebuyConfig, session: Session = Depends(get_db)):
    with domain_errors():
        return operations.configure_rebuy(
            session,
            position_id,
            price_low_usd=body.price_low_usd,
            price_high_usd=body.price_high_usd,
            amount_usd=body.amount_usd,
            target_multiplier=body.target_multiplier,
            loop_enabled=body.loop_enabled,
        )


@router.delete("/{position_id}/rebuy", response_model=PositionRead)
def cancel_rebuy(position_id: int, session: Session = Depends(get_db)):
    with domain_errors():
        return operations.cancel_rebuy(session, position_id)


@router.put("/{position_id}/emergency-sell", response_model=PositionRead)
def arm_emergency_sell(position_id: int, body: EmergencySellConfig, session: Session = Depends(get_db)):
    with domain_errors():
        return operations.arm_emergency_sell(session, position_id, body.price_usd)


@router.delete("/{position_id}/emergency-sell", response_model=PositionRead)
def disarm_emergency_sell(position_id: int, session: Session = Depends(get_db)):
    with domain_errors():
        return operations.disarm_emergency_sell(session, position_id)


@router.delete("/{position_id}", status_code=204)
def delete_position(position_id: int, session: Session = Depends(get_db)):
    with domain_errors():
        operations.delete_position(session, position_id)
    return Response(status_code=204)
