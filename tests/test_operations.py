"""Tests for buy/sell commands and operator configuration of positions."""

from datetime import timedelta

import pytest
from sqlmodel import Session

from conftest import MINT, FakeGateway, FakeResolver, add_limit_order, add_position, load
from flipit.config import settings
from flipit.engine import operations
from flipit.engine.store import utcnow
from flipit.engine.trading import open_position
from flipit.models import Position
from flipit.services.execution_gateway import NO_BALANCE, TRANSIENT, ExecutionResult
from flipit.utils.constants import EmergencySellStatus, PositionStatus, RebuyStatus


# ---------------------------------------------------------------------------
# open_position
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_open_position_settles_to_holding(engine, gateway, notifier, channel):
    pos = await open_position(
        MINT, 40.0, 0.2,
        target_multiplier=2.5, token_symbol="FLIP",
        engine=engine, gateway=gateway, notifier=notifier,
    )
    await notifier.flush()

    assert pos.status == PositionStatus.HOLDING
    assert pos.buy_signature == "buy-sig-1"
    assert pos.buy_executed_at is not None
    assert pos.quantity_tokens == pytest.approx(200.0)
    assert pos.target_price_usd == pytest.approx(0.5)
    assert [n.event for n in channel.sent] == ["position_opened"]


@pytest.mark.asyncio
async def test_open_position_promotes_pending_emergency(engine, gateway):
    pos = await open_position(MINT, 40.0, 0.2, emergency_sell_price_usd=0.15, engine=engine, gateway=gateway)

    assert pos.emergency_sell_enabled is True
    assert pos.emergency_sell_status == EmergencySellStatus.WATCHING


@pytest.mark.asyncio
async def test_failed_buy_keeps_audit_row(engine):
    gateway = FakeGateway(buy_result=ExecutionResult(success=False, error="Slippage exceeded", error_class=TRANSIENT))
    pos = await open_position(MINT, 40.0, 0.2, emergency_sell_price_usd=0.15, engine=engine, gateway=gateway)

    assert pos.status == PositionStatus.FAILED
    assert pos.error_message == "Buy failed: Slippage exceeded"
    assert pos.emergency_sell_status == EmergencySellStatus.PENDING


@pytest.mark.asyncio
async def test_buy_requires_a_price(engine, gateway):
    with pytest.raises(operations.PriceUnavailable):
        await operations.buy(MINT, 10.0, engine=engine, resolver=FakeResolver(), gateway=gateway)
    assert gateway.buys == []


# ---------------------------------------------------------------------------
# Manual sell
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_close_position_sells_and_arms_rebuy(engine, gateway):
    pid = add_position(
        engine, rebuy_enabled=True, rebuy_price_low_usd=0.4, rebuy_price_high_usd=0.5,
        rebuy_amount_usd=20.0, rebuy_status=RebuyStatus.PENDING,
    )
    pos = await operations.close_position(
        pid, engine=engine, resolver=FakeResolver({MINT: 1.5}), gateway=gateway,
    )

    assert pos.status == PositionStatus.SOLD
    assert pos.sell_price_usd == 1.5
    assert pos.profit_usd == pytest.approx(50.0)
    assert pos.rebuy_status == RebuyStatus.WATCHING
    assert pos.claim_id is None


@pytest.mark.asyncio
async def test_close_position_rejects_non_holding(engine, gateway):
    pid = add_position(engine, status=PositionStatus.SOLD)
    with pytest.raises(operations.InvalidTransition):
        await operations.close_position(pid, engine=engine, resolver=FakeResolver(), gateway=gateway)
    assert gateway.sells == []


@pytest.mark.asyncio
async def test_close_position_failure_releases_and_raises(engine):
    gateway = FakeGateway(sell_result=ExecutionResult(success=False, error="HTTP 502", error_class=TRANSIENT))
    pid = add_position(engine)
    with pytest.raises(operations.ExecutionFailed):
        await operations.close_position(pid, engine=engine, resolver=FakeResolver({MINT: 1.2}), gateway=gateway)

    pos = load(engine, Position, pid)
    assert pos.status == PositionStatus.HOLDING
    assert pos.error_message == "Sell failed: HTTP 502"
    assert pos.claim_id is None


@pytest.mark.asyncio
async def test_close_position_with_empty_balance_is_benign(engine):
    gateway = FakeGateway(sell_result=ExecutionResult(success=False, error="already been sold", error_class=NO_BALANCE))
    pid = add_position(engine)
    pos = await operations.close_position(pid, engine=engine, resolver=FakeResolver(), gateway=gateway)

    assert pos.status == PositionStatus.SOLD
    assert pos.profit_usd is None


# ---------------------------------------------------------------------------
# Rebuy / emergency configuration
# ---------------------------------------------------------------------------

def test_configure_rebuy_on_sold_position_watches(engine):
    pid = add_position(engine, status=PositionStatus.SOLD)
    with Session(engine) as session:
        pos = operations.configure_rebuy(session, pid, 0.5, 0.6, 25.0, loop_enabled=True)
    assert pos.rebuy_status == RebuyStatus.WATCHING
    assert pos.rebuy_enabled is True
    assert pos.rebuy_loop_enabled is True


def test_configure_rebuy_on_holding_position_is_pending(engine):
    pid = add_position(engine)
    with Session(engine) as session:
        pos = operations.configure_rebuy(session, pid, 0.5, 0.6, 25.0)
    assert pos.rebuy_status == RebuyStatus.PENDING


def test_configure_rebuy_validation(engine):
    pid = add_position(engine, status=PositionStatus.SOLD)
    with Session(engine) as session:
        with pytest.raises(ValueError):
            operations.configure_rebuy(session, pid, 0.7, 0.6, 25.0)
        with pytest.raises(ValueError):
            operations.configure_rebuy(session, pid, 0.5, 0.6, 0)


def test_configure_rebuy_after_execution_rejected(engine):
    pid = add_position(engine, status=PositionStatus.SOLD, rebuy_status=RebuyStatus.EXECUTED, rebuy_position_id=9)
    with Session(engine) as session:
        with pytest.raises(operations.InvalidTransition):
            operations.configure_rebuy(session, pid, 0.5, 0.6, 25.0)


def test_cancel_rebuy(engine):
    pid = add_position(engine, status=PositionStatus.SOLD, rebuy_enabled=True, rebuy_status=RebuyStatus.WATCHING,
                       rebuy_price_low_usd=0.5, rebuy_price_high_usd=0.6, rebuy_amount_usd=25.0)
    with Session(engine) as session:
        pos = operations.cancel_rebuy(session, pid)
        assert pos.rebuy_status == RebuyStatus.CANCELLED
        assert pos.rebuy_enabled is False
        with pytest.raises(operations.InvalidTransition):
            operations.cancel_rebuy(session, pid)


def test_arm_and_disarm_emergency_sell(engine):
    pid = add_position(engine)
    with Session(engine) as session:
        pos = operations.arm_emergency_sell(session, pid, 0.7)
        assert pos.emergency_sell_status == EmergencySellStatus.WATCHING
        assert pos.emergency_sell_price_usd == 0.7

        pos = operations.disarm_emergency_sell(session, pid)
        assert pos.emergency_sell_status is None
        assert pos.emergency_sell_enabled is False


def test_arm_emergency_before_settlement_is_pending(engine):
    pid = add_position(engine, status=PositionStatus.PENDING_BUY)
    with Session(engine) as session:
        pos = operations.arm_emergency_sell(session, pid, 0.7)
    assert pos.emergency_sell_status == EmergencySellStatus.PENDING


def test_arm_emergency_on_sold_position_rejected(engine):
    pid = add_position(engine, status=PositionStatus.SOLD)
    with Session(engine) as session:
        with pytest.raises(operations.InvalidTransition):
            operations.arm_emergency_sell(session, pid, 0.7)


def test_delete_position(engine):
    pid = add_position(engine, status=PositionStatus.SOLD)
    in_flight = add_position(engine, status=PositionStatus.PENDING_SELL)
    with Session(engine) as session:
        operations.delete_position(session, pid)
        with pytest.raises(operations.InvalidTransition):
            operations.delete_position(session, in_flight)
        with pytest.raises(operations.PositionNotFound):
            operations.delete_position(session, pid)


def test_stale_pending_buy_can_be_deleted_to_unblock_its_origin(engine):
    order_id = add_limit_order(engine)
    fresh = add_position(engine, status=PositionStatus.PENDING_BUY, source_limit_order_id=order_id)
    stale = add_position(
        engine,
        status=PositionStatus.PENDING_BUY,
        source_limit_order_id=order_id,
        created_at=utcnow() - timedelta(seconds=settings.claim_lease_seconds + 1),
    )
    with Session(engine) as session:
        with pytest.raises(operations.InvalidTransition):
            operations.delete_position(session, fresh)
        operations.delete_position(session, stale)
        assert session.get(Position, stale) is None
