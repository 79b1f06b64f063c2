"""Tests for the rebuy monitor."""

import asyncio

import pytest
from sqlmodel import Session, select

from conftest import MINT, FakeGateway, FakeResolver, add_position, load
from flipit.engine.rebuy import RebuyMonitor
from flipit.engine.target_sell import TargetSellMonitor
from flipit.models import Position
from flipit.services.execution_gateway import UNCLASSIFIED, ExecutionResult
from flipit.services.notifier import Notifier
from flipit.utils.constants import PositionStatus, RebuyStatus


def _monitor(engine, price, gateway, notifier=None):
    return RebuyMonitor(
        engine=engine,
        resolver=FakeResolver({MINT: price}),
        gateway=gateway,
        notifier=notifier or Notifier(channels=[]),
    )


def _sold_with_rebuy(engine, **overrides) -> int:
    fields = dict(
        status=PositionStatus.SOLD,
        sell_price_usd=2.0,
        sell_signature="sell-sig-0",
        rebuy_enabled=True,
        rebuy_price_low_usd=0.5,
        rebuy_price_high_usd=0.6,
        rebuy_amount_usd=50.0,
        rebuy_target_multiplier=3.0,
        rebuy_status=RebuyStatus.WATCHING,
    )
    fields.update(overrides)
    return add_position(engine, **fields)


@pytest.mark.asyncio
@pytest.mark.parametrize("price", [0.5, 0.55, 0.6])
async def test_price_inside_range_rebuys(engine, gateway, price):
    pid = _sold_with_rebuy(engine)
    summary = await _monitor(engine, price, gateway).run()

    assert summary.executed == [pid]
    assert len(gateway.buys) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("price", [0.49, 0.61])
async def test_price_outside_range_waits(engine, gateway, price):
    pid = _sold_with_rebuy(engine)
    summary = await _monitor(engine, price, gateway).run()

    assert summary.executed == []
    assert gateway.buys == []
    assert load(engine, Position, pid).rebuy_status == RebuyStatus.WATCHING


@pytest.mark.asyncio
async def test_rebuy_opens_new_position(engine, gateway, notifier, channel):
    pid = _sold_with_rebuy(engine)
    await _monitor(engine, 0.5, gateway, notifier).run()
    await notifier.flush()

    original = load(engine, Position, pid)
    assert original.status == PositionStatus.SOLD
    assert original.rebuy_status == RebuyStatus.EXECUTED
    assert original.rebuy_executed_at is not None
    assert original.rebuy_position_id is not None
    assert original.claim_id is None

    new = load(engine, Position, original.rebuy_position_id)
    assert new.id != pid
    assert new.status == PositionStatus.HOLDING
    assert new.source_position_id == pid
    assert new.buy_amount_usd == 50.0
    assert new.buy_price_usd == 0.5
    assert new.target_multiplier == 3.0
    assert new.target_price_usd == pytest.approx(1.5)
    assert new.quantity == pytest.approx(100.0)
    assert new.rebuy_status is None

    assert gateway.buys[0]["amount_usd"] == 50.0
    assert [n.event for n in channel.sent] == ["rebuy"]


@pytest.mark.asyncio
async def test_rebuy_falls_back_to_original_multiplier(engine, gateway):
    pid = _sold_with_rebuy(engine, rebuy_target_multiplier=None, target_multiplier=2.5)
    await _monitor(engine, 0.5, gateway).run()

    original = load(engine, Position, pid)
    assert load(engine, Position, original.rebuy_position_id).target_multiplier == 2.5


@pytest.mark.asyncio
async def test_loop_rebuy_propagates_config_as_pending(engine, gateway):
    pid = _sold_with_rebuy(engine, rebuy_loop_enabled=True)
    await _monitor(engine, 0.55, gateway).run()

    new_id = load(engine, Position, pid).rebuy_position_id
    new = load(engine, Position, new_id)
    assert new.rebuy_status == RebuyStatus.PENDING
    assert new.rebuy_enabled is True
    assert new.rebuy_loop_enabled is True
    assert (new.rebuy_price_low_usd, new.rebuy_price_high_usd) == (0.5, 0.6)
    assert new.rebuy_amount_usd == 50.0

    # Selling the new position at its target arms the next rebuy
    target = TargetSellMonitor(
        engine=engine, resolver=FakeResolver({MINT: 2.0}), gateway=gateway, notifier=Notifier(channels=[]),
    )
    await target.run()
    resold = load(engine, Position, new_id)
    assert resold.status == PositionStatus.SOLD
    assert resold.rebuy_status == RebuyStatus.WATCHING


@pytest.mark.asyncio
async def test_failed_rebuy_keeps_watching(engine):
    gateway = FakeGateway(buy_result=ExecutionResult(
        success=False, error="Wallet locked", error_class=UNCLASSIFIED,
    ))
    pid = _sold_with_rebuy(engine)
    summary = await _monitor(engine, 0.5, gateway).run()

    assert summary.failed == [pid]
    original = load(engine, Position, pid)
    assert original.rebuy_status == RebuyStatus.WATCHING
    assert original.rebuy_position_id is None
    assert original.error_message == "Rebuy failed: Wallet locked"
    assert original.claim_id is None


@pytest.mark.asyncio
async def test_repeated_failed_rebuys_leave_no_failed_rows(engine):
    gateway = FakeGateway(buy_result=ExecutionResult(
        success=False, error="Wallet locked", error_class=UNCLASSIFIED,
    ))
    pid = _sold_with_rebuy(engine)
    monitor = _monitor(engine, 0.55, gateway)

    for _ in range(10):
        await monitor.run()

    assert len(gateway.buys) == 10
    with Session(engine) as session:
        positions = session.exec(select(Position)).all()
    assert [p.id for p in positions] == [pid]
    assert positions[0].rebuy_status == RebuyStatus.WATCHING


@pytest.mark.asyncio
async def test_unsettled_rebuy_blocks_another(engine, gateway):
    pid = _sold_with_rebuy(engine)
    add_position(engine, status=PositionStatus.PENDING_BUY, source_position_id=pid)

    summary = await _monitor(engine, 0.55, gateway).run()

    assert summary.checked == 1
    assert summary.executed == []
    assert gateway.buys == []
    assert load(engine, Position, pid).rebuy_status == RebuyStatus.WATCHING


@pytest.mark.asyncio
async def test_concurrent_rebuys_buy_once(engine, gateway):
    pid = _sold_with_rebuy(engine)
    monitors = [_monitor(engine, 0.55, gateway) for _ in range(4)]

    summaries = await asyncio.gather(*(m.run() for m in monitors))

    assert len(gateway.buys) == 1
    assert [i for s in summaries for i in s.executed] == [pid]
    with Session(engine) as session:
        positions = session.exec(select(Position)).all()
    assert len(positions) == 2


@pytest.mark.asyncio
async def test_holding_position_is_not_a_rebuy_candidate(engine, gateway):
    add_position(engine, rebuy_enabled=True, rebuy_price_low_usd=0.5, rebuy_price_high_usd=0.6,
                 rebuy_amount_usd=50.0, rebuy_status=RebuyStatus.PENDING)
    summary = await _monitor(engine, 0.55, gateway).run()

    assert summary.checked == 0
    assert gateway.buys == []
