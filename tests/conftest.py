"""Shared fixtures: in-memory database, fake price/execution/notification collaborators."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from flipit.database import create_db_and_tables
from flipit.engine.store import utcnow
from flipit.models import LimitOrder, Position
from flipit.services.execution_gateway import ExecutionResult
from flipit.services.notifier import Channel, Notifier
from flipit.utils.constants import PositionStatus

MINT = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr"
PUMP_MINT = "9BB6NFEcjBCtnNLFko2FqVQBq8HHM13kCyYcdQbgpump"


class FakeResolver:
    """Price resolver returning fixed prices; yields to the loop like a real lookup."""

    def __init__(self, prices: dict[str, float] | None = None):
        self.prices = dict(prices or {})
        self.calls: list[list[str]] = []

    async def resolve(self, mint: str):
        self.calls.append([mint])
        await asyncio.sleep(0)
        return self.prices.get(mint)

    async def resolve_many(self, mints):
        unique = list(dict.fromkeys(mints))
        self.calls.append(unique)
        await asyncio.sleep(0)
        return {m: self.prices[m] for m in unique if m in self.prices}


class FakeGateway:
    """Execution gateway double recording every command it receives."""

    def __init__(self, buy_result: ExecutionResult | None = None, sell_result: ExecutionResult | None = None):
        self.buy_result = buy_result
        self.sell_result = sell_result
        self.buys: list[dict] = []
        self.sells: list[dict] = []
        self.raise_on_sell: Exception | None = None
        self.hold_buys: asyncio.Event | None = None

    async def buy(self, token_mint, amount_usd, slippage_bps=None, priority_fee_mode=None, wallet_id=None):
        self.buys.append({
            "token_mint": token_mint,
            "amount_usd": amount_usd,
            "slippage_bps": slippage_bps,
            "priority_fee_mode": priority_fee_mode,
            "wallet_id": wallet_id,
        })
        await asyncio.sleep(0)
        if self.hold_buys is not None:
            await self.hold_buys.wait()
        return self.buy_result or ExecutionResult(success=True, signature=f"buy-sig-{len(self.buys)}")

    async def sell(self, token_mint, slippage_bps=None, priority_fee_mode=None, wallet_id=None):
        self.sells.append({
            "token_mint": token_mint,
            "slippage_bps": slippage_bps,
            "priority_fee_mode": priority_fee_mode,
            "wallet_id": wallet_id,
        })
        await asyncio.sleep(0)
        if self.raise_on_sell is not None:
            raise self.raise_on_sell
        return self.sell_result or ExecutionResult(success=True, signature=f"sell-sig-{len(self.sells)}")


class RecordingChannel(Channel):
    name = "recording"

    def __init__(self):
        self.sent = []

    async def send(self, notification):
        self.sent.append(notification)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def notifier(channel):
    return Notifier(channels=[channel])


def add_position(engine, **overrides) -> int:
    """Insert a holding position bought at $1.00 with a 2x target."""
    fields = dict(
        token_mint=MINT,
        token_symbol="FLIP",
        buy_amount_usd=100.0,
        buy_price_usd=1.0,
        quantity_tokens=100.0,
        target_multiplier=2.0,
        target_price_usd=2.0,
        status=PositionStatus.HOLDING,
        buy_signature="buy-sig-0",
        buy_executed_at=utcnow(),
    )
    fields.update(overrides)
    with Session(engine) as session:
        position = Position(**fields)
        session.add(position)
        session.commit()
        session.refresh(position)
        return position.id


def add_limit_order(engine, **overrides) -> int:
    fields = dict(
        token_mint=MINT,
        token_symbol="FLIP",
        buy_price_min_usd=0.5,
        buy_price_max_usd=0.6,
        buy_amount_sol=1.5,
        target_multiplier=3.0,
        expires_at=utcnow() + timedelta(hours=1),
    )
    fields.update(overrides)
    with Session(engine) as session:
        order = LimitOrder(**fields)
        session.add(order)
        session.commit()
        session.refresh(order)
        return order.id


def load(engine, model, row_id):
    with Session(engine) as session:
        return session.get(model, row_id)
