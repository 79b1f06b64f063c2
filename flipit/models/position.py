"""Position model: one buy/sell round trip on a single token."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field

from flipit.utils.constants import EmergencySellStatus, PositionStatus, RebuyStatus


class Position(SQLModel, table=True):
    __tablename__ = "position"

    id: int | None = Field(default=None, primary_key=True)
    token_mint: str = Field(index=True)
    token_symbol: str | None = None
    token_name: str | None = None
    wallet_id: str | None = None  # funding wallet, passed through to the Execution Service

    # Buy leg
    buy_amount_usd: float
    buy_price_usd: float | None = None
    quantity_tokens: float | None = None
    buy_executed_at: datetime | None = None
    buy_signature: str | None = None

    # Target
    target_multiplier: float = 2.0
    target_price_usd: float | None = None

    # Sell leg
    sell_price_usd: float | None = None
    sell_signature: str | None = None
    sell_executed_at: datetime | None = None
    profit_usd: float | None = None

    status: str = Field(default=PositionStatus.PENDING_BUY, index=True)

    # Rebuy
    rebuy_enabled: bool = False
    rebuy_price_low_usd: float | None = None
    rebuy_price_high_usd: float | None = None
    rebuy_amount_usd: float | None = None
    rebuy_target_multiplier: float | None = None
    rebuy_loop_enabled: bool = False
    rebuy_status: str | None = Field(default=None, index=True)
    rebuy_executed_at: datetime | None = None
    rebuy_position_id: int | None = None

    # Row whose monitor opened this position (a rebuy parent or a limit order)
    source_position_id: int | None = Field(default=None, index=True)
    source_limit_order_id: int | None = Field(default=None, index=True)

    # Emergency (stop-loss) sell
    emergency_sell_enabled: bool = False
    emergency_sell_price_usd: float | None = None
    emergency_sell_status: str | None = Field(default=None, index=True)
    emergency_sell_executed_at: datetime | None = None

    # Execution preferences
    slippage_bps: int = 500
    priority_fee_mode: str = "medium"

    last_price_usd: float | None = None
    last_price_at: datetime | None = None

    # Claim lease held by the monitor invocation currently executing this row
    claim_id: str | None = None
    claimed_until: datetime | None = None

    error_message: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def quantity(self) -> float | None:
        if self.quantity_tokens is not None:
            return self.quantity_tokens
        if self.buy_price_usd:
            return self.buy_amount_usd / self.buy_price_usd
        return None

    def has_valid_rebuy_config(self) -> bool:
        return (
            self.rebuy_price_low_usd is not None
            and self.rebuy_price_high_usd is not None
            and self.rebuy_amount_usd is not None
            and 0 < self.rebuy_price_low_usd <= self.rebuy_price_high_usd
            and self.rebuy_amount_usd > 0
        )


def check_invariants(position: Position) -> list[str]:
    """Return a description of every lifecycle invariant the row violates."""
    problems = []
    if (
        position.emergency_sell_status == EmergencySellStatus.WATCHING
        and position.status != PositionStatus.HOLDING
    ):
        problems.append("emergency sell watching while not holding")
    if position.rebuy_status == RebuyStatus.WATCHING:
        if position.status != PositionStatus.SOLD:
            problems.append("rebuy watching while not sold")
        if not position.has_valid_rebuy_config():
            problems.append("rebuy watching without a valid price range and amount")
    if (
        position.rebuy_status == RebuyStatus.WATCHING
        and position.emergency_sell_status == EmergencySellStatus.WATCHING
    ):
        problems.append("rebuy and emergency sell both watching")
    if position.rebuy_position_id is not None and position.rebuy_status != RebuyStatus.EXECUTED:
        problems.append("rebuy_position_id set without an executed rebuy")
    if position.target_multiplier is not None and position.target_multiplier <= 1:
        problems.append("target_multiplier must be greater than 1")
    return problems
