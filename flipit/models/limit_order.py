"""LimitOrder model: a queued buy that fires when price enters a range."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field

from flipit.utils.constants import LimitOrderStatus


class LimitOrder(SQLModel, table=True):
    __tablename__ = "limit_order"

    id: int | None = Field(default=None, primary_key=True)
    token_mint: str = Field(index=True)
    token_symbol: str | None = None
    token_name: str | None = None
    wallet_id: str | None = None

    # Trigger
    buy_price_min_usd: float
    buy_price_max_usd: float
    buy_amount_sol: float
    target_multiplier: float = 2.0
    slippage_bps: int = 500
    priority_fee_mode: str = "medium"

    status: str = Field(default=LimitOrderStatus.WATCHING, index=True)
    expires_at: datetime
    executed_at: datetime | None = None
    alerted_at: datetime | None = None
    cancelled_at: datetime | None = None
    expired_at: datetime | None = None
    executed_position_id: int | None = None

    alert_only: bool = False
    notification_email: str | None = None

    last_attempt_at: datetime | None = None
    last_error: str | None = None
    attempt_count: int = 0

    last_price_usd: float | None = None
    last_price_at: datetime | None = None
    claim_id: str | None = None
    claimed_until: datetime | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
