"""Pydantic schemas for LimitOrder API."""

from datetime import datetime, timedelta, timezone
from pydantic import BaseModel, Field, field_validator, model_validator

from flipit.schemas.position import _check_fee_mode


def _as_utc(value: datetime | None) -> datetime | None:
    """Store expiries as UTC; naive input is taken to already be UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc)


class LimitOrderCreate(BaseModel):
    token_mint: str = Field(min_length=32, max_length=64)
    token_symbol: str | None = Field(default=None, max_length=32)
    token_name: str | None = Field(default=None, max_length=120)
    wallet_id: str | None = None
    buy_price_min_usd: float = Field(gt=0)
    buy_price_max_usd: float = Field(gt=0)
    buy_amount_sol: float = Field(gt=0)
    target_multiplier: float = Field(default=2.0, gt=1)
    slippage_bps: int = Field(default=500, ge=1, le=10_000)
    priority_fee_mode: str = "medium"
    expires_at: datetime | None = None
    expires_in_hours: float | None = Field(default=None, gt=0, le=24 * 30)
    alert_only: bool = False
    notification_email: str | None = Field(default=None, max_length=254)

    @field_validator("token_mint")
    @classmethod
    def _trim_mint(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("priority_fee_mode")
    @classmethod
    def _validate_fee_mode(cls, value: str) -> str:
        return _check_fee_mode(value)

    @field_validator("expires_at")
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @model_validator(mode="after")
    def _validate_relationships(self):
        if self.buy_price_min_usd > self.buy_price_max_usd:
            raise ValueError("buy_price_min_usd must be <= buy_price_max_usd")
        if self.expires_at is not None and self.expires_in_hours is not None:
            raise ValueError("set expires_at or expires_in_hours, not both")
        return self

    def resolved_expiry(self, now: datetime | None = None) -> datetime:
        if self.expires_at is not None:
            return self.expires_at
        now = now or datetime.now(timezone.utc)
        return now + timedelta(hours=self.expires_in_hours or 24)

    def as_order_fields(self) -> dict:
        fields = self.model_dump(exclude={"expires_at", "expires_in_hours"})
        fields["expires_at"] = self.resolved_expiry()
        return fields


class LimitOrderUpdate(BaseModel):
    buy_price_min_usd: float | None = Field(default=None, gt=0)
    buy_price_max_usd: float | None = Field(default=None, gt=0)
    buy_amount_sol: float | None = Field(default=None, gt=0)
    target_multiplier: float | None = Field(default=None, gt=1)
    slippage_bps: int | None = Field(default=None, ge=1, le=10_000)
    priority_fee_mode: str | None = None
    expires_at: datetime | None = None
    alert_only: bool | None = None
    notification_email: str | None = Field(default=None, max_length=254)

    @field_validator("priority_fee_mode")
    @classmethod
    def _validate_optional_fee_mode(cls, value: str | None) -> str | None:
        return _check_fee_mode(value)

    @field_validator("expires_at")
    @classmethod
    def _optional_to_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @model_validator(mode="after")
    def _validate_optional_relationships(self):
        if (
            self.buy_price_min_usd is not None
            and self.buy_price_max_usd is not None
            and self.buy_price_min_usd > self.buy_price_max_usd
        ):
            raise ValueError("buy_price_min_usd must be <= buy_price_max_usd")
        return self


class LimitOrderRead(BaseModel):
    id: int
    token_mint: str
    token_symbol: str | None
    token_name: str | None
    wallet_id: str | None
    buy_price_min_usd: float
    buy_price_max_usd: float
    buy_amount_sol: float
    target_multiplier: float
    slippage_bps: int
    priority_fee_mode: str
    status: str
    expires_at: datetime
    executed_at: datetime | None
    alerted_at: datetime | None
    cancelled_at: datetime | None
    expired_at: datetime | None
    executed_position_id: int | None
    alert_only: bool
    notification_email: str | None
    last_attempt_at: datetime | None
    last_error: str | None
    attempt_count: int
    last_price_usd: float | None
    last_price_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
