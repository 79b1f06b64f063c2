"""Pydantic schemas for Position API."""

from datetime import datetime
from pydantic import BaseModel, Field, field_validator, model_validator

from flipit.utils.constants import PRIORITY_FEE_MODES


def _check_fee_mode(value: str | None) -> str | None:
    if value is None:
        return None
    if value not in PRIORITY_FEE_MODES:
        allowed = ", ".join(PRIORITY_FEE_MODES)
        raise ValueError(f"must be one of: {allowed}")
    return value


class RebuyConfig(BaseModel):
    price_low_usd: float = Field(gt=0)
    price_high_usd: float = Field(gt=0)
    amount_usd: float = Field(gt=0)
    target_multiplier: float | None = Field(default=None, gt=1)
    loop_enabled: bool = False

    @model_validator(mode="after")
    def _validate_range(self):
        if self.price_low_usd > self.price_high_usd:
            raise ValueError("price_low_usd must be <= price_high_usd")
        return self

    def as_position_fields(self) -> dict:
        return {
            "rebuy_enabled": True,
            "rebuy_price_low_usd": self.price_low_usd,
            "rebuy_price_high_usd": self.price_high_usd,
            "rebuy_amount_usd": self.amount_usd,
            "rebuy_target_multiplier": self.target_multiplier,
            "rebuy_loop_enabled": self.loop_enabled,
        }


class EmergencySellConfig(BaseModel):
    price_usd: float = Field(gt=0)


class PositionCreate(BaseModel):
    token_mint: str = Field(min_length=32, max_length=64)
    amount_usd: float = Field(gt=0)
    target_multiplier: float = Field(default=2.0, gt=1)
    token_symbol: str | None = Field(default=None, max_length=32)
    token_name: str | None = Field(default=None, max_length=120)
    wallet_id: str | None = None
    slippage_bps: int | None = Field(default=None, ge=1, le=10_000)
    priority_fee_mode: str | None = None
    rebuy: RebuyConfig | None = None
    emergency_sell_price_usd: float | None = Field(default=None, gt=0)

    @field_validator("token_mint")
    @classmethod
    def _trim_mint(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("priority_fee_mode")
    @classmethod
    def _validate_fee_mode(cls, value: str | None) -> str | None:
        return _check_fee_mode(value)


class PositionRead(BaseModel):
    id: int
    token_mint: str
    token_symbol: str | None
    token_name: str | None
    wallet_id: str | None
    status: str
    buy_amount_usd: float
    buy_price_usd: float | None
    quantity_tokens: float | None
    buy_executed_at: datetime | None
    buy_signature: str | None
    target_multiplier: float
    target_price_usd: float | None
    sell_price_usd: float | None
    sell_signature: str | None
    sell_executed_at: datetime | None
    profit_usd: float | None
    rebuy_enabled: bool
    rebuy_price_low_usd: float | None
    rebuy_price_high_usd: float | None
    rebuy_amount_usd: float | None
    rebuy_target_multiplier: float | None
    rebuy_loop_enabled: bool
    rebuy_status: str | None
    rebuy_executed_at: datetime | None
    rebuy_position_id: int | None
    source_position_id: int | None
    source_limit_order_id: int | None
    emergency_sell_enabled: bool
    emergency_sell_price_usd: float | None
    emergency_sell_status: str | None
    emergency_sell_executed_at: datetime | None
    slippage_bps: int
    priority_fee_mode: str
    last_price_usd: float | None
    last_price_at: datetime | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
