"""Application configuration via environment variables."""

from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Headroom between the slowest possible gateway call and the claim lease
CLAIM_LEASE_MARGIN_SECONDS = 30


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'flipit.db'}"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]  # Vite dev server

    # Operator API auth (Bearer token); empty disables every protected route
    operator_token: str = ""

    # Telegram
    telegram_bot_token: str = ""
    telegram_chat_ids: list[int] = []

    # Execution Service (swap submission). Empty URL = mock mode.
    execution_service_url: str = ""
    execution_service_key: str = ""
    execution_timeout_seconds: float = 45.0
    execution_connect_retries: int = 2
    default_slippage_bps: int = 500
    emergency_slippage_bps: int = 2000
    default_priority_fee_mode: str = "medium"
    default_wallet_id: str | None = None

    # Price sources, in priority order
    pumpfun_api_url: str = "https://frontend-api.pump.fun/coins"
    jupiter_price_url: str = "https://api.jup.ag/price/v2"
    dexscreener_url: str = "https://api.dexscreener.com/latest/dex/tokens"
    price_timeout_seconds: float = 5.0
    price_concurrency: int = 5
    price_cache_ttl_seconds: float = 3.0

    # Monitor cadence (seconds)
    scheduler_enabled: bool = True
    target_sell_interval_seconds: int = 15
    rebuy_interval_seconds: int = 15
    emergency_sell_interval_seconds: int = 5
    limit_order_interval_seconds: int = 2
    monitor_max_instances: int = 3
    claim_lease_seconds: int = 300
    log_idle_invocations: bool = False

    # Notification webhooks (fire-and-forget JSON POSTs)
    email_webhook_url: str = ""
    social_webhook_url: str = ""
    broadcast_webhook_urls: list[str] = []
    notification_email: str = ""

    model_config = {"env_prefix": "FLIPIT_", "env_file": ".env"}

    @property
    def execution_deadline_seconds(self) -> float:
        """Hard cap on one gateway call: every connect attempt plus the request itself."""
        return self.execution_timeout_seconds * (self.execution_connect_retries + 2)

    @model_validator(mode="after")
    def check_claim_lease(self):
        # A lease that can lapse mid-trade lets a second invocation claim the row
        minimum = self.execution_deadline_seconds + CLAIM_LEASE_MARGIN_SECONDS
        if self.claim_lease_seconds < minimum:
            raise ValueError(
                f"claim_lease_seconds ({self.claim_lease_seconds}) must be at least {minimum:g}: "
                f"execution_timeout_seconds x (execution_connect_retries + 2) + {CLAIM_LEASE_MARGIN_SECONDS}"
            )
        return self


settings = Settings()
