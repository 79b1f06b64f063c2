"""Status values and shared constants for positions and limit orders."""


class PositionStatus:
    PENDING_BUY = "pending_buy"
    HOLDING = "holding"
    PENDING_SELL = "pending_sell"
    SOLD = "sold"
    FAILED = "failed"


class RebuyStatus:
    PENDING = "pending"      # armed, activates once the position sells
    WATCHING = "watching"
    EXECUTED = "executed"
    CANCELLED = "cancelled"


class EmergencySellStatus:
    PENDING = "pending"      # armed before the buy settled
    WATCHING = "watching"
    EXECUTED = "executed"


class LimitOrderStatus:
    WATCHING = "watching"
    EXECUTED = "executed"
    ALERTED = "alerted"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_POSITION_STATUSES = {PositionStatus.SOLD, PositionStatus.FAILED}

PRIORITY_FEE_MODES = ["low", "medium", "high", "turbo"]

SOL_MINT = "So11111111111111111111111111111111111111112"

SOLSCAN_TX_URL = "https://solscan.io/tx/{signature}"
DEXSCREENER_CHART_URL = "https://dexscreener.com/solana/{mint}"
