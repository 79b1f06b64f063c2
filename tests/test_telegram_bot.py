"""Tests for Telegram command formatting and auth."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from conftest import MINT
from flipit.services.telegram_bot import TelegramBot, format_order_line, format_position_line


def test_position_line_with_stop_and_rebuy():
    pos = SimpleNamespace(
        id=7, token_symbol="FLIP", token_mint=MINT, status="holding",
        buy_price_usd=0.5, target_price_usd=1.0, last_price_usd=0.75,
        emergency_sell_status="watching", emergency_sell_price_usd=0.3, rebuy_status="pending",
    )
    assert format_position_line(pos) == (
        "#7 FLIP: holding | in $0.5 -> $1 | now $0.75 | stop $0.3 (watching) | rebuy pending"
    )


def test_order_line_falls_back_to_mint_prefix():
    order = SimpleNamespace(
        id=3, token_symbol=None, token_mint=MINT, alert_only=True,
        buy_price_min_usd=0.5, buy_price_max_usd=0.6, buy_amount_sol=1.0, attempt_count=0,
    )
    assert format_order_line(order) == f"#3 {MINT[:8]}: $0.5 - $0.6 | alert | attempts 0"


@pytest.mark.asyncio
async def test_unknown_user_is_rejected():
    bot = TelegramBot(token="t", chat_ids=[1])
    update = SimpleNamespace(effective_user=SimpleNamespace(id=2), message=SimpleNamespace(reply_text=AsyncMock()))

    assert await bot._check_auth(update) is False
    update.message.reply_text.assert_awaited_once_with("Unauthorized.")


@pytest.mark.asyncio
async def test_run_command_rejects_unknown_monitor():
    bot = TelegramBot(token="t", chat_ids=[1])
    reply = AsyncMock()
    update = SimpleNamespace(effective_user=SimpleNamespace(id=1), message=SimpleNamespace(reply_text=reply))

    await bot._cmd_run(update, SimpleNamespace(args=["moonshot"]))

    assert reply.await_args.args[0].startswith("Usage: /run <emergency_sell|target_sell|rebuy|limit_order>")
