"""Telegram bot for lifecycle notifications and remote control."""

import asyncio
import logging
import threading
from typing import Optional

from telegram import Update
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
)
from sqlmodel import Session, select

from flipit.config import settings
from flipit.utils.constants import LimitOrderStatus, PositionStatus

logger = logging.getLogger(__name__)

_bot_instance: Optional["TelegramBot"] = None


def format_position_line(pos) -> str:
    label = pos.token_symbol or pos.token_mint[:8]
    line = f"#{pos.id} {label}: {pos.status} | in ${pos.buy_price_usd or 0:.6g} -> ${pos.target_price_usd or 0:.6g}"
    if pos.last_price_usd is not None:
        line += f" | now ${pos.last_price_usd:.6g}"
    if pos.emergency_sell_status:
        line += f" | stop ${pos.emergency_sell_price_usd or 0:.6g} ({pos.emergency_sell_status})"
    if pos.rebuy_status:
        line += f" | rebuy {pos.rebuy_status}"
    return line


def format_order_line(order) -> str:
    label = order.token_symbol or order.token_mint[:8]
    kind = "alert" if order.alert_only else f"{order.buy_amount_sol} SOL"
    return (
        f"#{order.id} {label}: ${order.buy_price_min_usd:.6g} - ${order.buy_price_max_usd:.6g} "
        f"| {kind} | attempts {order.attempt_count}"
    )


class TelegramBot:
    """Telegram bot running in a background thread with its own event loop."""

    def __init__(self, token: str, chat_ids: list[int], main_loop: asyncio.AbstractEventLoop | None = None):
        self.token = token
        self.chat_ids = set(chat_ids)
        self._main_loop = main_loop
        self._app: Optional[Application] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _is_authorized(self, user_id: int) -> bool:
        return user_id in self.chat_ids

    async def _check_auth(self, update: Update) -> bool:
        if not update.effective_user or not self._is_authorized(update.effective_user.id):
            if update.message:
                await update.message.reply_text("Unauthorized.")
            return False
        return True

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        from flipit.engine.scheduler import get_scheduler_status
        from flipit.database import engine
        from flipit.models import LimitOrder, Position

        status = get_scheduler_status()
        with Session(engine) as session:
            holding = session.exec(
                select(Position).where(Position.status == PositionStatus.HOLDING)
            ).all()
            orders = session.exec(
                select(LimitOrder).where(LimitOrder.status == LimitOrderStatus.WATCHING)
            ).all()

        scheduler_str = "running" if status["running"] else "stopped"
        text = (
            f"Scheduler: {scheduler_str}\n"
            f"Jobs: {status['job_count']}\n"
            f"Holding positions: {len(holding)}\n"
            f"Watching limit orders: {len(orders)}"
        )
        await update.message.reply_text(text)

    async def _cmd_positions(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        from flipit.database import engine
        from flipit.models import Position

        active = [PositionStatus.PENDING_BUY, PositionStatus.HOLDING, PositionStatus.PENDING_SELL]
        with Session(engine) as session:
            positions = session.exec(
                select(Position).where(Position.status.in_(active)).order_by(Position.id)
            ).all()
            lines = [format_position_line(p) for p in positions]

        await update.message.reply_text("\n".join(lines) if lines else "No open positions.")

    async def _cmd_orders(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        from flipit.database import engine
        from flipit.models import LimitOrder

        with Session(engine) as session:
            orders = session.exec(
                select(LimitOrder)
                .where(LimitOrder.status == LimitOrderStatus.WATCHING)
                .order_by(LimitOrder.id)
            ).all()
            lines = [format_order_line(o) for o in orders]

        await update.message.reply_text("\n".join(lines) if lines else "No watching limit orders.")

    async def _cmd_run(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        from flipit.engine.scheduler import MONITORS, run_monitor

        name = context.args[0] if context.args else ""
        if name not in MONITORS:
            await update.message.reply_text(f"Usage: /run <{'|'.join(MONITORS)}>")
            return
        if self._main_loop is None:
            await update.message.reply_text("Monitors are not available from this process.")
            return

        # Monitors share HTTP clients bound to the app's loop; run them there
        future = asyncio.run_coroutine_threadsafe(run_monitor(name), self._main_loop)
        summary = await asyncio.wrap_future(future)
        text = (
            f"{name}: checked {summary.checked}, executed {summary.executed or 'none'}, "
            f"failed {summary.failed or 'none'}, no price {summary.skipped_no_price}"
        )
        if summary.expired:
            text += f", expired {summary.expired}"
        if summary.error:
            text += f"\nError: {summary.error}"
        await update.message.reply_text(text)

    async def send_notification(self, message: str):
        """Send a message to all whitelisted chat IDs."""
        if not self._app or not self._app.bot:
            return
        for chat_id in self.chat_ids:
            try:
                await self._app.bot.send_message(chat_id=chat_id, text=message, disable_web_page_preview=True)
            except Exception as e:
                logger.warning(f"Failed to send Telegram notification to {chat_id}: {e}")

    def _run_bot(self):
        """Run the bot in a background thread with its own event loop."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        self._app = (
            Application.builder()
            .token(self.token)
            .build()
        )

        self._app.add_handler(CommandHandler("status", self._cmd_status))
        self._app.add_handler(CommandHandler("positions", self._cmd_positions))
        self._app.add_handler(CommandHandler("orders", self._cmd_orders))
        self._app.add_handler(CommandHandler("run", self._cmd_run))

        logger.info("Telegram bot starting...")
        self._loop.run_until_complete(self._app.initialize())
        self._loop.run_until_complete(self._app.start())
        self._loop.run_until_complete(self._app.updater.start_polling())
        self._loop.run_forever()

    def start(self):
        self._thread = threading.Thread(target=self._run_bot, daemon=True)
        self._thread.start()

    def stop(self):
        if self._loop and self._app:
            async def _shutdown():
                await self._app.updater.stop()
                await self._app.stop()
                await self._app.shutdown()

            asyncio.run_coroutine_threadsafe(_shutdown(), self._loop).result(timeout=10)
            self._loop.call_soon_threadsafe(self._loop.stop)


def init_bot() -> TelegramBot:
    """Initialize and return the bot singleton. Call from the app's event loop."""
    global _bot_instance
    try:
        main_loop = asyncio.get_running_loop()
    except RuntimeError:
        main_loop = None
    _bot_instance = TelegramBot(
        token=settings.telegram_bot_token,
        chat_ids=settings.telegram_chat_ids,
        main_loop=main_loop,
    )
    return _bot_instance


def get_bot() -> Optional[TelegramBot]:
    """Get the bot singleton, or None if not initialized."""
    return _bot_instance
