"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from flipit.config import settings
from flipit.database import create_db_and_tables
from flipit.utils.logging import setup_logging
from flipit.api import limit_orders, positions, system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()
    # Settle rows a previous process left mid-flight before monitors start
    from flipit.engine.recovery import recover_on_startup
    recover_on_startup()

    from flipit.engine.scheduler import start_scheduler, stop_scheduler
    if settings.scheduler_enabled:
        start_scheduler()

    # Start Telegram bot if configured
    telegram_bot = None
    if settings.telegram_bot_token:
        from flipit.services.telegram_bot import init_bot
        telegram_bot = init_bot()
        telegram_bot.start()

    yield

    if telegram_bot:
        telegram_bot.stop()
    stop_scheduler()

    from flipit.services.execution_gateway import get_gateway
    from flipit.services.price_resolver import get_resolver
    await get_resolver().aclose()
    await get_gateway().aclose()


app = FastAPI(
    title="FlipIt Engine",
    description="Position and limit-order lifecycle automation for token trading",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(positions.router)
app.include_router(limit_orders.router)
app.include_router(system.router)
