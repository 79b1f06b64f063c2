"""APScheduler integration for FastAPI.

Runs each lifecycle monitor as an interval job. Overlapping instances are
allowed: correctness comes from the conditional updates, not the scheduler.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from flipit.config import settings
from flipit.engine.emergency_sell import EmergencySellMonitor
from flipit.engine.limit_order_fill import LimitOrderFillMonitor
from flipit.engine.monitor import InvocationSummary, MonitorLoop
from flipit.engine.rebuy import RebuyMonitor
from flipit.engine.target_sell import TargetSellMonitor

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

# Order matters for run_all: stop-losses first, limit orders last
MONITORS: dict[str, type[MonitorLoop]] = {
    EmergencySellMonitor.name: EmergencySellMonitor,
    TargetSellMonitor.name: TargetSellMonitor,
    RebuyMonitor.name: RebuyMonitor,
    LimitOrderFillMonitor.name: LimitOrderFillMonitor,
}


def monitor_intervals() -> dict[str, int]:
    return {
        EmergencySellMonitor.name: settings.emergency_sell_interval_seconds,
        TargetSellMonitor.name: settings.target_sell_interval_seconds,
        RebuyMonitor.name: settings.rebuy_interval_seconds,
        LimitOrderFillMonitor.name: settings.limit_order_interval_seconds,
    }


def _job_id(name: str) -> str:
    return f"monitor_{name}"


def build_monitor(name: str, **deps) -> MonitorLoop:
    try:
        monitor_cls = MONITORS[name]
    except KeyError:
        allowed = ", ".join(MONITORS)
        raise ValueError(f"Unknown monitor '{name}' (expected one of: {allowed})")
    return monitor_cls(**deps)


async def run_monitor(name: str, **deps) -> InvocationSummary:
    """Run a single invocation of one monitor."""
    return await build_monitor(name, **deps).run()


async def run_all(**deps) -> list[InvocationSummary]:
    """Run every monitor once, in sequence."""
    summaries = []
    for name in MONITORS:
        summaries.append(await run_monitor(name, **deps))
    return summaries


def add_monitor_job(name: str, seconds: int):
    """Add or replace the interval job for a monitor."""
    if name not in MONITORS:
        raise ValueError(f"Unknown monitor '{name}'")

    scheduler.add_job(
        run_monitor,
        trigger=IntervalTrigger(seconds=seconds),
        args=[name],
        id=_job_id(name),
        name=f"Monitor {name}",
        replace_existing=True,
        max_instances=settings.monitor_max_instances,
        coalesce=True,
        misfire_grace_time=max(seconds, 5),
    )
    logger.info(f"Scheduled {name} every {seconds}s")


def start_scheduler():
    """Start the scheduler with one job per monitor."""
    for name, seconds in monitor_intervals().items():
        add_monitor_job(name, seconds)

    scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def get_scheduler_status() -> dict:
    """Return current scheduler state for the API."""
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": str(j.next_run_time) if j.next_run_time else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
