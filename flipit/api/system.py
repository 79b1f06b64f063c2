"""System API: health check, scheduler status, monitor logs, manual monitor runs."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from flipit.api.deps import get_db, get_engine, get_gateway, get_notifier, get_resolver, require_operator
from flipit.models import MonitorLog

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler", dependencies=[Depends(require_operator)])
def scheduler_status():
    """Current scheduler state with job details."""
    from flipit.engine.scheduler import get_scheduler_status
    return get_scheduler_status()


@router.post("/monitors/{name}/run", dependencies=[Depends(require_operator)])
async def run_monitor_now(
    name: str,
    engine: Engine = Depends(get_engine),
    resolver=Depends(get_resolver),
    gateway=Depends(get_gateway),
    notifier=Depends(get_notifier),
):
    """Run one invocation of a monitor and return its summary."""
    from flipit.engine.scheduler import build_monitor

    try:
        monitor = build_monitor(name, engine=engine, resolver=resolver, gateway=gateway, notifier=notifier)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    summary = await monitor.run()
    return summary.to_dict()


@router.get("/logs", dependencies=[Depends(require_operator)])
def monitor_logs(
    monitor: str | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_db),
):
    stmt = select(MonitorLog).order_by(MonitorLog.timestamp.desc(), MonitorLog.id.desc())
    if monitor is not None:
        stmt = stmt.where(MonitorLog.monitor == monitor)
    if status is not None:
        stmt = stmt.where(MonitorLog.status == status)
    stmt = stmt.offset(offset).limit(min(limit, 500))
    return session.exec(stmt).all()
