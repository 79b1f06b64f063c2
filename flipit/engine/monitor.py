"""Generic monitor loop shared by the four lifecycle monitors.

One invocation: sweep, load candidates, price them in one batch, then for
each triggered row claim it with a conditional update, execute, and
finalize (or release) guarded by the claim id. Invocations are stateless
and may overlap; the conditional updates decide who executes.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.engine import Engine
from sqlmodel import Session

from flipit.config import settings
from flipit.engine.store import (
    compare_and_set,
    lease_until,
    new_claim_id,
    record_prices,
    release_values,
    utcnow,
)
from flipit.models import MonitorLog
from flipit.services.execution_gateway import ExecutionGateway, get_gateway
from flipit.services.notifier import Notification, Notifier, get_notifier
from flipit.services.price_resolver import PriceResolver, get_resolver

logger = logging.getLogger(__name__)


@dataclass
class InvocationSummary:
    monitor: str
    checked_at: datetime
    checked: int = 0
    executed: list[int] = field(default_factory=list)
    prices: dict[str, float] = field(default_factory=dict)
    expired: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    skipped_no_price: int = 0
    error: str | None = None
    duration_ms: int = 0

    @property
    def idle(self) -> bool:
        return not (self.executed or self.expired or self.failed or self.error)

    def to_dict(self) -> dict:
        return {
            "monitor": self.monitor,
            "checked_at": self.checked_at.isoformat(),
            "checked": self.checked,
            "executed": list(self.executed),
            "prices": dict(self.prices),
            "expired": list(self.expired),
            "failed": list(self.failed),
            "skipped_no_price": self.skipped_no_price,
            "error": self.error,
        }


@dataclass
class Outcome:
    """Result of executing a claimed row."""
    success: bool
    values: dict = field(default_factory=dict)
    error: str | None = None
    notification: Notification | None = None


class MonitorLoop:
    name = "monitor"
    model = None

    def __init__(
        self,
        engine: Engine | None = None,
        resolver: PriceResolver | None = None,
        gateway: ExecutionGateway | None = None,
        notifier: Notifier | None = None,
    ):
        if engine is None:
            from flipit.database import engine as default_engine
            engine = default_engine
        self.engine = engine
        self.resolver = resolver or get_resolver()
        self.gateway = gateway or get_gateway()
        self.notifier = notifier or get_notifier()

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def sweep(self, session: Session, now: datetime) -> list[int]:
        """Guarded housekeeping before candidates load. Returns expired ids."""
        return []

    def load_candidates(self, session: Session, now: datetime) -> list:
        raise NotImplementedError

    def mints_for(self, rows) -> list[str]:
        return [row.token_mint for row in rows]

    def price_for(self, row, prices: dict[str, float]) -> float | None:
        return prices.get(row.token_mint)

    def should_trigger(self, row, price: float) -> bool:
        raise NotImplementedError

    def claim_conditions(self, row, now: datetime) -> list:
        raise NotImplementedError

    def claim_values(self, row, claim_id: str, now: datetime) -> dict:
        return {"claim_id": claim_id, "claimed_until": lease_until(now)}

    async def execute(self, row, price: float, prices: dict[str, float]) -> Outcome:
        raise NotImplementedError

    def failure_values(self, row, message: str, now: datetime) -> dict:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> InvocationSummary:
        """Run one invocation. Never raises."""
        now = utcnow()
        summary = InvocationSummary(monitor=self.name, checked_at=now)
        started = time.monotonic()

        try:
            with Session(self.engine) as session:
                summary.expired = self.sweep(session, now)
                rows = self.load_candidates(session, now)
            summary.checked = len(rows)

            if rows:
                prices = await self.resolver.resolve_many(self.mints_for(rows))
                summary.prices = prices
                with Session(self.engine) as session:
                    record_prices(session, self.model, rows, prices, now)

                for row in rows:
                    price = self.price_for(row, prices)
                    if price is None:
                        summary.skipped_no_price += 1
                        continue
                    if not self.should_trigger(row, price):
                        continue
                    try:
                        await self._process(row, price, prices, summary)
                    except Exception as e:
                        logger.error(f"[{self.name}] #{row.id} processing error: {e}", exc_info=True)
                        summary.error = str(e)
        except Exception as e:
            logger.error(f"[{self.name}] Invocation error: {e}", exc_info=True)
            summary.error = str(e)

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        if summary.executed or summary.expired or summary.failed:
            logger.info(
                f"[{self.name}] checked={summary.checked} executed={summary.executed} "
                f"expired={summary.expired} failed={summary.failed} "
                f"no_price={summary.skipped_no_price} ({summary.duration_ms}ms)"
            )
        self._log_invocation(summary)
        return summary

    async def _process(self, row, price: float, prices: dict[str, float], summary: InvocationSummary):
        claim_id = new_claim_id()
        now = utcnow()
        with Session(self.engine) as session:
            won = compare_and_set(
                session, self.model, row.id,
                *self.claim_conditions(row, now),
                **self.claim_values(row, claim_id, now),
            )
        if not won:
            logger.info(f"[{self.name}] #{row.id} already claimed or changed; skipping")
            return

        try:
            outcome = await self.execute(row, price, prices)
        except Exception as e:
            logger.error(f"[{self.name}] #{row.id} execution error: {e}", exc_info=True)
            summary.error = str(e)
            outcome = Outcome(success=False, error=str(e))

        done_at = utcnow()
        if outcome.success:
            values = outcome.values
        else:
            values = self.failure_values(row, outcome.error or "unknown error", done_at)

        try:
            finalized = self._finalize(row, claim_id, values)
        except Exception as e:
            # Release the claim with the real outcome rather than leave it to the lease
            logger.error(f"[{self.name}] #{row.id} finalize error, retrying: {e}")
            finalized = self._finalize(row, claim_id, values)
        if not finalized:
            logger.warning(f"[{self.name}] #{row.id} claim lost before finalize; result not recorded")
            return

        if outcome.success:
            summary.executed.append(row.id)
            if outcome.notification is not None:
                self.notifier.publish(outcome.notification)
        else:
            summary.failed.append(row.id)
            logger.warning(f"[{self.name}] #{row.id} failed: {outcome.error}")

    def _finalize(self, row, claim_id: str, values: dict) -> bool:
        with Session(self.engine) as session:
            return compare_and_set(
                session, self.model, row.id,
                self.model.claim_id == claim_id,
                **release_values(**values),
            )

    def _log_invocation(self, summary: InvocationSummary):
        """Persist the invocation to MonitorLog (idle runs only when enabled)."""
        if summary.idle and not settings.log_idle_invocations:
            return
        try:
            with Session(self.engine) as session:
                session.add(MonitorLog(
                    monitor=self.name,
                    timestamp=summary.checked_at,
                    status="error" if summary.error else "success",
                    checked=summary.checked,
                    executed=len(summary.executed),
                    expired=len(summary.expired),
                    failed=len(summary.failed),
                    skipped_no_price=summary.skipped_no_price,
                    duration_ms=summary.duration_ms,
                    executed_ids=list(summary.executed),
                    prices=dict(summary.prices),
                    message=summary.error,
                ))
                session.commit()
        except Exception as e:
            logger.error(f"[{self.name}] Failed to write monitor log: {e}")
