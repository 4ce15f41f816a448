"""
Expiry sweeper.

Moves subscriptions along when time passes without a provider event:
scheduled cancellations whose period ended become ``cancelled``, and ended
subscriptions become ``expired`` once the grace period has elapsed.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.config import BillingConfig
from ..core.exceptions import AppException
from ..core.logging_config import get_logger, log_execution_time
from ..core.timeutils import utcnow
from ..db.models import EventSource, Subscription
from ..db.repositories import SubscriptionRepository
from .events import CanonicalEvent, CanonicalEventType
from .reconciler import ApplyOutcome, SubscriptionReconciler

logger = get_logger(__name__)


def _marker(value: Optional[datetime]) -> str:
    return value.isoformat() if value is not None else "none"


@dataclass
class SweepReport:
    cancelled: int = 0
    expired: int = 0
    errors: int = 0


class ExpirySweeper:
    def __init__(self, session_factory: async_sessionmaker, reconciler: SubscriptionReconciler, billing: BillingConfig):
        self.session_factory = session_factory
        self.reconciler = reconciler
        self.billing = billing
        self._task: Optional[asyncio.Task] = None

    def _sweep_event(self, subscription: Subscription, event_type: CanonicalEventType, now: datetime) -> CanonicalEvent:
        return CanonicalEvent(
            provider=subscription.provider,
            event_type=event_type,
            provider_event_type=f"sweep.{event_type.value}",
            provider_subscription_id=subscription.provider_subscription_id,
            occurred_at=now,
            source=EventSource.SWEEP,
            provider_event_id=f"sweep.{event_type.value}:{_marker(subscription.current_period_end)}",
            cancel_at_cycle_end=False,
            cancellation_reason="Billing period ended" if event_type == CanonicalEventType.CANCELLED else None,
        )

    def expires_at(self, subscription: Subscription) -> Optional[datetime]:
        """End of the grace period for an ended subscription."""
        ends = [t for t in (subscription.current_period_end, subscription.cancelled_at) if t is not None]
        if not ends:
            return None
        return max(ends) + timedelta(days=self.billing.grace_period_days)

    @log_execution_time(logger, warn_after=30.0)
    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()

        async with self.session_factory() as session:
            repo = SubscriptionRepository(session)
            due = list(await repo.find_due_for_cancellation(now))
            ended = [s for s in await repo.find_ended() if (self.expires_at(s) or now) < now]

        for subscription, event_type in (
            [(s, CanonicalEventType.CANCELLED) for s in due]
            + [(s, CanonicalEventType.EXPIRED) for s in ended]
        ):
            try:
                result = await self.reconciler.apply_event(self._sweep_event(subscription, event_type, now))
            except AppException as e:
                report.errors += 1
                logger.error(f"Sweep failed for subscription {subscription.id}: {e.message}")
                continue
            if result.outcome == ApplyOutcome.APPLIED:
                if event_type == CanonicalEventType.CANCELLED:
                    report.cancelled += 1
                else:
                    report.expired += 1

        if report.cancelled or report.expired or report.errors:
            logger.info(f"Sweep finished: {report}")
        return report

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Expiry sweep crashed")
            await asyncio.sleep(self.billing.sweep_interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="expiry_sweeper")
            logger.info(f"Expiry sweeper started (every {self.billing.sweep_interval_seconds}s)")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
