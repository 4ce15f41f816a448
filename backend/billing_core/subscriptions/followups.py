"""
Background follow-ups.

Work that does not fit a webhook's response budget (slow provider lookups,
anomaly reconciliation, orphaned events) runs here as asyncio tasks. Transient
provider failures are retried with exponential backoff; exhausted or
permanently failing follow-ups are dead-lettered.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Optional, Set
from uuid import UUID

from sqlalchemy.ext.asyncio import async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import BillingConfig
from ..core.exceptions import AppException, ProviderFetchError
from ..core.logging_config import get_logger
from ..core.timeutils import utcnow
from ..db.models import WebhookEvent, WebhookProcessingStatus

logger = get_logger(__name__)

FollowUp = Callable[[], Awaitable[object]]


class FollowUpQueue:
    """Schedules and supervises follow-up tasks."""

    def __init__(self, billing: BillingConfig, session_factory: async_sessionmaker):
        self.billing = billing
        self.session_factory = session_factory
        self._pending_tasks: Set[asyncio.Task] = set()
        self._metrics = {"scheduled": 0, "completed": 0, "dead_lettered": 0}

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.billing.follow_up_attempts),
            wait=wait_exponential(multiplier=1, min=self.billing.retry_min_wait, max=self.billing.retry_max_wait),
            retry=retry_if_exception_type(ProviderFetchError),
            reraise=True,
        )

    def schedule(
        self,
        name: str,
        work: FollowUp,
        webhook_event_id: Optional[UUID] = None,
        delay: float = 0,
    ) -> asyncio.Task:
        """
        Run ``work`` in the background.

        Args:
            name: Label used in logs
            work: Zero-argument coroutine factory, called once per attempt
            webhook_event_id: Inbound event to dead-letter when the work fails
            delay: Seconds to wait before the first attempt
        """
        task = asyncio.create_task(self._run(name, work, webhook_event_id, delay), name=f"follow_up_{name}")
        self._pending_tasks.add(task)
        task.add_done_callback(self._pending_tasks.discard)
        self._metrics["scheduled"] += 1
        logger.debug(f"Scheduled follow-up {name} (delay={delay}s)")
        return task

    async def _run(self, name: str, work: FollowUp, webhook_event_id: Optional[UUID], delay: float) -> None:
        if delay:
            await asyncio.sleep(delay)
        try:
            async for attempt in self._retrying():
                with attempt:
                    await work()
            self._metrics["completed"] += 1
        except asyncio.CancelledError:
            raise
        except ProviderFetchError as e:
            await self.dead_letter(webhook_event_id, f"{name}: provider unavailable after retries: {e.message}")
        except AppException as e:
            await self.dead_letter(webhook_event_id, f"{name}: {e.code}: {e.message}")
        except Exception as e:
            logger.exception(f"Follow-up {name} crashed")
            await self.dead_letter(webhook_event_id, f"{name}: unexpected error: {e}")

    async def dead_letter(self, webhook_event_id: Optional[UUID], reason: str) -> None:
        """Park an event for manual review."""
        self._metrics["dead_lettered"] += 1
        logger.error(f"Dead-lettered follow-up: {reason}", extra={"event_key": str(webhook_event_id or "")})
        if webhook_event_id is None:
            return
        async with self.session_factory() as session:
            record = await session.get(WebhookEvent, webhook_event_id)
            if record is None:
                return
            record.processing_status = WebhookProcessingStatus.DEAD_LETTER
            record.error_message = reason[:2000]
            record.processed_at = utcnow()
            await session.commit()

    @property
    def pending(self) -> int:
        return len(self._pending_tasks)

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for scheduled follow-ups to finish (tests, graceful shutdown)."""
        while self._pending_tasks:
            tasks = list(self._pending_tasks)
            done, _ = await asyncio.wait(tasks, timeout=timeout)
            if not done:
                logger.warning(f"{len(tasks)} follow-ups still running after {timeout}s")
                return

    async def shutdown(self) -> None:
        for task in list(self._pending_tasks):
            task.cancel()
        if self._pending_tasks:
            await asyncio.gather(*list(self._pending_tasks), return_exceptions=True)
        logger.info(f"Follow-up queue stopped: {self._metrics}")

    def get_metrics(self) -> Dict[str, int]:
        return dict(self._metrics)
