"""
Usage and revenue tracking side channel.

Applied transitions are reported to an external tracker without holding up
the reconciliation pipeline. Tracker failures are logged and never reach the
caller.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set

from ..core.logging_config import get_logger

logger = get_logger(__name__)


class UsageTracker(ABC):
    """External usage / revenue tracking collaborator."""

    @abstractmethod
    async def track(self, event_name: str, properties: Dict[str, Any]) -> None:
        ...


class LoggingUsageTracker(UsageTracker):
    """Default tracker: writes tracked events to the log."""

    async def track(self, event_name: str, properties: Dict[str, Any]) -> None:
        logger.info(f"Tracked {event_name}", extra={"subscription_id": properties.get("subscription_id")})


class FireAndForgetNotifier:
    """Schedules tracker calls as background tasks."""

    def __init__(self, tracker: Optional[UsageTracker] = None):
        self.tracker = tracker or LoggingUsageTracker()
        self._pending_tasks: Set[asyncio.Task] = set()
        self._metrics = {"sent": 0, "failed": 0}

    def notify(self, event_name: str, properties: Dict[str, Any]) -> asyncio.Task:
        task = asyncio.create_task(self._send(event_name, properties), name=f"track_{event_name}")
        self._pending_tasks.add(task)
        task.add_done_callback(self._pending_tasks.discard)
        return task

    async def _send(self, event_name: str, properties: Dict[str, Any]) -> None:
        try:
            await self.tracker.track(event_name, properties)
            self._metrics["sent"] += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._metrics["failed"] += 1
            logger.error(f"Usage tracking failed for {event_name}: {e}")

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if not self._pending_tasks:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*list(self._pending_tasks), return_exceptions=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"{len(self._pending_tasks)} usage notifications still pending at shutdown")

    def get_metrics(self) -> Dict[str, int]:
        return dict(self._metrics)
