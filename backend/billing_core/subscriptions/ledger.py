"""
Audit and idempotency ledger.

Wraps the append-only subscription_history table: derives idempotency keys,
detects duplicate deliveries and replays history for audits.
"""

import hashlib
from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import LedgerOutcome, Subscription, SubscriptionHistory, SubscriptionStatus
from ..db.repositories import HistoryRepository
from .events import CanonicalEvent
from .state_machine import Transition


def _iso(value) -> str:
    return value.isoformat() if value is not None else ""


class SubscriptionLedger:
    """Ledger operations bound to one session."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.history = HistoryRepository(session)

    @staticmethod
    def idempotency_key(subscription_id: UUID, event: CanonicalEvent) -> str:
        """
        Natural key for an event on a subscription.

        Uses the provider's delivery id when there is one; otherwise hashes
        the fields that identify the same real-world event.
        """
        if event.provider_event_id:
            return f"{subscription_id}:{event.provider_event_id}"[:255]
        parts = [
            str(subscription_id),
            event.event_type.value,
            _iso(event.current_period_start),
            _iso(event.current_period_end),
            event.payment.payment_id if event.payment else "",
            _iso(event.occurred_at),
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

    async def exists(self, key: str) -> bool:
        return await self.history.exists(key)

    def append(
        self,
        subscription: Subscription,
        event: CanonicalEvent,
        transition: Transition,
        key: str,
    ) -> SubscriptionHistory:
        """Stage one history row; the caller owns the transaction."""
        payment = event.payment
        notes = "; ".join(n for n in (transition.note, event.notes) if n) or None
        row = SubscriptionHistory(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            event_type=event.event_type.value,
            provider_event_type=event.provider_event_type,
            previous_status=transition.previous_status,
            new_status=transition.new_status,
            outcome=transition.outcome,
            source=event.source,
            idempotency_key=key,
            provider_event_id=event.provider_event_id,
            payment_id=payment.payment_id if payment else None,
            payment_amount=payment.amount_minor if payment else None,
            payment_status=payment.status.value if payment else None,
            event_data=event.snapshot(),
            notes=notes,
            occurred_at=event.occurred_at,
        )
        self.session.add(row)
        return row

    async def list(self, subscription_id: UUID) -> List[SubscriptionHistory]:
        return await self.history.list_for_subscription(subscription_id)

    async def replay_status(self, subscription_id: UUID) -> Optional[SubscriptionStatus]:
        """
        Status reproduced from the ledger.

        Only applied rows move the status; stale, noop and conflict rows are
        audit entries.
        """
        status: Optional[SubscriptionStatus] = None
        for row in await self.list(subscription_id):
            if row.outcome == LedgerOutcome.APPLIED:
                status = row.new_status
        return status
