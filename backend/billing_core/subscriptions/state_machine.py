"""
Subscription state machine.

Pure transition logic: given the persisted view of a subscription and a
canonical event, decide the ledger outcome, the resulting status and the
column changes. Nothing here touches the database.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.exceptions import StateConflictError
from ..db.models.billing_enums import EventSource, LedgerOutcome, SubscriptionStatus
from ..db.models.subscription import Subscription
from .events import CanonicalEvent, CanonicalEventType

S = SubscriptionStatus
E = CanonicalEventType

ACTIVATABLE = frozenset({S.CREATED, S.AUTHENTICATED, S.PAUSED, S.PENDING_CANCELLATION})
CHARGEABLE = ACTIVATABLE | {S.ACTIVE}
LIVE_STATUSES = frozenset({S.ACTIVE, S.PENDING_CANCELLATION, S.PAUSED})


@dataclass
class SubscriptionSnapshot:
    """The fields of a subscription the state machine reads."""
    status: Optional[SubscriptionStatus] = None
    last_event_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    next_billing_at: Optional[datetime] = None
    total_count: Optional[int] = None
    paid_count: int = 0
    remaining_count: Optional[int] = None

    @classmethod
    def from_model(cls, subscription: Optional[Subscription]) -> "SubscriptionSnapshot":
        if subscription is None:
            return cls()
        return cls(
            status=subscription.status,
            last_event_at=subscription.last_event_at,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            next_billing_at=subscription.next_billing_at,
            total_count=subscription.total_count,
            paid_count=subscription.paid_count or 0,
            remaining_count=subscription.remaining_count,
        )


@dataclass
class Transition:
    """Result of applying one event."""
    outcome: LedgerOutcome
    previous_status: Optional[SubscriptionStatus]
    new_status: SubscriptionStatus
    changes: Dict[str, Any] = field(default_factory=dict)
    note: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome == LedgerOutcome.APPLIED


class SubscriptionStateMachine:
    """
    Applies canonical events to subscription state.

    Outcomes:
        applied: status and/or billing fields change
        noop: re-delivery of a state the subscription is already in
        stale: out-of-order or superseded event, recorded only

    Transitions the table does not cover raise StateConflictError; the caller
    records the conflict and reconciles against the provider.
    """

    def apply(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> Transition:
        current = snapshot.status

        if current is None:
            return self._apply_initial(event)

        stale_reason = self._stale_reason(snapshot, event)
        if stale_reason:
            return Transition(LedgerOutcome.STALE, current, current, note=stale_reason)

        handler = getattr(self, f"_on_{event.event_type.value}")
        transition = handler(snapshot, event)
        if transition.applied:
            if snapshot.last_event_at is None or event.occurred_at > snapshot.last_event_at:
                transition.changes["last_event_at"] = event.occurred_at
        return transition

    # ---- helpers ----

    def _apply_initial(self, event: CanonicalEvent) -> Transition:
        if event.event_type == E.CREATED:
            status = S.CREATED
            changes = self._refresh_changes(event)
        elif event.event_type == E.ACTIVATED:
            # store subscriptions enter directly at active
            status = S.ACTIVE
            changes = self._refresh_changes(event)
            changes.update(self._period_changes(SubscriptionSnapshot(), event))
        else:
            raise StateConflictError(None, event.event_type.value, "Subscription does not exist yet")
        changes["status"] = status
        changes["last_event_at"] = event.occurred_at
        return Transition(LedgerOutcome.APPLIED, None, status, changes)

    def _stale_reason(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> Optional[str]:
        if event.source in (EventSource.SWEEP, EventSource.API):
            return None
        if snapshot.last_event_at is not None and event.occurred_at < snapshot.last_event_at:
            return (
                f"Event time {event.occurred_at.isoformat()} is older than last applied "
                f"event {snapshot.last_event_at.isoformat()}"
            )
        if (
            event.event_type == E.CHARGED
            and event.current_period_end is not None
            and snapshot.current_period_end is not None
            and event.current_period_end < snapshot.current_period_end
        ):
            return (
                f"Charge for period ending {event.current_period_end.isoformat()} precedes "
                f"current period ending {snapshot.current_period_end.isoformat()}"
            )
        return None

    def _conflict(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> StateConflictError:
        return StateConflictError(snapshot.status.value, event.event_type.value)

    def _noop(self, snapshot: SubscriptionSnapshot, note: str) -> Transition:
        return Transition(LedgerOutcome.NOOP, snapshot.status, snapshot.status, note=note)

    def _to(self, snapshot: SubscriptionSnapshot, status: SubscriptionStatus, changes: Dict[str, Any],
            note: Optional[str] = None) -> Transition:
        changes["status"] = status
        return Transition(LedgerOutcome.APPLIED, snapshot.status, status, changes, note)

    def _refresh_changes(self, event: CanonicalEvent) -> Dict[str, Any]:
        """Plan and pricing fields carried by any event."""
        changes: Dict[str, Any] = {}
        if event.plan_id:
            changes["provider_plan_id"] = event.plan_id
        if event.product_id:
            changes["product_id"] = event.product_id
        if event.amount_minor is not None:
            changes["amount_minor"] = event.amount_minor
        if event.currency:
            changes["currency"] = event.currency
        if event.total_count is not None:
            changes["total_count"] = event.total_count
        if event.remaining_count is not None:
            changes["remaining_count"] = event.remaining_count
        return changes

    def _period_changes(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> Dict[str, Any]:
        """Adopt the event's billing period when it is not behind the stored one."""
        changes: Dict[str, Any] = {}
        if event.current_period_end is None:
            return changes
        if snapshot.current_period_end is not None and event.current_period_end < snapshot.current_period_end:
            return changes
        if event.current_period_start is not None:
            changes["current_period_start"] = event.current_period_start
        changes["current_period_end"] = event.current_period_end
        changes["next_billing_at"] = event.next_billing_at or event.current_period_end
        return changes

    def _charge_changes(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> Dict[str, Any]:
        changes = self._refresh_changes(event)

        if event.paid_count is not None:
            paid_count = max(snapshot.paid_count, event.paid_count)
        else:
            paid_count = snapshot.paid_count + 1
        changes["paid_count"] = paid_count

        if event.current_period_end is not None:
            changes["current_period_start"] = event.current_period_start or snapshot.current_period_end
            changes["current_period_end"] = event.current_period_end
            changes["next_billing_at"] = event.next_billing_at or event.current_period_end
        elif event.next_billing_at is not None:
            changes["next_billing_at"] = event.next_billing_at

        total = changes.get("total_count", snapshot.total_count)
        if event.remaining_count is None and total is not None:
            changes["remaining_count"] = max(total - paid_count, 0)
        return changes

    @staticmethod
    def _clear_cancellation(changes: Dict[str, Any]) -> Dict[str, Any]:
        changes.update(cancel_at_cycle_end=False, cancellation_reason=None, cancelled_at=None)
        return changes

    # ---- per event handlers ----

    def _on_created(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> Transition:
        if snapshot.status == S.CREATED:
            return self._noop(snapshot, "Subscription already created")
        return Transition(LedgerOutcome.STALE, snapshot.status, snapshot.status,
                          note=f"Entry event arrived after subscription reached {snapshot.status.value}")

    def _on_authenticated(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> Transition:
        if snapshot.status == S.CREATED:
            return self._to(snapshot, S.AUTHENTICATED, self._refresh_changes(event))
        if snapshot.status == S.AUTHENTICATED:
            return self._noop(snapshot, "Subscription already authenticated")
        return Transition(LedgerOutcome.STALE, snapshot.status, snapshot.status,
                          note=f"Entry event arrived after subscription reached {snapshot.status.value}")

    def _on_activated(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> Transition:
        if snapshot.status == S.ACTIVE:
            return self._noop(snapshot, "Subscription already active")
        if snapshot.status not in ACTIVATABLE:
            raise self._conflict(snapshot, event)
        changes = self._refresh_changes(event)
        changes.update(self._period_changes(snapshot, event))
        return self._to(snapshot, S.ACTIVE, self._clear_cancellation(changes))

    def _on_charged(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> Transition:
        if snapshot.status not in CHARGEABLE:
            raise self._conflict(snapshot, event)
        changes = self._charge_changes(snapshot, event)
        if snapshot.status != S.ACTIVE:
            self._clear_cancellation(changes)
        return self._to(snapshot, S.ACTIVE, changes)

    def _on_cancelled(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> Transition:
        if snapshot.status == S.CANCELLED:
            return self._noop(snapshot, "Subscription already cancelled")
        if snapshot.status.is_terminal:
            return Transition(LedgerOutcome.STALE, snapshot.status, snapshot.status,
                              note=f"Cancellation arrived after subscription reached {snapshot.status.value}")

        changes: Dict[str, Any] = {"cancelled_at": event.occurred_at}
        if event.cancellation_reason:
            changes["cancellation_reason"] = event.cancellation_reason

        if event.cancel_at_cycle_end:
            if snapshot.status == S.PENDING_CANCELLATION:
                return self._noop(snapshot, "Cancellation already scheduled")
            if snapshot.status == S.ACTIVE:
                changes["cancel_at_cycle_end"] = True
                return self._to(snapshot, S.PENDING_CANCELLATION, changes,
                                note="Access continues until the end of the current period")
            # nothing paid to preserve access for
            changes["cancel_at_cycle_end"] = False
            return self._to(snapshot, S.CANCELLED, changes,
                            note=f"Cancelled immediately from {snapshot.status.value}")

        changes["cancel_at_cycle_end"] = False
        return self._to(snapshot, S.CANCELLED, changes)

    def _on_paused(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> Transition:
        if snapshot.status == S.PAUSED:
            return self._noop(snapshot, "Subscription already paused")
        if snapshot.status != S.ACTIVE:
            raise self._conflict(snapshot, event)
        changes = self._refresh_changes(event)
        if event.cancellation_reason:
            changes["cancellation_reason"] = event.cancellation_reason
        return self._to(snapshot, S.PAUSED, changes)

    def _on_resumed(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> Transition:
        if snapshot.status == S.ACTIVE:
            return self._noop(snapshot, "Subscription already active")
        if snapshot.status not in (S.PAUSED, S.PENDING_CANCELLATION):
            raise self._conflict(snapshot, event)
        changes = self._refresh_changes(event)
        changes.update(self._period_changes(snapshot, event))
        return self._to(snapshot, S.ACTIVE, self._clear_cancellation(changes))

    def _on_completed(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> Transition:
        if snapshot.status == S.COMPLETED:
            return self._noop(snapshot, "Subscription already completed")
        if snapshot.status not in (S.ACTIVE, S.PENDING_CANCELLATION):
            raise self._conflict(snapshot, event)
        changes = self._refresh_changes(event)
        if event.paid_count is not None:
            changes["paid_count"] = max(snapshot.paid_count, event.paid_count)
        changes["next_billing_at"] = None
        return self._to(snapshot, S.COMPLETED, changes)

    def _on_pending(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> Transition:
        return self._noop(snapshot, "Payment retry in progress")

    def _on_expired(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> Transition:
        if snapshot.status == S.EXPIRED:
            return self._noop(snapshot, "Subscription already expired")
        if snapshot.status in (S.CANCELLED, S.COMPLETED):
            return self._to(snapshot, S.EXPIRED, {"next_billing_at": None})
        if snapshot.status in LIVE_STATUSES and event.provider.is_store:
            changes = self._period_changes(snapshot, event)
            changes["next_billing_at"] = None
            return self._to(snapshot, S.EXPIRED, changes, note="Store reported expiry")
        raise self._conflict(snapshot, event)

    def _on_updated(self, snapshot: SubscriptionSnapshot, event: CanonicalEvent) -> Transition:
        changes = self._refresh_changes(event)
        changes.update(self._period_changes(snapshot, event))
        if event.paid_count is not None and event.paid_count > snapshot.paid_count:
            changes["paid_count"] = event.paid_count

        target = event.provider_status
        if target == S.ACTIVE and event.cancel_at_cycle_end:
            # provider keeps reporting active until the scheduled cancel runs
            target = S.PENDING_CANCELLATION
        if target is None or target == snapshot.status:
            changes = {k: v for k, v in changes.items() if getattr(snapshot, k, object()) != v}
            if not changes:
                return self._noop(snapshot, "No changes reported")
            return self._to(snapshot, snapshot.status, changes)

        if snapshot.status.is_terminal and not target.is_terminal:
            raise StateConflictError(
                snapshot.status.value,
                event.event_type.value,
                f"Provider reports {target.value} for a {snapshot.status.value} subscription",
            )

        if target == S.PENDING_CANCELLATION:
            changes["cancel_at_cycle_end"] = True
            changes["cancelled_at"] = event.occurred_at
        elif target == S.CANCELLED:
            changes["cancel_at_cycle_end"] = False
            changes["cancelled_at"] = event.occurred_at
        elif target in (S.ACTIVE, S.PAUSED, S.CREATED, S.AUTHENTICATED):
            self._clear_cancellation(changes)
        return self._to(snapshot, target, changes,
                        note=f"Local status corrected from {snapshot.status.value} to {target.value}")
