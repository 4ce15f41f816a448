from datetime import datetime, timedelta

import pytest

from billing_core.core.exceptions import StateConflictError
from billing_core.db.models import EventSource, LedgerOutcome, ProviderType, SubscriptionStatus
from billing_core.subscriptions.events import CanonicalEvent, CanonicalEventType
from billing_core.subscriptions.state_machine import SubscriptionSnapshot, SubscriptionStateMachine

S = SubscriptionStatus
E = CanonicalEventType

T0 = datetime(2024, 5, 1, 10, 0, 0)


def make_event(event_type: CanonicalEventType, at: datetime = T0, **fields) -> CanonicalEvent:
    fields.setdefault("provider", ProviderType.RAZORPAY)
    return CanonicalEvent(
        event_type=event_type,
        provider_event_type=f"test.{event_type.value}",
        provider_subscription_id="sub_1",
        occurred_at=at,
        **fields,
    )


@pytest.fixture
def machine() -> SubscriptionStateMachine:
    return SubscriptionStateMachine()


class TestEntry:
    def test_created_starts_subscription(self, machine):
        """A created event for a new subscription lands in created"""
        transition = machine.apply(SubscriptionSnapshot(), make_event(E.CREATED, plan_id="plan_1", total_count=12))
        assert transition.outcome == LedgerOutcome.APPLIED
        assert transition.previous_status is None
        assert transition.new_status == S.CREATED
        assert transition.changes["provider_plan_id"] == "plan_1"
        assert transition.changes["last_event_at"] == T0

    def test_store_activation_enters_active(self, machine):
        """Store purchases enter directly at active with their period"""
        end = T0 + timedelta(days=30)
        transition = machine.apply(
            SubscriptionSnapshot(),
            make_event(E.ACTIVATED, provider=ProviderType.GOOGLE_PLAY, current_period_start=T0, current_period_end=end),
        )
        assert transition.new_status == S.ACTIVE
        assert transition.changes["current_period_end"] == end
        assert transition.changes["next_billing_at"] == end

    def test_other_events_cannot_create(self, machine):
        """Only created or activated may create a subscription"""
        with pytest.raises(StateConflictError):
            machine.apply(SubscriptionSnapshot(), make_event(E.CHARGED))


class TestHostedLifecycle:
    def test_created_authenticated_activated_charged(self, machine):
        """The hosted checkout happy path ends active with one paid cycle"""
        snapshot = SubscriptionSnapshot(status=S.CREATED, last_event_at=T0, total_count=12)

        t = machine.apply(snapshot, make_event(E.AUTHENTICATED, T0 + timedelta(minutes=1)))
        assert t.new_status == S.AUTHENTICATED
        snapshot.status = t.new_status
        snapshot.last_event_at = t.changes["last_event_at"]

        end = T0 + timedelta(days=30)
        t = machine.apply(snapshot, make_event(
            E.ACTIVATED, T0 + timedelta(minutes=2), current_period_start=T0, current_period_end=end,
        ))
        assert t.new_status == S.ACTIVE
        assert t.changes["cancel_at_cycle_end"] is False
        snapshot.status = t.new_status
        snapshot.last_event_at = t.changes["last_event_at"]
        snapshot.current_period_end = end

        t = machine.apply(snapshot, make_event(
            E.CHARGED, T0 + timedelta(minutes=3), current_period_start=T0, current_period_end=end, paid_count=1,
        ))
        assert t.outcome == LedgerOutcome.APPLIED
        assert t.new_status == S.ACTIVE
        assert t.changes["paid_count"] == 1
        assert t.changes["remaining_count"] == 11

    def test_charge_without_count_increments(self, machine):
        """Charges that omit the paid count add one cycle"""
        snapshot = SubscriptionSnapshot(status=S.ACTIVE, paid_count=3)
        t = machine.apply(snapshot, make_event(E.CHARGED))
        assert t.changes["paid_count"] == 4

    def test_charge_never_lowers_paid_count(self, machine):
        """A provider count below the local one is ignored"""
        snapshot = SubscriptionSnapshot(status=S.ACTIVE, paid_count=5)
        t = machine.apply(snapshot, make_event(E.CHARGED, paid_count=2))
        assert t.changes["paid_count"] == 5

    def test_charge_period_start_falls_back_to_previous_end(self, machine):
        """Without a start the new period begins where the old one ended"""
        old_end = T0 + timedelta(days=30)
        new_end = T0 + timedelta(days=60)
        snapshot = SubscriptionSnapshot(status=S.ACTIVE, current_period_end=old_end)
        t = machine.apply(snapshot, make_event(E.CHARGED, current_period_end=new_end))
        assert t.changes["current_period_start"] == old_end
        assert t.changes["current_period_end"] == new_end

    def test_charge_for_earlier_period_is_stale(self, machine):
        """A renewal for a period already superseded changes nothing"""
        snapshot = SubscriptionSnapshot(status=S.ACTIVE, current_period_end=T0 + timedelta(days=60))
        t = machine.apply(snapshot, make_event(E.CHARGED, current_period_end=T0 + timedelta(days=30)))
        assert t.outcome == LedgerOutcome.STALE
        assert t.changes == {}

    def test_pending_is_noop(self, machine):
        """Payment retries keep the subscription as it is"""
        t = machine.apply(SubscriptionSnapshot(status=S.ACTIVE), make_event(E.PENDING))
        assert t.outcome == LedgerOutcome.NOOP
        assert t.new_status == S.ACTIVE


class TestOrdering:
    def test_older_event_is_stale(self, machine):
        """Events older than the last applied one are recorded only"""
        snapshot = SubscriptionSnapshot(status=S.ACTIVE, last_event_at=T0)
        t = machine.apply(snapshot, make_event(E.PAUSED, T0 - timedelta(seconds=1)))
        assert t.outcome == LedgerOutcome.STALE
        assert t.new_status == S.ACTIVE

    def test_sweep_events_bypass_staleness(self, machine):
        """The sweeper acts on elapsed time, not provider time"""
        snapshot = SubscriptionSnapshot(status=S.PENDING_CANCELLATION, last_event_at=T0)
        t = machine.apply(snapshot, make_event(E.CANCELLED, T0 - timedelta(hours=1), source=EventSource.SWEEP))
        assert t.outcome == LedgerOutcome.APPLIED
        assert t.new_status == S.CANCELLED
        assert "last_event_at" not in t.changes

    def test_user_actions_bypass_staleness(self, machine):
        """A user's cancel is not lost to a provider clock running ahead"""
        snapshot = SubscriptionSnapshot(status=S.ACTIVE, last_event_at=T0)
        t = machine.apply(snapshot, make_event(E.CANCELLED, T0 - timedelta(seconds=2), source=EventSource.API))
        assert t.outcome == LedgerOutcome.APPLIED
        assert t.new_status == S.CANCELLED

    def test_entry_event_after_activation_is_stale(self, machine):
        """A late authenticated event does not move an active subscription back"""
        t = machine.apply(SubscriptionSnapshot(status=S.ACTIVE), make_event(E.AUTHENTICATED))
        assert t.outcome == LedgerOutcome.STALE


class TestCancellation:
    def test_cycle_end_cancel_from_active(self, machine):
        """Cancelling at cycle end keeps access until the period ends"""
        t = machine.apply(
            SubscriptionSnapshot(status=S.ACTIVE),
            make_event(E.CANCELLED, cancel_at_cycle_end=True, cancellation_reason="too expensive"),
        )
        assert t.new_status == S.PENDING_CANCELLATION
        assert t.changes["cancel_at_cycle_end"] is True
        assert t.changes["cancellation_reason"] == "too expensive"
        assert t.changes["cancelled_at"] == T0

    def test_cycle_end_cancel_before_payment_is_immediate(self, machine):
        """Nothing was paid, so there is no period to preserve"""
        t = machine.apply(SubscriptionSnapshot(status=S.AUTHENTICATED), make_event(E.CANCELLED, cancel_at_cycle_end=True))
        assert t.new_status == S.CANCELLED
        assert t.changes["cancel_at_cycle_end"] is False

    def test_immediate_cancel(self, machine):
        t = machine.apply(SubscriptionSnapshot(status=S.PENDING_CANCELLATION), make_event(E.CANCELLED))
        assert t.new_status == S.CANCELLED

    def test_repeat_cancel_is_noop(self, machine):
        t = machine.apply(SubscriptionSnapshot(status=S.CANCELLED), make_event(E.CANCELLED))
        assert t.outcome == LedgerOutcome.NOOP

    def test_cancel_after_completion_is_stale(self, machine):
        t = machine.apply(SubscriptionSnapshot(status=S.COMPLETED), make_event(E.CANCELLED))
        assert t.outcome == LedgerOutcome.STALE
        assert t.new_status == S.COMPLETED

    def test_resume_clears_scheduled_cancellation(self, machine):
        """Resuming undoes a scheduled cancellation"""
        t = machine.apply(SubscriptionSnapshot(status=S.PENDING_CANCELLATION), make_event(E.RESUMED))
        assert t.new_status == S.ACTIVE
        assert t.changes["cancel_at_cycle_end"] is False
        assert t.changes["cancelled_at"] is None


class TestConflicts:
    @pytest.mark.parametrize("status,event_type", [
        (S.CANCELLED, E.CHARGED),
        (S.EXPIRED, E.ACTIVATED),
        (S.CREATED, E.PAUSED),
        (S.CREATED, E.RESUMED),
        (S.AUTHENTICATED, E.COMPLETED),
    ])
    def test_uncovered_transitions_raise(self, machine, status, event_type):
        """Transitions outside the table are conflicts"""
        with pytest.raises(StateConflictError) as exc_info:
            machine.apply(SubscriptionSnapshot(status=status), make_event(event_type))
        assert exc_info.value.current_status == status.value
        assert exc_info.value.event_type == event_type.value

    def test_terminal_status_is_sticky(self, machine):
        """A provider claiming a dead subscription is live needs review"""
        with pytest.raises(StateConflictError):
            machine.apply(
                SubscriptionSnapshot(status=S.CANCELLED),
                make_event(E.UPDATED, provider_status=S.ACTIVE),
            )


class TestExpiry:
    def test_ended_subscription_expires(self, machine):
        t = machine.apply(SubscriptionSnapshot(status=S.CANCELLED), make_event(E.EXPIRED))
        assert t.new_status == S.EXPIRED
        assert t.changes["next_billing_at"] is None

    def test_store_can_expire_live_subscription(self, machine):
        """Stores report expiry without a prior cancellation"""
        t = machine.apply(
            SubscriptionSnapshot(status=S.ACTIVE),
            make_event(E.EXPIRED, provider=ProviderType.APPLE_APPSTORE),
        )
        assert t.new_status == S.EXPIRED

    def test_hosted_live_subscription_cannot_expire(self, machine):
        with pytest.raises(StateConflictError):
            machine.apply(SubscriptionSnapshot(status=S.ACTIVE), make_event(E.EXPIRED))


class TestUpdated:
    def test_status_correction(self, machine):
        """Live provider state corrects a drifted local status"""
        t = machine.apply(
            SubscriptionSnapshot(status=S.ACTIVE),
            make_event(E.UPDATED, provider_status=S.PAUSED, source=EventSource.RECONCILIATION),
        )
        assert t.outcome == LedgerOutcome.APPLIED
        assert t.new_status == S.PAUSED

    def test_scheduled_cancellation_survives_live_fetch(self, machine):
        """Razorpay reports active until a cycle end cancel runs"""
        t = machine.apply(SubscriptionSnapshot(status=S.PENDING_CANCELLATION), make_event(
            E.UPDATED, provider_status=S.ACTIVE, cancel_at_cycle_end=True, source=EventSource.RECONCILIATION,
        ))
        assert t.outcome == LedgerOutcome.NOOP
        assert t.new_status == S.PENDING_CANCELLATION

    def test_live_fetch_discovers_scheduled_cancellation(self, machine):
        t = machine.apply(
            SubscriptionSnapshot(status=S.ACTIVE),
            make_event(E.UPDATED, provider_status=S.ACTIVE, cancel_at_cycle_end=True, source=EventSource.RECONCILIATION),
        )
        assert t.new_status == S.PENDING_CANCELLATION
        assert t.changes["cancel_at_cycle_end"] is True
        assert t.changes["cancelled_at"] == T0

    def test_same_state_without_changes_is_noop(self, machine):
        end = T0 + timedelta(days=30)
        snapshot = SubscriptionSnapshot(status=S.ACTIVE, current_period_end=end, next_billing_at=end)
        t = machine.apply(snapshot, make_event(E.UPDATED, provider_status=S.ACTIVE, current_period_end=end))
        assert t.outcome == LedgerOutcome.NOOP

    def test_period_extension_is_applied(self, machine):
        end = T0 + timedelta(days=30)
        snapshot = SubscriptionSnapshot(status=S.ACTIVE, current_period_end=end, next_billing_at=end)
        later = end + timedelta(days=30)
        t = machine.apply(snapshot, make_event(E.UPDATED, provider_status=S.ACTIVE, current_period_end=later))
        assert t.outcome == LedgerOutcome.APPLIED
        assert t.changes["current_period_end"] == later
