import asyncio
from datetime import datetime, timedelta

import pytest

from billing_core.core.exceptions import StateConflictError
from billing_core.db.models import EventSource, LedgerOutcome, ProviderType, SubscriptionStatus
from billing_core.db.repositories import InvoiceRepository, SubscriptionRepository
from billing_core.subscriptions.events import CanonicalEventType, PaymentInfo
from billing_core.subscriptions.ledger import SubscriptionLedger
from billing_core.subscriptions.reconciler import ApplyOutcome

from helpers import canonical_event, razorpay_entity

E = CanonicalEventType
T0 = datetime(2024, 5, 1, 10, 0, 0)
END = T0 + timedelta(days=30)
DEFAULTS = {"user_id": "user-1", "plan_code": "pro_monthly"}


def payment(payment_id: str = "pay_1") -> PaymentInfo:
    return PaymentInfo(payment_id=payment_id, amount_minor=49900, currency="INR", status="paid", paid_at=T0)


async def load(session_factory, provider_subscription_id: str = "sub_test123"):
    async with session_factory() as session:
        subscription = await SubscriptionRepository(session).get_by(provider_subscription_id=provider_subscription_id)
        history = await SubscriptionLedger(session).list(subscription.id) if subscription else []
    return subscription, history


async def activate(reconciler):
    await reconciler.apply_event(canonical_event(E.CREATED, T0, "evt_created", total_count=12), DEFAULTS)
    await reconciler.apply_event(canonical_event(E.AUTHENTICATED, T0 + timedelta(minutes=1), "evt_auth"))
    await reconciler.apply_event(canonical_event(
        E.ACTIVATED, T0 + timedelta(minutes=2), "evt_active", current_period_start=T0, current_period_end=END,
    ))


class TestApply:
    async def test_creates_subscription_from_defaults(self, reconciler, session_factory):
        result = await reconciler.apply_event(canonical_event(E.CREATED, T0, "evt_created"), DEFAULTS)

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.status == SubscriptionStatus.CREATED
        assert result.recorded is True
        subscription, history = await load(session_factory)
        assert subscription.id == result.subscription_id
        assert subscription.user_id == "user-1"
        assert subscription.plan_code == "pro_monthly"
        assert subscription.last_event_at == T0
        assert len(history) == 1

    async def test_unknown_subscription_without_defaults(self, reconciler, session_factory):
        result = await reconciler.apply_event(canonical_event(E.ACTIVATED, T0, "evt_1"))
        assert result.outcome == ApplyOutcome.UNKNOWN_SUBSCRIPTION
        assert result.recorded is False
        subscription, _ = await load(session_factory)
        assert subscription is None

    async def test_new_subscription_needs_entry_event(self, reconciler):
        with pytest.raises(StateConflictError):
            await reconciler.apply_event(canonical_event(E.CHARGED, T0, "evt_1"), DEFAULTS)

    async def test_hosted_lifecycle(self, reconciler, session_factory):
        await activate(reconciler)
        result = await reconciler.apply_event(canonical_event(
            E.CHARGED, T0 + timedelta(minutes=3), "evt_charge",
            current_period_start=T0, current_period_end=END, paid_count=1, payment=payment(),
        ))

        assert result.outcome == ApplyOutcome.APPLIED
        subscription, history = await load(session_factory)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.paid_count == 1
        assert subscription.remaining_count == 11
        assert subscription.current_period_end == END
        assert [row.new_status for row in history] == [
            SubscriptionStatus.CREATED,
            SubscriptionStatus.AUTHENTICATED,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.ACTIVE,
        ]
        assert history[-1].payment_id == "pay_1"
        assert history[-1].payment_amount == 49900

        async with session_factory() as session:
            invoices = await InvoiceRepository(session).list_for_subscription(subscription.id)
        assert len(invoices) == 1
        assert invoices[0].period_end == END

    async def test_same_payment_is_invoiced_once(self, reconciler, session_factory):
        await activate(reconciler)
        await reconciler.apply_event(canonical_event(E.CHARGED, T0 + timedelta(minutes=3), "evt_a", payment=payment()))
        await reconciler.apply_event(canonical_event(E.CHARGED, T0 + timedelta(minutes=4), "evt_b", payment=payment()))

        subscription, _ = await load(session_factory)
        async with session_factory() as session:
            invoices = await InvoiceRepository(session).list_for_subscription(subscription.id)
        assert len(invoices) == 1


class TestIdempotency:
    async def test_redelivery_is_duplicate(self, reconciler, session_factory):
        await activate(reconciler)
        event = canonical_event(E.CHARGED, T0 + timedelta(minutes=3), "evt_charge", paid_count=1)

        first = await reconciler.apply_event(event)
        second = await reconciler.apply_event(event)

        assert first.outcome == ApplyOutcome.APPLIED
        assert second.outcome == ApplyOutcome.DUPLICATE
        assert second.recorded is False
        subscription, history = await load(session_factory)
        assert subscription.paid_count == 1
        assert len(history) == 4

    async def test_concurrent_deliveries_apply_once(self, reconciler, session_factory):
        await activate(reconciler)
        event = canonical_event(E.CHARGED, T0 + timedelta(minutes=3), "evt_charge")

        results = await asyncio.gather(*(reconciler.apply_event(event) for _ in range(5)))

        outcomes = [r.outcome for r in results]
        assert outcomes.count(ApplyOutcome.APPLIED) == 1
        assert outcomes.count(ApplyOutcome.DUPLICATE) == 4
        subscription, _ = await load(session_factory)
        assert subscription.paid_count == 1
        assert len(reconciler.locks) == 0

    async def test_same_state_under_new_id_is_noop(self, reconciler, session_factory):
        await activate(reconciler)
        result = await reconciler.apply_event(canonical_event(E.ACTIVATED, T0 + timedelta(minutes=5), "evt_again"))
        assert result.outcome == ApplyOutcome.NOOP
        _, history = await load(session_factory)
        assert history[-1].outcome == LedgerOutcome.NOOP


class TestOrdering:
    async def test_late_activation_after_charge_is_stale(self, reconciler, session_factory):
        """charged can overtake activated; the late activation changes nothing"""
        await reconciler.apply_event(canonical_event(E.CREATED, T0, "evt_created"), DEFAULTS)
        await reconciler.apply_event(canonical_event(
            E.CHARGED, T0 + timedelta(minutes=3), "evt_charge", current_period_start=T0, current_period_end=END,
        ))
        result = await reconciler.apply_event(canonical_event(
            E.ACTIVATED, T0 + timedelta(minutes=2), "evt_active", current_period_start=T0, current_period_end=END,
        ))

        assert result.outcome == ApplyOutcome.STALE
        subscription, history = await load(session_factory)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.last_event_at == T0 + timedelta(minutes=3)
        assert history[-1].outcome == LedgerOutcome.STALE


class TestConflicts:
    async def test_conflict_is_recorded_and_reconciled(self, reconciler, follow_ups, razorpay, session_factory):
        await activate(reconciler)
        await reconciler.apply_event(canonical_event(E.CANCELLED, T0 + timedelta(minutes=3), "evt_cancel"))
        razorpay._send.reset_mock()
        razorpay._send.return_value = (200, razorpay_entity(status="cancelled", current_start=T0, current_end=END))

        result = await reconciler.apply_event(canonical_event(E.CHARGED, T0 + timedelta(minutes=4), "evt_charge"))
        assert result.outcome == ApplyOutcome.CONFLICT
        assert result.status == SubscriptionStatus.CANCELLED

        await follow_ups.drain()

        method, url = razorpay._send.call_args.args
        assert method == "GET"
        assert url.endswith("/subscriptions/sub_test123")
        subscription, history = await load(session_factory)
        assert subscription.status == SubscriptionStatus.CANCELLED
        conflict = next(row for row in history if row.outcome == LedgerOutcome.CONFLICT)
        assert conflict.notes
        assert history[-1].source == EventSource.RECONCILIATION

    async def test_reconcile_corrects_drift(self, reconciler, razorpay, session_factory):
        await activate(reconciler)
        razorpay._send.return_value = (200, razorpay_entity(status="halted", current_start=T0, current_end=END))

        result = await reconciler.reconcile(ProviderType.RAZORPAY, "sub_test123")

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.status == SubscriptionStatus.PAUSED
        subscription, _ = await load(session_factory)
        assert subscription.status == SubscriptionStatus.PAUSED


class TestNotifications:
    async def test_applied_transitions_are_tracked(self, reconciler, notifier, tracker):
        await activate(reconciler)
        await reconciler.apply_event(canonical_event(
            E.CHARGED, T0 + timedelta(minutes=3), "evt_charge", payment=payment(),
        ))
        # stale, not tracked
        await reconciler.apply_event(canonical_event(E.AUTHENTICATED, T0, "evt_late"))
        await notifier.drain()

        assert tracker.names == [
            "subscription_created",
            "subscription_authenticated",
            "subscription_activated",
            "subscription_charged",
        ]
        charged = dict(tracker.events)["subscription_charged"]
        assert charged["amount_minor"] == 49900
        assert charged["provider"] == "razorpay"
