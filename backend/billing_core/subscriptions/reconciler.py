"""
Subscription reconciler.

The single write path for subscription state. Each canonical event runs as
one unit of work under a per-subscription lock:

    lookup -> duplicate check -> state machine -> ledger row
    -> subscription update -> invoice -> commit

The ledger row and the subscription update commit together. The unique
idempotency key catches concurrent duplicates; the version column catches
writers in other processes.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from ..core.exceptions import DatabaseError, StateConflictError
from ..core.logging_config import get_logger
from ..db.base import generate_uuid
from ..db.models import (
    EventSource,
    LedgerOutcome,
    ProviderType,
    Subscription,
    SubscriptionInvoice,
    SubscriptionStatus,
)
from ..db.repositories import InvoiceRepository, SubscriptionRepository
from ..integrations.payment_providers.registry import ProviderRegistry
from .canonicalizer import canonicalize_details
from .events import CanonicalEvent
from .followups import FollowUpQueue
from .ledger import SubscriptionLedger
from .locks import KeyedLock
from .notifications import FireAndForgetNotifier
from .state_machine import SubscriptionSnapshot, SubscriptionStateMachine, Transition

logger = get_logger(__name__)

MAX_VERSION_RETRIES = 3


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    STALE = "stale"
    CONFLICT = "conflict"
    DUPLICATE = "duplicate"
    UNKNOWN_SUBSCRIPTION = "unknown_subscription"


@dataclass
class ReconcileResult:
    outcome: ApplyOutcome
    subscription_id: Optional[UUID] = None
    status: Optional[SubscriptionStatus] = None
    transition: Optional[Transition] = None
    idempotency_key: Optional[str] = None

    @property
    def recorded(self) -> bool:
        """Whether this call wrote a ledger row."""
        return self.transition is not None


class SubscriptionReconciler:
    """Applies canonical events to persisted subscriptions."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        registry: ProviderRegistry,
        follow_ups: FollowUpQueue,
        notifier: Optional[FireAndForgetNotifier] = None,
        state_machine: Optional[SubscriptionStateMachine] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.follow_ups = follow_ups
        self.notifier = notifier or FireAndForgetNotifier()
        self.state_machine = state_machine or SubscriptionStateMachine()
        self.locks = locks or KeyedLock()

    async def apply_event(
        self,
        event: CanonicalEvent,
        defaults: Optional[Dict[str, Any]] = None,
    ) -> ReconcileResult:
        """
        Apply one event.

        Args:
            event: Canonical event
            defaults: Column values for a new subscription row; without them
                an event for an unknown subscription is not applied

        Raises:
            StateConflictError: the event cannot create the subscription
            DatabaseError: concurrent writers kept winning
        """
        lock_key = (event.provider.value, event.provider_subscription_id)
        async with self.locks.hold(lock_key):
            retrying = AsyncRetrying(
                stop=stop_after_attempt(MAX_VERSION_RETRIES),
                retry=retry_if_exception_type(StaleDataError),
                reraise=True,
            )
            try:
                async for attempt in retrying:
                    with attempt:
                        if attempt.retry_state.attempt_number > 1:
                            logger.warning(
                                f"Retrying {event.event_type.value} for {event.provider_subscription_id} "
                                f"after concurrent update"
                            )
                        result = await self._apply_once(event, defaults)
            except StaleDataError as e:
                raise DatabaseError(
                    "Subscription kept changing concurrently",
                    details={"provider_subscription_id": event.provider_subscription_id},
                    operation="apply_event",
                ) from e

        self._after_commit(event, result)
        return result

    async def _apply_once(self, event: CanonicalEvent, defaults: Optional[Dict[str, Any]]) -> ReconcileResult:
        async with self.session_factory() as session:
            subscriptions = SubscriptionRepository(session)
            ledger = SubscriptionLedger(session)

            subscription = await subscriptions.get_by_provider_id(event.provider, event.provider_subscription_id)
            is_new = subscription is None
            if is_new:
                if defaults is None:
                    logger.info(
                        f"No subscription for {event.provider.value} id {event.provider_subscription_id}",
                        extra={"provider": event.provider.value},
                    )
                    return ReconcileResult(ApplyOutcome.UNKNOWN_SUBSCRIPTION)
                subscription = Subscription(
                    id=generate_uuid(),
                    provider=event.provider,
                    provider_subscription_id=event.provider_subscription_id,
                    paid_count=0,
                    provider_metadata={},
                    **defaults,
                )

            key = ledger.idempotency_key(subscription.id, event)
            if not is_new and await ledger.exists(key):
                logger.info(f"Duplicate {event.event_type.value} for subscription {subscription.id}")
                return ReconcileResult(ApplyOutcome.DUPLICATE, subscription.id, subscription.status, idempotency_key=key)

            snapshot = SubscriptionSnapshot.from_model(None if is_new else subscription)
            try:
                transition = self.state_machine.apply(snapshot, event)
            except StateConflictError as e:
                if is_new:
                    raise
                logger.warning(
                    f"State conflict for subscription {subscription.id}: {e.message}",
                    extra={"subscription_id": str(subscription.id), "provider": event.provider.value},
                )
                transition = Transition(
                    LedgerOutcome.CONFLICT, subscription.status, subscription.status, note=e.message
                )

            if is_new:
                session.add(subscription)
            if transition.applied:
                for column, value in transition.changes.items():
                    setattr(subscription, column, value)
                if event.metadata:
                    subscription.provider_metadata = {**(subscription.provider_metadata or {}), **event.metadata}

            ledger.append(subscription, event, transition, key)
            if transition.outcome != LedgerOutcome.CONFLICT:
                await self._capture_invoice(session, subscription, event)

            try:
                await session.flush()
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"Concurrent duplicate of {event.event_type.value} for {event.provider_subscription_id}")
                return ReconcileResult(ApplyOutcome.DUPLICATE, subscription.id, idempotency_key=key)

            logger.info(
                f"{event.provider.value} {event.event_type.value}: "
                f"{transition.previous_status.value if transition.previous_status else 'none'} -> "
                f"{transition.new_status.value} ({transition.outcome.value})",
                extra={"subscription_id": str(subscription.id), "provider": event.provider.value},
            )
            return ReconcileResult(
                ApplyOutcome(transition.outcome.value),
                subscription.id,
                subscription.status,
                transition,
                key,
            )

    async def _capture_invoice(self, session: AsyncSession, subscription: Subscription, event: CanonicalEvent) -> None:
        payment = event.payment
        if payment is None:
            return
        invoices = InvoiceRepository(session)
        invoice = await invoices.get_by_payment_id(payment.payment_id)
        if invoice is not None:
            if invoice.status != payment.status:
                invoice.status = payment.status
                invoice.paid_at = payment.paid_at or invoice.paid_at
            return
        invoices.add(SubscriptionInvoice(
            id=generate_uuid(),
            subscription_id=subscription.id,
            provider_payment_id=payment.payment_id,
            amount_minor=payment.amount_minor,
            currency=payment.currency,
            period_start=event.current_period_start or subscription.current_period_start,
            period_end=event.current_period_end or subscription.current_period_end,
            status=payment.status,
            payment_method=payment.method,
            paid_at=payment.paid_at,
        ))

    def _after_commit(self, event: CanonicalEvent, result: ReconcileResult) -> None:
        if result.outcome == ApplyOutcome.APPLIED:
            properties = {
                "subscription_id": str(result.subscription_id),
                "provider": event.provider.value,
                "status": result.status.value if result.status else None,
                "source": event.source.value,
            }
            if event.payment is not None:
                properties["amount_minor"] = event.payment.amount_minor
                properties["currency"] = event.payment.currency
            self.notifier.notify(f"subscription_{event.event_type.value}", properties)

        elif result.outcome == ApplyOutcome.CONFLICT and event.source != EventSource.RECONCILIATION:
            self.follow_ups.schedule(
                f"reconcile_{event.provider_subscription_id[:32]}",
                lambda: self.reconcile(event.provider, event.provider_subscription_id, event.product_id),
            )

    async def reconcile(
        self,
        provider_type: ProviderType,
        provider_subscription_id: str,
        product_id: Optional[str] = None,
        source: EventSource = EventSource.RECONCILIATION,
    ) -> ReconcileResult:
        """
        Fetch live provider state and apply it as an ``updated`` event.

        Raises:
            ProviderFetchError: the provider could not be reached
            MethodNotSupportedError: the provider has no live lookup
        """
        provider = self.registry.get(provider_type)
        details = await provider.fetch_subscription(provider_subscription_id, product_id)
        event = canonicalize_details(provider_type, details, source=source, notes="Live provider state")
        result = await self.apply_event(event)
        if result.outcome == ApplyOutcome.CONFLICT:
            logger.error(
                f"Provider reports {details.status.value if details.status else 'unknown'} for "
                f"{provider_subscription_id}, which cannot be applied; manual review required",
                extra={"provider": provider_type.value},
            )
        return result
