"""
Inbound webhook processing.

verify -> record the delivery -> canonicalize -> reconcile

Every distinct delivery is recorded once in webhook_event, keyed by provider
and event key, so a redelivered event that already finished is acknowledged
without touching anything. Provider lookups that do not fit the response
budget, and events that arrive before their subscription exists, are handed
to the follow-up queue.
"""

import asyncio
import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.config import BillingConfig
from ..core.exceptions import ProviderFetchError, VerificationError
from ..core.logging_config import get_event_logger, get_logger
from ..core.timeutils import utcnow
from ..db.base import generate_uuid
from ..db.models import ProviderType, WebhookEvent, WebhookProcessingStatus
from ..db.repositories import WebhookEventRepository
from ..integrations.payment_providers.registry import ProviderRegistry
from .canonicalizer import (
    PlayNotification,
    canonicalize_app_store_notification,
    canonicalize_play_notification,
    canonicalize_razorpay,
    decode_play_push,
)
from .events import CanonicalEvent
from .followups import FollowUpQueue
from .reconciler import ApplyOutcome, SubscriptionReconciler
from .verifier import WebhookVerifier

logger = get_logger(__name__)


@dataclass
class WebhookResult:
    status: WebhookProcessingStatus
    event_key: Optional[str] = None
    outcome: Optional[ApplyOutcome] = None
    subscription_id: Optional[UUID] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": True, "status": self.status.value}
        if self.outcome is not None:
            data["outcome"] = self.outcome.value
        return data


def _parse_json(raw_body: bytes) -> Dict[str, Any]:
    try:
        body = json.loads(raw_body)
    except ValueError as e:
        raise VerificationError("Webhook body is not valid JSON") from e
    if not isinstance(body, dict):
        raise VerificationError("Webhook body must be a JSON object")
    return body


class WebhookProcessor:
    """Entry point for Razorpay, Google Play and App Store notifications."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        registry: ProviderRegistry,
        reconciler: SubscriptionReconciler,
        follow_ups: FollowUpQueue,
        billing: BillingConfig,
        verifier: Optional[WebhookVerifier] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.reconciler = reconciler
        self.follow_ups = follow_ups
        self.billing = billing
        self.verifier = verifier or WebhookVerifier(registry)

    # ---- provider entry points ----

    async def handle_razorpay(
        self,
        raw_body: bytes,
        signature: Optional[str],
        event_id: Optional[str] = None,
    ) -> WebhookResult:
        """
        Process a Razorpay webhook.

        Raises:
            VerificationError: bad signature (401) or malformed JSON (400)
            ValidationError: the body lacks the subscription entity
        """
        if not self.verifier.verify(ProviderType.RAZORPAY, raw_body, signature):
            raise VerificationError("Invalid webhook signature", status_code=401)
        payload = _parse_json(raw_body)

        event_key = event_id or hashlib.sha256(raw_body).hexdigest()
        event = canonicalize_razorpay(payload, event_id)
        record_id, finished = await self._record(
            ProviderType.RAZORPAY, event_key, payload.get("event", "unknown"), payload, event_id
        )
        if finished:
            return WebhookResult(WebhookProcessingStatus.DUPLICATE, event_key)
        return await self._dispatch(record_id, event_key, event)

    async def handle_google_play(self, raw_body: bytes, token: Optional[str]) -> WebhookResult:
        """
        Process a Pub/Sub push carrying a Play developer notification.

        The purchase state is fetched from Google within the response budget;
        a slower lookup is deferred to a follow-up.
        """
        if not self.verifier.verify(ProviderType.GOOGLE_PLAY, raw_body, token):
            raise VerificationError("Invalid Pub/Sub verification token", status_code=401)
        body = _parse_json(raw_body)

        notification = decode_play_push(body)
        if notification is None:
            return WebhookResult(WebhookProcessingStatus.IGNORED)

        provider = self.registry.get(ProviderType.GOOGLE_PLAY)
        package_name = getattr(provider, "package_name", None)
        if notification.package_name and package_name and notification.package_name != package_name:
            raise VerificationError("Notification is for a different package", status_code=401)

        event_key = notification.message_id
        record_id, finished = await self._record(
            ProviderType.GOOGLE_PLAY, event_key, notification.type_name, body, notification.message_id
        )
        if finished:
            return WebhookResult(WebhookProcessingStatus.DUPLICATE, event_key)

        try:
            event = await asyncio.wait_for(
                self._canonicalize_play(notification),
                timeout=self.billing.webhook_response_budget_seconds,
            )
        except (asyncio.TimeoutError, ProviderFetchError) as e:
            reason = "response budget exceeded" if isinstance(e, asyncio.TimeoutError) else e.message
            get_event_logger(__name__, ProviderType.GOOGLE_PLAY.value, event_key).info(
                f"Deferring Play notification: {reason}"
            )
            await self._mark(record_id, WebhookProcessingStatus.DEFERRED, error_message=reason)
            self.follow_ups.schedule(
                f"play_{event_key}",
                lambda: self.retry_event(record_id),
                webhook_event_id=record_id,
            )
            return WebhookResult(WebhookProcessingStatus.DEFERRED, event_key)

        return await self._dispatch(record_id, event_key, event)

    async def handle_app_store(self, raw_body: bytes) -> WebhookResult:
        """Process an App Store server notification (signedPayload)."""
        notification = self.verifier.decode_app_store(raw_body)
        if notification is None:
            raise VerificationError("Invalid App Store notification signature", status_code=401)

        event_key = notification.get("notificationUUID") or hashlib.sha256(raw_body).hexdigest()
        notification_type = notification.get("notificationType", "unknown")
        event = canonicalize_app_store_notification(notification)
        record_id, finished = await self._record(
            ProviderType.APPLE_APPSTORE, event_key, notification_type, notification,
            notification.get("notificationUUID"),
        )
        if finished:
            return WebhookResult(WebhookProcessingStatus.DUPLICATE, event_key)
        return await self._dispatch(record_id, event_key, event)

    # ---- shared pipeline ----

    async def _canonicalize_play(self, notification: PlayNotification) -> Optional[CanonicalEvent]:
        provider = self.registry.get(ProviderType.GOOGLE_PLAY)
        details = await provider.fetch_subscription(notification.purchase_token, notification.product_id)
        return canonicalize_play_notification(notification, details)

    async def _canonicalize_stored(self, record: WebhookEvent) -> Optional[CanonicalEvent]:
        if record.provider == ProviderType.RAZORPAY:
            return canonicalize_razorpay(record.payload, record.provider_event_id)
        if record.provider == ProviderType.GOOGLE_PLAY:
            notification = decode_play_push(record.payload)
            if notification is None:
                return None
            return await self._canonicalize_play(notification)
        return canonicalize_app_store_notification(record.payload)

    async def _record(
        self,
        provider: ProviderType,
        event_key: str,
        event_type: str,
        payload: Dict[str, Any],
        provider_event_id: Optional[str],
    ) -> Tuple[UUID, bool]:
        """
        Record a delivery.

        Returns the record id and whether an earlier delivery of the same
        event already finished.
        """
        async with self.session_factory() as session:
            repo = WebhookEventRepository(session)
            existing = await repo.get_by_key(provider, event_key)
            if existing is not None:
                existing.attempts += 1
                await session.commit()
                if existing.is_finished:
                    logger.info(f"Redelivery of finished {provider.value} event {event_key}")
                return existing.id, existing.is_finished

            record = WebhookEvent(
                id=generate_uuid(),
                provider=provider,
                event_key=event_key,
                event_type=event_type[:100],
                provider_event_id=provider_event_id,
                payload=payload,
                processing_status=WebhookProcessingStatus.RECEIVED,
                attempts=1,
            )
            repo.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                # a concurrent delivery of the same event owns processing
                existing = await repo.get_by_key(provider, event_key)
                return existing.id, True
            return record.id, False

    async def _mark(self, record_id: UUID, status: WebhookProcessingStatus, **fields: Any) -> None:
        async with self.session_factory() as session:
            record = await session.get(WebhookEvent, record_id)
            if record is None:
                return
            record.processing_status = status
            for name, value in fields.items():
                setattr(record, name, value)
            if status not in (WebhookProcessingStatus.DEFERRED, WebhookProcessingStatus.RECEIVED):
                record.processed_at = utcnow()
            await session.commit()

    async def _dispatch(self, record_id: UUID, event_key: str, event: Optional[CanonicalEvent]) -> WebhookResult:
        if event is None:
            await self._mark(record_id, WebhookProcessingStatus.IGNORED)
            return WebhookResult(WebhookProcessingStatus.IGNORED, event_key)

        result = await self.reconciler.apply_event(event)

        if result.outcome == ApplyOutcome.UNKNOWN_SUBSCRIPTION:
            await self._defer_orphan(record_id, event_key, event)
            return WebhookResult(WebhookProcessingStatus.DEFERRED, event_key, result.outcome)

        status = (
            WebhookProcessingStatus.DUPLICATE
            if result.outcome == ApplyOutcome.DUPLICATE
            else WebhookProcessingStatus.PROCESSED
        )
        await self._mark(record_id, status, subscription_id=result.subscription_id, error_message=None)
        return WebhookResult(status, event_key, result.outcome, result.subscription_id)

    async def _defer_orphan(self, record_id: UUID, event_key: str, event: CanonicalEvent) -> None:
        async with self.session_factory() as session:
            record = await session.get(WebhookEvent, record_id)
            attempts = record.attempts if record is not None else 1

        if attempts >= self.billing.orphan_max_attempts:
            await self.follow_ups.dead_letter(
                record_id,
                f"No subscription for {event.provider.value} id {event.provider_subscription_id} "
                f"after {attempts} attempts",
            )
            return

        await self._mark(
            record_id,
            WebhookProcessingStatus.DEFERRED,
            error_message=f"Subscription {event.provider_subscription_id} not found yet",
        )
        self.follow_ups.schedule(
            f"orphan_{event_key[:32]}",
            lambda: self.retry_event(record_id),
            webhook_event_id=record_id,
            delay=self.billing.orphan_retry_delay_seconds,
        )

    async def retry_event(self, record_id: UUID) -> Optional[WebhookResult]:
        """Re-run a deferred delivery from its stored payload."""
        async with self.session_factory() as session:
            record = await session.get(WebhookEvent, record_id)
            if record is None or record.is_finished:
                return None
            record.attempts += 1
            await session.commit()

        event = await self._canonicalize_stored(record)
        return await self._dispatch(record_id, record.event_key, event)

    async def retry_unfinished(self) -> int:
        """Reschedule deferred or failed deliveries left over from a previous run."""
        async with self.session_factory() as session:
            records = await WebhookEventRepository(session).list_unfinished()
            record_ids = [record.id for record in records]
        for record_id in record_ids:
            self.follow_ups.schedule(
                f"resume_{record_id}",
                lambda record_id=record_id: self.retry_event(record_id),
                webhook_event_id=record_id,
            )
        if record_ids:
            logger.info(f"Rescheduled {len(record_ids)} unfinished webhook events")
        return len(record_ids)
