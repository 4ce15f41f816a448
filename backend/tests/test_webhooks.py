import asyncio
import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from billing_core.core.config import AppleAppStoreConfig
from billing_core.core.exceptions import ProviderFetchError, VerificationError
from billing_core.core.timeutils import utcnow
from billing_core.db.models import (
    ProviderType,
    SubscriptionHistory,
    SubscriptionStatus,
    WebhookEvent,
    WebhookProcessingStatus,
)
from billing_core.db.repositories import InvoiceRepository, SubscriptionRepository, WebhookEventRepository
from billing_core.integrations.payment_providers.apple_appstore import AppleAppStoreProvider
from billing_core.integrations.payment_providers.base import ProviderSubscriptionDetails
from billing_core.subscriptions.events import CanonicalEventType
from billing_core.subscriptions.reconciler import ApplyOutcome

from helpers import (
    PACKAGE_NAME,
    PUBSUB_TOKEN,
    SigningChain,
    canonical_event,
    epoch_ms,
    play_push,
    pubsub_envelope,
    razorpay_payment,
    razorpay_webhook,
    sign,
)

E = CanonicalEventType
T0 = datetime(2024, 5, 1, 10, 0, 0)
DEFAULTS = {"user_id": "user-1", "plan_code": "pro_monthly"}


async def count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def webhook_record(session_factory, provider: ProviderType, event_key: str) -> WebhookEvent:
    async with session_factory() as session:
        return await WebhookEventRepository(session).get_by_key(provider, event_key)


class TestRazorpayWebhooks:
    async def deliver(self, processor, event, at, event_id, **fields):
        body = razorpay_webhook(event, at, **fields)
        return await processor.handle_razorpay(body, sign(body), event_id)

    async def test_checkout_lifecycle(self, service, processor, razorpay, session_factory):
        razorpay._send.return_value = (200, {"id": "sub_test123", "status": "created", "total_count": 12})
        created = await service.create_subscription("user-1", "pro_monthly")

        start = utcnow().replace(microsecond=0) + timedelta(seconds=5)
        end = start + timedelta(days=30)
        results = [
            await self.deliver(processor, "subscription.authenticated", start, "evt_1", status="authenticated"),
            await self.deliver(
                processor, "subscription.activated", start + timedelta(seconds=1), "evt_2",
                current_start=start, current_end=end,
            ),
            await self.deliver(
                processor, "subscription.charged", start + timedelta(seconds=2), "evt_3",
                current_start=start, current_end=end, paid_count=1,
                payment=razorpay_payment("pay_1", 49900, created_at=start),
            ),
        ]

        assert [r.status for r in results] == [WebhookProcessingStatus.PROCESSED] * 3
        assert [r.outcome for r in results] == [ApplyOutcome.APPLIED] * 3
        assert results[0].to_dict() == {"success": True, "status": "processed", "outcome": "applied"}

        async with session_factory() as session:
            subscription = await SubscriptionRepository(session).get(created.subscription_id)
            invoices = await InvoiceRepository(session).list_for_subscription(created.subscription_id)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.paid_count == 1
        assert subscription.current_period_end == end
        assert [i.provider_payment_id for i in invoices] == ["pay_1"]

        record = await webhook_record(session_factory, ProviderType.RAZORPAY, "evt_3")
        assert record.processing_status == WebhookProcessingStatus.PROCESSED
        assert record.subscription_id == created.subscription_id

    async def test_redelivery_is_acknowledged_without_effect(self, processor, reconciler, session_factory):
        await reconciler.apply_event(canonical_event(E.CREATED, T0, "evt_created"), DEFAULTS)
        body = razorpay_webhook("subscription.authenticated", T0 + timedelta(minutes=1), status="authenticated")

        first = await processor.handle_razorpay(body, sign(body), "evt_1")
        history_rows = await count(session_factory, SubscriptionHistory)
        second = await processor.handle_razorpay(body, sign(body), "evt_1")

        assert first.status == WebhookProcessingStatus.PROCESSED
        assert second.status == WebhookProcessingStatus.DUPLICATE
        assert await count(session_factory, SubscriptionHistory) == history_rows
        record = await webhook_record(session_factory, ProviderType.RAZORPAY, "evt_1")
        assert record.attempts == 2

    async def test_event_id_falls_back_to_body_hash(self, processor, reconciler, session_factory):
        await reconciler.apply_event(canonical_event(E.CREATED, T0, "evt_created"), DEFAULTS)
        body = razorpay_webhook("subscription.authenticated", T0 + timedelta(minutes=1), status="authenticated")

        result = await processor.handle_razorpay(body, sign(body))
        assert len(result.event_key) == 64
        assert (await processor.handle_razorpay(body, sign(body))).status == WebhookProcessingStatus.DUPLICATE

    async def test_tampered_body_is_rejected(self, processor, session_factory):
        body = razorpay_webhook("subscription.activated", T0)
        signature = sign(body)
        tampered = body.replace(b'"active"', b'"cancelled"')

        with pytest.raises(VerificationError) as exc_info:
            await processor.handle_razorpay(tampered, signature, "evt_1")
        assert exc_info.value.status_code == 401
        assert await count(session_factory, WebhookEvent) == 0

    async def test_non_ascii_signature_is_rejected(self, processor, session_factory):
        body = razorpay_webhook("subscription.activated", T0)

        with pytest.raises(VerificationError) as exc_info:
            await processor.handle_razorpay(body, "\u00e9" * 64, "evt_1")
        assert exc_info.value.status_code == 401
        assert await count(session_factory, WebhookEvent) == 0

    async def test_malformed_json(self, processor):
        body = b"{not json"
        with pytest.raises(VerificationError) as exc_info:
            await processor.handle_razorpay(body, sign(body), "evt_1")
        assert exc_info.value.status_code == 400

    async def test_untracked_event_is_ignored(self, processor, session_factory):
        body = json.dumps({"event": "payment.captured", "payload": {}, "created_at": 1714557600}).encode()
        result = await processor.handle_razorpay(body, sign(body), "evt_pay")

        assert result.status == WebhookProcessingStatus.IGNORED
        record = await webhook_record(session_factory, ProviderType.RAZORPAY, "evt_pay")
        assert record.processing_status == WebhookProcessingStatus.IGNORED

    async def test_orphan_is_dead_lettered(self, processor, follow_ups, session_factory):
        """Events for a subscription that never appears end in the dead letter state"""
        body = razorpay_webhook("subscription.activated", T0, sub_id="sub_ghost")

        result = await processor.handle_razorpay(body, sign(body), "evt_ghost")
        assert result.status == WebhookProcessingStatus.DEFERRED
        assert result.outcome == ApplyOutcome.UNKNOWN_SUBSCRIPTION

        await follow_ups.drain()

        record = await webhook_record(session_factory, ProviderType.RAZORPAY, "evt_ghost")
        assert record.processing_status == WebhookProcessingStatus.DEAD_LETTER
        assert "sub_ghost" in record.error_message
        assert record.attempts == 2
        assert follow_ups.get_metrics()["dead_lettered"] == 1


class TestGooglePlayWebhooks:
    def details(self, expires: datetime) -> ProviderSubscriptionDetails:
        return ProviderSubscriptionDetails(
            provider_subscription_id="purchase-token-1",
            status=SubscriptionStatus.ACTIVE,
            provider_status="SUBSCRIPTION_STATE_ACTIVE",
            current_period_end=expires,
            next_billing_at=expires,
            auto_renewing=True,
        )

    async def seed(self, reconciler):
        await reconciler.apply_event(canonical_event(
            E.ACTIVATED, T0, "receipt-1",
            provider=ProviderType.GOOGLE_PLAY,
            provider_subscription_id="purchase-token-1",
            current_period_start=T0,
            current_period_end=T0 + timedelta(days=30),
        ), DEFAULTS)

    async def test_renewal(self, processor, reconciler, google_play, session_factory):
        await self.seed(reconciler)
        renewed_until = T0 + timedelta(days=60)
        google_play.fetch_subscription.return_value = self.details(renewed_until)

        result = await processor.handle_google_play(play_push(2, T0 + timedelta(days=30)), PUBSUB_TOKEN)

        assert result.status == WebhookProcessingStatus.PROCESSED
        assert result.event_key == "msg-1"
        google_play.fetch_subscription.assert_awaited_once_with("purchase-token-1", "pro_monthly")
        async with session_factory() as session:
            subscription = await SubscriptionRepository(session).get(result.subscription_id)
        assert subscription.current_period_end == renewed_until
        assert subscription.paid_count == 1

    async def test_slow_lookup_is_deferred(self, processor, reconciler, follow_ups, google_play, session_factory):
        await self.seed(reconciler)
        renewed_until = T0 + timedelta(days=60)
        calls = []

        async def fetch(token, product_id=None):
            calls.append(token)
            if len(calls) == 1:
                await asyncio.sleep(2)
            return self.details(renewed_until)

        google_play.fetch_subscription.side_effect = fetch

        result = await processor.handle_google_play(play_push(2, T0 + timedelta(days=30)), PUBSUB_TOKEN)
        assert result.status == WebhookProcessingStatus.DEFERRED
        record = await webhook_record(session_factory, ProviderType.GOOGLE_PLAY, "msg-1")
        assert record.processing_status == WebhookProcessingStatus.DEFERRED

        await follow_ups.drain()

        record = await webhook_record(session_factory, ProviderType.GOOGLE_PLAY, "msg-1")
        assert record.processing_status == WebhookProcessingStatus.PROCESSED
        assert len(calls) == 2
        async with session_factory() as session:
            subscription = await SubscriptionRepository(session).get(record.subscription_id)
        assert subscription.current_period_end == renewed_until

    async def test_unreachable_store_dead_letters(self, processor, reconciler, follow_ups, google_play, session_factory):
        await self.seed(reconciler)
        google_play.fetch_subscription.side_effect = ProviderFetchError("Google Play unavailable", "google_play")

        result = await processor.handle_google_play(play_push(2, T0 + timedelta(days=30)), PUBSUB_TOKEN)
        assert result.status == WebhookProcessingStatus.DEFERRED

        await follow_ups.drain()
        record = await webhook_record(session_factory, ProviderType.GOOGLE_PLAY, "msg-1")
        assert record.processing_status == WebhookProcessingStatus.DEAD_LETTER

    async def test_test_notification_is_ignored(self, processor, google_play, session_factory):
        body = pubsub_envelope({"version": "1.0", "packageName": PACKAGE_NAME, "testNotification": {"version": "1.0"}})
        result = await processor.handle_google_play(body, PUBSUB_TOKEN)

        assert result.status == WebhookProcessingStatus.IGNORED
        google_play.fetch_subscription.assert_not_awaited()
        assert await count(session_factory, WebhookEvent) == 0

    async def test_wrong_token(self, processor):
        with pytest.raises(VerificationError) as exc_info:
            await processor.handle_google_play(play_push(2, T0), "not-the-token")
        assert exc_info.value.status_code == 401

    async def test_other_package(self, processor, google_play):
        with pytest.raises(VerificationError) as exc_info:
            await processor.handle_google_play(play_push(2, T0, package_name="com.other.app"), PUBSUB_TOKEN)
        assert exc_info.value.status_code == 401
        google_play.fetch_subscription.assert_not_awaited()


class TestAppStoreWebhooks:
    @pytest.fixture
    def chain(self) -> SigningChain:
        return SigningChain()

    @pytest.fixture
    def apple(self, config, registry, chain, tmp_path) -> AppleAppStoreProvider:
        root_path = tmp_path / "AppleRootCA.pem"
        root_path.write_bytes(chain.root_pem())
        provider = AppleAppStoreProvider(
            AppleAppStoreConfig(shared_secret="shared", bundle_id=PACKAGE_NAME, root_certificate_path=str(root_path)),
            config.billing,
        )
        registry.register(provider)
        return provider

    def notification(self, chain, notification_type, signed_at, subtype=None, **transaction):
        expires = signed_at + timedelta(days=30)
        data = {
            "bundleId": PACKAGE_NAME,
            "environment": "Sandbox",
            "signedTransactionInfo": chain.sign({
                "originalTransactionId": "1000000001",
                "transactionId": "2000000002",
                "productId": "pro_monthly",
                "purchaseDate": epoch_ms(signed_at),
                "expiresDate": epoch_ms(expires),
                **transaction,
            }),
            "signedRenewalInfo": chain.sign({"originalTransactionId": "1000000001", "autoRenewStatus": 1}),
        }
        payload = {
            "notificationType": notification_type,
            "subtype": subtype,
            "notificationUUID": f"uuid-{notification_type.lower()}",
            "signedDate": epoch_ms(signed_at),
            "data": data,
        }
        return json.dumps({"signedPayload": chain.sign(payload)}).encode()

    async def test_renewal_captures_invoice(self, apple, chain, processor, reconciler, session_factory):
        await reconciler.apply_event(canonical_event(
            E.ACTIVATED, T0, "receipt-1",
            provider=ProviderType.APPLE_APPSTORE,
            provider_subscription_id="1000000001",
            current_period_start=T0,
            current_period_end=T0 + timedelta(days=30),
        ), DEFAULTS)

        renewed_at = T0 + timedelta(days=30)
        body = self.notification(chain, "DID_RENEW", renewed_at, price=9990, currency="USD")
        result = await processor.handle_app_store(body)

        assert result.status == WebhookProcessingStatus.PROCESSED
        assert result.outcome == ApplyOutcome.APPLIED
        async with session_factory() as session:
            subscription = await SubscriptionRepository(session).get(result.subscription_id)
            invoices = await InvoiceRepository(session).list_for_subscription(result.subscription_id)
        assert subscription.current_period_end == renewed_at + timedelta(days=30)
        assert [(i.amount_minor, i.currency) for i in invoices] == [(999, "USD")]

    async def test_auto_renew_disabled(self, apple, chain, processor, reconciler, session_factory):
        await reconciler.apply_event(canonical_event(
            E.ACTIVATED, T0, "receipt-1",
            provider=ProviderType.APPLE_APPSTORE,
            provider_subscription_id="1000000001",
        ), DEFAULTS)

        body = self.notification(chain, "DID_CHANGE_RENEWAL_STATUS", T0 + timedelta(days=3), "AUTO_RENEW_DISABLED")
        result = await processor.handle_app_store(body)

        async with session_factory() as session:
            subscription = await SubscriptionRepository(session).get(result.subscription_id)
        assert subscription.status == SubscriptionStatus.PENDING_CANCELLATION

    async def test_forged_notification(self, apple, processor, session_factory):
        impostor = SigningChain(root_name="Impostor Root")
        with pytest.raises(VerificationError) as exc_info:
            await processor.handle_app_store(self.notification(impostor, "DID_RENEW", T0))
        assert exc_info.value.status_code == 401
        assert await count(session_factory, WebhookEvent) == 0

    async def test_unconfigured_store_rejects(self, processor, chain):
        with pytest.raises(VerificationError):
            await processor.handle_app_store(self.notification(chain, "DID_RENEW", T0))


class TestRestart:
    async def test_unfinished_events_are_retried(self, processor, reconciler, follow_ups, session_factory):
        body = razorpay_webhook("subscription.authenticated", T0 + timedelta(minutes=1), status="authenticated")
        await processor._record(ProviderType.RAZORPAY, "evt_left", "subscription.authenticated", json.loads(body), "evt_left")
        async with session_factory() as session:
            record = await WebhookEventRepository(session).get_by_key(ProviderType.RAZORPAY, "evt_left")
            record.processing_status = WebhookProcessingStatus.DEFERRED
            await session.commit()
        await reconciler.apply_event(canonical_event(E.CREATED, T0, "evt_created"), DEFAULTS)

        assert await processor.retry_unfinished() == 1
        await follow_ups.drain()

        record = await webhook_record(session_factory, ProviderType.RAZORPAY, "evt_left")
        assert record.processing_status == WebhookProcessingStatus.PROCESSED
