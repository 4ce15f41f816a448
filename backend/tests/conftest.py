"""
Shared fixtures: an isolated SQLite database per test, configuration carrying
test credentials, and providers whose remote calls are mocked.
"""

from typing import Any, Dict, List, Tuple
from unittest.mock import AsyncMock

import pytest

from billing_core.core.config import (
    AppleAppStoreConfig,
    BillingConfig,
    Config,
    DatabaseConfig,
    GooglePlayConfig,
    LoggingConfig,
    PlanConfig,
    RazorpayConfig,
    SecurityConfig,
)
from billing_core.db.models import ProviderType
from billing_core.db.session import create_engine_from_config, create_session_factory, init_models
from billing_core.integrations.payment_providers.base import PaymentProvider, ProviderOperation
from billing_core.integrations.payment_providers.razorpay import RazorpayProvider
from billing_core.integrations.payment_providers.registry import ProviderRegistry
from billing_core.subscriptions.followups import FollowUpQueue
from billing_core.subscriptions.notifications import FireAndForgetNotifier, UsageTracker
from billing_core.subscriptions.reconciler import SubscriptionReconciler
from billing_core.subscriptions.service import SubscriptionService
from billing_core.subscriptions.webhooks import WebhookProcessor

from helpers import JWT_SECRET, PACKAGE_NAME, PLAN_ID, PUBSUB_TOKEN, WEBHOOK_SECRET, razorpay_entity


class FakeStoreProvider(PaymentProvider):
    """Store provider whose remote calls are AsyncMocks."""

    supported_operations = frozenset({
        ProviderOperation.FETCH_SUBSCRIPTION,
        ProviderOperation.VALIDATE_RECEIPT,
        ProviderOperation.VERIFY_WEBHOOK_SIGNATURE,
    })

    def __init__(self, provider_type: ProviderType, billing: BillingConfig, token: str = PUBSUB_TOKEN):
        self.provider_type = provider_type
        self.token = token
        self.package_name = PACKAGE_NAME
        super().__init__(billing)
        self.fetch_subscription = AsyncMock()
        self.validate_receipt = AsyncMock()

    def validate_credentials(self) -> None:
        pass

    def verify_webhook_signature(self, raw_payload: bytes, signature) -> bool:
        return signature == self.token


class RecordingTracker(UsageTracker):
    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def track(self, event_name: str, properties: Dict[str, Any]) -> None:
        self.events.append((event_name, properties))

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.events]


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        environment="testing",
        database=DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}"),
        security=SecurityConfig(secret_key=JWT_SECRET),
        logging=LoggingConfig(level="WARNING"),
        razorpay=RazorpayConfig(key_id="rzp_test_key", key_secret="rzp_test_secret", webhook_secret=WEBHOOK_SECRET),
        google_play=GooglePlayConfig(package_name=PACKAGE_NAME, pubsub_verification_token=PUBSUB_TOKEN),
        apple=AppleAppStoreConfig(),
        billing=BillingConfig(
            webhook_response_budget_seconds=0.5,
            retry_attempts=3,
            retry_min_wait=0,
            retry_max_wait=0,
            follow_up_attempts=2,
            grace_period_days=3,
            orphan_retry_delay_seconds=0,
            orphan_max_attempts=2,
            plans={
                "pro_monthly": PlanConfig(provider_plan_id=PLAN_ID, amount_minor=49900, currency="INR", name="Pro"),
            },
        ),
    )


@pytest.fixture
async def session_factory(config):
    engine = create_engine_from_config(config.database)
    await init_models(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def razorpay(config) -> RazorpayProvider:
    provider = RazorpayProvider(config.razorpay, config.billing)
    provider._send = AsyncMock(return_value=(200, razorpay_entity()))
    return provider


@pytest.fixture
def google_play(config) -> FakeStoreProvider:
    return FakeStoreProvider(ProviderType.GOOGLE_PLAY, config.billing)


@pytest.fixture
def registry(config, razorpay, google_play) -> ProviderRegistry:
    registry = ProviderRegistry(config)
    registry.register(razorpay)
    registry.register(google_play)
    return registry


@pytest.fixture
def tracker() -> RecordingTracker:
    return RecordingTracker()


@pytest.fixture
async def follow_ups(config, session_factory):
    queue = FollowUpQueue(config.billing, session_factory)
    yield queue
    await queue.shutdown()


@pytest.fixture
async def notifier(tracker):
    notifier = FireAndForgetNotifier(tracker)
    yield notifier
    await notifier.drain()


@pytest.fixture
def reconciler(session_factory, registry, follow_ups, notifier) -> SubscriptionReconciler:
    return SubscriptionReconciler(session_factory, registry, follow_ups, notifier)


@pytest.fixture
def processor(session_factory, registry, reconciler, follow_ups, config) -> WebhookProcessor:
    return WebhookProcessor(session_factory, registry, reconciler, follow_ups, config.billing)


@pytest.fixture
def service(session_factory, registry, reconciler, config) -> SubscriptionService:
    return SubscriptionService(session_factory, registry, reconciler, config)
