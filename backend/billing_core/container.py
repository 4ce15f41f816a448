"""
Wiring for the reconciliation pipeline.

One container per application instance holds the shared provider registry,
the follow-up queue and the services built on top of them.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from .core.config import Config
from .core.logging_config import get_logger
from .core.security import ReceiptCipher, TokenVerifier
from .integrations.payment_providers.registry import ProviderRegistry
from .subscriptions.followups import FollowUpQueue
from .subscriptions.notifications import FireAndForgetNotifier, UsageTracker
from .subscriptions.reconciler import SubscriptionReconciler
from .subscriptions.service import SubscriptionService
from .subscriptions.sweeper import ExpirySweeper
from .subscriptions.webhooks import WebhookProcessor

logger = get_logger(__name__)


@dataclass
class BillingContainer:
    config: Config
    session_factory: async_sessionmaker
    registry: ProviderRegistry
    follow_ups: FollowUpQueue
    notifier: FireAndForgetNotifier
    reconciler: SubscriptionReconciler
    webhooks: WebhookProcessor
    subscriptions: SubscriptionService
    sweeper: ExpirySweeper
    tokens: TokenVerifier

    @classmethod
    def build(
        cls,
        config: Config,
        session_factory: async_sessionmaker,
        registry: Optional[ProviderRegistry] = None,
        tracker: Optional[UsageTracker] = None,
    ) -> "BillingContainer":
        registry = registry or ProviderRegistry(config)
        follow_ups = FollowUpQueue(config.billing, session_factory)
        notifier = FireAndForgetNotifier(tracker)
        reconciler = SubscriptionReconciler(session_factory, registry, follow_ups, notifier)
        return cls(
            config=config,
            session_factory=session_factory,
            registry=registry,
            follow_ups=follow_ups,
            notifier=notifier,
            reconciler=reconciler,
            webhooks=WebhookProcessor(session_factory, registry, reconciler, follow_ups, config.billing),
            subscriptions=SubscriptionService(
                session_factory,
                registry,
                reconciler,
                config,
                cipher=ReceiptCipher(config.security.encryption_key),
            ),
            sweeper=ExpirySweeper(session_factory, reconciler, config.billing),
            tokens=TokenVerifier(config.security),
        )

    async def start(self) -> None:
        """Start the sweeper and pick up deliveries a previous run left unfinished."""
        self.sweeper.start()
        await self.webhooks.retry_unfinished()

    async def shutdown(self) -> None:
        await self.sweeper.stop()
        await self.follow_ups.shutdown()
        await self.notifier.drain()
        await self.registry.close()
        logger.info("Billing pipeline stopped")
