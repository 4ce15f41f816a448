"""
Repository pattern implementation for data access.
"""

from datetime import datetime
from typing import Type, TypeVar, Generic, Optional, List, Sequence
from uuid import UUID

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from .base import Base
from .models import (
    IAPReceipt,
    ProviderType,
    Subscription,
    SubscriptionHistory,
    SubscriptionInvoice,
    SubscriptionStatus,
    TERMINAL_STATUSES,
    WebhookEvent,
    WebhookProcessingStatus,
)

T = TypeVar('T', bound=Base)


class BaseRepository(Generic[T]):
    """
    Base repository class for async CRUD operations.
    """

    model_class: Type[T]

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, id: UUID) -> Optional[T]:
        """Get a record by primary key."""
        return await self.session.get(self.model_class, id)

    async def get_by(self, **kwargs) -> Optional[T]:
        """
        Get a single record by multiple criteria.

        Args:
            **kwargs: Filter criteria (column name -> value)
        """
        query = select(self.model_class)
        for key, value in kwargs.items():
            column = getattr(self.model_class, key)
            if isinstance(value, (list, tuple, set, frozenset)):
                query = query.where(column.in_(value))
            else:
                query = query.where(column == value)
        result = await self.session.execute(query.limit(1))
        return result.scalar_one_or_none()

    def add(self, instance: T) -> T:
        self.session.add(instance)
        return instance


class SubscriptionRepository(BaseRepository[Subscription]):
    model_class = Subscription

    async def get_by_provider_id(
        self,
        provider: ProviderType,
        provider_subscription_id: str,
    ) -> Optional[Subscription]:
        return await self.get_by(provider=provider, provider_subscription_id=provider_subscription_id)

    async def get_for_user(self, subscription_id: UUID, user_id: str) -> Optional[Subscription]:
        return await self.get_by(id=subscription_id, user_id=user_id)

    async def find_non_terminal(
        self,
        user_id: str,
        product_family: Optional[str] = None,
    ) -> Optional[Subscription]:
        """Newest subscription of the user that has not ended yet."""
        query = select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status.not_in(list(TERMINAL_STATUSES)),
        )
        if product_family is not None:
            query = query.where(Subscription.product_family == product_family)
        result = await self.session.execute(query.order_by(Subscription.created_at.desc()).limit(1))
        return result.scalar_one_or_none()

    async def find_due_for_cancellation(self, now: datetime) -> Sequence[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.status == SubscriptionStatus.PENDING_CANCELLATION,
                Subscription.current_period_end.is_not(None),
                Subscription.current_period_end <= now,
            )
        )
        return result.scalars().all()

    async def find_ended(self) -> Sequence[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.status.in_([SubscriptionStatus.CANCELLED, SubscriptionStatus.COMPLETED])
            )
        )
        return result.scalars().all()


class HistoryRepository(BaseRepository[SubscriptionHistory]):
    model_class = SubscriptionHistory

    async def exists(self, idempotency_key: str) -> bool:
        result = await self.session.execute(
            select(SubscriptionHistory.id).where(SubscriptionHistory.idempotency_key == idempotency_key)
        )
        return result.first() is not None

    async def list_for_subscription(self, subscription_id: UUID) -> List[SubscriptionHistory]:
        result = await self.session.execute(
            select(SubscriptionHistory)
            .where(SubscriptionHistory.subscription_id == subscription_id)
            .order_by(SubscriptionHistory.id.asc())
        )
        return list(result.scalars().all())


class InvoiceRepository(BaseRepository[SubscriptionInvoice]):
    model_class = SubscriptionInvoice

    async def get_by_payment_id(self, provider_payment_id: str) -> Optional[SubscriptionInvoice]:
        return await self.get_by(provider_payment_id=provider_payment_id)

    async def list_for_subscription(self, subscription_id: UUID) -> List[SubscriptionInvoice]:
        result = await self.session.execute(
            select(SubscriptionInvoice)
            .where(SubscriptionInvoice.subscription_id == subscription_id)
            .order_by(SubscriptionInvoice.created_at.asc())
        )
        return list(result.scalars().all())


class WebhookEventRepository(BaseRepository[WebhookEvent]):
    model_class = WebhookEvent

    async def get_by_key(self, provider: ProviderType, event_key: str) -> Optional[WebhookEvent]:
        return await self.get_by(provider=provider, event_key=event_key)

    async def list_unfinished(self, provider: Optional[ProviderType] = None) -> Sequence[WebhookEvent]:
        query = select(WebhookEvent).where(
            or_(
                WebhookEvent.processing_status == WebhookProcessingStatus.DEFERRED,
                WebhookEvent.processing_status == WebhookProcessingStatus.FAILED,
            )
        )
        if provider is not None:
            query = query.where(WebhookEvent.provider == provider)
        result = await self.session.execute(query.order_by(WebhookEvent.received_at.asc()))
        return result.scalars().all()


class ReceiptRepository(BaseRepository[IAPReceipt]):
    model_class = IAPReceipt

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[IAPReceipt]:
        return await self.get_by(transaction_id=transaction_id)
