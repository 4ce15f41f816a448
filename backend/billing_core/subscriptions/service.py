"""
Subscription management service.

User-facing operations: hosted checkout creation, cancellation, resumption,
lookups, provider sync and store receipt submission. All state changes go
through the reconciler so API actions leave the same ledger trail as
webhooks.
"""

from typing import Dict, Optional, Tuple
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.config import Config, PlanConfig
from ..core.exceptions import AppException, DatabaseError, NotFoundError, SubscriptionError
from ..core.logging_config import get_logger
from ..core.results import call_provider
from ..core.security import ReceiptCipher
from ..core.timeutils import utcnow
from ..db.base import generate_uuid
from ..db.models import (
    EventSource,
    IAPReceipt,
    ProviderType,
    ReceiptValidationStatus,
    Subscription,
    SubscriptionStatus,
)
from ..db.repositories import ReceiptRepository, SubscriptionRepository
from ..integrations.payment_providers.base import CreateSubscriptionParams, PaymentProvider, ReceiptPlatform
from ..integrations.payment_providers.registry import ProviderRegistry
from ..schemas.subscription import (
    CancelSubscriptionResponse,
    CreateSubscriptionResponse,
    NextBilling,
    ReceiptSubmissionResponse,
    SubscriptionDetailResponse,
    SubscriptionOut,
)
from .canonicalizer import canonicalize_receipt
from .events import CanonicalEvent, CanonicalEventType
from .reconciler import ApplyOutcome, SubscriptionReconciler
from .verifier import ReceiptVerifier, VerifiedReceipt

logger = get_logger(__name__)

RECEIPT_STATUS_MAP = {
    SubscriptionStatus.EXPIRED: ReceiptValidationStatus.EXPIRED,
    SubscriptionStatus.CANCELLED: ReceiptValidationStatus.CANCELLED,
}


class SubscriptionService:
    """Subscription operations on behalf of an authenticated user."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        registry: ProviderRegistry,
        reconciler: SubscriptionReconciler,
        config: Config,
        receipt_verifier: Optional[ReceiptVerifier] = None,
        cipher: Optional[ReceiptCipher] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.reconciler = reconciler
        self.config = config
        self.receipt_verifier = receipt_verifier or ReceiptVerifier(registry)
        self.cipher = cipher or ReceiptCipher(config.security.encryption_key)

    # ============ Lookups ============

    async def _load(self, subscription_id: UUID) -> Subscription:
        async with self.session_factory() as session:
            subscription = await SubscriptionRepository(session).get(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    async def _get_owned(self, user_id: str, subscription_id: UUID) -> Subscription:
        async with self.session_factory() as session:
            subscription = await SubscriptionRepository(session).get_for_user(subscription_id, user_id)
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    @staticmethod
    def can_cancel(subscription: Subscription) -> bool:
        return (
            not subscription.is_terminal
            and not subscription.provider.is_store
            and subscription.status != SubscriptionStatus.PENDING_CANCELLATION
        )

    def _describe(self, subscription: Optional[Subscription], message: Optional[str] = None) -> SubscriptionDetailResponse:
        if subscription is None:
            return SubscriptionDetailResponse(message=message or "No active subscription")

        next_billing = None
        if subscription.status == SubscriptionStatus.ACTIVE and subscription.next_billing_at is not None:
            next_billing = NextBilling(
                date=subscription.next_billing_at,
                amount=subscription.amount_minor,
                currency=subscription.currency,
            )
        return SubscriptionDetailResponse(
            subscription=SubscriptionOut.model_validate(subscription),
            next_billing=next_billing,
            can_cancel=self.can_cancel(subscription),
            message=message,
        )

    async def get_subscription(self, user_id: str, subscription_id: UUID) -> SubscriptionDetailResponse:
        return self._describe(await self._get_owned(user_id, subscription_id))

    async def get_active_subscription(self, user_id: str) -> SubscriptionDetailResponse:
        async with self.session_factory() as session:
            subscription = await SubscriptionRepository(session).find_non_terminal(user_id)
        return self._describe(subscription)

    # ============ Hosted checkout ============

    def _plan(self, plan_code: str) -> PlanConfig:
        plan = self.config.billing.plans.get(plan_code)
        if plan is None:
            raise SubscriptionError(
                f"Unknown plan: {plan_code}",
                code="PLAN_NOT_FOUND",
                status_code=404,
                details={"plan_code": plan_code},
            )
        return plan

    async def create_subscription(
        self,
        user_id: str,
        plan_code: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> CreateSubscriptionResponse:
        """
        Start a hosted checkout subscription.

        Raises:
            SubscriptionError: unknown plan, or the user already has a live subscription
            ProviderError: Razorpay refused or could not be reached
            DatabaseError: the subscription could not be stored (the provider
                side is cancelled again)
        """
        plan = self._plan(plan_code)

        async with self.session_factory() as session:
            existing = await SubscriptionRepository(session).find_non_terminal(user_id, plan.product_family)
        if existing is not None:
            raise SubscriptionError(
                "User already has an active subscription",
                code="SUBSCRIPTION_EXISTS",
                details={"subscription_id": str(existing.id), "status": existing.status.value},
            )

        provider = self.registry.get(ProviderType.RAZORPAY)
        response = await provider.create_subscription(CreateSubscriptionParams(
            user_id=user_id,
            plan_code=plan_code,
            provider_plan_id=plan.provider_plan_id,
            amount_minor=plan.amount_minor,
            currency=plan.currency,
            notes={**(notes or {}), "user_id": user_id, "plan_code": plan_code},
        ))

        event = CanonicalEvent(
            provider=ProviderType.RAZORPAY,
            event_type=CanonicalEventType.CREATED,
            provider_event_type="api.create",
            provider_subscription_id=response.provider_subscription_id,
            occurred_at=utcnow(),
            source=EventSource.API,
            provider_event_id="api.create",
            plan_id=plan.provider_plan_id,
            amount_minor=plan.amount_minor,
            currency=plan.currency,
            total_count=response.metadata.get("total_count"),
        )
        defaults = {
            "user_id": user_id,
            "plan_code": plan_code,
            "product_family": plan.product_family,
            "provider_customer_id": response.metadata.get("customer_id"),
        }
        try:
            result = await self.reconciler.apply_event(event, defaults)
        except (SQLAlchemyError, AppException) as e:
            logger.error(f"Failed to store subscription {response.provider_subscription_id}: {e}")
            await self._cancel_orphan(provider, response.provider_subscription_id)
            raise DatabaseError("Subscription could not be saved", operation="create_subscription") from e

        logger.info(f"Created subscription {result.subscription_id} for user {user_id} on plan {plan_code}")
        return CreateSubscriptionResponse(
            subscription_id=result.subscription_id,
            provider_subscription_id=response.provider_subscription_id,
            authorization_url=response.authorization_url,
            amount=plan.amount_minor,
            currency=plan.currency,
            status=result.status,
            message="Complete the payment authorization to activate the subscription",
        )

    async def _cancel_orphan(self, provider: PaymentProvider, provider_subscription_id: str) -> None:
        outcome = await call_provider(provider.cancel_subscription(provider_subscription_id, cancel_at_cycle_end=False))
        if outcome.ok:
            logger.info(f"Cancelled orphaned provider subscription {provider_subscription_id}")
        else:
            logger.error(
                f"Orphaned provider subscription {provider_subscription_id} needs manual cleanup "
                f"({outcome.kind.value}: {outcome.error.message})"
            )

    async def cancel_subscription(
        self,
        user_id: str,
        subscription_id: UUID,
        cancel_at_cycle_end: bool = True,
        reason: Optional[str] = None,
    ) -> CancelSubscriptionResponse:
        """
        Cancel now or at the end of the current period.

        Raises:
            NotFoundError: no such subscription for this user
            SubscriptionError: the subscription already ended or is already winding down
            MethodNotSupportedError: store subscriptions are cancelled in the store
        """
        subscription = await self._get_owned(user_id, subscription_id)
        if subscription.is_terminal:
            raise SubscriptionError(
                f"Subscription is already {subscription.status.value}",
                code="SUBSCRIPTION_NOT_CANCELLABLE",
            )
        if subscription.status == SubscriptionStatus.PENDING_CANCELLATION and cancel_at_cycle_end:
            raise SubscriptionError(
                "Cancellation is already scheduled",
                code="SUBSCRIPTION_NOT_CANCELLABLE",
            )

        provider = self.registry.get(subscription.provider)
        details = await provider.cancel_subscription(subscription.provider_subscription_id, cancel_at_cycle_end)

        result = await self.reconciler.apply_event(CanonicalEvent(
            provider=subscription.provider,
            event_type=CanonicalEventType.CANCELLED,
            provider_event_type="api.cancel",
            provider_subscription_id=subscription.provider_subscription_id,
            occurred_at=utcnow(),
            source=EventSource.API,
            provider_event_id=f"api.cancel:{uuid4()}",
            current_period_end=details.current_period_end,
            cancel_at_cycle_end=cancel_at_cycle_end,
            cancellation_reason=reason or "Cancelled by user",
        ))

        subscription = await self._load(subscription.id)
        if result.outcome != ApplyOutcome.APPLIED:
            message = f"Cancellation sent to the provider, local state {result.outcome.value}"
        elif result.status == SubscriptionStatus.PENDING_CANCELLATION:
            message = "Subscription will end at the close of the current billing period"
        else:
            message = "Subscription cancelled"
        return CancelSubscriptionResponse(
            subscription_id=subscription.id,
            status=subscription.status,
            cancelled_at=subscription.cancelled_at,
            active_until=subscription.active_until,
            message=message,
        )

    async def resume_subscription(self, user_id: str, subscription_id: UUID) -> SubscriptionDetailResponse:
        """Undo a scheduled cancellation or resume a paused subscription."""
        subscription = await self._get_owned(user_id, subscription_id)
        if subscription.status == SubscriptionStatus.PENDING_CANCELLATION:
            period_end = subscription.current_period_end
            if period_end is not None and period_end <= utcnow():
                raise SubscriptionError("The billing period has already ended", code="SUBSCRIPTION_NOT_RESUMABLE")
        elif subscription.status != SubscriptionStatus.PAUSED:
            raise SubscriptionError(
                f"A {subscription.status.value} subscription cannot be resumed",
                code="SUBSCRIPTION_NOT_RESUMABLE",
            )

        provider = self.registry.get(subscription.provider)
        details = await provider.resume_subscription(subscription.provider_subscription_id)

        result = await self.reconciler.apply_event(CanonicalEvent(
            provider=subscription.provider,
            event_type=CanonicalEventType.RESUMED,
            provider_event_type="api.resume",
            provider_subscription_id=subscription.provider_subscription_id,
            occurred_at=utcnow(),
            source=EventSource.API,
            provider_event_id=f"api.resume:{uuid4()}",
            current_period_start=details.current_period_start,
            current_period_end=details.current_period_end,
            next_billing_at=details.next_billing_at,
        ))
        if result.outcome == ApplyOutcome.APPLIED:
            message = "Subscription resumed"
        else:
            message = f"Resume sent to the provider, local state {result.outcome.value}"
        return self._describe(await self._load(subscription.id), message=message)

    async def sync_subscription(self, user_id: str, subscription_id: UUID) -> SubscriptionDetailResponse:
        """Bring the local row in line with the provider's live state."""
        subscription = await self._get_owned(user_id, subscription_id)
        result = await self.reconciler.reconcile(
            subscription.provider,
            subscription.provider_subscription_id,
            subscription.product_id,
        )
        return self._describe(await self._load(subscription.id), message=f"Sync {result.outcome.value}")

    # ============ Store receipts ============

    def _plan_for_product(self, product_id: Optional[str]) -> Tuple[Optional[str], str]:
        """(plan code, product family) for a store product id."""
        for code, plan in self.config.billing.plans.items():
            if product_id in (code, plan.provider_plan_id):
                return code, plan.product_family
        return None, "default"

    async def submit_receipt(self, user_id: str, receipt: str, platform: ReceiptPlatform) -> ReceiptSubmissionResponse:
        """
        Validate a store receipt and reconcile the subscription it proves.

        An invalid first receipt never creates a subscription.

        Raises:
            VerificationError: malformed receipt, unknown purchase or product mismatch
            SubscriptionError: the purchase belongs to another user
            ProviderFetchError: the store could not be reached
        """
        verified = await self.receipt_verifier.verify(receipt, platform)
        result = verified.result
        transaction_id = verified.transaction_id

        async with self.session_factory() as session:
            subscription = await SubscriptionRepository(session).get_by_provider_id(
                verified.provider_type, transaction_id
            )
        if subscription is not None and subscription.user_id != user_id:
            logger.warning(f"User {user_id} submitted a receipt owned by another account")
            raise SubscriptionError(
                "This purchase belongs to another account",
                code="RECEIPT_ALREADY_CLAIMED",
            )

        if subscription is None and not result.is_valid:
            await self._store_receipt(user_id, None, verified, receipt)
            return ReceiptSubmissionResponse(
                is_valid=False,
                status=result.status,
                expires_at=result.expires_at,
                message=result.error_message or "Receipt is not valid",
            )

        subscription_id = await self._apply_receipt(user_id, subscription, verified)
        await self._store_receipt(user_id, subscription_id, verified, receipt)

        subscription = await self._load(subscription_id)
        return ReceiptSubmissionResponse(
            is_valid=result.is_valid,
            status=subscription.status,
            subscription=SubscriptionOut.model_validate(subscription),
            is_trial=result.is_trial,
            is_intro_offer=result.is_intro_offer,
            auto_renewing=result.auto_renewing,
            expires_at=result.expires_at,
            message="Receipt verified" if result.is_valid else (result.error_message or "Receipt is not valid"),
        )

    async def _apply_receipt(
        self,
        user_id: str,
        subscription: Optional[Subscription],
        verified: VerifiedReceipt,
    ) -> UUID:
        result = verified.result
        if subscription is not None:
            event = canonicalize_receipt(verified.provider_type, result, subscription.current_period_end, is_new=False)
            outcome = await self.reconciler.apply_event(event)
            return outcome.subscription_id

        plan_code, product_family = self._plan_for_product(result.product_id)
        async with self.session_factory() as session:
            existing = await SubscriptionRepository(session).find_non_terminal(user_id, product_family)
        if existing is not None:
            logger.warning(
                f"User {user_id} bought {result.product_id} in the store while subscription "
                f"{existing.id} is {existing.status.value}"
            )

        event = canonicalize_receipt(verified.provider_type, result, None, is_new=True)
        created = await self.reconciler.apply_event(event, defaults={
            "user_id": user_id,
            "plan_code": plan_code,
            "product_family": product_family,
            "product_id": result.product_id,
            "provider_plan_id": result.product_id,
            "cancel_at_cycle_end": False,
        })

        if result.status != SubscriptionStatus.ACTIVE:
            # first receipt of a purchase that is already winding down
            follow_up = canonicalize_receipt(verified.provider_type, result, result.expires_at, is_new=False)
            await self.reconciler.apply_event(follow_up)
        logger.info(f"Store subscription {created.subscription_id} created from receipt for user {user_id}")
        return created.subscription_id

    async def _store_receipt(
        self,
        user_id: str,
        subscription_id: Optional[UUID],
        verified: VerifiedReceipt,
        receipt: str,
    ) -> None:
        result = verified.result
        if result.is_valid:
            validation_status = ReceiptValidationStatus.VALID
        else:
            validation_status = RECEIPT_STATUS_MAP.get(result.status, ReceiptValidationStatus.INVALID)

        async with self.session_factory() as session:
            receipts = ReceiptRepository(session)
            record = await receipts.get_by_transaction_id(verified.transaction_id)
            if record is None:
                record = receipts.add(IAPReceipt(
                    id=generate_uuid(),
                    user_id=user_id,
                    provider=verified.provider_type,
                    product_id=verified.receipt.product_id,
                    transaction_id=verified.transaction_id,
                ))
            record.subscription_id = subscription_id or record.subscription_id
            record.receipt_data = self.cipher.encrypt(receipt)
            record.validation_status = validation_status
            record.validation_response = result.model_dump(mode="json")
            record.validated_at = utcnow()
            record.purchase_date = result.purchase_date
            record.expiry_date = result.expires_at
            record.is_trial = result.is_trial
            record.is_intro_offer = result.is_intro_offer
            record.auto_renewing = result.auto_renewing
            record.environment = result.environment
            await session.commit()
