"""
Google Play (Android store) provider.

Subscriptions are bought in the Play Store; the server only validates purchase
tokens and reads subscription state through the Play Developer API.
"""

import hmac
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from ...core.config import BillingConfig, GooglePlayConfig
from ...core.exceptions import ConfigurationError, ProviderFetchError, ProviderRequestError, VerificationError
from ...core.logging_config import get_logger
from ...core.timeutils import from_epoch_millis, parse_rfc3339, utcnow
from ...db.models.billing_enums import ProviderType, SubscriptionStatus
from ..google_auth import ServiceAccountTokenManager, load_service_account
from .base import (
    ParsedReceipt,
    PaymentProvider,
    ProviderOperation,
    ProviderSubscriptionDetails,
    ReceiptPlatform,
    ReceiptValidationResult,
)

logger = get_logger(__name__)

# subscriptionsv2 state -> (canonical status, grants access)
SUBSCRIPTION_STATE_MAP = {
    "SUBSCRIPTION_STATE_ACTIVE": (SubscriptionStatus.ACTIVE, True),
    "SUBSCRIPTION_STATE_IN_GRACE_PERIOD": (SubscriptionStatus.ACTIVE, True),
    "SUBSCRIPTION_STATE_ON_HOLD": (SubscriptionStatus.PAUSED, False),
    "SUBSCRIPTION_STATE_PAUSED": (SubscriptionStatus.PAUSED, False),
    "SUBSCRIPTION_STATE_EXPIRED": (SubscriptionStatus.EXPIRED, False),
    "SUBSCRIPTION_STATE_PENDING": (SubscriptionStatus.CREATED, False),
    "SUBSCRIPTION_STATE_PENDING_PURCHASE_CANCELED": (SubscriptionStatus.CANCELLED, False),
}

# v1 paymentState values
PAYMENT_STATE_PENDING = 0
PAYMENT_STATE_RECEIVED = 1
PAYMENT_STATE_FREE_TRIAL = 2
PAYMENT_STATE_DEFERRED = 3


def _latest_line_item(payload: Dict[str, Any], product_id: Optional[str]) -> Dict[str, Any]:
    items: List[Dict[str, Any]] = payload.get("lineItems") or []
    if product_id:
        matching = [item for item in items if item.get("productId") == product_id]
        items = matching or items
    if not items:
        return {}
    return max(items, key=lambda item: item.get("expiryTime") or "")


def _offer_flags(item: Dict[str, Any]) -> Dict[str, bool]:
    phase = item.get("offerPhase") or {}
    offer = item.get("offerDetails") or {}
    markers = [tag.lower() for tag in offer.get("offerTags") or []]
    if offer.get("offerId"):
        markers.append(offer["offerId"].lower())
    return {
        "is_trial": "freeTrial" in phase or any("trial" in m for m in markers),
        "is_intro_offer": "introductoryPrice" in phase or any("intro" in m for m in markers),
    }


def canonicalize_subscription_v2(
    payload: Dict[str, Any],
    product_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReceiptValidationResult:
    """Map a ``purchases.subscriptionsv2`` resource to a validation result."""
    now = now or utcnow()
    state = payload.get("subscriptionState", "SUBSCRIPTION_STATE_UNSPECIFIED")
    item = _latest_line_item(payload, product_id)
    expires_at = parse_rfc3339(item.get("expiryTime"))
    cancel_context = payload.get("canceledStateContext")

    error_message = None
    if state == "SUBSCRIPTION_STATE_CANCELED":
        # Cancelled subscriptions keep access until the paid period ends
        if expires_at is not None and expires_at > now:
            status, is_valid = SubscriptionStatus.PENDING_CANCELLATION, True
        else:
            status, is_valid = SubscriptionStatus.EXPIRED, False
    elif state in SUBSCRIPTION_STATE_MAP:
        status, is_valid = SUBSCRIPTION_STATE_MAP[state]
        if state == "SUBSCRIPTION_STATE_ACTIVE" and expires_at is not None and expires_at <= now:
            status, is_valid = SubscriptionStatus.EXPIRED, False
    else:
        status, is_valid = SubscriptionStatus.CREATED, False
        error_message = f"Unrecognised subscription state: {state}"

    if "prepaidPlan" in item:
        auto_renewing = False
    else:
        auto_plan = item.get("autoRenewingPlan") or {}
        auto_renewing = cancel_context is None and auto_plan.get("autoRenewEnabled", True) is not False

    offer = item.get("offerDetails") or {}
    return ReceiptValidationResult(
        is_valid=is_valid,
        status=status,
        product_id=item.get("productId") or product_id,
        order_id=payload.get("latestOrderId") or item.get("latestSuccessfulOrderId"),
        purchase_date=parse_rfc3339(payload.get("startTime")),
        expires_at=expires_at,
        auto_renewing=auto_renewing,
        environment="sandbox" if "testPurchase" in payload else "production",
        error_message=error_message,
        metadata={
            "subscription_state": state,
            "base_plan_id": offer.get("basePlanId"),
            "offer_id": offer.get("offerId"),
            "acknowledgement_state": payload.get("acknowledgementState"),
            "linked_purchase_token": payload.get("linkedPurchaseToken"),
            "canceled_state_context": cancel_context,
        },
        **_offer_flags(item),
    )


def canonicalize_subscription_v1(payload: Dict[str, Any], now: Optional[datetime] = None) -> ReceiptValidationResult:
    """Map a legacy ``purchases.subscriptions`` resource to a validation result."""
    now = now or utcnow()
    expires_at = from_epoch_millis(payload.get("expiryTimeMillis"))
    payment_state = payload.get("paymentState")
    cancel_reason = payload.get("cancelReason")

    error_message = None
    if expires_at is None or expires_at <= now:
        status, is_valid = SubscriptionStatus.EXPIRED, False
    elif payment_state == PAYMENT_STATE_PENDING:
        status, is_valid = SubscriptionStatus.CREATED, False
        error_message = "Payment is pending"
    elif cancel_reason is not None:
        status, is_valid = SubscriptionStatus.PENDING_CANCELLATION, True
    else:
        status, is_valid = SubscriptionStatus.ACTIVE, True

    return ReceiptValidationResult(
        is_valid=is_valid,
        status=status,
        order_id=payload.get("orderId"),
        purchase_date=from_epoch_millis(payload.get("startTimeMillis")),
        expires_at=expires_at,
        is_trial=payment_state == PAYMENT_STATE_FREE_TRIAL,
        is_intro_offer="introductoryPriceInfo" in payload,
        auto_renewing=bool(payload.get("autoRenewing", False)),
        # purchaseType 0 marks license-tester purchases
        environment="sandbox" if payload.get("purchaseType") == 0 else "production",
        error_message=error_message,
        metadata={
            "payment_state": payment_state,
            "cancel_reason": cancel_reason,
            "price_amount_micros": payload.get("priceAmountMicros"),
            "price_currency_code": payload.get("priceCurrencyCode"),
            "linked_purchase_token": payload.get("linkedPurchaseToken"),
        },
    )


class GooglePlayProvider(PaymentProvider):
    """Play Developer API client for subscription purchases."""

    provider_type = ProviderType.GOOGLE_PLAY
    supported_operations = frozenset({
        ProviderOperation.FETCH_SUBSCRIPTION,
        ProviderOperation.VALIDATE_RECEIPT,
        ProviderOperation.VERIFY_WEBHOOK_SIGNATURE,
    })

    def __init__(self, config: GooglePlayConfig, billing: BillingConfig):
        self.config = config
        super().__init__(billing)
        self.base_url = f"{config.api_base_url.rstrip('/')}/applications/{quote(config.package_name, safe='')}"
        self.token_manager = ServiceAccountTokenManager(
            credentials=self.credentials,
            http=self._send,
            token_uri=config.token_uri,
        )

    def validate_credentials(self) -> None:
        if not self.config.package_name:
            raise ConfigurationError("Google Play package name not configured", config_key="GOOGLE_PLAY_PACKAGE_NAME")
        self.credentials = load_service_account(self.config.service_account_json)
        if not self.config.pubsub_verification_token:
            logger.warning("GOOGLE_PLAY_PUBSUB_VERIFICATION_TOKEN is not set; Play notifications will be rejected")

    @property
    def package_name(self) -> str:
        return self.config.package_name

    async def _api_get(self, path: str) -> Dict[str, Any]:
        """GET with a bearer token; a 401 drops the cached token and retries."""
        url = f"{self.base_url}{path}"
        async for attempt in self._retrying():
            with attempt:
                token = await self.token_manager.get_token()
                status, body = await self._send("GET", url, headers={"Authorization": f"Bearer {token}"})
                if status == 401:
                    self.token_manager.invalidate()
                    raise ProviderFetchError("Google Play rejected the access token", self.name, http_status=401)
                self._raise_for_status(status, body)
                return body

    async def _get_purchase(self, parsed: ParsedReceipt) -> ReceiptValidationResult:
        token = quote(parsed.purchase_token, safe="")
        try:
            if self.config.use_legacy_api:
                payload = await self._api_get(
                    f"/purchases/subscriptions/{quote(parsed.product_id, safe='')}/tokens/{token}"
                )
                result = canonicalize_subscription_v1(payload)
            else:
                payload = await self._api_get(f"/purchases/subscriptionsv2/tokens/{token}")
                result = canonicalize_subscription_v2(payload, parsed.product_id)
        except ProviderRequestError as e:
            if e.http_status in (400, 404, 410):
                raise VerificationError(
                    "Purchase token was not recognised by Google Play",
                    details={"http_status": e.http_status, "provider_code": e.provider_code},
                ) from e
            raise

        result.transaction_id = parsed.purchase_token
        result.original_transaction_id = parsed.purchase_token
        if result.product_id is None:
            result.product_id = parsed.product_id
        return result

    async def validate_receipt(self, receipt: str, platform: ReceiptPlatform) -> ReceiptValidationResult:
        parsed = ParsedReceipt.parse(receipt)
        if platform != ReceiptPlatform.ANDROID:
            raise VerificationError(f"Google Play cannot validate {platform.value} receipts")

        result = await self._get_purchase(parsed)
        logger.info(
            f"Google Play receipt for {parsed.product_id}: valid={result.is_valid} status={result.status.value}"
        )
        return result

    async def fetch_subscription(self, provider_subscription_id: str, product_id: Optional[str] = None) -> ProviderSubscriptionDetails:
        """Read live state for a purchase token."""
        result = await self._get_purchase(
            ParsedReceipt(product_id=product_id or "", purchase_token=provider_subscription_id)
        )
        return ProviderSubscriptionDetails(
            provider_subscription_id=provider_subscription_id,
            status=result.status,
            provider_status=result.metadata.get("subscription_state"),
            plan_id=result.metadata.get("base_plan_id") or result.product_id,
            current_period_end=result.expires_at,
            next_billing_at=result.expires_at if result.auto_renewing else None,
            cancel_at_cycle_end=result.status == SubscriptionStatus.PENDING_CANCELLATION,
            auto_renewing=result.auto_renewing,
            metadata={
                "product_id": result.product_id,
                "order_id": result.order_id,
                "is_trial": result.is_trial,
                "is_intro_offer": result.is_intro_offer,
            },
        )

    def verify_webhook_signature(self, raw_payload: bytes, signature: Optional[str]) -> bool:
        """
        Authenticate a Pub/Sub push.

        ``signature`` is the verification token carried on the push endpoint URL.
        """
        expected = self.config.pubsub_verification_token
        if not expected:
            logger.error("Play notification rejected: Pub/Sub verification token is not configured")
            return False
        if not signature or not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            logger.warning("Play notification rejected: verification token mismatch")
            return False
        return True
