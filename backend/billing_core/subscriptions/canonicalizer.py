"""
Event canonicalizer.

Maps each provider's native payloads and status vocabulary onto
CanonicalEvent. Purchase-resource status mapping for the stores lives next to
the store clients (google_play / apple_appstore); this module handles the
event level: webhooks, store notifications, receipts and live fetches.
"""

import base64
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.exceptions import ValidationError
from ..core.logging_config import get_logger
from ..core.timeutils import from_epoch_millis, from_epoch_seconds, utcnow
from ..db.models.billing_enums import EventSource, InvoiceStatus, ProviderType, SubscriptionStatus
from ..integrations.payment_providers.base import ProviderSubscriptionDetails, ReceiptValidationResult
from ..integrations.payment_providers.razorpay import parse_subscription_entity
from .events import CanonicalEvent, CanonicalEventType, PaymentInfo

logger = get_logger(__name__)

E = CanonicalEventType


# ============ Razorpay ============

RAZORPAY_EVENT_MAP = {
    "subscription.authenticated": E.AUTHENTICATED,
    "subscription.activated": E.ACTIVATED,
    "subscription.charged": E.CHARGED,
    "subscription.completed": E.COMPLETED,
    "subscription.updated": E.UPDATED,
    "subscription.pending": E.PENDING,
    "subscription.halted": E.PAUSED,
    "subscription.cancelled": E.CANCELLED,
    "subscription.paused": E.PAUSED,
    "subscription.resumed": E.RESUMED,
}

RAZORPAY_PAYMENT_STATUS_MAP = {
    "captured": InvoiceStatus.PAID,
    "failed": InvoiceStatus.FAILED,
    "refunded": InvoiceStatus.REFUNDED,
    "authorized": InvoiceStatus.PENDING,
    "created": InvoiceStatus.PENDING,
}


def _razorpay_payment(entity: Optional[Dict[str, Any]]) -> Optional[PaymentInfo]:
    if not entity or not entity.get("id"):
        return None
    status = RAZORPAY_PAYMENT_STATUS_MAP.get(entity.get("status", ""), InvoiceStatus.PENDING)
    return PaymentInfo(
        payment_id=entity["id"],
        amount_minor=int(entity.get("amount") or 0),
        currency=entity.get("currency") or "INR",
        status=status,
        method=entity.get("method"),
        paid_at=from_epoch_seconds(entity.get("created_at")) if status == InvoiceStatus.PAID else None,
    )


def canonicalize_razorpay(payload: Dict[str, Any], provider_event_id: Optional[str] = None) -> Optional[CanonicalEvent]:
    """
    Translate a Razorpay webhook body.

    Returns None for events this core does not track (``payment.*`` etc.).

    Raises:
        ValidationError: the body lacks an event name or subscription entity
    """
    event_name = payload.get("event")
    if not event_name:
        raise ValidationError("Webhook body has no event type")

    event_type = RAZORPAY_EVENT_MAP.get(event_name)
    if event_type is None:
        logger.debug(f"Ignoring Razorpay event {event_name}")
        return None

    body = payload.get("payload") or {}
    entity = (body.get("subscription") or {}).get("entity")
    if not entity or not entity.get("id"):
        raise ValidationError(f"Razorpay {event_name} webhook has no subscription entity")

    details = parse_subscription_entity(entity)
    payment = _razorpay_payment((body.get("payment") or {}).get("entity"))

    return CanonicalEvent(
        provider=ProviderType.RAZORPAY,
        event_type=event_type,
        provider_event_type=event_name,
        provider_subscription_id=details.provider_subscription_id,
        occurred_at=from_epoch_seconds(payload.get("created_at")) or utcnow(),
        provider_event_id=provider_event_id,
        provider_status=details.status,
        plan_id=details.plan_id,
        current_period_start=details.current_period_start,
        current_period_end=details.current_period_end,
        next_billing_at=details.next_billing_at,
        total_count=details.total_count,
        paid_count=details.paid_count,
        remaining_count=details.remaining_count,
        # Razorpay only sends subscription.cancelled once access actually ends
        cancel_at_cycle_end=False,
        cancellation_reason="Payment retries exhausted" if event_name == "subscription.halted" else None,
        payment=payment,
        metadata={"provider_status": details.provider_status},
    )


# ============ Google Play real-time developer notifications ============

# notificationType -> (name, canonical event, cancel at cycle end)
PLAY_NOTIFICATION_TYPES = {
    1: ("SUBSCRIPTION_RECOVERED", E.CHARGED, False),
    2: ("SUBSCRIPTION_RENEWED", E.CHARGED, False),
    3: ("SUBSCRIPTION_CANCELED", E.CANCELLED, True),
    4: ("SUBSCRIPTION_PURCHASED", E.ACTIVATED, False),
    5: ("SUBSCRIPTION_ON_HOLD", E.PAUSED, False),
    6: ("SUBSCRIPTION_IN_GRACE_PERIOD", E.PENDING, False),
    7: ("SUBSCRIPTION_RESTARTED", E.RESUMED, False),
    8: ("SUBSCRIPTION_PRICE_CHANGE_CONFIRMED", E.UPDATED, False),
    9: ("SUBSCRIPTION_DEFERRED", E.UPDATED, False),
    10: ("SUBSCRIPTION_PAUSED", E.PAUSED, False),
    11: ("SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED", E.UPDATED, False),
    12: ("SUBSCRIPTION_REVOKED", E.CANCELLED, False),
    13: ("SUBSCRIPTION_EXPIRED", E.EXPIRED, False),
}


@dataclass(frozen=True)
class PlayNotification:
    message_id: str
    package_name: Optional[str]
    notification_type: int
    purchase_token: str
    product_id: str
    event_time: datetime

    @property
    def type_name(self) -> str:
        entry = PLAY_NOTIFICATION_TYPES.get(self.notification_type)
        return entry[0] if entry else f"SUBSCRIPTION_NOTIFICATION_{self.notification_type}"


def decode_play_push(body: Dict[str, Any]) -> Optional[PlayNotification]:
    """
    Decode a Pub/Sub push envelope carrying a developer notification.

    Returns None for test notifications and non-subscription notifications.

    Raises:
        ValidationError: the envelope or its data is malformed
    """
    try:
        message = body["message"]
        message_id = message.get("messageId") or message["message_id"]
        data = json.loads(base64.b64decode(message["data"]))
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError("Malformed Pub/Sub push message") from e

    if "testNotification" in data:
        logger.info("Received Play test notification")
        return None

    sub = data.get("subscriptionNotification")
    if not sub:
        return None

    try:
        return PlayNotification(
            message_id=message_id,
            package_name=data.get("packageName"),
            notification_type=int(sub["notificationType"]),
            purchase_token=sub["purchaseToken"],
            product_id=sub.get("subscriptionId", ""),
            event_time=from_epoch_millis(data.get("eventTimeMillis")) or utcnow(),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError("Malformed subscription notification") from e


def canonicalize_play_notification(
    notification: PlayNotification,
    details: ProviderSubscriptionDetails,
) -> Optional[CanonicalEvent]:
    """Combine a notification with the live purchase state fetched for it."""
    entry = PLAY_NOTIFICATION_TYPES.get(notification.notification_type)
    if entry is None:
        logger.info(f"Ignoring Play notification type {notification.notification_type}")
        return None
    name, event_type, at_cycle_end = entry

    return CanonicalEvent(
        provider=ProviderType.GOOGLE_PLAY,
        event_type=event_type,
        provider_event_type=name,
        provider_subscription_id=notification.purchase_token,
        occurred_at=notification.event_time,
        provider_event_id=notification.message_id,
        provider_status=details.status,
        plan_id=details.plan_id,
        product_id=notification.product_id or details.metadata.get("product_id"),
        current_period_end=details.current_period_end,
        next_billing_at=details.next_billing_at,
        cancel_at_cycle_end=at_cycle_end,
        cancellation_reason="Revoked by Google Play" if notification.notification_type == 12 else None,
        metadata={
            "provider_status": details.provider_status,
            "order_id": details.metadata.get("order_id"),
            "auto_renewing": details.auto_renewing,
        },
    )


# ============ App Store server notifications v2 ============

APP_STORE_UPDATE_TYPES = {
    "DID_CHANGE_RENEWAL_PREF",
    "RENEWAL_EXTENDED",
    "RENEWAL_EXTENSION",
    "PRICE_INCREASE",
    "OFFER_REDEEMED",
    "REFUND_REVERSED",
}


def _app_store_event(notification_type: str, subtype: Optional[str]):
    """Return (event type, cancel at cycle end) or None when ignored."""
    if notification_type == "SUBSCRIBED":
        return E.ACTIVATED, False
    if notification_type == "DID_RENEW":
        return E.CHARGED, False
    if notification_type == "DID_FAIL_TO_RENEW":
        return (E.PENDING if subtype == "GRACE_PERIOD" else E.PAUSED), False
    if notification_type == "DID_CHANGE_RENEWAL_STATUS":
        if subtype == "AUTO_RENEW_DISABLED":
            return E.CANCELLED, True
        if subtype == "AUTO_RENEW_ENABLED":
            return E.RESUMED, False
        return None
    if notification_type in ("EXPIRED", "GRACE_PERIOD_EXPIRED"):
        return E.EXPIRED, False
    if notification_type in ("REFUND", "REVOKE"):
        return E.CANCELLED, False
    if notification_type in APP_STORE_UPDATE_TYPES:
        return E.UPDATED, False
    return None


def _app_store_status(transaction: Dict[str, Any], renewal: Dict[str, Any], now: datetime) -> SubscriptionStatus:
    expires_at = from_epoch_millis(transaction.get("expiresDate"))
    grace_until = from_epoch_millis(renewal.get("gracePeriodExpiresDate"))
    if transaction.get("revocationDate"):
        return SubscriptionStatus.CANCELLED
    if expires_at is not None and expires_at <= now:
        if grace_until is not None and grace_until > now:
            return SubscriptionStatus.ACTIVE
        if renewal.get("isInBillingRetryPeriod"):
            return SubscriptionStatus.PAUSED
        return SubscriptionStatus.EXPIRED
    if renewal and renewal.get("autoRenewStatus") == 0:
        return SubscriptionStatus.PENDING_CANCELLATION
    return SubscriptionStatus.ACTIVE


def canonicalize_app_store_notification(notification: Dict[str, Any]) -> Optional[CanonicalEvent]:
    """Translate a decoded (already verified) App Store notification."""
    notification_type = notification.get("notificationType", "")
    subtype = notification.get("subtype")
    mapped = _app_store_event(notification_type, subtype)
    if mapped is None:
        logger.info(f"Ignoring App Store notification {notification_type}/{subtype}")
        return None
    event_type, at_cycle_end = mapped

    data = notification.get("data") or {}
    transaction = data.get("transaction") or {}
    renewal = data.get("renewal") or {}
    original_id = transaction.get("originalTransactionId") or renewal.get("originalTransactionId")
    if not original_id:
        raise ValidationError(f"App Store {notification_type} notification has no original transaction id")

    expires_at = from_epoch_millis(transaction.get("expiresDate"))
    auto_renewing = renewal.get("autoRenewStatus") == 1

    payment = None
    if event_type == E.CHARGED and transaction.get("transactionId") and transaction.get("price") is not None:
        # price is in milli-units of the currency
        payment = PaymentInfo(
            payment_id=str(transaction["transactionId"]),
            amount_minor=int(transaction["price"]) // 10,
            currency=transaction.get("currency") or "USD",
            status=InvoiceStatus.PAID,
            method="app_store",
            paid_at=from_epoch_millis(transaction.get("purchaseDate")),
        )

    provider_event_type = notification_type if not subtype else f"{notification_type}.{subtype}"
    return CanonicalEvent(
        provider=ProviderType.APPLE_APPSTORE,
        event_type=event_type,
        provider_event_type=provider_event_type,
        provider_subscription_id=str(original_id),
        occurred_at=from_epoch_millis(notification.get("signedDate")) or utcnow(),
        provider_event_id=notification.get("notificationUUID"),
        provider_status=_app_store_status(transaction, renewal, utcnow()),
        product_id=transaction.get("productId"),
        current_period_start=from_epoch_millis(transaction.get("purchaseDate")),
        current_period_end=expires_at,
        next_billing_at=expires_at if auto_renewing else None,
        cancel_at_cycle_end=at_cycle_end,
        cancellation_reason=notification_type.title() if notification_type in ("REFUND", "REVOKE") else None,
        payment=payment,
        metadata={
            "environment": data.get("environment"),
            "auto_renewing": auto_renewing,
        },
    )


# ============ Receipts and live fetches ============

def canonicalize_receipt(
    provider: ProviderType,
    result: ReceiptValidationResult,
    known_period_end: Optional[datetime],
    is_new: bool,
) -> CanonicalEvent:
    """
    Event for a validated receipt.

    A first receipt activates; a later receipt whose expiry moved forward is
    a renewal; anything else refreshes the local view.
    """
    if is_new:
        event_type = E.ACTIVATED
    elif (
        result.status == SubscriptionStatus.ACTIVE
        and result.expires_at is not None
        and known_period_end is not None
        and result.expires_at > known_period_end
    ):
        event_type = E.CHARGED
    else:
        event_type = E.UPDATED

    expires_marker = int(result.expires_at.timestamp()) if result.expires_at else 0
    purchase_ref = result.order_id or result.transaction_id
    return CanonicalEvent(
        provider=provider,
        event_type=event_type,
        provider_event_type="receipt",
        provider_subscription_id=result.original_transaction_id or result.transaction_id,
        occurred_at=utcnow(),
        source=EventSource.RECEIPT,
        provider_event_id=f"receipt:{event_type.value}:{purchase_ref}:{result.status.value}:{expires_marker}",
        provider_status=result.status,
        product_id=result.product_id,
        current_period_start=result.purchase_date if is_new else known_period_end,
        current_period_end=result.expires_at,
        next_billing_at=result.expires_at if result.auto_renewing else None,
        cancel_at_cycle_end=result.status == SubscriptionStatus.PENDING_CANCELLATION,
        metadata={
            "is_trial": result.is_trial,
            "is_intro_offer": result.is_intro_offer,
            "auto_renewing": result.auto_renewing,
            "environment": result.environment,
        },
    )


def canonicalize_details(
    provider: ProviderType,
    details: ProviderSubscriptionDetails,
    source: EventSource = EventSource.RECONCILIATION,
    notes: Optional[str] = None,
) -> CanonicalEvent:
    """``updated`` event carrying a live provider fetch (reconciliation)."""
    period_marker = int(details.current_period_end.timestamp()) if details.current_period_end else 0
    status = details.status.value if details.status else "unknown"
    return CanonicalEvent(
        provider=provider,
        event_type=E.UPDATED,
        provider_event_type="live_fetch",
        provider_subscription_id=details.provider_subscription_id,
        occurred_at=utcnow(),
        source=source,
        provider_event_id=f"sync:{status}:{period_marker}:{details.paid_count}",
        provider_status=details.status,
        plan_id=details.plan_id,
        current_period_start=details.current_period_start,
        current_period_end=details.current_period_end,
        next_billing_at=details.next_billing_at,
        total_count=details.total_count,
        paid_count=details.paid_count,
        remaining_count=details.remaining_count,
        cancel_at_cycle_end=details.cancel_at_cycle_end,
        notes=notes,
        metadata={"provider_status": details.provider_status},
    )
