"""
Razorpay hosted checkout provider.
"""

import base64
import hashlib
import hmac
from typing import Any, Dict, Optional

from ...core.config import BillingConfig, RazorpayConfig
from ...core.exceptions import ConfigurationError
from ...core.logging_config import get_logger
from ...core.timeutils import from_epoch_seconds
from ...db.models.billing_enums import ProviderType, SubscriptionStatus
from .base import (
    CreateSubscriptionParams,
    PaymentProvider,
    ProviderOperation,
    ProviderSubscriptionDetails,
    ProviderSubscriptionResponse,
)

logger = get_logger(__name__)

RAZORPAY_STATUS_MAP = {
    "created": SubscriptionStatus.CREATED,
    "authenticated": SubscriptionStatus.AUTHENTICATED,
    "active": SubscriptionStatus.ACTIVE,
    # Charge retries in progress, access is kept
    "pending": SubscriptionStatus.ACTIVE,
    "halted": SubscriptionStatus.PAUSED,
    "paused": SubscriptionStatus.PAUSED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "completed": SubscriptionStatus.COMPLETED,
    "expired": SubscriptionStatus.EXPIRED,
}


def map_razorpay_status(status: Optional[str]) -> Optional[SubscriptionStatus]:
    if status is None:
        return None
    mapped = RAZORPAY_STATUS_MAP.get(status.lower())
    if mapped is None:
        logger.warning(f"Unknown Razorpay subscription status: {status}")
    return mapped


def parse_subscription_entity(entity: Dict[str, Any]) -> ProviderSubscriptionDetails:
    """Translate a Razorpay subscription entity into canonical details."""
    notes = entity.get("notes") or {}
    if not isinstance(notes, dict):
        # Razorpay sends an empty list when there are no notes
        notes = {}
    return ProviderSubscriptionDetails(
        provider_subscription_id=entity["id"],
        status=map_razorpay_status(entity.get("status")),
        provider_status=entity.get("status"),
        plan_id=entity.get("plan_id"),
        current_period_start=from_epoch_seconds(entity.get("current_start")),
        current_period_end=from_epoch_seconds(entity.get("current_end")),
        next_billing_at=from_epoch_seconds(entity.get("charge_at")),
        total_count=entity.get("total_count"),
        paid_count=entity.get("paid_count"),
        remaining_count=entity.get("remaining_count"),
        cancel_at_cycle_end=bool(entity.get("has_scheduled_changes")) and entity.get("change_scheduled_at") is not None,
        metadata={
            "customer_id": entity.get("customer_id"),
            "short_url": entity.get("short_url"),
            "ended_at": entity.get("ended_at"),
            "notes": notes,
        },
    )


class RazorpayProvider(PaymentProvider):
    """Razorpay subscriptions API (India)."""

    provider_type = ProviderType.RAZORPAY
    supported_operations = frozenset({
        ProviderOperation.CREATE_SUBSCRIPTION,
        ProviderOperation.CANCEL_SUBSCRIPTION,
        ProviderOperation.RESUME_SUBSCRIPTION,
        ProviderOperation.FETCH_SUBSCRIPTION,
        ProviderOperation.VERIFY_WEBHOOK_SIGNATURE,
    })

    def __init__(self, config: RazorpayConfig, billing: BillingConfig):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        super().__init__(billing)
        credentials = f"{config.key_id}:{config.key_secret}".encode("utf-8")
        self._auth_header = {"Authorization": f"Basic {base64.b64encode(credentials).decode('ascii')}"}

    def validate_credentials(self) -> None:
        if not self.config.key_id or not self.config.key_secret:
            raise ConfigurationError("Razorpay credentials not configured", config_key="RAZORPAY_KEY_ID")
        if not self.config.webhook_secret:
            logger.warning("RAZORPAY_WEBHOOK_SECRET is not set; Razorpay webhooks will be rejected")

    async def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._request(method, f"{self.base_url}{path}", json_body=payload, headers=self._auth_header)

    async def create_subscription(self, params: CreateSubscriptionParams) -> ProviderSubscriptionResponse:
        """Create a subscription; the customer authorizes it at ``short_url``."""
        customer_notify = self.config.customer_notify if params.customer_notify is None else params.customer_notify
        payload: Dict[str, Any] = {
            "plan_id": params.provider_plan_id,
            "total_count": params.total_count or self.config.total_count,
            "quantity": 1,
            "customer_notify": 1 if customer_notify else 0,
            "notes": {**params.notes, "user_id": params.user_id, "plan_code": params.plan_code},
        }
        if params.start_at is not None:
            payload["start_at"] = int(params.start_at.timestamp())

        entity = await self._call("POST", "/subscriptions", payload)
        logger.info(f"Razorpay subscription created: {entity.get('id')} for user {params.user_id}")

        return ProviderSubscriptionResponse(
            provider_subscription_id=entity["id"],
            status=map_razorpay_status(entity.get("status")) or SubscriptionStatus.CREATED,
            authorization_url=entity.get("short_url"),
            metadata={
                "plan_id": entity.get("plan_id"),
                "total_count": entity.get("total_count"),
                "customer_id": entity.get("customer_id"),
            },
        )

    async def cancel_subscription(self, provider_subscription_id: str, cancel_at_cycle_end: bool = True) -> ProviderSubscriptionDetails:
        entity = await self._call(
            "POST",
            f"/subscriptions/{provider_subscription_id}/cancel",
            {"cancel_at_cycle_end": 1 if cancel_at_cycle_end else 0},
        )
        logger.info(f"Razorpay subscription {provider_subscription_id} cancelled (at cycle end: {cancel_at_cycle_end})")
        details = parse_subscription_entity(entity)
        if cancel_at_cycle_end:
            details.cancel_at_cycle_end = True
        return details

    async def resume_subscription(self, provider_subscription_id: str) -> ProviderSubscriptionDetails:
        """
        Undo a pause or a scheduled cancellation.

        Razorpay has separate endpoints for the two cases, so the live status
        decides which one applies.
        """
        current = await self.fetch_subscription(provider_subscription_id)
        if current.provider_status in ("paused", "halted"):
            entity = await self._call(
                "POST", f"/subscriptions/{provider_subscription_id}/resume", {"resume_at": "now"}
            )
        else:
            entity = await self._call(
                "POST", f"/subscriptions/{provider_subscription_id}/cancel_scheduled_changes"
            )
        logger.info(f"Razorpay subscription {provider_subscription_id} resumed")
        return parse_subscription_entity(entity)

    async def fetch_subscription(self, provider_subscription_id: str, product_id: Optional[str] = None) -> ProviderSubscriptionDetails:
        entity = await self._call("GET", f"/subscriptions/{provider_subscription_id}")
        return parse_subscription_entity(entity)

    def verify_webhook_signature(self, raw_payload: bytes, signature: Optional[str]) -> bool:
        """Check ``X-Razorpay-Signature``: hex HMAC-SHA256 of the raw body."""
        if not self.config.webhook_secret:
            logger.error("Razorpay webhook rejected: webhook secret is not configured")
            return False
        if not signature:
            logger.warning("Razorpay webhook rejected: signature header missing")
            return False

        expected = hmac.new(
            self.config.webhook_secret.encode("utf-8"),
            raw_payload,
            hashlib.sha256,
        ).hexdigest()
        received = signature.strip().encode("utf-8", "replace")
        if not hmac.compare_digest(expected.encode("utf-8"), received):
            logger.warning("Razorpay webhook rejected: signature mismatch")
            return False
        return True
