"""
Provider capability interface.

Every payment backend exposes the same six operations. A backend that cannot
perform one of them raises MethodNotSupportedError; callers treat that as a
permanent failure. ``supported_operations`` is the explicit capability table
for each variant.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

import aiohttp
from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ...core.config import BillingConfig
from ...core.exceptions import (
    MethodNotSupportedError,
    ProviderFetchError,
    ProviderRequestError,
    VerificationError,
)
from ...core.logging_config import get_logger
from ...db.models.billing_enums import ProviderType, SubscriptionStatus

logger = get_logger(__name__)

RECEIPT_DELIMITER = ":"


class ProviderOperation(str, Enum):
    CREATE_SUBSCRIPTION = "create_subscription"
    CANCEL_SUBSCRIPTION = "cancel_subscription"
    RESUME_SUBSCRIPTION = "resume_subscription"
    FETCH_SUBSCRIPTION = "fetch_subscription"
    VALIDATE_RECEIPT = "validate_receipt"
    VERIFY_WEBHOOK_SIGNATURE = "verify_webhook_signature"


class ReceiptPlatform(str, Enum):
    ANDROID = "android"
    IOS = "ios"


# ============ Value objects ============

class CreateSubscriptionParams(BaseModel):
    """Input for a hosted checkout subscription."""
    user_id: str
    plan_code: str
    provider_plan_id: str
    amount_minor: int
    currency: str = "INR"
    total_count: Optional[int] = None
    start_at: Optional[datetime] = None
    customer_notify: Optional[bool] = None
    notes: Dict[str, str] = Field(default_factory=dict)


class ProviderSubscriptionResponse(BaseModel):
    provider_subscription_id: str
    status: SubscriptionStatus
    authorization_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProviderSubscriptionDetails(BaseModel):
    """Live subscription state reported by a provider."""
    provider_subscription_id: str
    status: Optional[SubscriptionStatus]
    provider_status: Optional[str] = None
    plan_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    next_billing_at: Optional[datetime] = None
    total_count: Optional[int] = None
    paid_count: Optional[int] = None
    remaining_count: Optional[int] = None
    cancel_at_cycle_end: bool = False
    auto_renewing: Optional[bool] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReceiptValidationResult(BaseModel):
    """Outcome of validating a store receipt with the store."""
    is_valid: bool
    status: SubscriptionStatus
    product_id: Optional[str] = None
    transaction_id: Optional[str] = None
    original_transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    purchase_date: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_trial: bool = False
    is_intro_offer: bool = False
    auto_renewing: bool = False
    environment: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class ParsedReceipt:
    product_id: str
    purchase_token: str

    @classmethod
    def parse(cls, receipt: str) -> "ParsedReceipt":
        """
        Split a ``productId:purchaseToken`` receipt.

        Raises:
            VerificationError: when the delimiter or either part is missing
        """
        if not receipt or RECEIPT_DELIMITER not in receipt:
            raise VerificationError(
                "Receipt must be formatted as productId:purchaseToken",
                details={"reason": "missing_delimiter"},
            )
        product_id, purchase_token = receipt.split(RECEIPT_DELIMITER, 1)
        product_id, purchase_token = product_id.strip(), purchase_token.strip()
        if not product_id or not purchase_token:
            raise VerificationError(
                "Receipt must include both a product id and a purchase token",
                details={"reason": "empty_part"},
            )
        return cls(product_id=product_id, purchase_token=purchase_token)


# ============ Base provider ============

class PaymentProvider(ABC):
    """Abstract base class for payment providers."""

    provider_type: ProviderType
    supported_operations: FrozenSet[ProviderOperation] = frozenset()

    def __init__(self, billing: BillingConfig):
        self.billing = billing
        self.session: Optional[aiohttp.ClientSession] = None
        self.validate_credentials()

    @property
    def name(self) -> str:
        return self.provider_type.value

    @abstractmethod
    def validate_credentials(self) -> None:
        """Raise ConfigurationError when required credentials are missing."""

    def supports(self, operation: ProviderOperation) -> bool:
        return operation in self.supported_operations

    def _not_supported(self, operation: ProviderOperation, message: Optional[str] = None) -> MethodNotSupportedError:
        return MethodNotSupportedError(self.name, operation.value, message)

    # ---- capability interface ----

    async def create_subscription(self, params: CreateSubscriptionParams) -> ProviderSubscriptionResponse:
        raise self._not_supported(
            ProviderOperation.CREATE_SUBSCRIPTION,
            "Store subscriptions are purchased in the store app",
        )

    async def cancel_subscription(self, provider_subscription_id: str, cancel_at_cycle_end: bool = True) -> ProviderSubscriptionDetails:
        raise self._not_supported(
            ProviderOperation.CANCEL_SUBSCRIPTION,
            "Store subscriptions are managed from the store settings",
        )

    async def resume_subscription(self, provider_subscription_id: str) -> ProviderSubscriptionDetails:
        raise self._not_supported(
            ProviderOperation.RESUME_SUBSCRIPTION,
            "Store subscriptions are managed from the store settings",
        )

    async def fetch_subscription(self, provider_subscription_id: str, product_id: Optional[str] = None) -> ProviderSubscriptionDetails:
        raise self._not_supported(ProviderOperation.FETCH_SUBSCRIPTION)

    async def validate_receipt(self, receipt: str, platform: ReceiptPlatform) -> ReceiptValidationResult:
        raise self._not_supported(ProviderOperation.VALIDATE_RECEIPT)

    def verify_webhook_signature(self, raw_payload: bytes, signature: Optional[str]) -> bool:
        raise self._not_supported(ProviderOperation.VERIFY_WEBHOOK_SIGNATURE)

    # ---- HTTP plumbing ----

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.billing.http_timeout_seconds)
            )
        return self.session

    async def _send(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any]:
        """Perform one HTTP call and return (status, decoded body)."""
        session = await self._get_session()
        try:
            async with session.request(method, url, headers=headers, json=json_body, data=data) as response:
                text = await response.text()
                try:
                    body = json.loads(text) if text else {}
                except ValueError:
                    body = {"raw": text[:500]}
                return response.status, body
        except asyncio.TimeoutError as e:
            raise ProviderFetchError(f"{self.name} request timed out: {method} {url}", self.name) from e
        except aiohttp.ClientError as e:
            raise ProviderFetchError(f"{self.name} connection failed: {e}", self.name) from e

    def _retrying(self) -> AsyncRetrying:
        """Retry policy for transient provider failures."""
        return AsyncRetrying(
            stop=stop_after_attempt(self.billing.retry_attempts),
            wait=wait_exponential(multiplier=1, min=self.billing.retry_min_wait, max=self.billing.retry_max_wait),
            retry=retry_if_exception_type(ProviderFetchError),
            reraise=True,
        )

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        """
        Call the provider, retrying transient failures with backoff.

        Raises:
            ProviderFetchError: transient failure after all attempts
            ProviderRequestError: the provider rejected the request
        """
        async for attempt in self._retrying():
            with attempt:
                status, body = await self._send(method, url, **kwargs)
                self._raise_for_status(status, body)
                return body

    def _raise_for_status(self, status: int, body: Any) -> None:
        if 200 <= status < 300:
            return
        code, description = self._extract_error(body)
        message = f"{self.name} returned HTTP {status}: {description or 'no description'}"
        if status == 429 or status >= 500:
            logger.warning(message)
            raise ProviderFetchError(message, self.name, http_status=status, provider_code=code)
        logger.error(message)
        raise ProviderRequestError(message, self.name, http_status=status, provider_code=code)

    def _extract_error(self, body: Any) -> Tuple[Optional[str], Optional[str]]:
        """Return (provider error code, description) from an error body."""
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict):
                return error.get("code") or error.get("status"), error.get("description") or error.get("message")
            if isinstance(error, str):
                return error, body.get("error_description")
        return None, None

    async def close(self) -> None:
        """Clean up resources."""
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None
