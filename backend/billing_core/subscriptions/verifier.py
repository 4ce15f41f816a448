"""
Inbound authenticity checks.

Webhooks are verified against the provider's shared secret (or Pub/Sub token,
or the App Store certificate chain). Verification fails closed: a missing
secret, an unconstructible provider or any error means rejection.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..core.exceptions import ConfigurationError, MethodNotSupportedError, VerificationError
from ..core.logging_config import get_logger
from ..db.models.billing_enums import ProviderType
from ..integrations.payment_providers.apple_appstore import AppleAppStoreProvider
from ..integrations.payment_providers.base import ParsedReceipt, ReceiptPlatform, ReceiptValidationResult
from ..integrations.payment_providers.registry import ProviderRegistry

logger = get_logger(__name__)


class WebhookVerifier:
    """Signature verification for inbound webhooks. Never raises."""

    def __init__(self, registry: ProviderRegistry):
        self.registry = registry

    def verify(self, provider_type: ProviderType, raw_body: bytes, signature: Optional[str]) -> bool:
        try:
            provider = self.registry.get(provider_type)
            verified = provider.verify_webhook_signature(raw_body, signature)
        except ConfigurationError as e:
            logger.error(f"Rejecting {provider_type.value} webhook, provider not configured: {e.message}")
            return False
        except MethodNotSupportedError:
            logger.error(f"Rejecting {provider_type.value} webhook, provider has no webhook verification")
            return False
        except Exception:
            logger.exception(f"Rejecting {provider_type.value} webhook, signature check failed")
            return False

        if not verified:
            logger.warning(f"Rejected {provider_type.value} webhook with invalid signature")
        return verified

    def decode_app_store(self, raw_body: bytes) -> Optional[Dict[str, Any]]:
        """Verify and decode an App Store notification; None when it does not verify."""
        try:
            provider = self.registry.get(ProviderType.APPLE_APPSTORE)
        except ConfigurationError as e:
            logger.error(f"Rejecting App Store notification, provider not configured: {e.message}")
            return None
        if not isinstance(provider, AppleAppStoreProvider):
            logger.error("Rejecting App Store notification, no notification decoder available")
            return None
        try:
            return provider.decode_notification(raw_body)
        except VerificationError as e:
            logger.warning(f"Rejected App Store notification: {e.message}")
            return None


@dataclass(frozen=True)
class VerifiedReceipt:
    provider_type: ProviderType
    receipt: ParsedReceipt
    result: ReceiptValidationResult

    @property
    def transaction_id(self) -> str:
        return self.result.original_transaction_id or self.result.transaction_id or self.receipt.purchase_token


class ReceiptVerifier:
    """Validates client submitted store receipts against the store."""

    def __init__(self, registry: ProviderRegistry):
        self.registry = registry

    async def verify(self, receipt: str, platform: ReceiptPlatform) -> VerifiedReceipt:
        """
        Validate a ``productId:purchaseToken`` receipt.

        Raises:
            VerificationError: malformed receipt, unknown token or product mismatch
            ConfigurationError: the store provider is not configured
            ProviderFetchError: the store could not be reached
        """
        parsed = ParsedReceipt.parse(receipt)
        provider = self.registry.for_platform(platform)
        result = await provider.validate_receipt(receipt, platform)

        if result.product_id and result.product_id != parsed.product_id:
            logger.warning(
                f"Receipt claims product {parsed.product_id} but {provider.name} reports {result.product_id}"
            )
            raise VerificationError(
                "Receipt product does not match the purchase",
                details={"claimed_product_id": parsed.product_id},
            )

        return VerifiedReceipt(provider_type=provider.provider_type, receipt=parsed, result=result)
