"""
Apple App Store (iOS store) provider.

Receipts are validated with ``verifyReceipt``. Server notifications (v2) are
JWS tokens signed by a certificate chained to Apple's root CA; they carry
their own authoritative transaction data, so no remote lookup is needed.
"""

import base64
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import jwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes

from ...core.config import AppleAppStoreConfig, BillingConfig
from ...core.exceptions import ConfigurationError, ProviderFetchError, VerificationError
from ...core.logging_config import get_logger
from ...core.timeutils import from_epoch_millis, utcnow
from ...db.models.billing_enums import ProviderType, SubscriptionStatus
from .base import (
    ParsedReceipt,
    PaymentProvider,
    ProviderOperation,
    ReceiptPlatform,
    ReceiptValidationResult,
)

logger = get_logger(__name__)

STATUS_OK = 0
STATUS_SUBSCRIPTION_EXPIRED = 21006
STATUS_SANDBOX_RECEIPT = 21007

VERIFY_RECEIPT_ERRORS = {
    21000: "The App Store could not read the JSON object you provided",
    21001: "This status code is no longer sent by the App Store",
    21002: "The data in the receipt-data property was malformed or missing",
    21003: "The receipt could not be authenticated",
    21004: "The shared secret you provided does not match the shared secret on file",
    21005: "The receipt server is not currently available",
    21006: "This receipt is valid but the subscription has expired",
    21007: "This receipt is from the test environment",
    21008: "This receipt is from the production environment",
    21009: "Internal data access error",
    21010: "The user account cannot be found or has been deleted",
}

# Statuses worth retrying; 21100-21199 are internal Apple errors too
TRANSIENT_STATUSES = {21005, 21009}


def _load_certificate(path: str) -> x509.Certificate:
    with open(path, "rb") as f:
        data = f.read()
    if b"-----BEGIN CERTIFICATE-----" in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def canonicalize_receipt_response(
    response: Dict[str, Any],
    product_id: str,
    now: Optional[datetime] = None,
) -> ReceiptValidationResult:
    """Pick the newest transaction for ``product_id`` and derive its status."""
    now = now or utcnow()
    transactions: List[Dict[str, Any]] = (
        response.get("latest_receipt_info")
        or (response.get("receipt") or {}).get("in_app")
        or []
    )
    matching = [t for t in transactions if t.get("product_id") == product_id]
    environment = (response.get("environment") or "production").lower()

    if not matching:
        return ReceiptValidationResult(
            is_valid=False,
            status=SubscriptionStatus.EXPIRED,
            product_id=product_id,
            environment=environment,
            error_message=f"No subscription transaction found for {product_id}",
        )

    latest = max(matching, key=lambda t: int(t.get("expires_date_ms") or 0))
    expires_at = from_epoch_millis(latest.get("expires_date_ms"))
    original_id = latest.get("original_transaction_id")

    renewal = next(
        (r for r in response.get("pending_renewal_info") or [] if r.get("original_transaction_id") == original_id),
        {},
    )
    auto_renewing = str(renewal.get("auto_renew_status", "0")) == "1"
    grace_expires_at = from_epoch_millis(renewal.get("grace_period_expires_date_ms"))

    if latest.get("cancellation_date_ms"):
        status, is_valid = SubscriptionStatus.CANCELLED, False
    elif expires_at is not None and expires_at > now:
        if auto_renewing:
            status, is_valid = SubscriptionStatus.ACTIVE, True
        else:
            status, is_valid = SubscriptionStatus.PENDING_CANCELLATION, True
    elif grace_expires_at is not None and grace_expires_at > now:
        status, is_valid = SubscriptionStatus.ACTIVE, True
    else:
        status, is_valid = SubscriptionStatus.EXPIRED, False

    return ReceiptValidationResult(
        is_valid=is_valid,
        status=status,
        product_id=product_id,
        transaction_id=latest.get("transaction_id"),
        original_transaction_id=original_id,
        order_id=latest.get("web_order_line_item_id"),
        purchase_date=from_epoch_millis(latest.get("purchase_date_ms")),
        expires_at=expires_at,
        is_trial=str(latest.get("is_trial_period", "false")).lower() == "true",
        is_intro_offer=str(latest.get("is_in_intro_offer_period", "false")).lower() == "true",
        auto_renewing=auto_renewing,
        environment=environment,
        metadata={
            "cancellation_reason": latest.get("cancellation_reason"),
            "is_in_billing_retry_period": renewal.get("is_in_billing_retry_period"),
            "auto_renew_product_id": renewal.get("auto_renew_product_id"),
        },
    )


class AppleAppStoreProvider(PaymentProvider):
    """App Store receipt validation and server notification decoding."""

    provider_type = ProviderType.APPLE_APPSTORE
    supported_operations = frozenset({
        ProviderOperation.VALIDATE_RECEIPT,
        ProviderOperation.VERIFY_WEBHOOK_SIGNATURE,
    })

    def __init__(self, config: AppleAppStoreConfig, billing: BillingConfig):
        self.config = config
        self.root_certificate: Optional[x509.Certificate] = None
        super().__init__(billing)

    def validate_credentials(self) -> None:
        if not self.config.shared_secret:
            raise ConfigurationError("App Store shared secret not configured", config_key="APPLE_SHARED_SECRET")
        if not self.config.bundle_id:
            raise ConfigurationError("App Store bundle id not configured", config_key="APPLE_BUNDLE_ID")
        if self.config.root_certificate_path:
            try:
                self.root_certificate = _load_certificate(self.config.root_certificate_path)
            except (OSError, ValueError) as e:
                raise ConfigurationError(
                    f"Apple root certificate could not be loaded: {e}",
                    config_key="APPLE_ROOT_CERTIFICATE_PATH",
                ) from e
        else:
            logger.warning("APPLE_ROOT_CERTIFICATE_PATH is not set; App Store notifications will be rejected")

    # ---- receipts ----

    async def _verify_receipt(self, url: str, receipt_data: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            url,
            json_body={
                "receipt-data": receipt_data,
                "password": self.config.shared_secret,
                "exclude-old-transactions": True,
            },
        )

    async def validate_receipt(self, receipt: str, platform: ReceiptPlatform) -> ReceiptValidationResult:
        parsed = ParsedReceipt.parse(receipt)
        if platform != ReceiptPlatform.IOS:
            raise VerificationError(f"App Store cannot validate {platform.value} receipts")

        response = await self._verify_receipt(self.config.production_url, parsed.purchase_token)
        status = response.get("status")
        if status == STATUS_SANDBOX_RECEIPT:
            logger.info("Sandbox receipt sent to production, retrying against sandbox")
            response = await self._verify_receipt(self.config.sandbox_url, parsed.purchase_token)
            status = response.get("status")

        if status not in (STATUS_OK, STATUS_SUBSCRIPTION_EXPIRED):
            message = VERIFY_RECEIPT_ERRORS.get(status, f"Unknown App Store status {status}")
            if status in TRANSIENT_STATUSES or (isinstance(status, int) and 21100 <= status <= 21199):
                raise ProviderFetchError(message, self.name, provider_code=str(status))
            if status == 21004:
                raise ConfigurationError(message, config_key="APPLE_SHARED_SECRET")
            raise VerificationError(message, details={"apple_status": status})

        bundle_id = (response.get("receipt") or {}).get("bundle_id")
        if bundle_id and bundle_id != self.config.bundle_id:
            raise VerificationError(
                "Receipt belongs to a different app",
                details={"bundle_id": bundle_id},
            )

        result = canonicalize_receipt_response(response, parsed.product_id)
        logger.info(
            f"App Store receipt for {parsed.product_id}: valid={result.is_valid} status={result.status.value}"
        )
        return result

    # ---- server notifications ----

    def _verify_chain(self, chain: List[x509.Certificate]) -> None:
        if self.root_certificate is None:
            raise VerificationError("Apple root certificate not configured", status_code=401)

        now = datetime.now(timezone.utc)
        try:
            for cert in chain:
                if not (cert.not_valid_before_utc <= now <= cert.not_valid_after_utc):
                    raise VerificationError("Certificate in x5c chain is not currently valid", status_code=401)
            for child, issuer in zip(chain, chain[1:]):
                child.verify_directly_issued_by(issuer)
            top = chain[-1]
            if top.fingerprint(hashes.SHA256()) != self.root_certificate.fingerprint(hashes.SHA256()):
                top.verify_directly_issued_by(self.root_certificate)
        except (InvalidSignature, ValueError, TypeError) as e:
            raise VerificationError("x5c chain does not lead to the Apple root", status_code=401) from e

    def decode_signed_payload(self, token: str) -> Dict[str, Any]:
        """
        Verify an App Store JWS and return its claims.

        Raises:
            VerificationError: bad header, chain or signature
        """
        try:
            header = jwt.get_unverified_header(token)
            x5c = header.get("x5c") or []
            if header.get("alg") != "ES256" or not x5c:
                raise VerificationError("Unexpected JWS header", status_code=401)
            chain = [x509.load_der_x509_certificate(base64.b64decode(c)) for c in x5c]
        except (jwt.PyJWTError, ValueError) as e:
            raise VerificationError("Malformed signed payload", status_code=401) from e

        self._verify_chain(chain)
        try:
            return jwt.decode(token, key=chain[0].public_key(), algorithms=["ES256"], options={"verify_aud": False})
        except jwt.PyJWTError as e:
            raise VerificationError("Signed payload signature is invalid", status_code=401) from e

    def decode_notification(self, raw_payload: bytes) -> Dict[str, Any]:
        """Decode a notification body and its nested signed transaction / renewal info."""
        try:
            body = json.loads(raw_payload)
            signed_payload = body["signedPayload"]
        except (ValueError, KeyError, TypeError) as e:
            raise VerificationError("Notification body has no signedPayload", status_code=400) from e

        notification = self.decode_signed_payload(signed_payload)
        data = notification.get("data") or {}
        if data.get("bundleId") and data["bundleId"] != self.config.bundle_id:
            raise VerificationError("Notification belongs to a different app", status_code=401)

        if data.get("signedTransactionInfo"):
            data["transaction"] = self.decode_signed_payload(data["signedTransactionInfo"])
        if data.get("signedRenewalInfo"):
            data["renewal"] = self.decode_signed_payload(data["signedRenewalInfo"])
        notification["data"] = data
        return notification

    def verify_webhook_signature(self, raw_payload: bytes, signature: Optional[str]) -> bool:
        """The signature travels inside the body, so ``signature`` is unused."""
        try:
            self.decode_notification(raw_payload)
        except VerificationError as e:
            logger.warning(f"App Store notification rejected: {e.message}")
            return False
        return True
