"""
Payload builders shared by the test modules.
"""

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from billing_core.db.models import ProviderType
from billing_core.subscriptions.events import CanonicalEvent, CanonicalEventType

WEBHOOK_SECRET = "whsec_test_secret"
JWT_SECRET = "test-secret-key-that-is-long-enough-123"
PUBSUB_TOKEN = "pubsub-verification-token"
PACKAGE_NAME = "com.example.billing"
PLAN_ID = "plan_pro_monthly"


def epoch(value: datetime) -> int:
    """Epoch seconds for a naive UTC datetime."""
    return int(value.replace(tzinfo=timezone.utc).timestamp())


def epoch_ms(value: datetime) -> int:
    return epoch(value) * 1000


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def access_token(user_id: str = "user-1", secret: str = JWT_SECRET, **claims: Any) -> str:
    return jwt.encode({"sub": user_id, **claims}, secret, algorithm="HS256")


def razorpay_entity(
    sub_id: str = "sub_test123",
    status: str = "active",
    current_start: Optional[datetime] = None,
    current_end: Optional[datetime] = None,
    paid_count: int = 0,
    total_count: int = 12,
    **extra: Any,
) -> Dict[str, Any]:
    entity = {
        "id": sub_id,
        "entity": "subscription",
        "plan_id": PLAN_ID,
        "customer_id": "cust_123",
        "status": status,
        "current_start": epoch(current_start) if current_start else None,
        "current_end": epoch(current_end) if current_end else None,
        "charge_at": epoch(current_end) if current_end else None,
        "total_count": total_count,
        "paid_count": paid_count,
        "remaining_count": total_count - paid_count,
        "short_url": f"https://rzp.io/i/{sub_id}",
        "has_scheduled_changes": False,
        "change_scheduled_at": None,
        "notes": [],
    }
    entity.update(extra)
    return entity


def razorpay_webhook(
    event: str,
    created_at: datetime,
    payment: Optional[Dict[str, Any]] = None,
    **entity_fields: Any,
) -> bytes:
    payload: Dict[str, Any] = {
        "entity": "event",
        "account_id": "acc_test",
        "event": event,
        "contains": ["subscription"],
        "payload": {"subscription": {"entity": razorpay_entity(**entity_fields)}},
        "created_at": epoch(created_at),
    }
    if payment is not None:
        payload["contains"].append("payment")
        payload["payload"]["payment"] = {"entity": payment}
    return json.dumps(payload).encode("utf-8")


def razorpay_payment(payment_id: str = "pay_001", amount: int = 49900, status: str = "captured",
                     created_at: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "id": payment_id,
        "entity": "payment",
        "amount": amount,
        "currency": "INR",
        "status": status,
        "method": "card",
        "created_at": epoch(created_at) if created_at else None,
    }


def play_push(
    notification_type: int,
    event_time: datetime,
    purchase_token: str = "purchase-token-1",
    product_id: str = "pro_monthly",
    message_id: str = "msg-1",
    package_name: str = PACKAGE_NAME,
) -> bytes:
    data = {
        "version": "1.0",
        "packageName": package_name,
        "eventTimeMillis": str(epoch_ms(event_time)),
        "subscriptionNotification": {
            "version": "1.0",
            "notificationType": notification_type,
            "purchaseToken": purchase_token,
            "subscriptionId": product_id,
        },
    }
    return pubsub_envelope(data, message_id)


def pubsub_envelope(data: Dict[str, Any], message_id: str = "msg-1") -> bytes:
    return json.dumps({
        "message": {
            "data": base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii"),
            "messageId": message_id,
            "publishTime": "2024-05-01T10:00:00.000Z",
        },
        "subscription": "projects/example/subscriptions/play-rtdn",
    }).encode("utf-8")


def x5c_header(certificates: List[x509.Certificate]) -> List[str]:
    return [base64.b64encode(c.public_bytes(serialization.Encoding.DER)).decode("ascii") for c in certificates]


def _certificate(subject: str, issuer: str, public_key, signing_key, ca: bool) -> x509.Certificate:
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer)]))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(signing_key, hashes.SHA256())
    )


class SigningChain:
    """Root -> intermediate -> leaf ES256 chain shaped like Apple's."""

    def __init__(self, root_name: str = "Test Apple Root CA"):
        self.root_key = ec.generate_private_key(ec.SECP256R1())
        self.intermediate_key = ec.generate_private_key(ec.SECP256R1())
        self.leaf_key = ec.generate_private_key(ec.SECP256R1())
        self.root = _certificate(root_name, root_name, self.root_key.public_key(), self.root_key, ca=True)
        self.intermediate = _certificate(
            "Test WWDR Intermediate", root_name, self.intermediate_key.public_key(), self.root_key, ca=True
        )
        self.leaf = _certificate(
            "Test App Store Signing", "Test WWDR Intermediate",
            self.leaf_key.public_key(), self.intermediate_key, ca=False,
        )

    def root_pem(self) -> bytes:
        return self.root.public_bytes(serialization.Encoding.PEM)

    def sign(self, claims: Dict[str, Any]) -> str:
        return jwt.encode(
            claims,
            self.leaf_key,
            algorithm="ES256",
            headers={"x5c": x5c_header([self.leaf, self.intermediate, self.root])},
        )


def service_account_json(client_email: str = "billing@example.iam.gserviceaccount.com") -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return json.dumps({
        "type": "service_account",
        "client_email": client_email,
        "private_key": pem,
        "private_key_id": "key-1",
    })


def canonical_event(
    event_type: CanonicalEventType,
    occurred_at: datetime,
    provider_event_id: Optional[str] = None,
    **fields: Any,
) -> CanonicalEvent:
    """Razorpay canonical event for sub_test123 unless overridden."""
    fields.setdefault("provider", ProviderType.RAZORPAY)
    fields.setdefault("provider_subscription_id", "sub_test123")
    return CanonicalEvent(
        event_type=event_type,
        provider_event_type=f"subscription.{event_type.value}",
        occurred_at=occurred_at,
        provider_event_id=provider_event_id,
        **fields,
    )
