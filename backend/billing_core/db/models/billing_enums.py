"""
billing_enums.py - Shared enums for billing models
"""

from enum import Enum

from sqlalchemy import Enum as SQLEnum


class ProviderType(str, Enum):
    """Payment backends. The value is the variant tag used everywhere."""
    RAZORPAY = "razorpay"            # hosted checkout
    GOOGLE_PLAY = "google_play"      # android store
    APPLE_APPSTORE = "apple_appstore"  # ios store

    @property
    def is_store(self) -> bool:
        return self in (ProviderType.GOOGLE_PLAY, ProviderType.APPLE_APPSTORE)


class SubscriptionStatus(str, Enum):
    """Canonical subscription lifecycle states."""
    CREATED = "created"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    PENDING_CANCELLATION = "pending_cancellation"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.COMPLETED,
    SubscriptionStatus.EXPIRED,
})


class InvoiceStatus(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    PENDING = "pending"
    REFUNDED = "refunded"


class LedgerOutcome(str, Enum):
    """What a ledger row did to the subscription."""
    APPLIED = "applied"
    NOOP = "noop"
    STALE = "stale"
    CONFLICT = "conflict"


class EventSource(str, Enum):
    WEBHOOK = "webhook"
    RECEIPT = "receipt"
    API = "api"
    SWEEP = "sweep"
    RECONCILIATION = "reconciliation"


class WebhookProcessingStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    DEFERRED = "deferred"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class ReceiptValidationStatus(str, Enum):
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


def enum_type(enum_cls, length: int = 32) -> SQLEnum:
    """Store enums by value in a VARCHAR column on every backend."""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
