"""
Database models.
"""

from .billing_enums import (
    EventSource,
    InvoiceStatus,
    LedgerOutcome,
    ProviderType,
    ReceiptValidationStatus,
    SubscriptionStatus,
    TERMINAL_STATUSES,
    WebhookProcessingStatus,
)
from .subscription import Subscription, SubscriptionInvoice
from .subscription_history import SubscriptionHistory
from .webhook_event import WebhookEvent
from .iap_receipt import IAPReceipt

__all__ = [
    "EventSource",
    "InvoiceStatus",
    "LedgerOutcome",
    "ProviderType",
    "ReceiptValidationStatus",
    "SubscriptionStatus",
    "TERMINAL_STATUSES",
    "WebhookProcessingStatus",
    "Subscription",
    "SubscriptionInvoice",
    "SubscriptionHistory",
    "WebhookEvent",
    "IAPReceipt",
]
