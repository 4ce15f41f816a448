"""
API schemas.
"""

from .subscription import (
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    NextBilling,
    ReceiptSubmissionRequest,
    ReceiptSubmissionResponse,
    SubscriptionDetailResponse,
    SubscriptionOut,
)
from .webhook import ProviderHealth, ProvidersHealthResponse, WebhookAck

__all__ = [
    "CancelSubscriptionRequest",
    "CancelSubscriptionResponse",
    "CreateSubscriptionRequest",
    "CreateSubscriptionResponse",
    "NextBilling",
    "ReceiptSubmissionRequest",
    "ReceiptSubmissionResponse",
    "SubscriptionDetailResponse",
    "SubscriptionOut",
    "ProviderHealth",
    "ProvidersHealthResponse",
    "WebhookAck",
]
