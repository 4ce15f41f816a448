"""
Payment provider implementations and registry.
"""

from .base import (
    CreateSubscriptionParams,
    ParsedReceipt,
    PaymentProvider,
    ProviderOperation,
    ProviderSubscriptionDetails,
    ProviderSubscriptionResponse,
    ReceiptPlatform,
    ReceiptValidationResult,
)
from .razorpay import RazorpayProvider
from .google_play import GooglePlayProvider
from .apple_appstore import AppleAppStoreProvider
from .registry import (
    ProviderRegistry,
    is_valid_provider_type,
)

__all__ = [
    "CreateSubscriptionParams",
    "ParsedReceipt",
    "PaymentProvider",
    "ProviderOperation",
    "ProviderSubscriptionDetails",
    "ProviderSubscriptionResponse",
    "ReceiptPlatform",
    "ReceiptValidationResult",
    "RazorpayProvider",
    "GooglePlayProvider",
    "AppleAppStoreProvider",
    "ProviderRegistry",
    "is_valid_provider_type",
]
