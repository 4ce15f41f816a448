"""
Request and response models for subscription management.
"""

from datetime import datetime
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ..db.models.billing_enums import ProviderType, SubscriptionStatus
from ..integrations.payment_providers.base import ReceiptPlatform


class SubscriptionOut(BaseModel):
    """Subscription as shown to its owner."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider: ProviderType
    provider_subscription_id: str
    plan_code: Optional[str] = None
    product_id: Optional[str] = None
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    next_billing_at: Optional[datetime] = None
    total_count: Optional[int] = None
    paid_count: int = 0
    remaining_count: Optional[int] = None
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    cancel_at_cycle_end: bool = False
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    active_until: Optional[datetime] = None
    created_at: Optional[datetime] = None


class NextBilling(BaseModel):
    date: datetime
    amount: Optional[int] = None
    currency: Optional[str] = None


class CreateSubscriptionRequest(BaseModel):
    plan_code: str = Field(..., min_length=1, max_length=100)
    notes: Dict[str, str] = Field(default_factory=dict)


class CreateSubscriptionResponse(BaseModel):
    success: bool = True
    subscription_id: UUID
    provider_subscription_id: str
    authorization_url: Optional[str] = None
    amount: int
    currency: str
    status: SubscriptionStatus
    message: str


class CancelSubscriptionRequest(BaseModel):
    cancel_at_cycle_end: bool = True
    reason: Optional[str] = Field(None, max_length=500)


class CancelSubscriptionResponse(BaseModel):
    success: bool = True
    subscription_id: UUID
    status: SubscriptionStatus
    cancelled_at: Optional[datetime] = None
    active_until: Optional[datetime] = None
    message: str


class SubscriptionDetailResponse(BaseModel):
    success: bool = True
    subscription: Optional[SubscriptionOut] = None
    next_billing: Optional[NextBilling] = None
    can_cancel: bool = False
    message: Optional[str] = None


class ReceiptSubmissionRequest(BaseModel):
    receipt: str = Field(..., min_length=3, description="productId:purchaseToken")
    platform: ReceiptPlatform


class ReceiptSubmissionResponse(BaseModel):
    success: bool = True
    is_valid: bool
    status: SubscriptionStatus
    subscription: Optional[SubscriptionOut] = None
    is_trial: bool = False
    is_intro_offer: bool = False
    auto_renewing: bool = False
    expires_at: Optional[datetime] = None
    message: str
