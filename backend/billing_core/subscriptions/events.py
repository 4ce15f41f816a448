"""
Canonical subscription events.

Every inbound signal (Razorpay webhook, Play notification, App Store
notification, store receipt, API call, sweep) is translated into a
CanonicalEvent before it reaches the state machine.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..db.models.billing_enums import EventSource, InvoiceStatus, ProviderType, SubscriptionStatus


class CanonicalEventType(str, Enum):
    CREATED = "created"
    AUTHENTICATED = "authenticated"
    ACTIVATED = "activated"
    CHARGED = "charged"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    PENDING = "pending"
    UPDATED = "updated"
    EXPIRED = "expired"


class PaymentInfo(BaseModel):
    """Charge attached to an event, captured as an invoice."""
    payment_id: str
    amount_minor: int
    currency: str
    status: InvoiceStatus
    method: Optional[str] = None
    paid_at: Optional[datetime] = None


class CanonicalEvent(BaseModel):
    """Provider agnostic subscription event."""
    provider: ProviderType
    event_type: CanonicalEventType
    provider_event_type: str
    provider_subscription_id: str
    occurred_at: datetime
    source: EventSource = EventSource.WEBHOOK

    # Delivery id supplied by the provider (Razorpay event id, Pub/Sub
    # message id, App Store notification UUID)
    provider_event_id: Optional[str] = None

    # Provider view of the subscription at event time
    provider_status: Optional[SubscriptionStatus] = None
    plan_id: Optional[str] = None
    product_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    next_billing_at: Optional[datetime] = None
    total_count: Optional[int] = None
    paid_count: Optional[int] = None
    remaining_count: Optional[int] = None
    amount_minor: Optional[int] = None
    currency: Optional[str] = None

    cancel_at_cycle_end: bool = False
    cancellation_reason: Optional[str] = None
    payment: Optional[PaymentInfo] = None
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def snapshot(self) -> Dict[str, Any]:
        """JSON safe copy stored with the ledger row."""
        return self.model_dump(mode="json", exclude_none=True)
