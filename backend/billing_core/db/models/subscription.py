"""
subscription.py - Subscription and invoice models

A Subscription row is the locally cached view of one user's subscription at
one provider. It is only ever mutated by the reconciliation pipeline, and
terminal rows are kept forever for audit.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer,
    String, Text, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import relationship

from ..base import Base, JSONType, TimestampMixin, generate_uuid
from .billing_enums import (
    InvoiceStatus,
    ProviderType,
    SubscriptionStatus,
    TERMINAL_STATUSES,
    enum_type,
)


class Subscription(Base, TimestampMixin):
    """
    User subscription at a payment provider.

    Attributes:
        provider_subscription_id: Razorpay subscription id, Google purchase
            token or Apple original transaction id
        total_count: Billing cycles in the plan, None for unlimited
        last_event_at: Provider timestamp of the newest event applied; older
            events are recorded but never mutate the row
        version: Optimistic concurrency counter
    """

    id = Column(Uuid, primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(enum_type(ProviderType), nullable=False)
    provider_subscription_id = Column(String(512), nullable=False)
    provider_plan_id = Column(String(255), nullable=True)
    provider_customer_id = Column(String(255), nullable=True)
    plan_code = Column(String(100), nullable=True)
    product_id = Column(String(255), nullable=True)
    product_family = Column(String(100), nullable=False, default="default")

    status = Column(enum_type(SubscriptionStatus), nullable=False, index=True)

    # Billing period
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    next_billing_at = Column(DateTime, nullable=True)

    # Cycle counts
    total_count = Column(Integer, nullable=True)
    paid_count = Column(Integer, nullable=False, default=0)
    remaining_count = Column(Integer, nullable=True)

    # Pricing, minor units as reported by the provider
    amount_minor = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=True)

    # Cancellation
    cancel_at_cycle_end = Column(Boolean, nullable=False, default=False)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    provider_metadata = Column(JSONType, nullable=False, default=dict)
    last_event_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)

    history = relationship(
        "SubscriptionHistory",
        back_populates="subscription",
        order_by="SubscriptionHistory.id",
        lazy="noload",
    )
    invoices = relationship("SubscriptionInvoice", back_populates="subscription", lazy="noload")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("provider", "provider_subscription_id", name="uq_subscription_provider_id"),
        CheckConstraint("paid_count >= 0", name="check_paid_count_non_negative"),
        Index("idx_subscription_user_status", "user_id", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def active_until(self) -> Optional[datetime]:
        """Access end for subscriptions that are winding down."""
        if self.status == SubscriptionStatus.PENDING_CANCELLATION:
            return self.current_period_end
        return None

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, provider={self.provider}, status={self.status})>"


class SubscriptionInvoice(Base, TimestampMixin):
    """One successful or failed charge reported by a provider."""

    id = Column(Uuid, primary_key=True, default=generate_uuid)
    subscription_id = Column(Uuid, ForeignKey("subscription.id"), nullable=False, index=True)
    provider_payment_id = Column(String(255), nullable=False, unique=True)
    amount_minor = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    period_start = Column(DateTime, nullable=True)
    period_end = Column(DateTime, nullable=True)
    status = Column(enum_type(InvoiceStatus), nullable=False)
    payment_method = Column(String(50), nullable=True)
    paid_at = Column(DateTime, nullable=True)

    subscription = relationship("Subscription", back_populates="invoices")

    __table_args__ = (
        CheckConstraint("amount_minor >= 0", name="check_invoice_amount_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<SubscriptionInvoice(payment={self.provider_payment_id}, status={self.status})>"
