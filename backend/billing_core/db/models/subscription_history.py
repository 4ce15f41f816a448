"""
subscription_history.py - Append-only subscription ledger

Every event accepted for a subscription leaves exactly one row here, including
events that did not change anything (stale deliveries, audit-only events,
conflicts). Rows cannot be updated or deleted through the ORM.
"""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, Uuid, event
from sqlalchemy.orm import relationship

from ...core.exceptions import DatabaseError
from ...core.timeutils import utcnow
from ..base import Base, JSONType
from .billing_enums import EventSource, LedgerOutcome, SubscriptionStatus, enum_type


class SubscriptionHistory(Base):
    """Ledger row for one accepted subscription event."""

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Uuid, ForeignKey("subscription.id"), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)

    event_type = Column(String(50), nullable=False)
    provider_event_type = Column(String(100), nullable=True)
    previous_status = Column(enum_type(SubscriptionStatus), nullable=True)
    new_status = Column(enum_type(SubscriptionStatus), nullable=False)
    outcome = Column(enum_type(LedgerOutcome), nullable=False)
    source = Column(enum_type(EventSource), nullable=False)

    idempotency_key = Column(String(255), nullable=False, unique=True)
    provider_event_id = Column(String(255), nullable=True)

    payment_id = Column(String(255), nullable=True)
    payment_amount = Column(Integer, nullable=True)
    payment_status = Column(String(32), nullable=True)

    event_data = Column(JSONType, nullable=False, default=dict)
    notes = Column(Text, nullable=True)

    occurred_at = Column(DateTime, nullable=False)
    recorded_at = Column(DateTime, nullable=False, default=utcnow)

    subscription = relationship("Subscription", back_populates="history")

    __table_args__ = (
        Index("idx_subscription_history_subscription", "subscription_id", "id"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionHistory(event={self.event_type}, "
            f"{self.previous_status}->{self.new_status}, outcome={self.outcome})>"
        )


@event.listens_for(SubscriptionHistory, "before_update")
def _reject_history_update(mapper, connection, target):
    raise DatabaseError("Subscription history rows are immutable", operation="update")


@event.listens_for(SubscriptionHistory, "before_delete")
def _reject_history_delete(mapper, connection, target):
    raise DatabaseError("Subscription history rows are immutable", operation="delete")
