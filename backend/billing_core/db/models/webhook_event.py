"""
webhook_event.py - Inbound provider event log

One row per distinct inbound event (keyed by provider and event key). Tracks
processing status, deferred follow-ups and dead-letter escalation.
"""

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint, Uuid

from ...core.timeutils import utcnow
from ..base import Base, JSONType, generate_uuid
from .billing_enums import ProviderType, WebhookProcessingStatus, enum_type


class WebhookEvent(Base):
    """Inbound webhook / store notification."""

    id = Column(Uuid, primary_key=True, default=generate_uuid)
    provider = Column(enum_type(ProviderType), nullable=False)
    event_key = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    provider_event_id = Column(String(255), nullable=True)
    payload = Column(JSONType, nullable=False, default=dict)

    processing_status = Column(
        enum_type(WebhookProcessingStatus),
        nullable=False,
        default=WebhookProcessingStatus.RECEIVED,
        index=True,
    )
    attempts = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    subscription_id = Column(Uuid, nullable=True, index=True)

    received_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "event_key", name="uq_webhook_event_provider_key"),
    )

    @property
    def is_finished(self) -> bool:
        return self.processing_status in (
            WebhookProcessingStatus.PROCESSED,
            WebhookProcessingStatus.DUPLICATE,
            WebhookProcessingStatus.IGNORED,
            WebhookProcessingStatus.DEAD_LETTER,
        )

    def __repr__(self) -> str:
        return f"<WebhookEvent(provider={self.provider}, type={self.event_type}, status={self.processing_status})>"
