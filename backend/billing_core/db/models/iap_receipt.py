"""
iap_receipt.py - Store purchase receipts

Keeps the latest validation result for every store purchase a client
submitted. The raw receipt is kept (encrypted when a key is configured) so a
later store notification can be re-validated.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text, Uuid

from ..base import Base, JSONType, TimestampMixin, generate_uuid
from .billing_enums import ProviderType, ReceiptValidationStatus, enum_type


class IAPReceipt(Base, TimestampMixin):
    """
    Store receipt.

    Attributes:
        transaction_id: Google purchase token or Apple original transaction id
        receipt_data: Raw receipt, Fernet token when encryption is enabled
    """

    id = Column(Uuid, primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    subscription_id = Column(Uuid, ForeignKey("subscription.id"), nullable=True, index=True)
    provider = Column(enum_type(ProviderType), nullable=False)
    product_id = Column(String(255), nullable=False)
    transaction_id = Column(String(512), nullable=False, unique=True)
    receipt_data = Column(Text, nullable=False)

    validation_status = Column(
        enum_type(ReceiptValidationStatus),
        nullable=False,
        default=ReceiptValidationStatus.PENDING,
    )
    validation_response = Column(JSONType, nullable=False, default=dict)
    validated_at = Column(DateTime, nullable=True)

    purchase_date = Column(DateTime, nullable=True)
    expiry_date = Column(DateTime, nullable=True)
    is_trial = Column(Boolean, nullable=False, default=False)
    is_intro_offer = Column(Boolean, nullable=False, default=False)
    auto_renewing = Column(Boolean, nullable=False, default=False)
    environment = Column(String(20), nullable=True)

    def __repr__(self) -> str:
        return f"<IAPReceipt(provider={self.provider}, product={self.product_id}, status={self.validation_status})>"
