"""
Base database model and mixins.

Column types are portable between PostgreSQL (production) and SQLite
(local development and tests).
"""

import re
import uuid
from datetime import datetime
from typing import Any, Dict, Optional
from enum import Enum as PyEnum

from sqlalchemy import JSON, Column, DateTime, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, declared_attr

from ..core.timeutils import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    @declared_attr.directive
    def __tablename__(cls) -> str:
        """
        Convert class name to snake_case for table name.
        Example: 'SubscriptionHistory' -> 'subscription_history'
        """
        return re.sub(r'(?<!^)(?=[A-Z])', '_', cls.__name__).lower()

    def to_dict(self, exclude: Optional[list] = None) -> Dict[str, Any]:
        """
        Convert model instance to a JSON friendly dictionary.

        Args:
            exclude: List of field names to exclude
        """
        exclude = exclude or []
        result = {}

        for column in self.__table__.columns:
            if column.key in exclude:
                continue
            value = getattr(self, column.key)
            if isinstance(value, datetime):
                result[column.key] = value.isoformat()
            elif isinstance(value, uuid.UUID):
                result[column.key] = str(value)
            elif isinstance(value, PyEnum):
                result[column.key] = value.value
            else:
                result[column.key] = value

        return result


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps (naive UTC)."""
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


def generate_uuid() -> uuid.UUID:
    return uuid.uuid4()


@event.listens_for(Base, 'before_update', propagate=True)
def set_updated_at(mapper, connection, target):
    """Keep updated_at current even when only JSON columns changed."""
    if hasattr(target, 'updated_at'):
        target.updated_at = utcnow()
