"""
Webhook event model - idempotency marker for inbound provider events
"""
from sqlalchemy import Column, String, DateTime
from datetime import datetime
import enum

from ..base import Base


class WebhookEventStatus(str, enum.Enum):
    """Outcome recorded on the marker"""
    PROCESSED = "processed"
    IGNORED = "ignored"


class WebhookEvent(Base):
    """
    One row per provider event that was fully applied

    Keyed by the provider's event id; the row commits in the same
    transaction as the ledger mutations it guards.
    """
    __tablename__ = "webhook_events"

    event_id = Column(String, primary_key=True)
    provider = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=WebhookEventStatus.PROCESSED.value)
    processed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
