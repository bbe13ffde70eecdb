"""
Activity model - append-only audit log of user-visible domain events
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, event
from datetime import datetime
import enum

from ..base import Base, JSONType


class ActivityType(str, enum.Enum):
    """Activity type enum"""
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    REQUEST_ACCEPTED = "request_accepted"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    SUBSCRIPTION_CANCEL_FEEDBACK = "subscription_cancel_feedback"
    FEE_MISMATCH_ALERT = "fee_mismatch_alert"


class Activity(Base):
    """Audit record; immutable once written"""
    __tablename__ = "activities"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False, index=True)
    payload = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


@event.listens_for(Activity, "before_update")
def _reject_activity_update(mapper, connection, target):
    raise ValueError(f"Activity {target.id} is append-only")
