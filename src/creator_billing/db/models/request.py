"""
Request model - a creator's payment request sent to a payer
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from datetime import datetime
import enum

from ..base import Base


class RequestStatus(str, enum.Enum):
    """Request status enum"""
    SENT = "sent"
    PENDING_PAYMENT = "pending_payment"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class Request(Base):
    """Payment request linked to a checkout session while payment is pending"""
    __tablename__ = "requests"

    id = Column(Integer, primary_key=True, index=True)
    creator_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    recipient_email = Column(String, nullable=True)
    recipient_name = Column(String, nullable=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String, nullable=False, default=RequestStatus.SENT.value, index=True)
    stripe_checkout_session_id = Column(String, nullable=True, index=True)
    responded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
