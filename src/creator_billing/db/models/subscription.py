"""
Subscription model
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..base import Base


class SubscriptionStatus(str, enum.Enum):
    """Subscription status enum"""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class SubscriptionInterval(str, enum.Enum):
    """Billing interval enum"""
    MONTH = "month"
    ONE_TIME = "one_time"


class Subscription(Base):
    """
    A subscriber's recurring (or one-time) support of a creator

    amount is always the creator-set base price, never the gross charged.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    creator_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    subscriber_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)  # Null for anonymous one-time
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    interval = Column(String, nullable=False, default=SubscriptionInterval.MONTH.value)
    status = Column(String, nullable=False, default=SubscriptionStatus.ACTIVE.value, index=True)
    current_period_end = Column(DateTime, nullable=True, index=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime, nullable=True)

    # Fee schedule: "split_v1" or None for legacy
    fee_model = Column(String, nullable=True)
    fee_mode = Column(String, nullable=True)

    ltv_cents = Column(Integer, default=0, nullable=False)

    # Provider handles (opaque)
    stripe_subscription_id = Column(String, nullable=True, unique=True, index=True)
    stripe_customer_id = Column(String, nullable=True)
    stripe_checkout_session_id = Column(String, nullable=True, unique=True, index=True)
    paystack_authorization_code = Column(String, nullable=True)
    paystack_customer_code = Column(String, nullable=True)
    paystack_subscription_code = Column(String, nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    creator = relationship("User", foreign_keys=[creator_id])
    subscriber = relationship("User", foreign_keys=[subscriber_id])
    payments = relationship("Payment", back_populates="subscription")
