"""
Payment model - one row per charge attempt
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..base import Base, JSONType


class PaymentStatus(str, enum.Enum):
    """Payment status enum"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentType(str, enum.Enum):
    """Payment type enum"""
    ONE_TIME = "one_time"
    RECURRING = "recurring"


class Payment(Base):
    """
    Charge attempt ledger entry

    Failed attempts are kept as retry-counting evidence and never rewritten.
    Refunds are separate rows with negated amounts and status refunded.
    Under the split model gross_cents == net_cents + fee_cents.
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)
    creator_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    subscriber_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    amount_cents = Column(Integer, nullable=False)  # Creator's base price
    gross_cents = Column(Integer, nullable=True)
    net_cents = Column(Integer, nullable=True)
    fee_cents = Column(Integer, nullable=False, default=0)
    subscriber_fee_cents = Column(Integer, nullable=True)  # Split model only
    creator_fee_cents = Column(Integer, nullable=True)  # Split model only
    currency = Column(String(3), nullable=False, default="USD")

    type = Column(String, nullable=False, default=PaymentType.ONE_TIME.value)
    status = Column(String, nullable=False, index=True)
    fee_model = Column(String, nullable=True)
    fee_mode = Column(String, nullable=True)

    provider = Column(String, nullable=True)  # 'stripe', 'paystack'
    external_reference = Column(String, nullable=True, unique=True, index=True)  # Event id or transaction reference
    processor_charge_ref = Column(String, nullable=True, index=True)  # Processor charge id, shared by a charge and its refunds
    failure_reason = Column(Text, nullable=True)
    payment_metadata = Column("metadata", JSONType, nullable=True)

    occurred_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Relationships
    subscription = relationship("Subscription", back_populates="payments")
