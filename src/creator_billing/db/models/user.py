"""
User and Profile models
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..base import Base


class ProfilePurpose(str, enum.Enum):
    """Why a creator is collecting money; selects the platform fee rate"""
    PERSONAL = "personal"
    SERVICE = "service"


class User(Base):
    """Creator or subscriber account"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    display_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    profile = relationship("Profile", back_populates="user", uselist=False, cascade="all, delete-orphan")


class Profile(Base):
    """Creator profile: payout destination and fee-relevant purpose"""
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True, index=True)
    purpose = Column(String, nullable=False, default=ProfilePurpose.PERSONAL.value)
    currency = Column(String(3), nullable=False, default="USD")
    country_code = Column(String(2), nullable=True)

    # Payout destinations (provider-specific, opaque)
    paystack_subaccount_code = Column(String, nullable=True)
    stripe_account_id = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="profile")
