"""
Database module for Creator Billing
"""
from .engine import engine, SessionLocal, get_db, init_db
from .base import Base
from .models import (
    User,
    Profile,
    Request,
    Subscription,
    Payment,
    WebhookEvent,
    Activity,
)

__all__ = [
    "engine",
    "SessionLocal",
    "get_db",
    "init_db",
    "Base",
    "User",
    "Profile",
    "Request",
    "Subscription",
    "Payment",
    "WebhookEvent",
    "Activity",
]
