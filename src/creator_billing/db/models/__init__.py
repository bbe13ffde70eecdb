"""
Database models for Creator Billing
"""
from .user import User, Profile, ProfilePurpose
from .request import Request, RequestStatus
from .subscription import Subscription, SubscriptionStatus, SubscriptionInterval
from .payment import Payment, PaymentStatus, PaymentType
from .webhook_event import WebhookEvent, WebhookEventStatus
from .activity import Activity, ActivityType

__all__ = [
    "User",
    "Profile",
    "ProfilePurpose",
    "Request",
    "RequestStatus",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionInterval",
    "Payment",
    "PaymentStatus",
    "PaymentType",
    "WebhookEvent",
    "WebhookEventStatus",
    "Activity",
    "ActivityType",
]
