from app.models.billing import BillingEvent, BillingEventType, ProcessedWebhookEvent
from app.models.profile import Profile
from app.models.subscription import LIVE_STATUSES, Subscription, SubscriptionStatus

__all__ = [
    "BillingEvent",
    "BillingEventType",
    "ProcessedWebhookEvent",
    "Profile",
    "Subscription",
    "SubscriptionStatus",
    "LIVE_STATUSES",
]
