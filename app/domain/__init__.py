from app.domain.profile_operations import profile_ops
from app.domain.subscription_operations import subscription_ops
from app.domain.webhook_event_operations import webhook_event_ops

__all__ = [
    "profile_ops",
    "subscription_ops",
    "webhook_event_ops",
]
