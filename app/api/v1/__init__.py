from app.api.v1 import billing, subscriptions

__all__ = [
    "billing",
    "subscriptions",
]
