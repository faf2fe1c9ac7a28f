"""Pydantic schemas for API request/response validation."""

from app.schemas.subscription import (
    BillingEventInfo,
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    PlanInfo,
    SubscriptionInfo,
    TrialResponse,
)

__all__ = [
    "BillingEventInfo",
    "CancelResponse",
    "CheckoutRequest",
    "CheckoutResponse",
    "PlanInfo",
    "SubscriptionInfo",
    "TrialResponse",
]
