"""Pydantic schemas for subscription and billing endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from app.config.plans import PlanType, get_plan
from app.models.subscription import SubscriptionStatus
from app.services.subscription_cache import SubscriptionView


class PlanInfo(BaseModel):
    """Public plan information."""

    plan_type: str
    display_name: str
    price_cents: int
    billing_interval: str  # "none", "week", "month", "year"
    self_serve: bool  # False = contact sales
    price_id: str | None = None  # Stripe price to send to /checkout


class SubscriptionInfo(BaseModel):
    """The current user's subscription, as shown in the UI."""

    plan_type: str
    display_name: str
    status: str
    current_period_end: datetime | None
    cancel_at_period_end: bool
    can_downgrade: bool
    downgrade_available_at: datetime | None
    # Next automatic renewal; None when the plan won't renew
    renews_at: datetime | None
    trial_used: bool
    trial_used_at: datetime | None
    is_in_trial_period: bool
    has_premium_access: bool

    @classmethod
    def from_view(cls, view: SubscriptionView, now: datetime | None = None) -> "SubscriptionInfo":
        renews = (
            view.plan_type in (PlanType.STUDENT_MONTHLY, PlanType.STUDENT_YEARLY)
            and view.status == SubscriptionStatus.ACTIVE.value
            and not view.cancel_at_period_end
        )
        return cls(
            plan_type=view.plan_type.value,
            display_name=get_plan(view.plan_type).display_name,
            status=view.status,
            current_period_end=view.current_period_end,
            cancel_at_period_end=view.cancel_at_period_end,
            can_downgrade=view.can_downgrade,
            downgrade_available_at=view.downgrade_available_at,
            renews_at=view.current_period_end if renews else None,
            trial_used=view.trial_used,
            trial_used_at=view.trial_used_at,
            is_in_trial_period=view.is_in_trial_period(now),
            has_premium_access=view.has_premium_access(now),
        )


class CheckoutRequest(BaseModel):
    """Request to subscribe to (or switch to) the plan behind a Stripe price."""

    price_id: str | None = None


class CheckoutResponse(BaseModel):
    """Where to send the user next."""

    url: str | None
    outcome: str  # checkout_required, upgraded, downgraded, already_active, updated_in_place


class CancelResponse(BaseModel):
    """Response after a cancellation request."""

    success: bool
    message: str
    cancel_at: datetime | None = None  # When access ends


class BillingEventInfo(BaseModel):
    """One audit log entry."""

    event_type: str
    description: str | None
    previous_value: dict[str, Any] | None
    new_value: dict[str, Any] | None
    created_at: datetime


class TrialResponse(BaseModel):
    """Response after starting a trial."""

    success: bool
    subscription: SubscriptionInfo
