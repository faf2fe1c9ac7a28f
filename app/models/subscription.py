"""Subscription model - one billing record per user."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, String, text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlmodel import Field, SQLModel

from app.config.plans import PlanType, resolve_plan_type


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states (Stripe's, plus 'inactive' for free users)."""

    ACTIVE = "active"
    TRIALING = "trialing"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    INACTIVE = "inactive"


# Statuses in which the user currently holds the plan
LIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})


class Subscription(SQLModel, table=True):
    """
    Subscription model - tracks a user's plan and billing status.

    Each user has exactly one subscription row (unique on user_id). Free users
    get a row with plan_type=FREE, status=INACTIVE on first read.

    Mutated by two sources:
    1. User intent: trial grant, plan transitions, cancellation
    2. Stripe truth: webhook events folded in by the reconciler
    """

    __tablename__ = "subscriptions"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    user_id: uuid_pkg.UUID = Field(
        sa_column=Column(
            PG_UUID(as_uuid=True),
            ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
    )

    # Plan info
    plan_type: str = Field(
        default=PlanType.FREE.value,
        sa_column=Column(String(30), nullable=False, server_default=PlanType.FREE.value),
    )
    status: str = Field(
        default=SubscriptionStatus.INACTIVE.value,
        sa_column=Column(
            String(30),
            nullable=False,
            server_default=SubscriptionStatus.INACTIVE.value,
        ),
    )

    # Billing period
    current_period_end: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    cancel_at_period_end: bool = Field(
        default=False,
        nullable=False,
        sa_column_kwargs={"server_default": text("false")},
    )

    # Downgrade gating (yearly plans wait for period end)
    can_downgrade: bool = Field(
        default=False,
        nullable=False,
        sa_column_kwargs={"server_default": text("false")},
    )
    downgrade_available_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )

    # Stripe references (null while on trial or free)
    stripe_customer_id: str | None = Field(default=None, max_length=255, nullable=True, index=True)
    stripe_subscription_id: str | None = Field(
        default=None, max_length=255, nullable=True, index=True
    )

    # Trial window (kept after converting to a paid plan)
    trial_started_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    trial_ended_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )

    # Timestamps
    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )
    updated_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"onupdate": text("now()")},
    )

    @property
    def plan(self) -> PlanType:
        return resolve_plan_type(self.plan_type)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES
