"""Billing models - audit log and processed webhook events."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import Column, DateTime, ForeignKey, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlmodel import Field, SQLModel


class BillingEventType(str, Enum):
    """Types of billing events for audit logging."""

    TRIAL_STARTED = "trial.started"
    TRIAL_ENDED = "trial.ended"
    CHECKOUT_STARTED = "checkout.started"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    PLAN_CHANGED = "plan.changed"
    CANCELLATION_SCHEDULED = "cancellation.scheduled"
    CANCELED = "subscription.canceled"
    DOWNGRADE_REJECTED = "downgrade.rejected"


class BillingEvent(SQLModel, table=True):
    """
    Billing event audit log.

    Tracks every subscription change for a user, whether it came from the
    user (trial, checkout, cancel) or from a Stripe webhook.
    """

    __tablename__ = "billing_events"

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
            index=True,
        ),
    )

    event_type: str = Field(
        sa_column=Column(String(50), nullable=False, index=True),
    )
    description: str | None = Field(default=None, max_length=500, nullable=True)

    # Change tracking
    previous_value: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSONB, nullable=True),
    )
    new_value: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSONB, nullable=True),
    )

    # Stripe reference (if applicable)
    stripe_event_id: str | None = Field(
        default=None,
        max_length=255,
        nullable=True,
        index=True,
    )

    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )


class ProcessedWebhookEvent(SQLModel, table=True):
    """
    Stripe event ids that have already been applied.

    Stripe delivers at-least-once; a redelivered event id is acknowledged
    without being applied again. Rows older than the retention window are
    pruned.
    """

    __tablename__ = "processed_webhook_events"

    event_id: str = Field(primary_key=True, max_length=255, nullable=False)
    event_type: str = Field(max_length=100, nullable=False)
    processed_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        index=True,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )
