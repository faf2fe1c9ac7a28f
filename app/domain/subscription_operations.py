"""Domain operations for Subscription model."""

import uuid as uuid_pkg
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.plans import PlanType
from app.models.billing import BillingEvent, BillingEventType
from app.models.subscription import Subscription, SubscriptionStatus

# Fields captured in audit log snapshots
_SNAPSHOT_FIELDS = (
    "plan_type",
    "status",
    "current_period_end",
    "cancel_at_period_end",
    "can_downgrade",
    "downgrade_available_at",
    "stripe_subscription_id",
)


def snapshot(subscription: Subscription | None) -> dict[str, Any] | None:
    """JSON-safe view of the fields that matter for the audit trail."""
    if subscription is None:
        return None
    values: dict[str, Any] = {}
    for field in _SNAPSHOT_FIELDS:
        value = getattr(subscription, field)
        values[field] = value.isoformat() if isinstance(value, datetime) else value
    return values


class SubscriptionOperations:
    """CRUD operations for Subscription model."""

    async def get_by_user(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        for_update: bool = False,
    ) -> Subscription | None:
        """Get a user's subscription, optionally locking the row."""
        statement = select(Subscription).where(Subscription.user_id == user_id)
        if for_update:
            statement = statement.with_for_update()
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_by_stripe_subscription(
        self,
        db: AsyncSession,
        stripe_subscription_id: str,
    ) -> Subscription | None:
        """Get subscription by Stripe subscription ID."""
        statement = select(Subscription).where(
            Subscription.stripe_subscription_id == stripe_subscription_id
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_or_create_default(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
    ) -> Subscription:
        """
        Get a user's subscription, creating the free/inactive row if missing.
        """
        subscription = await self.get_by_user(db, user_id)
        if subscription:
            return subscription

        subscription = Subscription(
            user_id=user_id,
            plan_type=PlanType.FREE.value,
            status=SubscriptionStatus.INACTIVE.value,
        )
        db.add(subscription)
        await db.flush()
        await db.refresh(subscription)
        return subscription

    async def update(
        self,
        db: AsyncSession,
        subscription: Subscription,
        updates: dict[str, Any],
    ) -> Subscription:
        """Update a subscription.

        All keys are applied, including None values (clearing Stripe
        references is a legitimate update).
        """
        for field, value in updates.items():
            setattr(subscription, field, value)
        db.add(subscription)
        await db.flush()
        await db.refresh(subscription)
        return subscription

    async def upsert(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        values: dict[str, Any],
    ) -> Subscription:
        """
        Create or update the user's single subscription row.

        Callers hold the user's mutation lock; the row is read FOR UPDATE so
        the read and the write are in one locked transaction.
        """
        subscription = await self.get_by_user(db, user_id, for_update=True)
        if subscription is None:
            subscription = Subscription(user_id=user_id, **values)
            db.add(subscription)
            await db.flush()
            await db.refresh(subscription)
            return subscription
        return await self.update(db, subscription, values)

    async def delete_for_stripe_subscription(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        stripe_subscription_id: str,
    ) -> bool:
        """
        Delete the user's row if it references this Stripe subscription.

        Returns False when there is no row or it tracks a different
        subscription (e.g. a newer one).
        """
        subscription = await self.get_by_user(db, user_id, for_update=True)
        if not subscription or subscription.stripe_subscription_id != stripe_subscription_id:
            return False
        await db.delete(subscription)
        await db.flush()
        return True

    async def log_event(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        event_type: BillingEventType,
        previous_value: dict[str, Any] | None = None,
        new_value: dict[str, Any] | None = None,
        description: str | None = None,
        stripe_event_id: str | None = None,
    ) -> BillingEvent:
        """Log a billing event for audit trail."""
        event = BillingEvent(
            user_id=user_id,
            event_type=event_type.value,
            previous_value=previous_value,
            new_value=new_value,
            description=description,
            stripe_event_id=stripe_event_id,
        )
        db.add(event)
        await db.flush()
        return event

    async def get_events(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        skip: int = 0,
        limit: int = 50,
    ) -> list[BillingEvent]:
        """Get billing events for a user, newest first."""
        statement = (
            select(BillingEvent)
            .where(BillingEvent.user_id == user_id)
            .order_by(BillingEvent.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())


subscription_ops = SubscriptionOperations()
