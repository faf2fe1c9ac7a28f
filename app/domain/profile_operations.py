"""Domain operations for Profile model."""

import uuid as uuid_pkg
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.plans import PlanType
from app.models.profile import Profile
from app.models.subscription import SubscriptionStatus


class ProfileOperations:
    """Operations for user profiles and their subscription mirror."""

    async def get(self, db: AsyncSession, user_id: uuid_pkg.UUID) -> Profile | None:
        """Get a profile by user ID."""
        statement = select(Profile).where(Profile.id == user_id)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_or_create(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        email: str | None = None,
    ) -> Profile:
        """Get profile, creating it on first authenticated call."""
        profile = await self.get(db, user_id)
        if profile:
            if email and profile.email != email:
                profile.email = email
                db.add(profile)
                await db.flush()
            return profile

        profile = Profile(id=user_id, email=email)
        db.add(profile)
        await db.flush()
        await db.refresh(profile)
        return profile

    async def update(
        self,
        db: AsyncSession,
        profile: Profile,
        updates: dict[str, Any],
    ) -> Profile:
        """Apply updates to a profile."""
        for field, value in updates.items():
            setattr(profile, field, value)
        db.add(profile)
        await db.flush()
        await db.refresh(profile)
        return profile

    async def mirror_subscription(
        self,
        db: AsyncSession,
        profile: Profile,
        plan_type: str,
        status: str,
    ) -> Profile:
        """Copy the subscription's plan and status onto the profile."""
        return await self.update(
            db,
            profile,
            {"subscription_plan": plan_type, "subscription_status": status},
        )

    async def mark_trial_used(
        self,
        db: AsyncSession,
        profile: Profile,
        now: datetime,
    ) -> Profile:
        """Record the trial grant. trial_used is never reset."""
        return await self.update(
            db,
            profile,
            {
                "subscription_plan": PlanType.TRIAL.value,
                "subscription_status": SubscriptionStatus.ACTIVE.value,
                "trial_used": True,
                "trial_used_at": now,
            },
        )

    async def append_trial_history(
        self,
        db: AsyncSession,
        profile: Profile,
        started_at: datetime | None,
        ended_at: datetime,
        status: str = "completed",
    ) -> Profile:
        """Append a finished trial window to the profile's history."""
        entry = {
            "started_at": started_at.isoformat() if started_at else None,
            "ended_at": ended_at.isoformat(),
            "status": status,
        }
        # Reassign so the JSONB column is flagged dirty
        history = [*(profile.trial_history or []), entry]
        return await self.update(db, profile, {"trial_history": history})

    async def reset_to_free(self, db: AsyncSession, profile: Profile) -> Profile:
        """Reset the subscription mirror after the subscription ended."""
        return await self.mirror_subscription(
            db,
            profile,
            PlanType.FREE.value,
            SubscriptionStatus.INACTIVE.value,
        )


profile_ops = ProfileOperations()
