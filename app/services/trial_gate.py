"""Free trial eligibility - a one-time grant per user."""

import logging
import uuid as uuid_pkg
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.config.plans import PlanType, get_plan
from app.core.exceptions import TrialDenied, TrialDeniedReason
from app.core.locks import user_lock
from app.domain import profile_ops, subscription_ops
from app.domain.subscription_operations import snapshot
from app.models.billing import BillingEventType
from app.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


def _includes_premium(plan_type: PlanType) -> bool:
    """A plan that already grants premium access; a trial on top makes no sense."""
    return plan_type != PlanType.TRIAL and get_plan(plan_type).premium_access


class TrialGate:
    """Grants the free trial, at most once per user."""

    async def request_trial(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Start the user's free trial.

        Raises TrialDenied when the trial was already used (ever) or the user
        already holds a live paid subscription. Denials write nothing.

        The subscription row and the profile flag are written in the caller's
        transaction, so either both land or neither does.
        """
        now = now or datetime.now(UTC)

        async with user_lock(user_id):
            profile = await profile_ops.get_or_create(db, user_id)
            if profile.trial_used:
                logger.info(f"Trial denied for user {user_id}: already used")
                raise TrialDenied(TrialDeniedReason.ALREADY_USED, used_at=profile.trial_used_at)

            existing = await subscription_ops.get_by_user(db, user_id, for_update=True)
            if existing and existing.is_live and _includes_premium(existing.plan):
                logger.info(f"Trial denied for user {user_id}: holds {existing.plan_type}")
                raise TrialDenied(TrialDeniedReason.ACTIVE_SUBSCRIPTION)

            previous = snapshot(existing)
            period_end = now + timedelta(days=settings.trial_period_days)
            subscription = await subscription_ops.upsert(
                db,
                user_id,
                {
                    "plan_type": PlanType.TRIAL.value,
                    "status": SubscriptionStatus.ACTIVE.value,
                    "current_period_end": period_end,
                    "cancel_at_period_end": False,
                    "can_downgrade": False,
                    "downgrade_available_at": None,
                    "stripe_customer_id": None,
                    "stripe_subscription_id": None,
                    "trial_started_at": now,
                    "trial_ended_at": None,
                },
            )
            await profile_ops.mark_trial_used(db, profile, now)
            await subscription_ops.log_event(
                db,
                user_id,
                BillingEventType.TRIAL_STARTED,
                previous_value=previous,
                new_value=snapshot(subscription),
                description=f"Started {settings.trial_period_days}-day free trial",
            )

        logger.info(f"Trial granted to user {user_id} until {period_end.isoformat()}")
        return subscription


# Singleton instance
trial_gate = TrialGate()
