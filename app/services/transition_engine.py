"""
Plan transitions and cancellation.

Decides, for a user's current subscription and a requested plan, whether the
change happens now (upgrade, in-place update), needs a hosted checkout, or is
refused (premature downgrade, contact-sales plan), and applies the result to
the subscription row, the profile mirror and the audit log.
"""

import asyncio
import logging
import uuid as uuid_pkg
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from stripe import StripeError

from app.config import settings
from app.config.plans import PlanType, get_plan, is_downgrade, is_upgrade
from app.core.exceptions import TransitionError, TransitionErrorReason
from app.core.locks import user_lock
from app.domain import profile_ops, subscription_ops
from app.domain.subscription_operations import snapshot
from app.models.billing import BillingEventType
from app.models.profile import Profile
from app.models.subscription import LIVE_STATUSES, Subscription, SubscriptionStatus
from app.services.stripe_service import (
    is_missing_resource,
    stripe_service,
    subscription_period_end,
)

logger = logging.getLogger(__name__)


def plan_state(plan_type: PlanType, period_end: datetime | None) -> dict[str, Any]:
    """
    Record fields derived from a plan and its period end.

    Monthly plans may be downgraded at any time; yearly plans only once the
    period they paid for has ended.
    """
    return {
        "plan_type": plan_type.value,
        "current_period_end": period_end,
        "can_downgrade": plan_type == PlanType.STUDENT_MONTHLY,
        "downgrade_available_at": period_end if plan_type == PlanType.STUDENT_YEARLY else None,
    }


def format_date(value: datetime) -> str:
    """Format a date the way it is shown to users, e.g. 'June 1, 2025'."""
    return f"{value:%B} {value.day}, {value.year}"


class TransitionKind(str, Enum):
    CHECKOUT_REQUIRED = "checkout_required"
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    ALREADY_ACTIVE = "already_active"
    UPDATED_IN_PLACE = "updated_in_place"


@dataclass
class TransitionOutcome:
    """Result of a plan change request."""

    kind: TransitionKind
    subscription: Subscription | None = None
    redirect_url: str | None = None  # Checkout page or success page


@dataclass
class CancellationOutcome:
    """Result of a cancellation request."""

    message: str
    subscription: Subscription
    cancel_at: datetime | None = None  # When access ends
    success: bool = True


class TransitionEngine:
    """User-initiated plan changes and cancellations."""

    # ─────────────────────────────────────────────────────────────────────
    # Plan changes
    # ─────────────────────────────────────────────────────────────────────

    async def request_transition(
        self,
        db: AsyncSession,
        user: Profile,
        target_plan: PlanType,
        now: datetime | None = None,
    ) -> TransitionOutcome:
        """
        Move the user towards `target_plan`.

        Raises TransitionError for refused or failed transitions. A refusal
        leaves the subscription row untouched.
        """
        now = now or datetime.now(UTC)
        target_config = get_plan(target_plan)

        if not target_config.self_serve:
            raise TransitionError(
                TransitionErrorReason.NOT_AUTOMATED,
                f"{target_config.display_name} plans are arranged through our team",
            )
        if not target_config.is_paid:
            raise TransitionError(
                TransitionErrorReason.INVALID_TARGET,
                f"{target_config.display_name} cannot be purchased",
            )

        async with user_lock(user.id):
            subscription = await subscription_ops.get_by_user(db, user.id, for_update=True)
            current = subscription.plan if subscription else PlanType.FREE

            if current == PlanType.CLASSROOM:
                raise TransitionError(
                    TransitionErrorReason.NOT_AUTOMATED,
                    "Classroom subscriptions are managed by our team",
                )

            if subscription is None or current == PlanType.FREE:
                return await self._start_checkout(db, user, subscription, target_plan)

            if current == target_plan and subscription.is_live:
                logger.info(f"User {user.id} already on {target_plan.value}")
                return TransitionOutcome(TransitionKind.ALREADY_ACTIVE, subscription)

            # Trial, or a paid plan that has lapsed: subscribe afresh
            if current == PlanType.TRIAL or not subscription.is_live:
                return await self._resubscribe(db, user, subscription, target_plan)

            if is_upgrade(current, target_plan):
                return await self._change_price(
                    db, user, subscription, target_plan, prorate=True, kind=TransitionKind.UPGRADED
                )

            if is_downgrade(current, target_plan):
                subscription = await self._refresh_downgrade_eligibility(db, subscription, now)
                if not subscription.can_downgrade:
                    logger.info(
                        f"Downgrade rejected for user {user.id}: {current.value} -> "
                        f"{target_plan.value}, available at {subscription.downgrade_available_at}"
                    )
                    raise TransitionError(
                        TransitionErrorReason.DOWNGRADE_NOT_YET,
                        "You can only downgrade at the end of your billing period",
                        available_at=subscription.downgrade_available_at,
                    )
                return await self._change_price(
                    db,
                    user,
                    subscription,
                    target_plan,
                    prorate=False,
                    kind=TransitionKind.DOWNGRADED,
                )

        raise TransitionError(
            TransitionErrorReason.INVALID_TARGET,
            f"Cannot change from {current.value} to {target_plan.value}",
        )

    async def _refresh_downgrade_eligibility(
        self,
        db: AsyncSession,
        subscription: Subscription,
        now: datetime,
    ) -> Subscription:
        """Open the downgrade window once the committed period has passed."""
        available_at = subscription.downgrade_available_at
        if subscription.can_downgrade or available_at is None or available_at > now:
            return subscription
        return await subscription_ops.update(db, subscription, {"can_downgrade": True})

    async def _start_checkout(
        self,
        db: AsyncSession,
        user: Profile,
        subscription: Subscription | None,
        target_plan: PlanType,
    ) -> TransitionOutcome:
        """
        Send the user to a hosted checkout page.

        The subscription row itself is written by the reconciler once
        Stripe confirms the checkout.
        """
        price_id = stripe_service.get_price_id(target_plan)
        if not price_id:
            raise TransitionError(
                TransitionErrorReason.INVALID_TARGET,
                f"No price configured for {target_plan.value}",
            )

        try:
            customer_id = await asyncio.to_thread(
                stripe_service.resolve_customer,
                user.id,
                user.email,
                subscription.stripe_customer_id if subscription else None,
            )
            url = await asyncio.to_thread(
                stripe_service.create_checkout_session,
                user_id=user.id,
                email=user.email,
                price_id=price_id,
                customer_id=customer_id,
                success_url=f"{settings.frontend_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{settings.frontend_url}/pricing",
            )
        except (StripeError, ValueError) as e:
            raise TransitionError(TransitionErrorReason.PROVIDER_ERROR, str(e)) from e

        if subscription is None:
            subscription = await subscription_ops.get_or_create_default(db, user.id)
        await subscription_ops.log_event(
            db,
            user.id,
            BillingEventType.CHECKOUT_STARTED,
            previous_value=snapshot(subscription),
            new_value={"plan_type": target_plan.value, "price_id": price_id},
            description=f"Checkout started for {get_plan(target_plan).display_name}",
        )
        logger.info(f"Checkout for user {user.id} -> {target_plan.value}")
        return TransitionOutcome(TransitionKind.CHECKOUT_REQUIRED, subscription, url)

    async def _resubscribe(
        self,
        db: AsyncSession,
        user: Profile,
        subscription: Subscription,
        target_plan: PlanType,
    ) -> TransitionOutcome:
        """
        Subscribe from a trial or a lapsed plan.

        Reuses the Stripe subscription left over from an earlier paid plan
        when Stripe still considers it live, otherwise starts a checkout.
        """
        stripe_subscription_id = subscription.stripe_subscription_id
        if stripe_subscription_id:
            try:
                external = await asyncio.to_thread(
                    stripe_service.retrieve_subscription, stripe_subscription_id
                )
            except StripeError as e:
                if not is_missing_resource(e):
                    raise TransitionError(TransitionErrorReason.PROVIDER_ERROR, str(e)) from e
                external = None
            if external and external.get("status") in LIVE_STATUSES:
                return await self._change_price(
                    db,
                    user,
                    subscription,
                    target_plan,
                    prorate=False,
                    kind=TransitionKind.UPDATED_IN_PLACE,
                )
        return await self._start_checkout(db, user, subscription, target_plan)

    async def _change_price(
        self,
        db: AsyncSession,
        user: Profile,
        subscription: Subscription,
        target_plan: PlanType,
        prorate: bool,
        kind: TransitionKind,
    ) -> TransitionOutcome:
        """Swap the price on the existing Stripe subscription and record it."""
        stripe_subscription_id = subscription.stripe_subscription_id
        if not stripe_subscription_id:
            raise TransitionError(
                TransitionErrorReason.RECORD_NOT_FOUND,
                "No payment subscription to update",
            )
        price_id = stripe_service.get_price_id(target_plan)
        if not price_id:
            raise TransitionError(
                TransitionErrorReason.INVALID_TARGET,
                f"No price configured for {target_plan.value}",
            )

        try:
            external = await asyncio.to_thread(
                stripe_service.change_subscription_price,
                stripe_subscription_id,
                price_id,
                user.id,
                prorate,
            )
        except StripeError as e:
            if is_missing_resource(e):
                raise TransitionError(
                    TransitionErrorReason.RECORD_NOT_FOUND,
                    "Subscription was not found in our payment system",
                ) from e
            raise TransitionError(TransitionErrorReason.PROVIDER_ERROR, str(e)) from e
        except ValueError as e:
            raise TransitionError(TransitionErrorReason.PROVIDER_ERROR, str(e)) from e

        period_end = subscription_period_end(external) or subscription.current_period_end
        updates = {
            **plan_state(target_plan, period_end),
            "status": external.get("status") or SubscriptionStatus.ACTIVE.value,
            "cancel_at_period_end": bool(external.get("cancel_at_period_end")),
        }
        subscription = await self._apply(
            db,
            user.id,
            subscription,
            updates,
            BillingEventType.PLAN_CHANGED,
            f"Plan changed to {get_plan(target_plan).display_name} ({kind.value})",
        )
        url = (
            f"{settings.frontend_url}/success?subscription_updated=true"
            f"&subscription_id={stripe_subscription_id}"
        )
        return TransitionOutcome(kind, subscription, url)

    # ─────────────────────────────────────────────────────────────────────
    # Cancellation
    # ─────────────────────────────────────────────────────────────────────

    async def request_cancellation(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        now: datetime | None = None,
    ) -> CancellationOutcome:
        """
        Cancel the user's paid subscription.

        Yearly plans are scheduled to end with the paid period; every other
        paid plan ends immediately. Calling this again on an already
        scheduled or ended subscription reports the existing state.
        """
        now = now or datetime.now(UTC)

        async with user_lock(user_id):
            subscription = await subscription_ops.get_by_user(db, user_id, for_update=True)
            if subscription is None or not subscription.stripe_subscription_id:
                raise TransitionError(
                    TransitionErrorReason.RECORD_NOT_FOUND,
                    "No paid subscription to cancel",
                )
            if subscription.plan == PlanType.CLASSROOM:
                raise TransitionError(
                    TransitionErrorReason.NOT_AUTOMATED,
                    "Classroom subscriptions are managed by our team",
                )

            if subscription.cancel_at_period_end and subscription.is_live:
                return self._already_scheduled(subscription)
            if subscription.status == SubscriptionStatus.CANCELED.value:
                return CancellationOutcome(
                    message="Your subscription has already been canceled.",
                    subscription=subscription,
                )
            if subscription.status == SubscriptionStatus.INACTIVE.value:
                return CancellationOutcome(
                    message="Your subscription is no longer active.",
                    subscription=subscription,
                )

            return await self._cancel_external(db, user_id, subscription, now)

    def _already_scheduled(self, subscription: Subscription) -> CancellationOutcome:
        period_end = subscription.current_period_end
        if period_end:
            message = (
                "Your subscription is already scheduled for cancellation. "
                f"Your access will continue until {format_date(period_end)}."
            )
        else:
            message = "Your subscription is already scheduled for cancellation."
        return CancellationOutcome(
            message=message,
            subscription=subscription,
            cancel_at=period_end,
        )

    async def _cancel_external(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        subscription: Subscription,
        now: datetime,
    ) -> CancellationOutcome:
        stripe_subscription_id = subscription.stripe_subscription_id
        assert stripe_subscription_id is not None

        try:
            external = await asyncio.to_thread(
                stripe_service.retrieve_subscription, stripe_subscription_id
            )
            external_status = external.get("status")

            if external_status == SubscriptionStatus.INCOMPLETE_EXPIRED.value:
                subscription = await self._apply(
                    db,
                    user_id,
                    subscription,
                    {"status": external_status},
                    BillingEventType.SUBSCRIPTION_UPDATED,
                    "Subscription had already expired in Stripe",
                )
                return CancellationOutcome(
                    message="Subscription was already expired and has been updated in our system.",
                    subscription=subscription,
                )

            if external_status not in LIVE_STATUSES:
                subscription = await self._apply(
                    db,
                    user_id,
                    subscription,
                    {"status": external_status},
                    BillingEventType.SUBSCRIPTION_UPDATED,
                    f"Subscription status synced from Stripe: {external_status}",
                )
                return CancellationOutcome(
                    message=f"Subscription status has been updated to {external_status}.",
                    subscription=subscription,
                )

            if subscription.plan == PlanType.STUDENT_YEARLY:
                scheduled = await asyncio.to_thread(
                    stripe_service.schedule_cancellation, stripe_subscription_id
                )
                period_end = (
                    subscription_period_end(scheduled)
                    or subscription_period_end(external)
                    or subscription.current_period_end
                )
                subscription = await self._apply(
                    db,
                    user_id,
                    subscription,
                    {
                        "status": SubscriptionStatus.ACTIVE.value,
                        "cancel_at_period_end": True,
                        "current_period_end": period_end,
                    },
                    BillingEventType.CANCELLATION_SCHEDULED,
                    "Cancellation scheduled for the end of the billing period",
                )
                message = "Your subscription has been scheduled for cancellation."
                if period_end:
                    message += f" Your access will continue until {format_date(period_end)}."
                return CancellationOutcome(
                    message=message,
                    subscription=subscription,
                    cancel_at=period_end,
                )

            await asyncio.to_thread(stripe_service.cancel_now, stripe_subscription_id)
            subscription = await self._apply(
                db,
                user_id,
                subscription,
                {"status": SubscriptionStatus.CANCELED.value, "cancel_at_period_end": False},
                BillingEventType.CANCELED,
                "Subscription canceled immediately",
            )
            return CancellationOutcome(
                message="Your subscription has been canceled. Your access will end immediately.",
                subscription=subscription,
                cancel_at=now,
            )

        except StripeError as e:
            if not is_missing_resource(e):
                raise TransitionError(TransitionErrorReason.PROVIDER_ERROR, str(e)) from e

        logger.info(f"Subscription {stripe_subscription_id} missing in Stripe, marking inactive")
        subscription = await self._apply(
            db,
            user_id,
            subscription,
            {"status": SubscriptionStatus.INACTIVE.value, "cancel_at_period_end": False},
            BillingEventType.CANCELED,
            "Subscription no longer exists in Stripe",
        )
        return CancellationOutcome(
            message=(
                "Subscription was not found in our payment system "
                "and has been marked as inactive."
            ),
            subscription=subscription,
            cancel_at=now,
        )

    # ─────────────────────────────────────────────────────────────────────
    # Shared
    # ─────────────────────────────────────────────────────────────────────

    async def _apply(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        subscription: Subscription,
        updates: dict[str, Any],
        event_type: BillingEventType,
        description: str,
    ) -> Subscription:
        """Write the row, mirror it onto the profile and log the change."""
        previous = snapshot(subscription)
        subscription = await subscription_ops.update(db, subscription, updates)

        profile = await profile_ops.get(db, user_id)
        if profile:
            await profile_ops.mirror_subscription(
                db, profile, subscription.plan_type, subscription.status
            )

        await subscription_ops.log_event(
            db,
            user_id,
            event_type,
            previous_value=previous,
            new_value=snapshot(subscription),
            description=description,
        )
        logger.info(f"Subscription for user {user_id}: {description}")
        return subscription


# Singleton instance
transition_engine = TransitionEngine()
