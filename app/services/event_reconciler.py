"""
Stripe webhook reconciliation.

Folds Stripe's view of a subscription into the local row. Incoming payloads
are parsed into a closed set of event variants first; anything not listed
is acknowledged as UnhandledEvent so new Stripe event types never fail
delivery.

Delivery is at-least-once. Event ids that were applied are recorded and a
redelivery is acknowledged as a duplicate without touching state.
"""

import asyncio
import logging
import uuid as uuid_pkg
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from stripe import StripeError

from app.config import settings
from app.config.plans import PlanType, is_downgrade, plan_for_price_id
from app.core.exceptions import ReconcileError
from app.core.locks import user_lock
from app.domain import profile_ops, subscription_ops, webhook_event_ops
from app.domain.subscription_operations import snapshot
from app.models.billing import BillingEventType
from app.models.profile import Profile
from app.models.subscription import Subscription, SubscriptionStatus
from app.services.stripe_service import (
    is_missing_resource,
    stripe_service,
    subscription_period_end,
    subscription_price_id,
)
from app.services.transition_engine import plan_state

logger = logging.getLogger(__name__)

SUBSCRIPTION_ACTIVATED_TYPES = frozenset(
    {"checkout.session.completed", "customer.subscription.created"}
)
CUSTOMER_EVENT_TYPES = frozenset(
    {"customer.created", "customer.updated", "customer.deleted"}
)


# ─────────────────────────────────────────────────────────────────────────────
# Event variants
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SubscriptionActivated:
    """A checkout completed or a subscription was created."""

    event_id: str
    event_type: str
    stripe_subscription_id: str
    user_id: uuid_pkg.UUID | None
    customer_id: str | None


@dataclass(frozen=True)
class SubscriptionChanged:
    """Stripe's snapshot of a subscription after an update."""

    event_id: str
    event_type: str
    stripe_subscription_id: str
    user_id: uuid_pkg.UUID | None
    customer_id: str | None
    status: str
    price_id: str | None
    current_period_end: datetime | None
    cancel_at_period_end: bool


@dataclass(frozen=True)
class SubscriptionEnded:
    event_id: str
    event_type: str
    stripe_subscription_id: str
    user_id: uuid_pkg.UUID | None
    customer_id: str | None


@dataclass(frozen=True)
class CustomerObserved:
    event_id: str
    event_type: str
    customer_id: str | None


@dataclass(frozen=True)
class UnhandledEvent:
    event_id: str
    event_type: str


ProcessorEvent = (
    SubscriptionActivated | SubscriptionChanged | SubscriptionEnded | CustomerObserved | UnhandledEvent
)


class ReconcileStatus(str, Enum):
    APPLIED = "applied"
    REJECTED_DOWNGRADE = "rejected_downgrade"
    OBSERVED = "observed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


@dataclass
class ReconcileResult:
    status: ReconcileStatus
    user_id: uuid_pkg.UUID | None = None
    detail: str | None = None


# ─────────────────────────────────────────────────────────────────────────────
# Parsing
# ─────────────────────────────────────────────────────────────────────────────


def _metadata_user_id(obj: dict[str, Any]) -> uuid_pkg.UUID | None:
    """user_id from a Stripe object's metadata, if present and well-formed."""
    value = (obj.get("metadata") or {}).get("user_id")
    if not value:
        return None
    try:
        return uuid_pkg.UUID(str(value))
    except ValueError:
        logger.warning(f"Ignoring malformed user_id in metadata: {value!r}")
        return None


def _object_id(value: Any) -> str | None:
    """Id of a field that Stripe sends either as an id or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def parse_event(raw: dict[str, Any]) -> ProcessorEvent:
    """Turn a verified Stripe event payload into an event variant."""
    event_id = raw["id"]
    event_type = raw["type"]
    obj: dict[str, Any] = (raw.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed":
        stripe_subscription_id = _object_id(obj.get("subscription"))
        if obj.get("mode") != "subscription" or not stripe_subscription_id:
            return UnhandledEvent(event_id, event_type)
        return SubscriptionActivated(
            event_id=event_id,
            event_type=event_type,
            stripe_subscription_id=stripe_subscription_id,
            user_id=_metadata_user_id(obj),
            customer_id=_object_id(obj.get("customer")),
        )

    if event_type == "customer.subscription.created":
        return SubscriptionActivated(
            event_id=event_id,
            event_type=event_type,
            stripe_subscription_id=obj["id"],
            user_id=_metadata_user_id(obj),
            customer_id=_object_id(obj.get("customer")),
        )

    if event_type == "customer.subscription.updated":
        return SubscriptionChanged(
            event_id=event_id,
            event_type=event_type,
            stripe_subscription_id=obj["id"],
            user_id=_metadata_user_id(obj),
            customer_id=_object_id(obj.get("customer")),
            status=obj.get("status") or SubscriptionStatus.ACTIVE.value,
            price_id=subscription_price_id(obj),
            current_period_end=subscription_period_end(obj),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        )

    if event_type == "customer.subscription.deleted":
        return SubscriptionEnded(
            event_id=event_id,
            event_type=event_type,
            stripe_subscription_id=obj["id"],
            user_id=_metadata_user_id(obj),
            customer_id=_object_id(obj.get("customer")),
        )

    if event_type in CUSTOMER_EVENT_TYPES:
        return CustomerObserved(event_id, event_type, customer_id=obj.get("id"))

    return UnhandledEvent(event_id, event_type)


# ─────────────────────────────────────────────────────────────────────────────
# Applying
# ─────────────────────────────────────────────────────────────────────────────


class EventReconciler:
    """Applies Stripe events to subscriptions and profiles."""

    async def apply_event(
        self,
        db: AsyncSession,
        event: ProcessorEvent,
        now: datetime | None = None,
    ) -> ReconcileResult:
        """
        Apply one event.

        Raises ReconcileError. retryable errors (database or Stripe
        failures) should make the webhook fail so Stripe redelivers.
        """
        now = now or datetime.now(UTC)

        try:
            if await webhook_event_ops.is_processed(db, event.event_id):
                logger.info(f"Skipping duplicate event {event.event_id} ({event.event_type})")
                return ReconcileResult(ReconcileStatus.DUPLICATE)

            result = await self._dispatch(db, event, now)

            await webhook_event_ops.mark_processed(db, event.event_id, event.event_type, now)
            retention = timedelta(days=settings.webhook_event_retention_days)
            await webhook_event_ops.prune(db, now - retention)
        except StripeError as e:
            raise ReconcileError(f"Stripe error while handling {event.event_type}: {e}") from e
        except SQLAlchemyError as e:
            raise ReconcileError(f"Database error while handling {event.event_type}: {e}") from e

        logger.info(f"Event {event.event_id} ({event.event_type}): {result.status.value}")
        return result

    async def _dispatch(
        self,
        db: AsyncSession,
        event: ProcessorEvent,
        now: datetime,
    ) -> ReconcileResult:
        if isinstance(event, SubscriptionActivated):
            return await self._handle_activated(db, event, now)
        elif isinstance(event, SubscriptionChanged):
            return await self._handle_changed(db, event, now)
        elif isinstance(event, SubscriptionEnded):
            return await self._handle_ended(db, event)
        elif isinstance(event, CustomerObserved):
            logger.info(f"Customer event {event.event_type} for {event.customer_id}")
            return ReconcileResult(ReconcileStatus.OBSERVED)
        else:
            logger.info(f"Unhandled event type: {event.event_type}")
            return ReconcileResult(ReconcileStatus.IGNORED)

    async def _handle_activated(
        self,
        db: AsyncSession,
        event: SubscriptionActivated,
        now: datetime,
    ) -> ReconcileResult:
        """
        A new subscription exists in Stripe.

        The user must be named in the event metadata. Period end and price
        are read from Stripe's current copy of the subscription.
        """
        user_id = event.user_id
        if user_id is None:
            raise ReconcileError(
                f"No user_id in metadata for {event.stripe_subscription_id}", retryable=False
            )
        profile = await self._require_profile(db, user_id)

        external = await asyncio.to_thread(
            stripe_service.retrieve_subscription, event.stripe_subscription_id
        )
        plan_type = self._require_plan(subscription_price_id(external), event)

        async with user_lock(user_id):
            current = await subscription_ops.get_by_user(db, user_id, for_update=True)
            if self._is_premature_downgrade(current, event.stripe_subscription_id, plan_type, now):
                assert current is not None
                return await self._reject_downgrade(db, current, event, plan_type)

            subscription = await self._write_subscription(
                db,
                profile,
                current,
                values={
                    **plan_state(plan_type, subscription_period_end(external)),
                    "status": external.get("status") or SubscriptionStatus.ACTIVE.value,
                    "cancel_at_period_end": bool(external.get("cancel_at_period_end")),
                    "stripe_customer_id": _object_id(external.get("customer")) or event.customer_id,
                    "stripe_subscription_id": event.stripe_subscription_id,
                },
                event_type=BillingEventType.SUBSCRIPTION_CREATED,
                stripe_event_id=event.event_id,
                now=now,
            )

        return ReconcileResult(
            ReconcileStatus.APPLIED, user_id, f"{subscription.plan_type}/{subscription.status}"
        )

    async def _handle_changed(
        self,
        db: AsyncSession,
        event: SubscriptionChanged,
        now: datetime,
    ) -> ReconcileResult:
        user_id = await self._resolve_user_id(db, event)
        if user_id is None:
            raise ReconcileError(
                f"Cannot resolve user for {event.stripe_subscription_id}", retryable=False
            )
        profile = await self._require_profile(db, user_id)
        plan_type = self._require_plan(event.price_id, event)

        async with user_lock(user_id):
            current = await subscription_ops.get_by_user(db, user_id, for_update=True)
            # A subscription we already refused must not overwrite the one being kept
            if self._is_premature_downgrade(current, event.stripe_subscription_id, plan_type, now):
                logger.info(
                    f"Ignoring update for rejected subscription {event.stripe_subscription_id}"
                )
                return ReconcileResult(
                    ReconcileStatus.REJECTED_DOWNGRADE, user_id, "update for rejected subscription"
                )

            subscription = await self._write_subscription(
                db,
                profile,
                current,
                values={
                    **plan_state(plan_type, event.current_period_end),
                    "status": event.status,
                    "cancel_at_period_end": event.cancel_at_period_end,
                    "stripe_customer_id": event.customer_id,
                    "stripe_subscription_id": event.stripe_subscription_id,
                },
                event_type=BillingEventType.SUBSCRIPTION_UPDATED,
                stripe_event_id=event.event_id,
                now=now,
            )

        return ReconcileResult(
            ReconcileStatus.APPLIED, user_id, f"{subscription.plan_type}/{subscription.status}"
        )

    async def _handle_ended(self, db: AsyncSession, event: SubscriptionEnded) -> ReconcileResult:
        """
        The Stripe subscription is gone.

        Deletes the local row if it tracks this subscription; once the user
        has no row left the profile falls back to free/inactive. Applying
        this twice ends in the same state.
        """
        user_id = await self._resolve_user_id(db, event)
        if user_id is None:
            logger.warning(f"No user found for deleted subscription {event.stripe_subscription_id}")
            return ReconcileResult(ReconcileStatus.IGNORED, detail="unknown subscription")

        profile = await profile_ops.get(db, user_id)
        if profile is None:
            logger.warning(f"Deleted subscription {event.stripe_subscription_id} for unknown user")
            return ReconcileResult(ReconcileStatus.IGNORED, user_id, "unknown user")

        async with user_lock(user_id):
            current = await subscription_ops.get_by_user(db, user_id, for_update=True)
            previous = snapshot(current)
            deleted = await subscription_ops.delete_for_stripe_subscription(
                db, user_id, event.stripe_subscription_id
            )

            if deleted or current is None:
                await profile_ops.reset_to_free(db, profile)
            if deleted:
                await subscription_ops.log_event(
                    db,
                    user_id,
                    BillingEventType.SUBSCRIPTION_DELETED,
                    previous_value=previous,
                    new_value=None,
                    description="Subscription ended in Stripe",
                    stripe_event_id=event.event_id,
                )
            else:
                logger.info(
                    f"Deleted subscription {event.stripe_subscription_id} is not tracked "
                    f"for user {user_id}; local row kept"
                )

        return ReconcileResult(ReconcileStatus.APPLIED, user_id, "deleted" if deleted else "no-op")

    # ─────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────

    async def _resolve_user_id(
        self,
        db: AsyncSession,
        event: SubscriptionChanged | SubscriptionEnded,
    ) -> uuid_pkg.UUID | None:
        """
        user_id from the subscription metadata, else the customer's
        metadata, else the local row tracking this subscription.
        """
        if event.user_id:
            return event.user_id

        if event.customer_id:
            try:
                customer = await asyncio.to_thread(
                    stripe_service.retrieve_customer, event.customer_id
                )
            except StripeError as e:
                if not is_missing_resource(e):
                    raise
                customer = {}
            if not customer.get("deleted"):
                user_id = _metadata_user_id(customer)
                if user_id:
                    return user_id

        local = await subscription_ops.get_by_stripe_subscription(db, event.stripe_subscription_id)
        return local.user_id if local else None

    async def _require_profile(self, db: AsyncSession, user_id: uuid_pkg.UUID) -> Profile:
        profile = await profile_ops.get(db, user_id)
        if profile is None:
            raise ReconcileError(f"Unknown user {user_id}", retryable=False)
        return profile

    def _require_plan(
        self,
        price_id: str | None,
        event: SubscriptionActivated | SubscriptionChanged,
    ) -> PlanType:
        plan_type = plan_for_price_id(price_id)
        if plan_type is None:
            raise ReconcileError(
                f"Unknown price {price_id!r} on {event.stripe_subscription_id}", retryable=False
            )
        return plan_type

    def _is_premature_downgrade(
        self,
        current: Subscription | None,
        stripe_subscription_id: str,
        plan_type: PlanType,
        now: datetime,
    ) -> bool:
        """
        True when a different subscription would replace a live plan with a
        lower one before the current period has ended.
        """
        if current is None or not current.is_live:
            return False
        if current.stripe_subscription_id == stripe_subscription_id:
            return False
        if not is_downgrade(current.plan, plan_type):
            return False
        period_end = current.current_period_end
        return period_end is not None and period_end > now

    async def _reject_downgrade(
        self,
        db: AsyncSession,
        current: Subscription,
        event: SubscriptionActivated,
        plan_type: PlanType,
    ) -> ReconcileResult:
        """Cancel the new Stripe subscription and keep the local row as is."""
        logger.warning(
            f"Rejecting premature downgrade for user {current.user_id}: "
            f"{current.plan_type} -> {plan_type.value} before {current.current_period_end}"
        )
        try:
            await asyncio.to_thread(stripe_service.cancel_now, event.stripe_subscription_id)
        except StripeError as e:
            if not is_missing_resource(e):
                raise

        await subscription_ops.log_event(
            db,
            current.user_id,
            BillingEventType.DOWNGRADE_REJECTED,
            previous_value=snapshot(current),
            new_value={
                "plan_type": plan_type.value,
                "stripe_subscription_id": event.stripe_subscription_id,
            },
            description="Downgrade before the end of the billing period was canceled",
            stripe_event_id=event.event_id,
        )
        return ReconcileResult(
            ReconcileStatus.REJECTED_DOWNGRADE,
            current.user_id,
            f"downgrade available at {current.downgrade_available_at}",
        )

    async def _write_subscription(
        self,
        db: AsyncSession,
        profile: Profile,
        current: Subscription | None,
        values: dict[str, Any],
        event_type: BillingEventType,
        stripe_event_id: str,
        now: datetime,
    ) -> Subscription:
        """Upsert the row from Stripe's data and mirror it onto the profile."""
        previous = snapshot(current)

        # Trial converted to a paid plan: close the trial window
        if current is not None and current.plan == PlanType.TRIAL:
            values = {**values, "trial_ended_at": now}
            await profile_ops.append_trial_history(db, profile, current.trial_started_at, now)
            await subscription_ops.log_event(
                db,
                profile.id,
                BillingEventType.TRIAL_ENDED,
                previous_value=previous,
                description="Trial converted to a paid plan",
                stripe_event_id=stripe_event_id,
            )

        subscription = await subscription_ops.upsert(db, profile.id, values)
        await profile_ops.mirror_subscription(
            db, profile, subscription.plan_type, subscription.status
        )
        await subscription_ops.log_event(
            db,
            profile.id,
            event_type,
            previous_value=previous,
            new_value=snapshot(subscription),
            stripe_event_id=stripe_event_id,
        )
        return subscription


# Singleton instance
event_reconciler = EventReconciler()
