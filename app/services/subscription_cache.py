"""
Client-side subscription view model.

A SubscriptionCache belongs to one signed-in session. It holds the last
known SubscriptionView, refreshes it on demand or when the database pushes a
change notification, and is invalidated on logout. Only one refresh runs at
a time; a refresh requested while another is in flight is a no-op.
"""

import asyncio
import logging
import uuid as uuid_pkg
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.plans import PlanType, get_plan, resolve_plan_type
from app.domain import profile_ops, subscription_ops
from app.models.profile import Profile
from app.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

SUBSCRIPTION_PATH = "/api/v1/billing/subscription"


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class SubscriptionView:
    """What the UI knows about the user's subscription."""

    plan_type: PlanType
    status: str
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    can_downgrade: bool = False
    downgrade_available_at: datetime | None = None
    trial_used: bool = False
    trial_used_at: datetime | None = None

    def is_in_trial_period(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        return (
            self.plan_type == PlanType.TRIAL
            and self.status == SubscriptionStatus.ACTIVE.value
            and self.current_period_end is not None
            and self.current_period_end > now
        )

    def has_premium_access(self, now: datetime | None = None) -> bool:
        if self.status != SubscriptionStatus.ACTIVE.value:
            return False
        if self.plan_type == PlanType.TRIAL:
            return self.is_in_trial_period(now)
        return get_plan(self.plan_type).premium_access

    @classmethod
    def from_records(cls, subscription: Subscription | None, profile: Profile | None) -> "SubscriptionView":
        trial_used = bool(profile and profile.trial_used)
        trial_used_at = profile.trial_used_at if profile else None
        if subscription is None:
            return cls(
                plan_type=PlanType.FREE,
                status=SubscriptionStatus.INACTIVE.value,
                trial_used=trial_used,
                trial_used_at=trial_used_at,
            )
        return cls(
            plan_type=subscription.plan,
            status=subscription.status,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            can_downgrade=subscription.can_downgrade,
            downgrade_available_at=subscription.downgrade_available_at,
            trial_used=trial_used,
            trial_used_at=trial_used_at,
        )

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SubscriptionView":
        """Build a view from the GET /billing/subscription response body."""
        return cls(
            plan_type=resolve_plan_type(payload.get("plan_type")),
            status=payload.get("status") or SubscriptionStatus.INACTIVE.value,
            current_period_end=_parse_datetime(payload.get("current_period_end")),
            cancel_at_period_end=bool(payload.get("cancel_at_period_end")),
            can_downgrade=bool(payload.get("can_downgrade")),
            downgrade_available_at=_parse_datetime(payload.get("downgrade_available_at")),
            trial_used=bool(payload.get("trial_used")),
            trial_used_at=_parse_datetime(payload.get("trial_used_at")),
        )


async def load_subscription_view(db: AsyncSession, user_id: uuid_pkg.UUID) -> SubscriptionView:
    """Server-side loader: read the user's rows and build the view."""
    subscription = await subscription_ops.get_by_user(db, user_id)
    profile = await profile_ops.get(db, user_id)
    return SubscriptionView.from_records(subscription, profile)


def api_loader(client: httpx.AsyncClient) -> Callable[[], Awaitable[SubscriptionView]]:
    """
    Loader that reads the view over HTTP.

    `client` must carry the session's base URL and bearer token.
    """

    async def load() -> SubscriptionView:
        response = await client.get(SUBSCRIPTION_PATH)
        response.raise_for_status()
        return SubscriptionView.from_payload(response.json())

    return load


Listener = Callable[[SubscriptionView | None], None]


class SubscriptionCache:
    """Session-owned cache of the current user's subscription."""

    def __init__(self, loader: Callable[[], Awaitable[SubscriptionView]]):
        self._loader = loader
        self._view: SubscriptionView | None = None
        self._loaded = False
        self._lock = asyncio.Lock()
        # Bumped on invalidate so a refresh that started before logout is dropped
        self._generation = 0
        self._listeners: list[Listener] = []

    @property
    def view(self) -> SubscriptionView | None:
        return self._view

    @property
    def loading(self) -> bool:
        return self._lock.locked()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call `listener` whenever the view changes. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def fetch(self) -> SubscriptionView | None:
        """Return the cached view, loading it on first use."""
        if not self._loaded:
            await self.force_refresh()
        return self._view

    async def refresh(self) -> bool:
        """
        Reload the view unless a refresh is already running.

        Returns False when the call was coalesced into the running refresh.
        """
        if self._lock.locked():
            logger.debug("Subscription refresh already in flight, skipping")
            return False
        await self.force_refresh()
        return True

    async def force_refresh(self) -> SubscriptionView | None:
        """Reload the view, waiting for any running refresh first."""
        async with self._lock:
            generation = self._generation
            view = await self._loader()
            if generation != self._generation:
                logger.debug("Cache invalidated during refresh, discarding result")
                return self._view
            self._set(view)
            return view

    async def handle_change(self, payload: dict[str, Any] | None = None) -> None:
        """Push notification from the database: the subscription row changed."""
        logger.debug(f"Subscription change notification: {(payload or {}).get('eventType')}")
        await self.refresh()

    def invalidate(self) -> None:
        """Forget the cached view (logout)."""
        self._generation += 1
        self._loaded = False
        self._set(None)

    def _set(self, view: SubscriptionView | None) -> None:
        self._view = view
        self._loaded = view is not None
        for listener in list(self._listeners):
            listener(view)
