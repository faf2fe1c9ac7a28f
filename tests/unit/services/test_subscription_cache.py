"""Unit tests for the client subscription view model."""

import asyncio
import uuid
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import httpx
import pytest

from app.config.plans import PLANS, PlanType
from app.services.subscription_cache import (
    SubscriptionCache,
    SubscriptionView,
    api_loader,
    load_subscription_view,
)

NOW = datetime(2025, 3, 1, tzinfo=UTC)


class TestSubscriptionView:
    """Tests for derived access flags."""

    def test_active_trial_in_window(self):
        view = SubscriptionView(PlanType.TRIAL, "active", current_period_end=NOW + timedelta(days=2))
        assert view.is_in_trial_period(NOW) is True
        assert view.has_premium_access(NOW) is True

    def test_expired_trial(self):
        view = SubscriptionView(PlanType.TRIAL, "active", current_period_end=NOW - timedelta(seconds=1))
        assert view.is_in_trial_period(NOW) is False
        assert view.has_premium_access(NOW) is False

    def test_trial_without_period_end(self):
        view = SubscriptionView(PlanType.TRIAL, "active")
        assert view.is_in_trial_period(NOW) is False

    @pytest.mark.parametrize(
        "plan", [PlanType.STUDENT_MONTHLY, PlanType.STUDENT_YEARLY, PlanType.CLASSROOM]
    )
    def test_active_paid_plans_have_access(self, plan):
        assert SubscriptionView(plan, "active").has_premium_access(NOW) is True

    @pytest.mark.parametrize("status", ["past_due", "canceled", "incomplete", "trialing", "inactive"])
    def test_non_active_status_has_no_access(self, status):
        view = SubscriptionView(PlanType.STUDENT_YEARLY, status, current_period_end=NOW + timedelta(days=30))
        assert view.has_premium_access(NOW) is False

    def test_free_has_no_access(self):
        assert SubscriptionView(PlanType.FREE, "active").has_premium_access(NOW) is False

    def test_access_follows_plan_catalog(self):
        no_access = replace(PLANS[PlanType.CLASSROOM], premium_access=False)
        with patch.dict(PLANS, {PlanType.CLASSROOM: no_access}):
            assert SubscriptionView(PlanType.CLASSROOM, "active").has_premium_access(NOW) is False

    def test_from_payload(self):
        view = SubscriptionView.from_payload(
            {
                "plan_type": "student_yearly",
                "status": "active",
                "current_period_end": "2025-06-01T00:00:00+00:00",
                "cancel_at_period_end": True,
                "can_downgrade": False,
                "downgrade_available_at": "2025-06-01T00:00:00+00:00",
                "trial_used": True,
                "trial_used_at": None,
            }
        )
        assert view.plan_type == PlanType.STUDENT_YEARLY
        assert view.current_period_end == datetime(2025, 6, 1, tzinfo=UTC)
        assert view.cancel_at_period_end is True
        assert view.trial_used is True
        assert view.trial_used_at is None

    def test_from_payload_legacy_plan(self):
        view = SubscriptionView.from_payload({"plan_type": "student", "status": "active"})
        assert view.plan_type == PlanType.STUDENT_MONTHLY

    def test_from_records_without_subscription(self):
        view = SubscriptionView.from_records(None, None)
        assert view.plan_type == PlanType.FREE
        assert view.status == "inactive"
        assert view.trial_used is False


class TestLoadSubscriptionView:
    @pytest.mark.asyncio
    async def test_reads_store(self, store, db):
        profile = store.add_profile(trial_used=True, trial_used_at=NOW)
        store.add_subscription(profile.id, plan_type="trial", status="active", current_period_end=NOW)

        view = await load_subscription_view(db, profile.id)

        assert view.plan_type == PlanType.TRIAL
        assert view.trial_used is True
        assert view.trial_used_at == NOW

    @pytest.mark.asyncio
    async def test_unknown_user(self, store, db):
        view = await load_subscription_view(db, uuid.uuid4())
        assert view.plan_type == PlanType.FREE


class TestApiLoader:
    @pytest.mark.asyncio
    async def test_reads_subscription_endpoint(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/v1/billing/subscription"
            return httpx.Response(200, json={"plan_type": "student_monthly", "status": "active"})

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="https://api.test"
        ) as client:
            view = await api_loader(client)()

        assert view.plan_type == PlanType.STUDENT_MONTHLY

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(401))
        async with httpx.AsyncClient(transport=transport, base_url="https://api.test") as client:
            with pytest.raises(httpx.HTTPStatusError):
                await api_loader(client)()


class CountingLoader:
    """Loader that returns a fresh view per call and can be held open."""

    def __init__(self):
        self.calls = 0
        self.gate: asyncio.Event | None = None

    async def __call__(self) -> SubscriptionView:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return SubscriptionView(PlanType.STUDENT_MONTHLY, "active", trial_used=self.calls > 1)


class TestSubscriptionCache:
    """Tests for refresh coalescing, notifications and invalidation."""

    @pytest.mark.asyncio
    async def test_fetch_loads_once(self):
        loader = CountingLoader()
        cache = SubscriptionCache(loader)

        first = await cache.fetch()
        second = await cache.fetch()

        assert first is second
        assert loader.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_refresh_coalesced(self):
        loader = CountingLoader()
        loader.gate = asyncio.Event()
        cache = SubscriptionCache(loader)

        running = asyncio.create_task(cache.refresh())
        await asyncio.sleep(0)
        assert cache.loading is True

        assert await cache.refresh() is False

        loader.gate.set()
        assert await running is True
        assert loader.calls == 1
        assert cache.loading is False

    @pytest.mark.asyncio
    async def test_listeners_notified(self):
        cache = SubscriptionCache(CountingLoader())
        seen: list[SubscriptionView | None] = []
        unsubscribe = cache.subscribe(seen.append)

        await cache.refresh()
        cache.invalidate()
        unsubscribe()
        await cache.refresh()

        assert len(seen) == 2
        assert seen[0].plan_type == PlanType.STUDENT_MONTHLY
        assert seen[1] is None

    @pytest.mark.asyncio
    async def test_handle_change_refreshes(self):
        loader = CountingLoader()
        cache = SubscriptionCache(loader)
        await cache.fetch()

        await cache.handle_change({"eventType": "UPDATE"})

        assert loader.calls == 2
        assert cache.view.trial_used is True

    @pytest.mark.asyncio
    async def test_invalidate_clears_and_reloads(self):
        loader = CountingLoader()
        cache = SubscriptionCache(loader)
        await cache.fetch()

        cache.invalidate()
        assert cache.view is None

        await cache.fetch()
        assert loader.calls == 2

    @pytest.mark.asyncio
    async def test_refresh_dropped_after_invalidate(self):
        loader = CountingLoader()
        loader.gate = asyncio.Event()
        cache = SubscriptionCache(loader)

        running = asyncio.create_task(cache.force_refresh())
        await asyncio.sleep(0)
        cache.invalidate()
        loader.gate.set()
        await running

        assert cache.view is None
