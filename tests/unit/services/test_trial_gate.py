"""Unit tests for TrialGate - one free trial per user."""

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from app.config.plans import PLANS, PlanType
from app.core.exceptions import TrialDenied, TrialDeniedReason
from app.services.trial_gate import trial_gate

NOW = datetime(2025, 1, 10, 12, 0, tzinfo=UTC)


class TestRequestTrial:
    """Tests for granting the trial."""

    @pytest.mark.asyncio
    async def test_grants_trial_to_new_user(self, store, db):
        profile = store.add_profile(email="new@example.com")

        sub = await trial_gate.request_trial(db, profile.id, now=NOW)

        assert sub.plan_type == "trial"
        assert sub.status == "active"
        assert sub.current_period_end == NOW + timedelta(days=7)
        assert sub.trial_started_at == NOW
        assert profile.trial_used is True
        assert profile.trial_used_at == NOW
        assert profile.subscription_plan == "trial"
        assert profile.subscription_status == "active"
        assert store.subscription_ops.event_types() == ["trial.started"]

    @pytest.mark.asyncio
    async def test_creates_profile_on_first_call(self, store, db):
        profile = store.add_profile()
        del store.profile_ops.profiles[profile.id]

        await trial_gate.request_trial(db, profile.id, now=NOW)

        assert store.profile(profile.id).trial_used is True

    @pytest.mark.asyncio
    async def test_second_trial_denied_without_writes(self, store, db):
        profile = store.add_profile()
        await trial_gate.request_trial(db, profile.id, now=NOW)
        row_before = dict(store.subscription(profile.id).model_dump())
        sub_writes = store.subscription_ops.writes
        profile_writes = store.profile_ops.writes
        events = len(store.subscription_ops.events)

        with pytest.raises(TrialDenied) as exc_info:
            await trial_gate.request_trial(db, profile.id, now=NOW + timedelta(days=30))

        assert exc_info.value.reason == TrialDeniedReason.ALREADY_USED
        assert exc_info.value.used_at == NOW
        assert store.subscription(profile.id).model_dump() == row_before
        assert store.subscription_ops.writes == sub_writes
        assert store.profile_ops.writes == profile_writes
        assert len(store.subscription_ops.events) == events

    @pytest.mark.asyncio
    async def test_trial_used_survives_ended_trial(self, store, db):
        profile = store.add_profile(trial_used=True, trial_used_at=NOW - timedelta(days=60))
        store.add_subscription(profile.id, plan_type="free", status="inactive")

        with pytest.raises(TrialDenied) as exc_info:
            await trial_gate.request_trial(db, profile.id, now=NOW)

        assert exc_info.value.reason == TrialDeniedReason.ALREADY_USED
        assert store.subscription(profile.id).plan_type == "free"

    @pytest.mark.asyncio
    async def test_denied_while_holding_paid_plan(self, store, db):
        profile = store.add_profile()
        store.add_subscription(
            profile.id,
            plan_type="student_monthly",
            status="active",
            stripe_subscription_id="sub_1",
        )

        with pytest.raises(TrialDenied) as exc_info:
            await trial_gate.request_trial(db, profile.id, now=NOW)

        assert exc_info.value.reason == TrialDeniedReason.ACTIVE_SUBSCRIPTION
        assert profile.trial_used is False
        assert store.subscription(profile.id).plan_type == "student_monthly"

    @pytest.mark.asyncio
    async def test_lapsed_paid_plan_may_trial(self, store, db):
        profile = store.add_profile()
        store.add_subscription(
            profile.id,
            plan_type="student_monthly",
            status="canceled",
            stripe_subscription_id="sub_old",
            stripe_customer_id="cus_old",
        )

        sub = await trial_gate.request_trial(db, profile.id, now=NOW)

        assert sub.plan_type == "trial"
        assert sub.stripe_subscription_id is None
        assert sub.stripe_customer_id is None

    @pytest.mark.asyncio
    async def test_live_plan_without_premium_may_trial(self, store, db):
        profile = store.add_profile()
        store.add_subscription(
            profile.id, plan_type="classroom", status="active", stripe_subscription_id="sub_1"
        )
        no_access = replace(PLANS[PlanType.CLASSROOM], premium_access=False)

        with patch.dict(PLANS, {PlanType.CLASSROOM: no_access}):
            sub = await trial_gate.request_trial(db, profile.id, now=NOW)

        assert sub.plan_type == "trial"

    @pytest.mark.asyncio
    async def test_trial_length_follows_settings(self, store, db, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "trial_period_days", 14)
        profile = store.add_profile()

        sub = await trial_gate.request_trial(db, profile.id, now=NOW)

        assert sub.current_period_end == NOW + timedelta(days=14)
