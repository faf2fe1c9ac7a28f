"""Unit tests for TransitionEngine.request_cancellation."""

import asyncio
import threading
from datetime import UTC, datetime
from unittest.mock import patch

import pytest
from stripe import InvalidRequestError, StripeError

from app.core.exceptions import TransitionError, TransitionErrorReason
from app.services.transition_engine import transition_engine

from tests.helpers.mock_factories import PRICE_YEARLY, make_stripe_subscription

NOW = datetime(2025, 3, 1, 9, 30, tzinfo=UTC)
JUNE_1 = datetime(2025, 6, 1, tzinfo=UTC)


@pytest.fixture
def stripe_mock():
    with patch("app.services.transition_engine.stripe_service") as mock_service:
        mock_service.retrieve_subscription.return_value = make_stripe_subscription("sub_1")
        yield mock_service


def _add_paid(store, plan_type="student_monthly", **fields):
    user = store.add_profile(subscription_plan=plan_type, subscription_status="active")
    values = {
        "plan_type": plan_type,
        "status": "active",
        "current_period_end": JUNE_1,
        "stripe_subscription_id": "sub_1",
    }
    values.update(fields)
    store.add_subscription(user.id, **values)
    return user


class TestCancelYearly:
    """Yearly plans keep access until the paid period ends."""

    @pytest.mark.asyncio
    async def test_schedules_at_period_end(self, store, db, stripe_mock):
        user = _add_paid(store, "student_yearly")
        stripe_mock.retrieve_subscription.return_value = make_stripe_subscription(
            "sub_1", price_id=PRICE_YEARLY, period_end=JUNE_1
        )
        stripe_mock.schedule_cancellation.return_value = make_stripe_subscription(
            "sub_1", price_id=PRICE_YEARLY, period_end=JUNE_1, cancel_at_period_end=True
        )

        outcome = await transition_engine.request_cancellation(db, user.id, now=NOW)

        assert outcome.success is True
        assert outcome.cancel_at == JUNE_1
        assert outcome.message == (
            "Your subscription has been scheduled for cancellation. "
            "Your access will continue until June 1, 2025."
        )
        stripe_mock.schedule_cancellation.assert_called_once_with("sub_1")
        stripe_mock.cancel_now.assert_not_called()
        sub = store.subscription(user.id)
        assert sub.status == "active"
        assert sub.cancel_at_period_end is True
        assert store.subscription_ops.event_types() == ["cancellation.scheduled"]

    @pytest.mark.asyncio
    async def test_second_request_reports_schedule(self, store, db, stripe_mock):
        user = _add_paid(store, "student_yearly", cancel_at_period_end=True)

        outcome = await transition_engine.request_cancellation(db, user.id, now=NOW)

        assert "already scheduled for cancellation" in outcome.message
        assert "June 1, 2025" in outcome.message
        assert outcome.cancel_at == JUNE_1
        stripe_mock.retrieve_subscription.assert_not_called()
        assert store.subscription_ops.events == []


class TestCancelImmediately:
    """Monthly plans end straight away."""

    @pytest.mark.asyncio
    async def test_monthly_canceled_now(self, store, db, stripe_mock):
        user = _add_paid(store)

        outcome = await transition_engine.request_cancellation(db, user.id, now=NOW)

        assert outcome.message == (
            "Your subscription has been canceled. Your access will end immediately."
        )
        assert outcome.cancel_at == NOW
        stripe_mock.cancel_now.assert_called_once_with("sub_1")
        assert store.subscription(user.id).status == "canceled"
        assert user.subscription_status == "canceled"
        assert store.subscription_ops.event_types() == ["subscription.canceled"]

    @pytest.mark.asyncio
    async def test_already_canceled(self, store, db, stripe_mock):
        user = _add_paid(store, status="canceled")

        outcome = await transition_engine.request_cancellation(db, user.id, now=NOW)

        assert outcome.message == "Your subscription has already been canceled."
        stripe_mock.cancel_now.assert_not_called()

    @pytest.mark.asyncio
    async def test_already_inactive(self, store, db, stripe_mock):
        user = _add_paid(store, status="inactive")

        outcome = await transition_engine.request_cancellation(db, user.id, now=NOW)

        assert outcome.message == "Your subscription is no longer active."
        stripe_mock.retrieve_subscription.assert_not_called()
        stripe_mock.cancel_now.assert_not_called()
        assert store.subscription_ops.events == []


class TestExternalState:
    """The processor's view wins when it disagrees with the record."""

    @pytest.mark.asyncio
    async def test_incomplete_expired(self, store, db, stripe_mock):
        user = _add_paid(store)
        stripe_mock.retrieve_subscription.return_value = make_stripe_subscription(
            "sub_1", status="incomplete_expired"
        )

        outcome = await transition_engine.request_cancellation(db, user.id, now=NOW)

        assert outcome.message == (
            "Subscription was already expired and has been updated in our system."
        )
        assert store.subscription(user.id).status == "incomplete_expired"
        stripe_mock.cancel_now.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_dead_status_synced(self, store, db, stripe_mock):
        user = _add_paid(store)
        stripe_mock.retrieve_subscription.return_value = make_stripe_subscription(
            "sub_1", status="canceled"
        )

        outcome = await transition_engine.request_cancellation(db, user.id, now=NOW)

        assert outcome.message == "Subscription status has been updated to canceled."
        assert store.subscription(user.id).status == "canceled"

    @pytest.mark.asyncio
    async def test_missing_in_processor_marks_inactive(self, store, db, stripe_mock):
        user = _add_paid(store)
        stripe_mock.retrieve_subscription.side_effect = InvalidRequestError(
            "No such subscription", "id", code="resource_missing"
        )

        outcome = await transition_engine.request_cancellation(db, user.id, now=NOW)

        assert outcome.message == (
            "Subscription was not found in our payment system and has been marked as inactive."
        )
        assert store.subscription(user.id).status == "inactive"
        assert user.subscription_status == "inactive"

    @pytest.mark.asyncio
    async def test_provider_error(self, store, db, stripe_mock):
        user = _add_paid(store)
        stripe_mock.cancel_now.side_effect = StripeError("API down")

        with pytest.raises(TransitionError) as exc_info:
            await transition_engine.request_cancellation(db, user.id, now=NOW)

        assert exc_info.value.reason == TransitionErrorReason.PROVIDER_ERROR
        assert store.subscription(user.id).status == "active"


class TestRefusals:
    @pytest.mark.asyncio
    async def test_no_record(self, store, db, stripe_mock):
        user = store.add_profile()
        with pytest.raises(TransitionError) as exc_info:
            await transition_engine.request_cancellation(db, user.id, now=NOW)
        assert exc_info.value.reason == TransitionErrorReason.RECORD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_trial_has_nothing_to_cancel(self, store, db, stripe_mock):
        user = store.add_profile(trial_used=True)
        store.add_subscription(user.id, plan_type="trial", status="active")
        with pytest.raises(TransitionError) as exc_info:
            await transition_engine.request_cancellation(db, user.id, now=NOW)
        assert exc_info.value.reason == TransitionErrorReason.RECORD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_classroom_not_automated(self, store, db, stripe_mock):
        user = _add_paid(store, "classroom")
        with pytest.raises(TransitionError) as exc_info:
            await transition_engine.request_cancellation(db, user.id, now=NOW)
        assert exc_info.value.reason == TransitionErrorReason.NOT_AUTOMATED
        stripe_mock.retrieve_subscription.assert_not_called()


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_different_users_reach_stripe_together(self, store, db, stripe_mock):
        """A Stripe round trip for one user does not hold up another user."""
        first = _add_paid(store, stripe_subscription_id="sub_a")
        second = _add_paid(store, stripe_subscription_id="sub_b")
        # Both lookups must be in flight at once for either to get past the barrier
        barrier = threading.Barrier(2, timeout=5)

        def retrieve(sub_id):
            barrier.wait()
            return make_stripe_subscription(sub_id)

        stripe_mock.retrieve_subscription.side_effect = retrieve

        outcomes = await asyncio.gather(
            transition_engine.request_cancellation(db, first.id, now=NOW),
            transition_engine.request_cancellation(db, second.id, now=NOW),
        )

        assert [o.subscription.status for o in outcomes] == ["canceled", "canceled"]
        assert store.subscription(first.id).status == "canceled"
        assert store.subscription(second.id).status == "canceled"
