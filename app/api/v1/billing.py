"""Billing API endpoints for subscription management via Stripe."""

import logging
from typing import NoReturn

from fastapi import APIRouter, HTTPException, Query, Request

from app.api.deps import CurrentUser, DbSession
from app.config import settings
from app.config.plans import PLANS, plan_for_price_id
from app.core.exceptions import ReconcileError, TransitionError, TransitionErrorReason
from app.domain.subscription_operations import subscription_ops
from app.schemas.subscription import (
    BillingEventInfo,
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    PlanInfo,
    SubscriptionInfo,
)
from app.services.event_reconciler import event_reconciler, parse_event
from app.services.stripe_service import stripe_service
from app.services.subscription_cache import SubscriptionView
from app.services.transition_engine import transition_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


def raise_for_transition_error(error: TransitionError, failure_message: str) -> NoReturn:
    """Translate a TransitionError into the matching HTTP error."""
    reason = error.reason
    if reason == TransitionErrorReason.DOWNGRADE_NOT_YET:
        available_at = error.available_at.isoformat() if error.available_at else None
        raise HTTPException(
            403,
            {"error": error.detail, "downgrade_available_at": available_at},
        ) from error
    if reason == TransitionErrorReason.NOT_AUTOMATED:
        raise HTTPException(403, error.detail) from error
    if reason == TransitionErrorReason.INVALID_TARGET:
        raise HTTPException(400, error.detail) from error
    if reason == TransitionErrorReason.RECORD_NOT_FOUND:
        raise HTTPException(404, error.detail) from error

    logger.error(f"{failure_message}: {error.detail}")
    raise HTTPException(500, failure_message) from error


# ─────────────────────────────────────────────────────────────────────────────
# Public Endpoints
# ─────────────────────────────────────────────────────────────────────────────


@router.get("/plans", response_model=list[PlanInfo])
async def list_plans() -> list[PlanInfo]:
    """
    List all plans (public endpoint).

    Paid self-serve plans include the Stripe price id to send to /checkout.
    No authentication required.
    """
    return [
        PlanInfo(
            plan_type=plan.plan_type.value,
            display_name=plan.display_name,
            price_cents=plan.price_cents,
            billing_interval=plan.billing_interval,
            self_serve=plan.self_serve,
            price_id=(stripe_service.get_price_id(plan.plan_type) or None) if plan.is_paid else None,
        )
        for plan in PLANS.values()
    ]


# ─────────────────────────────────────────────────────────────────────────────
# Authenticated Endpoints
# ─────────────────────────────────────────────────────────────────────────────


@router.get("/subscription", response_model=SubscriptionInfo)
async def get_subscription(
    db: DbSession,
    current_user: CurrentUser,
) -> SubscriptionInfo:
    """
    Get the current user's subscription.

    Users without one get a free/inactive row on first read.
    """
    subscription = await subscription_ops.get_or_create_default(db, current_user.id)
    view = SubscriptionView.from_records(subscription, current_user)
    return SubscriptionInfo.from_view(view)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CheckoutRequest,
    db: DbSession,
    current_user: CurrentUser,
) -> CheckoutResponse:
    """
    Subscribe to, or switch to, the plan behind a Stripe price.

    Returns the URL to send the user to: Stripe Checkout for a new
    subscription, or the success page when an existing subscription was
    changed in place. Downgrading a yearly plan before its period ends is
    refused with 403 and `downgrade_available_at`.
    """
    if not request.price_id:
        raise HTTPException(400, "Price ID is required")
    if not settings.stripe_enabled:
        raise HTTPException(400, "Payments not configured")

    target_plan = plan_for_price_id(request.price_id)
    if target_plan is None:
        raise HTTPException(400, "Unknown price ID")

    try:
        outcome = await transition_engine.request_transition(db, current_user, target_plan)
    except TransitionError as e:
        raise_for_transition_error(e, "Failed to create checkout session")

    logger.info(f"Checkout for user {current_user.id}: {outcome.kind.value}")
    return CheckoutResponse(url=outcome.redirect_url, outcome=outcome.kind.value)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    db: DbSession,
    current_user: CurrentUser,
) -> CancelResponse:
    """
    Cancel the current user's subscription.

    Yearly plans stay active until the end of the paid period; monthly
    plans end immediately. Repeating the call reports the existing state.
    """
    if not settings.stripe_enabled:
        raise HTTPException(400, "Payments not configured")

    try:
        outcome = await transition_engine.request_cancellation(db, current_user.id)
    except TransitionError as e:
        raise_for_transition_error(e, "Failed to cancel subscription")

    return CancelResponse(
        success=outcome.success,
        message=outcome.message,
        cancel_at=outcome.cancel_at,
    )


@router.get("/events", response_model=list[BillingEventInfo])
async def list_billing_events(
    db: DbSession,
    current_user: CurrentUser,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
) -> list[BillingEventInfo]:
    """Billing audit log for the current user, newest first."""
    events = await subscription_ops.get_events(db, current_user.id, skip=skip, limit=limit)
    return [
        BillingEventInfo(
            event_type=event.event_type,
            description=event.description,
            previous_value=event.previous_value,
            new_value=event.new_value,
            created_at=event.created_at,
        )
        for event in events
    ]


# ─────────────────────────────────────────────────────────────────────────────
# Stripe Webhook
# ─────────────────────────────────────────────────────────────────────────────


@router.post("/webhooks/stripe")
async def handle_stripe_webhook(
    request: Request,
    db: DbSession,
) -> dict[str, str]:
    """
    Handle Stripe webhook events.

    This endpoint is called by Stripe when subscription events occur.
    Verifies the webhook signature before processing.
    No authentication required (verified by Stripe signature).

    Responds 200 for handled, duplicate and unrecognised events, 400 for
    events that can never apply, and 500 for failures Stripe should retry.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    # Verify signature
    try:
        raw_event = stripe_service.construct_webhook_event(payload, sig_header)
    except ValueError:
        raise HTTPException(400, "Invalid webhook signature") from None

    try:
        event = parse_event(raw_event)
    except (KeyError, TypeError):
        logger.warning(f"Malformed Stripe event: {raw_event.get('id')}")
        raise HTTPException(400, "Malformed event") from None

    logger.info(f"Received Stripe webhook: {event.event_type} ({event.event_id})")

    try:
        result = await event_reconciler.apply_event(db, event)
    except ReconcileError as e:
        if e.retryable:
            logger.error(f"Webhook {event.event_id} failed, Stripe will retry: {e}")
            raise HTTPException(500, "Webhook handler failed") from e
        logger.warning(f"Webhook {event.event_id} rejected: {e}")
        raise HTTPException(400, str(e)) from e

    return {"status": result.status.value}
