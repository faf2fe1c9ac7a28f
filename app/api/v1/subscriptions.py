"""Subscription endpoints that don't go through Stripe."""

import logging

from fastapi import APIRouter, HTTPException

from app.api.deps import CurrentUser, DbSession
from app.core.exceptions import TrialDenied
from app.schemas.subscription import SubscriptionInfo, TrialResponse
from app.services.subscription_cache import SubscriptionView
from app.services.trial_gate import trial_gate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.post("/trial", response_model=TrialResponse)
async def start_trial(
    db: DbSession,
    current_user: CurrentUser,
) -> TrialResponse:
    """
    Start the free trial.

    Each user gets one trial, ever. A second request is refused with 403
    and the date the trial was first used.
    """
    try:
        subscription = await trial_gate.request_trial(db, current_user.id)
    except TrialDenied as e:
        raise HTTPException(
            403,
            {
                "error": str(e),
                "reason": e.reason.value,
                "trial_used_at": e.used_at.isoformat() if e.used_at else None,
            },
        ) from e

    view = SubscriptionView.from_records(subscription, current_user)
    return TrialResponse(success=True, subscription=SubscriptionInfo.from_view(view))
