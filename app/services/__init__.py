# Services package

from app.services.event_reconciler import EventReconciler, ReconcileResult, ReconcileStatus
from app.services.stripe_service import StripeService
from app.services.subscription_cache import SubscriptionCache, SubscriptionView
from app.services.transition_engine import (
    CancellationOutcome,
    TransitionEngine,
    TransitionKind,
    TransitionOutcome,
)
from app.services.trial_gate import TrialGate

__all__ = [
    # Stripe
    "StripeService",
    # Subscription lifecycle
    "TrialGate",
    "TransitionEngine",
    "TransitionKind",
    "TransitionOutcome",
    "CancellationOutcome",
    "EventReconciler",
    "ReconcileResult",
    "ReconcileStatus",
    # Client view model
    "SubscriptionCache",
    "SubscriptionView",
]
