"""Domain errors.

Raised by the subscription services with structured data; routers translate
them into HTTP responses.
"""

from datetime import datetime
from enum import Enum


class TrialDeniedReason(str, Enum):
    ALREADY_USED = "already_used"
    ACTIVE_SUBSCRIPTION = "active_subscription"


class TrialDenied(Exception):
    """The user may not start a free trial."""

    def __init__(self, reason: TrialDeniedReason, used_at: datetime | None = None):
        self.reason = reason
        self.used_at = used_at
        if reason == TrialDeniedReason.ALREADY_USED:
            message = "You have already used your trial period"
        else:
            message = "You already have an active subscription"
        super().__init__(message)


class TransitionErrorReason(str, Enum):
    DOWNGRADE_NOT_YET = "downgrade_not_yet"
    NOT_AUTOMATED = "not_automated"
    INVALID_TARGET = "invalid_target"
    PROVIDER_ERROR = "provider_error"
    RECORD_NOT_FOUND = "record_not_found"


class TransitionError(Exception):
    """A requested plan change or cancellation cannot be carried out."""

    def __init__(
        self,
        reason: TransitionErrorReason,
        detail: str | None = None,
        available_at: datetime | None = None,
    ):
        self.reason = reason
        self.detail = detail
        self.available_at = available_at
        super().__init__(detail or reason.value)


class ReconcileError(Exception):
    """A payment processor event could not be applied.

    retryable=True means the processor should redeliver (store or provider
    failure); False means redelivery cannot succeed (bad payload).
    """

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)
