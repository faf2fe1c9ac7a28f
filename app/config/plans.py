"""Plan catalog - the plans a user can hold, with pricing and ordering."""

from dataclasses import dataclass
from enum import Enum

from app.config.settings import settings


class PlanType(str, Enum):
    """Plan a subscription record can be on."""

    FREE = "free"
    TRIAL = "trial"
    STUDENT_MONTHLY = "student_monthly"
    STUDENT_YEARLY = "student_yearly"
    CLASSROOM = "classroom"


@dataclass(frozen=True)
class PlanConfig:
    """Configuration for a subscription plan."""

    plan_type: PlanType
    display_name: str
    price_cents: int
    billing_interval: str  # 'none', 'week', 'month', 'year'
    commitment_rank: int  # higher = longer commitment
    self_serve: bool  # False = contact sales, no automated transitions
    premium_access: bool

    @property
    def is_paid(self) -> bool:
        return self.price_cents > 0 and self.self_serve


PLANS: dict[PlanType, PlanConfig] = {
    PlanType.FREE: PlanConfig(
        plan_type=PlanType.FREE,
        display_name="Free",
        price_cents=0,
        billing_interval="none",
        commitment_rank=0,
        self_serve=True,
        premium_access=False,
    ),
    PlanType.TRIAL: PlanConfig(
        plan_type=PlanType.TRIAL,
        display_name="Free Trial",
        price_cents=0,
        billing_interval="week",
        commitment_rank=1,
        self_serve=True,
        premium_access=True,
    ),
    PlanType.STUDENT_MONTHLY: PlanConfig(
        plan_type=PlanType.STUDENT_MONTHLY,
        display_name="Student Monthly",
        price_cents=999,  # $9.99/mo
        billing_interval="month",
        commitment_rank=2,
        self_serve=True,
        premium_access=True,
    ),
    PlanType.STUDENT_YEARLY: PlanConfig(
        plan_type=PlanType.STUDENT_YEARLY,
        display_name="Student Yearly",
        price_cents=7999,  # $79.99/yr
        billing_interval="year",
        commitment_rank=3,
        self_serve=True,
        premium_access=True,
    ),
    PlanType.CLASSROOM: PlanConfig(
        plan_type=PlanType.CLASSROOM,
        display_name="Classroom",
        price_cents=0,  # quoted per school
        billing_interval="year",
        commitment_rank=4,
        self_serve=False,
        premium_access=True,
    ),
}

# Legacy plan names (stored by earlier versions of the app)
LEGACY_PLAN_MAP: dict[str, PlanType] = {
    "student": PlanType.STUDENT_MONTHLY,
    "none": PlanType.FREE,
}


def resolve_plan_type(value: str | PlanType | None) -> PlanType:
    """
    Normalize a stored plan value to a PlanType.

    Handles legacy names. Missing or unknown values resolve to FREE.
    """
    if isinstance(value, PlanType):
        return value
    if not value:
        return PlanType.FREE
    if value in LEGACY_PLAN_MAP:
        return LEGACY_PLAN_MAP[value]
    try:
        return PlanType(value)
    except ValueError:
        return PlanType.FREE


def get_plan(plan_type: str | PlanType | None) -> PlanConfig:
    """Get plan configuration by plan type (legacy names accepted)."""
    return PLANS[resolve_plan_type(plan_type)]


def price_id_for_plan(plan_type: PlanType) -> str:
    """Get the Stripe price ID for a plan, or '' when not sold through Stripe."""
    price_map = {
        PlanType.STUDENT_MONTHLY: settings.stripe_price_student_monthly,
        PlanType.STUDENT_YEARLY: settings.stripe_price_student_yearly,
        PlanType.CLASSROOM: settings.stripe_price_classroom,
    }
    return price_map.get(plan_type, "")


def plan_for_price_id(price_id: str | None) -> PlanType | None:
    """Reverse lookup: which plan a Stripe price belongs to."""
    if not price_id:
        return None
    for plan_type in (PlanType.STUDENT_MONTHLY, PlanType.STUDENT_YEARLY, PlanType.CLASSROOM):
        if price_id_for_plan(plan_type) == price_id:
            return plan_type
    return None


def is_upgrade(current: PlanType, target: PlanType) -> bool:
    """Only monthly -> yearly counts as an upgrade (applied immediately)."""
    return current == PlanType.STUDENT_MONTHLY and target == PlanType.STUDENT_YEARLY


def is_downgrade(current: PlanType, target: PlanType) -> bool:
    """
    A change between paid plans towards a lower commitment.

    Downgrades are gated on the current billing period having elapsed.
    """
    current_plan = PLANS[current]
    target_plan = PLANS[target]
    if not current_plan.is_paid or not target_plan.is_paid:
        return False
    return target_plan.commitment_rank < current_plan.commitment_rank
