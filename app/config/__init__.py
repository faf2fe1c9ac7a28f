"""Configuration package."""

from app.config.plans import PLANS, PlanConfig, PlanType, get_plan
from app.config.settings import Settings, settings

__all__ = [
    "PlanConfig",
    "PlanType",
    "PLANS",
    "get_plan",
    "Settings",
    "settings",
]
