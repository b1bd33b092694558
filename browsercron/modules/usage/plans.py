"""Subscription plan tiers and their quotas."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class Plan(StrEnum):
    """Subscription tiers written by the billing integration."""

    FREE = "FREE"
    PRO = "PRO"
    PREMIUM = "PREMIUM"


@dataclass(frozen=True)
class PlanLimits:
    name: str
    max_tasks: int
    max_runs_per_month: int


PLANS: dict[Plan, PlanLimits] = {
    Plan.FREE: PlanLimits(name="Free", max_tasks=2, max_runs_per_month=15),
    Plan.PRO: PlanLimits(name="Pro", max_tasks=10, max_runs_per_month=100),
    Plan.PREMIUM: PlanLimits(name="Premium", max_tasks=50, max_runs_per_month=300),
}


def limits_for(plan: str) -> PlanLimits:
    """Return limits for a plan name; unknown tiers fall back to FREE."""
    try:
        return PLANS[Plan(str(plan).upper())]
    except ValueError:
        return PLANS[Plan.FREE]
