"""Usage limits per subscription plan."""

from browsercron.modules.usage.plans import PLANS, Plan, PlanLimits, limits_for
from browsercron.modules.usage.service import LimitCheck, UsageService, month_start

__all__ = ["PLANS", "Plan", "PlanLimits", "limits_for", "LimitCheck", "UsageService", "month_start"]
