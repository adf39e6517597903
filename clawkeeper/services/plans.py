from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PlanLimits:
    # None means unlimited for every count-style limit.
    hosts: int | None
    credits_monthly: int | None
    credits_rollover: bool
    scan_history_days: int | None
    insights: bool


PLAN_LIMITS: dict[str, PlanLimits] = {
    "free": PlanLimits(
        hosts=1,
        credits_monthly=10,
        credits_rollover=False,
        scan_history_days=7,
        insights=False,
    ),
    "pro": PlanLimits(
        hosts=15,
        credits_monthly=200,
        credits_rollover=True,
        scan_history_days=365,
        insights=True,
    ),
    "enterprise": PlanLimits(
        hosts=None,
        credits_monthly=None,
        credits_rollover=True,
        scan_history_days=None,
        insights=True,
    ),
}

DEFAULT_PLAN = "free"


def normalize_plan(plan: str | None) -> str:
    # Unknown or missing plans fall back to the most restrictive tier.
    if plan and plan in PLAN_LIMITS:
        return plan
    return DEFAULT_PLAN


def get_plan_limits(plan: str | None) -> PlanLimits:
    return PLAN_LIMITS[normalize_plan(plan)]


def can_add_host(plan: str | None, current_host_count: int) -> bool:
    limit = get_plan_limits(plan).hosts
    if limit is None:
        return True
    return current_host_count < limit
