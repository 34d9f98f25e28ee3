from __future__ import annotations

import time
from types import MappingProxyType

from autobalancer.domain.models import Period, Plan

SECONDS_PER_DAY = 86_400

PERIOD_SECONDS = MappingProxyType(
    {
        Period.DAILY: SECONDS_PER_DAY,
        Period.WEEKLY: 7 * SECONDS_PER_DAY,
        # Calendar months are approximated as 30 days.
        Period.MONTHLY: 30 * SECONDS_PER_DAY,
    }
)


def period_seconds(period: Period | str) -> int:
    return PERIOD_SECONDS[Period(period)]


def is_plan_expired(plan: Plan, now: int) -> bool:
    return now > plan.expires_at


def is_plan_due(plan: Plan, now: int) -> bool:
    if plan.last_execution_time == 0:
        return True
    return now - plan.last_execution_time >= period_seconds(plan.period)


def seconds_until_due(plan: Plan, now: int) -> int:
    if is_plan_due(plan, now):
        return 0
    return plan.last_execution_time + period_seconds(plan.period) - now


def cooldown_elapsed(last_time: int, now: int, min_interval_seconds: int) -> bool:
    if last_time == 0:
        return True
    return now - last_time >= min_interval_seconds


def epoch_seconds() -> int:
    return int(time.time())
