"""Plan-based usage limits for task creation and runs.

Month boundaries are computed in UTC: a run counts toward the current month
if it started at or after 00:00 UTC on the first day of the month.

Checks are read-only and not atomic with the creation that follows them.
Two concurrent creators can both pass a check and overshoot the quota by
one each; strict enforcement would need a lock in the store.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Callable, Optional

from browsercron.errors import LimitExceededError
from browsercron.logging_config import get_logger
from browsercron.modules.usage.plans import limits_for
from browsercron.store import Store

logger = get_logger(__name__)


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    current: int
    limit: int

    def to_dict(self) -> dict[str, int | bool]:
        return {"allowed": self.allowed, "current": self.current, "limit": self.limit}


def month_start(now: Optional[dt.datetime] = None) -> dt.datetime:
    """First instant of the calendar month containing ``now``, in UTC."""
    now = (now or dt.datetime.now(dt.UTC)).astimezone(dt.UTC)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class UsageService:
    """Answers "may this user create another task / run?" from their plan."""

    def __init__(
        self,
        store: Store,
        clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(dt.UTC),
    ) -> None:
        self._store = store
        self._clock = clock

    async def check_task_limit(self, user_id: str) -> LimitCheck:
        plan = await self._store.get_user_plan(user_id)
        current = await self._store.count_tasks_by_user(user_id)
        limit = limits_for(plan).max_tasks
        return LimitCheck(allowed=current < limit, current=current, limit=limit)

    async def check_run_limit(self, user_id: str) -> LimitCheck:
        plan = await self._store.get_user_plan(user_id)
        since = month_start(self._clock())
        current = await self._store.count_runs_by_user_since(user_id, since)
        limit = limits_for(plan).max_runs_per_month
        return LimitCheck(allowed=current < limit, current=current, limit=limit)

    async def ensure_task_allowed(self, user_id: str) -> LimitCheck:
        check = await self.check_task_limit(user_id)
        if not check.allowed:
            logger.info("task_limit_reached", user_id=user_id, current=check.current, limit=check.limit)
            raise LimitExceededError("tasks", check.current, check.limit)
        return check

    async def ensure_run_allowed(self, user_id: str) -> LimitCheck:
        check = await self.check_run_limit(user_id)
        if not check.allowed:
            logger.info("run_limit_reached", user_id=user_id, current=check.current, limit=check.limit)
            raise LimitExceededError("runs", check.current, check.limit)
        return check
