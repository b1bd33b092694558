"""Cron expression evaluation built on APScheduler triggers.

Accepts standard 5-field expressions (``minute hour day month weekday``) and
6-field expressions with a leading seconds field. Weekday numbers follow
crontab conventions (0 and 7 are Sunday); APScheduler itself numbers Monday
as 0, so numeric weekdays are rewritten to names before building a trigger.

When both day-of-month and day-of-week are restricted, crontab fires on
either match. A single ``CronTrigger`` requires both, so such expressions
become an ``OrTrigger`` of two cron triggers.
"""

from __future__ import annotations

import datetime as dt
from typing import Optional

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

from browsercron.errors import InvalidScheduleError
from browsercron.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_WINDOW = dt.timedelta(minutes=5)

_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
_FIELDS_5 = ("minute", "hour", "day", "month", "day_of_week")
_FIELDS_6 = ("second",) + _FIELDS_5


def _day_number(token: str) -> int:
    value = int(token)
    if not 0 <= value <= 7:
        raise ValueError(f"day of week out of range: {token}")
    return value % 7


def _translate_day_of_week(field: str) -> str:
    """Rewrite crontab weekday numbers into APScheduler weekday names."""
    parts: list[str] = []
    for item in field.split(","):
        base, _, step_text = item.partition("/")
        step = int(step_text) if step_text else 1
        if step < 1:
            raise ValueError(f"invalid step: {item}")

        if base == "*" and step == 1:
            parts.append("*")
            continue
        if base == "*" or base.replace("-", "").isdigit():
            if base == "*":
                first, last = 0, 6
            elif "-" in base:
                first_text, last_text = base.split("-", 1)
                first, last = int(first_text), int(last_text)
                if not (0 <= first <= 7 and 0 <= last <= 7) or first > last:
                    raise ValueError(f"invalid day of week range: {base}")
            else:
                first = _day_number(base)
                last = 6 if step_text else first
            days = sorted({n % 7 for n in range(first, last + 1, step)})
            parts.extend(_DAY_NAMES[d] for d in days)
        else:
            # Names (mon-fri, sat) and expressions like "last sun" pass through.
            parts.append(item.lower())
    return ",".join(parts)


def _restricted(field: str) -> bool:
    # crontab treats a field starting with "*" (including "*/n") as unrestricted
    return not field.startswith("*")


def build_trigger(expression: str, timezone: str = "UTC") -> BaseTrigger:
    """Parse a cron expression into a trigger, raising InvalidScheduleError."""
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidScheduleError(str(expression), "empty expression")

    values = expression.split()
    if len(values) == 5:
        names = _FIELDS_5
    elif len(values) == 6:
        names = _FIELDS_6
    else:
        raise InvalidScheduleError(
            expression, f"expected 5 or 6 fields, got {len(values)}",
        )

    kwargs = dict(zip(names, values))
    either_day = _restricted(kwargs["day"]) and _restricted(kwargs["day_of_week"])
    try:
        kwargs["day_of_week"] = _translate_day_of_week(kwargs["day_of_week"])
        if "second" not in kwargs:
            kwargs["second"] = "0"
        if either_day:
            return OrTrigger([
                CronTrigger(timezone=timezone, **{**kwargs, "day_of_week": "*"}),
                CronTrigger(timezone=timezone, **{**kwargs, "day": "*"}),
            ])
        return CronTrigger(timezone=timezone, **kwargs)
    except (ValueError, TypeError, KeyError) as exc:
        raise InvalidScheduleError(expression, str(exc)) from exc


def _as_utc(value: Optional[dt.datetime]) -> dt.datetime:
    if value is None:
        return dt.datetime.now(dt.UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.UTC)
    return value


def is_valid(expression: str) -> bool:
    """Return True if the expression parses. Never raises."""
    try:
        build_trigger(expression)
        return True
    except InvalidScheduleError:
        return False


def next_run_time(
    expression: str,
    now: Optional[dt.datetime] = None,
    timezone: str = "UTC",
) -> Optional[dt.datetime]:
    """Return the earliest fire time strictly after ``now``.

    Raises InvalidScheduleError for malformed expressions. Returns None only
    for a valid expression that never fires again (e.g. Feb 30).
    """
    trigger = build_trigger(expression, timezone)
    reference = _as_utc(now)
    # previous == now makes APScheduler start strictly after the reference.
    fire = trigger.get_next_fire_time(reference, reference)
    if fire is None:
        return None
    return fire.astimezone(dt.UTC)


def is_due(
    expression: str,
    now: Optional[dt.datetime] = None,
    window: dt.timedelta = DEFAULT_WINDOW,
    timezone: str = "UTC",
) -> bool:
    """True iff a fire time exists within ``window`` of ``now``.

    The search starts at ``now - window``, so a dispatcher triggered every few
    minutes still catches fire times that fell between two invocations.
    Malformed expressions are logged and reported as not due.
    """
    try:
        trigger = build_trigger(expression, timezone)
    except InvalidScheduleError as exc:
        logger.warning("cron_invalid_expression", expression=expression, error=str(exc))
        return False

    reference = _as_utc(now)
    fire = trigger.get_next_fire_time(None, reference - window)
    if fire is None:
        return False
    return abs(fire - reference) <= window
