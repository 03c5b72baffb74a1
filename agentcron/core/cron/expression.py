"""Schedule expressions — crontab (5/6 fields) and fixed intervals on APScheduler triggers.

Supported forms::

    "*/5 * * * *"       5-field crontab
    "0 */5 * * * *"     6-field crontab, leading seconds
    "@daily"            crontab nickname
    "every:30m"         fixed interval (units s, m, h, d; "every:1h30m" works too)
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

_INTERVAL_RE = re.compile(r"^every:((?:\d+[smhd])+)$", re.IGNORECASE)
_INTERVAL_PART_RE = re.compile(r"(\d+)([smhd])", re.IGNORECASE)
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

_NICKNAMES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}


_DOW_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


class ScheduleError(ValueError):
    """Malformed schedule expression or unknown timezone."""


def parse_interval(expr: str) -> timedelta | None:
    """Return the interval of an ``every:`` expression, None for crontab forms."""
    match = _INTERVAL_RE.match(expr.strip())
    if not match:
        return None
    seconds = sum(
        int(n) * _UNIT_SECONDS[unit.lower()]
        for n, unit in _INTERVAL_PART_RE.findall(match.group(1))
    )
    if seconds <= 0:
        raise ScheduleError(f"Interval must be positive: {expr!r}")
    return timedelta(seconds=seconds)


def _zone(tz: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(tz or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleError(f"Unknown timezone: {tz!r}") from e


def _dow_number(token: str, end: bool = False) -> int:
    if token.isdigit():
        n = int(token)
        if n > 7:
            raise ScheduleError(f"Day of week out of range: {token!r}")
        return n
    if token in _DOW_NAMES:
        # "fri-sun" ends on the Sunday after Saturday
        return 7 if end and token == "sun" else _DOW_NAMES.index(token)
    raise ScheduleError(f"Invalid day of week: {token!r}")


def _day_of_week(field: str) -> str:
    """Translate a crontab day-of-week field into APScheduler day names.

    Crontab counts 0 (and 7) as Sunday while APScheduler counts 0 as Monday,
    so numbers, ranges, lists and steps are expanded to explicit names.
    """
    days: set[int] = set()
    for part in field.lower().split(","):
        base, _, step_text = part.partition("/")
        if step_text and not step_text.isdigit():
            raise ScheduleError(f"Invalid day-of-week step: {part!r}")
        step = int(step_text) if step_text else 1
        if base in ("*", "?"):
            first, last = 0, 6
        elif "-" in base:
            low, high = base.split("-", 1)
            first, last = _dow_number(low), _dow_number(high, end=True)
        else:
            first = _dow_number(base)
            last = 6 if step_text else first
        if step < 1 or first > last:
            raise ScheduleError(f"Invalid day-of-week range: {part!r}")
        days.update(d % 7 for d in range(first, last + 1, step))

    if len(days) == 7:
        return "*"
    return ",".join(_DOW_NAMES[d] for d in sorted(days))


def build_trigger(expr: str, tz: str | None = "UTC") -> BaseTrigger:
    """Build an APScheduler trigger for a schedule expression.

    Raises ScheduleError when the expression cannot be parsed.
    """
    zone_name = _zone(tz).key
    text = (expr or "").strip()
    if not text:
        raise ScheduleError("Empty schedule expression")

    interval = parse_interval(text)
    if interval is not None:
        return IntervalTrigger(seconds=int(interval.total_seconds()), timezone=zone_name)

    if text.lower().startswith("every:"):
        raise ScheduleError(f"Invalid interval expression: {expr!r}")

    text = _NICKNAMES.get(text.lower(), text)
    fields = text.split()
    if len(fields) == 5:
        fields.insert(0, "0")
    if len(fields) != 6:
        raise ScheduleError(
            f"Cron expression must have 5 or 6 fields, got {len(fields)}: {expr!r}"
        )

    second, minute, hour, day, month, day_of_week = fields
    try:
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_day_of_week(day_of_week),
            timezone=zone_name,
        )
    except ValueError as e:
        raise ScheduleError(f"Invalid cron expression {expr!r}: {e}") from e


def next_fire_time(
    expr: str, tz: str | None = "UTC", now: datetime | None = None
) -> datetime:
    """Next instant strictly after ``now`` at which ``expr`` fires.

    Pure: a fresh trigger is built on every call.  Naive ``now`` values are
    treated as UTC.
    """
    zone = _zone(tz)
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    interval = parse_interval(expr)
    if interval is not None:
        return (now + interval).astimezone(zone)

    trigger = build_trigger(expr, tz)
    # Triggers return fire times >= now; nudge past now for "strictly after"
    fire = trigger.get_next_fire_time(None, now + timedelta(microseconds=1))
    if fire is None:
        raise ScheduleError(f"Schedule never fires again: {expr!r}")
    return fire


def validate(expr: str, tz: str | None = "UTC") -> None:
    """Raise ScheduleError if ``expr``/``tz`` cannot be scheduled."""
    build_trigger(expr, tz)
