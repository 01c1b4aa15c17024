"""
Schedule calculation for cron jobs.

Expressions have six fields with seconds first, plus an optional year:

    sec min hour day-of-month month day-of-week [year]

Day-of-week is numbered 1-7 starting on Sunday, or named (SUN-SAT). When both
day-of-month and day-of-week are restricted, a day must match both.

Fields are interpreted in the given timezone (UTC by default); results are always
returned as aware UTC datetimes.
"""
from datetime import datetime, tzinfo
from typing import Optional, Union

from croniter import CroniterBadDateError, CroniterError, croniter

from cronjob.errors import InvalidSchedule, NoUpcomingOccurrence
from cronjob.utils import ensure_utc_aware, get_timezone

SCHEDULE_FIELD_COUNTS = (6, 7)
DAY_OF_WEEK_FIELD = 5


def _croniter_day_of_week(field: str) -> str:
    """Renumber day-of-week values from 1-7 (1 = Sunday) to croniter's 0-6 (0 = Sunday)."""
    parts = []
    for part in field.split(","):
        base, sep, step = part.partition("/")
        bounds = []
        for bound in base.split("-"):
            if bound.isdigit():
                day = int(bound)
                if not 1 <= day <= 7:
                    raise InvalidSchedule(
                        f"Failed to parse schedule: day of week {day} is out of range 1-7"
                    )
                bound = str(day - 1)
            bounds.append(bound)
        parts.append("-".join(bounds) + sep + step)
    return ",".join(parts)


def parse_schedule(expr: str, start: Optional[datetime] = None) -> croniter:
    """
    Parse a cron expression into an iterator positioned at `start`.

    Raises:
        InvalidSchedule: If the expression does not have six or seven fields or croniter rejects it.
    """
    fields = expr.split()
    if len(fields) not in SCHEDULE_FIELD_COUNTS:
        raise InvalidSchedule(
            f"Failed to parse schedule: expected 6 or 7 fields, got {len(fields)}"
        )
    fields[DAY_OF_WEEK_FIELD] = _croniter_day_of_week(fields[DAY_OF_WEEK_FIELD])
    try:
        return croniter(" ".join(fields), start, day_or=False, second_at_beginning=True)
    except (CroniterError, ValueError) as e:
        raise InvalidSchedule(f"Failed to parse schedule: {e}") from e


def next_occurrence(
    expr: str, after: datetime, tz: Union[str, tzinfo, None] = None
) -> datetime:
    """
    Return the first time matching `expr` strictly after `after`.

    Args:
        expr: Cron expression (seconds first).
        after: Reference time; naive values are taken as UTC.
        tz: Timezone the expression fields refer to, as a name or tzinfo. Defaults to UTC.

    Raises:
        InvalidSchedule: If the expression cannot be parsed.
        NoUpcomingOccurrence: If the expression never matches after `after`.
    """
    start = ensure_utc_aware(after).astimezone(get_timezone(tz))
    schedule = parse_schedule(expr, start)
    try:
        upcoming = schedule.get_next(datetime)
    except CroniterBadDateError as e:
        raise NoUpcomingOccurrence(f"No upcoming schedule found: {e}") from e
    except (CroniterError, ValueError) as e:
        raise InvalidSchedule(f"Failed to evaluate schedule: {e}") from e
    return ensure_utc_aware(upcoming)
