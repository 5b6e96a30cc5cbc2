"""
Cron evaluator — validates 5-field cron expressions and computes the
next trigger instant.

Usage:
    check = validate_cron("0 9 * * 1-5")
    if check.valid:
        nxt = next_run_time("0 9 * * 1-5", timezone="Europe/Berlin")

Requires the `croniter` package. Timezones come from the IANA database
via zoneinfo; without a timezone the process-local zone is used.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

logger = logging.getLogger(__name__)

CRON_FIELDS = 5

_DAYS = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
_MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

_COMMON = {
    "0 0 * * *": "Daily at midnight",
    "0 0 * * 0": "Weekly on Sunday at midnight",
    "0 0 * * 1": "Weekly on Monday at midnight",
    "0 0 1 * *": "Monthly on the 1st at midnight",
    "0 9 * * 1-5": "Weekdays at 9:00 AM",
}


@dataclass(frozen=True, slots=True)
class CronValidation:
    valid: bool
    error: str | None = None


def validate_cron(expression: str) -> CronValidation:
    """Check a cron expression. Never raises."""
    if not isinstance(expression, str) or not expression.strip():
        return CronValidation(False, "Cron expression is empty")
    fields = expression.split()
    if len(fields) != CRON_FIELDS:
        return CronValidation(
            False, f"Expected {CRON_FIELDS} fields (minute hour day month weekday), got {len(fields)}"
        )
    try:
        croniter(expression)
    except Exception as e:
        return CronValidation(False, str(e) or "Invalid cron expression")
    return CronValidation(True)


def is_valid_timezone(name: str) -> bool:
    return _resolve_zone(name) is not None


def _resolve_zone(name: str | None) -> tzinfo | None:
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def next_run_time(
    expression: str,
    timezone: str | None = None,
    now: datetime | None = None,
) -> datetime | None:
    """
    Next instant strictly after `now` matching `expression`.

    Args:
        expression: 5-field cron string.
        timezone:   IANA zone name; None = process-local time.
        now:        Evaluation time (defaults to the current time). Naive
                    values are taken as local time.

    Returns:
        A timezone-aware datetime, or None for a malformed expression or
        an unknown timezone.
    """
    if not validate_cron(expression).valid:
        return None

    if timezone:
        zone = _resolve_zone(timezone)
        if zone is None:
            logger.debug(f"Unknown timezone {timezone!r} for cron {expression!r}")
            return None
        base = (now or datetime.now(zone)).astimezone(zone)
    else:
        base = (now or datetime.now()).astimezone()

    try:
        nxt = croniter(expression, base).get_next(datetime)
    except Exception as e:
        logger.debug(f"croniter failed for {expression!r}: {e}")
        return None

    # croniter is exclusive of base, guard anyway so callers can rely on it
    if nxt <= base:
        try:
            nxt = croniter(expression, nxt).get_next(datetime)
        except Exception:
            return None
    return nxt


def describe_cron(expression: str) -> str:
    """Human-readable description, e.g. 'At 09:30 on Monday-Friday'."""
    parts = expression.strip().split()
    if len(parts) < CRON_FIELDS:
        return "Invalid cron expression"

    normalized = " ".join(parts)
    if normalized in _COMMON:
        return _COMMON[normalized]

    minute, hour, day_of_month, month, day_of_week = parts[:CRON_FIELDS]

    if minute != "*" and hour != "*":
        text = f"At {hour.zfill(2)}:{minute.zfill(2)}"
    elif hour != "*":
        text = f"At {hour.zfill(2)}:00"
    elif minute != "*":
        text = f"Every hour at minute {minute}"
    else:
        text = "Every minute"

    if day_of_week != "*":
        text += f" on {_describe_list(day_of_week, _day_name)}"
    elif day_of_month != "*":
        if "," in day_of_month:
            text += f" on days {day_of_month}"
        else:
            text += f" on day {day_of_month} of the month"

    if month != "*":
        text += f" in {_describe_list(month, _month_name)}"

    return text or expression


def _day_name(token: str) -> str:
    if token.isdigit():
        return _DAYS[int(token) % 7]
    return token


def _month_name(token: str) -> str:
    if token.isdigit() and 1 <= int(token) <= 12:
        return _MONTHS[int(token) - 1]
    return token


def _describe_list(field: str, name) -> str:
    if "/" in field:
        return field
    if "-" in field and "," not in field:
        start, _, end = field.partition("-")
        return f"{name(start)}-{name(end)}"
    return ", ".join(name(t) for t in field.split(","))


def format_next_run(expression: str, timezone: str | None = None) -> str:
    nxt = next_run_time(expression, timezone)
    if nxt is None:
        return "Invalid schedule"
    return nxt.astimezone().strftime("%Y-%m-%d %H:%M %Z")
