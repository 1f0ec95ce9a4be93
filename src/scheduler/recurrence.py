"""Next-occurrence arithmetic for recurring messages.

Periods are added in the scheduler's local timezone so the wall-clock
time-of-day survives DST changes.  Monthly recurrence clamps to the last day
of a shorter month (Jan 31 -> Feb 28/29).
"""

from __future__ import annotations

import calendar
import zoneinfo
from datetime import UTC, datetime, timedelta

from src.scheduler.models import Recurrence


def _add_month(local: datetime) -> datetime:
    year = local.year
    month = local.month + 1
    if month > 12:
        year += 1
        month = 1
    day = min(local.day, calendar.monthrange(year, month)[1])
    return local.replace(year=year, month=month, day=day)


def add_period(scheduled: datetime, recurrence: Recurrence, tz: zoneinfo.ZoneInfo) -> datetime:
    """Return *scheduled* advanced by one recurrence period, in UTC."""
    local = scheduled.astimezone(tz)
    if recurrence is Recurrence.DAILY:
        nxt = local + timedelta(days=1)
    elif recurrence is Recurrence.WEEKLY:
        nxt = local + timedelta(weeks=1)
    elif recurrence is Recurrence.MONTHLY:
        nxt = _add_month(local)
    else:
        msg = f"No period for recurrence: {recurrence}"
        raise ValueError(msg)
    return nxt.astimezone(UTC)


def next_occurrence(
    scheduled: datetime,
    recurrence: Recurrence,
    now: datetime,
    tz: zoneinfo.ZoneInfo,
) -> datetime | None:
    """Compute when the successor of an occurrence at *scheduled* should run.

    Returns None for non-recurring messages.  The result is always strictly
    after *now*: if one period is not enough (the process was down for a
    while), the time-of-day is re-anchored to today, or tomorrow if today's
    slot has already passed.
    """
    if recurrence is Recurrence.NONE:
        return None

    nxt = add_period(scheduled, recurrence, tz)
    if nxt > now:
        return nxt

    local_scheduled = scheduled.astimezone(tz)
    anchored = now.astimezone(tz).replace(
        hour=local_scheduled.hour,
        minute=local_scheduled.minute,
        second=local_scheduled.second,
        microsecond=local_scheduled.microsecond,
    )
    if anchored <= now:
        anchored += timedelta(days=1)
    return anchored.astimezone(UTC)
