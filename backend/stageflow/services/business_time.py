"""
Business Time Calculator for Stageflow.

Measures elapsed time restricted to a working calendar. This is what
stage SLAs are measured in, instead of wall-clock time.

Key Rules:
- Only working weekdays count, and only inside the daily work window
- Holidays contribute nothing
- The calendar is always passed in explicitly
- Overlaps are measured on UTC instants, so DST days are handled
"""
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from stageflow.core.config import settings
from stageflow.core.database import to_utc
from stageflow.core.exceptions import InvalidRangeError
from stageflow.models.schemas import WorkCalendar


logger = logging.getLogger(__name__)


def default_calendar() -> WorkCalendar:
    """Build the working calendar configured for this deployment."""
    return WorkCalendar(
        working_days=frozenset(settings.work_day_list),
        day_start=settings.work_day_start,
        day_end=settings.work_day_end,
        holidays=frozenset(settings.work_holiday_list),
        timezone=settings.work_timezone,
    )


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except Exception:
        logger.warning(f"Unknown timezone '{name}', falling back to UTC")
        return ZoneInfo("UTC")


def is_working_day(check_date: date, calendar: WorkCalendar) -> bool:
    """
    Check if a date is a working day.

    Working day = configured weekday AND not a holiday
    """
    if check_date.isoweekday() not in calendar.working_days:
        return False
    if check_date in calendar.holidays:
        return False
    return True


def business_hours(
    start: datetime,
    end: datetime,
    calendar: WorkCalendar
) -> float:
    """
    Calculate business hours elapsed between two timestamps.

    Walks the calendar's local dates from ``start`` to ``end`` and adds,
    for every working day, the overlap of ``[start, end]`` with that day's
    work window.

    Example:
        calendar = Mon-Fri 09:00-17:00
        start = Friday 16:00, end = Monday 10:00
        result = 2.0 (1 hour Friday + 1 hour Monday)

    Args:
        start: Start of the range (naive values are taken as UTC)
        end: End of the range
        calendar: Working calendar to measure against

    Returns:
        Elapsed business time in hours

    Raises:
        InvalidRangeError: If end is before start
    """
    start_utc = to_utc(start)
    end_utc = to_utc(end)

    if end_utc < start_utc:
        raise InvalidRangeError(
            "Business time range ends before it starts",
            start=start_utc.isoformat(),
            end=end_utc.isoformat()
        )

    if end_utc == start_utc:
        return 0.0

    tz = _zone(calendar.timezone)
    current = start_utc.astimezone(tz).date()
    last = end_utc.astimezone(tz).date()

    total_seconds = 0.0

    while current <= last:
        if is_working_day(current, calendar):
            window_start = datetime.combine(current, calendar.day_start, tzinfo=tz).astimezone(timezone.utc)
            window_end = datetime.combine(current, calendar.day_end, tzinfo=tz).astimezone(timezone.utc)

            overlap_start = max(start_utc, window_start)
            overlap_end = min(end_utc, window_end)

            if overlap_end > overlap_start:
                total_seconds += (overlap_end - overlap_start).total_seconds()

        current += timedelta(days=1)

    return total_seconds / 3600


def wall_minutes(start: Optional[datetime], end: Optional[datetime]) -> int:
    """Whole wall-clock minutes between two timestamps (0 if either is missing)."""
    if start is None or end is None:
        return 0
    delta = to_utc(end) - to_utc(start)
    return max(0, int(delta.total_seconds() // 60))


def _number(value: float) -> str:
    return f"{value:g}"


def format_business_hours(hours: float, calendar: WorkCalendar) -> str:
    """
    Format business hours for display.

    Examples:
        "< 1 business hour"
        "6.5 business hours"
        "3 business days, 2 hours"   (a business day = calendar.daily_hours)
    """
    if hours <= 0:
        return "0 business hours"
    if hours < 1:
        return "< 1 business hour"

    rounded = round(hours, 1)

    if rounded == 1:
        return "1 business hour"
    if rounded < 24:
        return f"{_number(rounded)} business hours"

    daily = calendar.daily_hours
    days = int(rounded // daily)
    remaining = round(rounded - days * daily, 1)

    day_text = "1 business day" if days == 1 else f"{days} business days"
    if remaining == 0:
        return day_text

    hour_text = "hour" if remaining == 1 else "hours"
    return f"{day_text}, {_number(remaining)} {hour_text}"


def format_wall_duration(total_minutes: Optional[int]) -> str:
    """
    Format a wall-clock duration for display.

    Examples:
        "45 minutes"
        "2 hours, 5 minutes"
        "3 days, 4 hours"
    """
    if not total_minutes:
        return "0 minutes"

    def plural(count: int, unit: str) -> str:
        return f"{count} {unit}{'' if count == 1 else 's'}"

    if total_minutes < 60:
        return plural(total_minutes, "minute")

    days, rest = divmod(total_minutes, 60 * 24)
    hours, minutes = divmod(rest, 60)

    parts = []
    if days:
        parts.append(plural(days, "day"))
    if hours:
        parts.append(plural(hours, "hour"))
    if minutes:
        parts.append(plural(minutes, "minute"))

    return ", ".join(parts)
