"""
Date helpers for task lookups and update commands.
"""

import re
from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

_EXPLICIT_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M:%S",
                     "%b %d %Y", "%B %d %Y", "%b %d, %Y", "%B %d, %Y")
_YEARLESS_FORMATS = ("%b %d", "%B %d")


def start_of_day(value: datetime) -> datetime:
    return datetime.combine(value.date(), time.min)


def end_of_day(value: datetime) -> datetime:
    return datetime.combine(value.date(), time.max)


def start_of_week(value: datetime) -> datetime:
    """Weeks start on Monday."""
    return start_of_day(value - timedelta(days=value.weekday()))


def end_of_week(value: datetime) -> datetime:
    return end_of_day(start_of_week(value) + timedelta(days=6))


def date_range(period: str, now: Optional[datetime] = None) -> Optional[Tuple[datetime, datetime]]:
    """
    Inclusive [start, end] instants for a named period.

    Supported periods: today, yesterday, tomorrow, this week, last week,
    next week (underscores are accepted in place of spaces).
    """
    now = now or datetime.now()
    key = re.sub(r"[\s_]+", "_", (period or "").strip().lower())

    if key == "today":
        return start_of_day(now), end_of_day(now)
    if key == "yesterday":
        day = now - timedelta(days=1)
        return start_of_day(day), end_of_day(day)
    if key == "tomorrow":
        day = now + timedelta(days=1)
        return start_of_day(day), end_of_day(day)
    if key == "this_week":
        return start_of_week(now), end_of_week(now)
    if key == "last_week":
        day = now - timedelta(weeks=1)
        return start_of_week(day), end_of_week(day)
    if key == "next_week":
        day = now + timedelta(weeks=1)
        return start_of_week(day), end_of_week(day)
    return None


def parse_date(value) -> Optional[datetime]:
    """Parse an explicit date or datetime value, None when it can't be read."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)

    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed
    except ValueError:
        pass

    for fmt in _EXPLICIT_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    for fmt in _YEARLESS_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(year=datetime.now().year)
        except ValueError:
            continue
    return None


def parse_relative_date(raw: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse relative date expressions used in update commands.

    Supports today, tomorrow, this week, next week, +N days, +N weeks,
    next N days, <weekday>, this <weekday>, next <weekday>, and falls back
    to explicit dates.
    """
    now = now or datetime.now()
    text = (raw or "").strip().lower().rstrip(".")

    if text == "today" or text == "this week":
        return now
    if text == "tomorrow":
        return now + timedelta(days=1)
    if text == "next week":
        return now + timedelta(weeks=1)

    match = re.match(r"^(?:\+|in\s+|next\s+)?(\d+)\s+days?$", text)
    if match:
        return now + timedelta(days=int(match.group(1)))
    match = re.match(r"^(?:\+|in\s+|next\s+)?(\d+)\s+weeks?$", text)
    if match:
        return now + timedelta(weeks=int(match.group(1)))

    for index, weekday in enumerate(WEEKDAYS):
        if text in (weekday, f"this {weekday}"):
            return now + timedelta(days=(index - now.weekday()) % 7)
        if text == f"next {weekday}":
            return now + timedelta(days=(index - now.weekday()) % 7 or 7)

    return parse_date(raw)
