# roomsync/core/civil_time.py
"""
Civil-time helpers.

Every meeting date and time is a wall-clock value in one fixed UTC offset
(+07:00 by default). "Now" is always derived from UTC plus that offset, so
the host's local timezone never leaks into a predicate.
"""
from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]

DEFAULT_UTC_OFFSET_HOURS = 7

DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

# Python weekday() -> label used in the meetings document (Sunday is "CN").
_DAY_OF_WEEK_LABELS = ["2", "3", "4", "5", "6", "7", "CN"]
_DAY_NAMES = ["T2", "T3", "T4", "T5", "T6", "T7", "CN"]


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def civil_tz(offset_hours: int = DEFAULT_UTC_OFFSET_HOURS) -> timezone:
    return timezone(timedelta(hours=offset_hours))


class CivilClock:
    """
    Wall clock pinned to a fixed UTC offset.

    `source` returns an aware UTC datetime; tests inject a fixed instant.
    """

    def __init__(
        self,
        offset_hours: int = DEFAULT_UTC_OFFSET_HOURS,
        source: Clock = utc_now,
    ) -> None:
        self.tz = civil_tz(offset_hours)
        self._source = source

    def now(self) -> datetime:
        current = self._source()
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return current.astimezone(self.tz)

    def today(self) -> date:
        return self.now().date()

    def today_str(self) -> str:
        return format_date(self.today())

    def current_time(self) -> str:
        """Current wall-clock time as HH:MM."""
        return self.now().strftime("%H:%M")

    def minutes_now(self) -> int:
        now = self.now()
        return now.hour * 60 + now.minute

    def iso_now(self) -> str:
        utc = self.now().astimezone(timezone.utc)
        return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_valid_date(value: str | None) -> bool:
    """True for DD/MM/YYYY strings naming a real calendar day."""
    return parse_date(value) is not None


def parse_date(value: str | None) -> date | None:
    if not value or not isinstance(value, str):
        return None
    match = DATE_RE.match(value.strip())
    if not match:
        return None
    day, month, year = (int(part) for part in match.groups())
    if not 1900 <= year <= 2100:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def format_date(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def is_valid_time(value: str | None) -> bool:
    if not value or not isinstance(value, str):
        return False
    return TIME_RE.match(value.strip()) is not None


def time_to_minutes(value: str | None) -> int:
    """
    Minutes since midnight for an HH:MM (or HH:MM:SS) string.

    Seconds are ignored; malformed parts count as zero.
    """
    if not value or not isinstance(value, str):
        return 0
    parts = value.split(":")
    try:
        hours = int(parts[0])
    except ValueError:
        hours = 0
    try:
        minutes = int(parts[1]) if len(parts) > 1 else 0
    except ValueError:
        minutes = 0
    return hours * 60 + minutes


def minutes_to_time(minutes: int) -> str:
    minutes = max(0, min(minutes, 23 * 60 + 59))
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def duration_label(start_time: str, end_time: str) -> str:
    """Human duration such as `1h`, `1h30m` or `45m`."""
    total = time_to_minutes(end_time) - time_to_minutes(start_time)
    hours, minutes = divmod(max(total, 0), 60)
    if hours > 0:
        return f"{hours}h{minutes}m" if minutes > 0 else f"{hours}h"
    return f"{minutes}m"


def day_of_week_label(value: str | date) -> str:
    """Label stored in `dayOfWeek`: "2".."7" for Monday..Saturday, "CN" for Sunday."""
    day = parse_date(value) if isinstance(value, str) else value
    if day is None:
        return ""
    return _DAY_OF_WEEK_LABELS[day.weekday()]


def day_name(value: date) -> str:
    return _DAY_NAMES[value.weekday()]


def week_start(anchor: date) -> date:
    """Monday of the week containing `anchor`."""
    return anchor - timedelta(days=anchor.weekday())


def week_dates(anchor: date) -> list[date]:
    monday = week_start(anchor)
    return [monday + timedelta(days=offset) for offset in range(7)]
