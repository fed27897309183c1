# roomsync/services/meeting_rules.py
"""
Meeting rules shared by the service and the dashboard client.

- Validation of required fields and DD/MM/YYYY / HH:MM formats.
- Overlap detection on half-open `[start, end)` minute intervals.
- The meeting state tag (`MeetingState`) from which every time predicate
  (active, upcoming, ended) is derived.
"""
from __future__ import annotations

import logging
from datetime import date as date_type
from enum import Enum
from typing import Any, Iterable, Mapping, Union

from pydantic import ValidationError

from roomsync.core.civil_time import (
    is_valid_date,
    is_valid_time,
    parse_date,
    time_to_minutes,
)
from roomsync.schemas.meeting import Meeting
from roomsync.services.rooms import RoomId

logger = logging.getLogger(__name__)

MeetingLike = Union[Meeting, Mapping[str, Any]]

REQUIRED_FIELDS = ("date", "room", "startTime", "endTime")

_PURPOSE_CLASSES = (
    ("họp", "purpose-hop"),
    ("đào tạo", "purpose-daotao"),
    ("phỏng vấn", "purpose-phongvan"),
    ("thảo luận", "purpose-thaoluan"),
    ("báo cáo", "purpose-baocao"),
)


class MeetingValidationError(ValueError):
    """
    Raised when a meeting draft is malformed: a required field is missing,
    a date/time has the wrong format, or the range is inverted.
    """

    def __init__(self, reasons: list[str], kind: str = "format") -> None:
        self.reasons = reasons
        self.kind = kind
        super().__init__("; ".join(reasons))


class MeetingConflictError(ValueError):
    """
    Raised when a meeting overlaps a non-ended meeting of the same room/date.
    """

    def __init__(self, conflicts: list[Meeting]) -> None:
        self.conflicts = conflicts
        names = ", ".join(meeting_label(m) for m in conflicts)
        super().__init__(f"Meeting conflicts with existing meeting(s): {names}")


class MeetingNotFoundError(LookupError):
    def __init__(self, meeting_id: str) -> None:
        self.meeting_id = meeting_id
        super().__init__(f"Meeting {meeting_id} not found")


class MeetingState(str, Enum):
    """
    Lifecycle tag of a meeting relative to the civil clock.

    `isEnded` / `forceEndedByUser` are reconstructible from the tag:
    ENDED_EARLY sets both, ENDED_NATURALLY may carry `isEnded`.
    """

    SCHEDULED = "SCHEDULED"
    ACTIVE = "ACTIVE"
    ENDED_NATURALLY = "ENDED_NATURALLY"
    ENDED_EARLY = "ENDED_EARLY"

    @property
    def is_ended(self) -> bool:
        return self in (MeetingState.ENDED_NATURALLY, MeetingState.ENDED_EARLY)


def as_meeting(value: MeetingLike) -> Meeting:
    if isinstance(value, Meeting):
        return value
    return Meeting.model_validate(dict(value))


def _fields(value: MeetingLike) -> Mapping[str, Any]:
    """Wire-keyed view of a meeting, without validating it."""
    if isinstance(value, Meeting):
        return value.model_dump(by_alias=True)
    return value


def _has_times(fields: Mapping[str, Any]) -> bool:
    return is_valid_time(fields.get("startTime")) and is_valid_time(fields.get("endTime"))


def is_marked_ended(value: MeetingLike) -> bool:
    fields = _fields(value)
    return bool(fields.get("isEnded") or fields.get("forceEndedByUser"))


def meeting_label(value: MeetingLike) -> str:
    """Short name used in conflict and confirmation messages."""
    fields = _fields(value)
    name = fields.get("title") or fields.get("content") or fields.get("purpose") or fields.get("id") or "meeting"
    return f"{name} ({fields.get('startTime')}-{fields.get('endTime')})"


def validate_meeting(value: MeetingLike) -> Meeting:
    """
    Check a meeting draft and return it as a `Meeting`.

    Raises MeetingValidationError with `kind="missing"`, `"format"` or
    `"range"` depending on the first class of problem found.
    """
    try:
        meeting = as_meeting(value)
    except ValidationError as exc:
        reasons = [f"Invalid {'.'.join(map(str, err['loc']))}: {err['msg']}" for err in exc.errors()]
        raise MeetingValidationError(reasons, kind="format") from exc
    payload = meeting.model_dump(by_alias=True)

    missing = [name for name in REQUIRED_FIELDS if not payload.get(name)]
    if missing:
        raise MeetingValidationError(
            [f"Missing required field: {name}" for name in missing], kind="missing"
        )

    reasons: list[str] = []
    if not is_valid_date(meeting.date):
        reasons.append(f"Invalid date format (expected DD/MM/YYYY): {meeting.date}")
    if not is_valid_time(meeting.start_time):
        reasons.append(f"Invalid start time (expected HH:MM): {meeting.start_time}")
    if not is_valid_time(meeting.end_time):
        reasons.append(f"Invalid end time (expected HH:MM): {meeting.end_time}")
    if reasons:
        raise MeetingValidationError(reasons, kind="format")

    if time_to_minutes(meeting.end_time) <= time_to_minutes(meeting.start_time):
        raise MeetingValidationError(["End time must be after start time"], kind="range")

    return meeting


def intervals_overlap(a: MeetingLike, b: MeetingLike) -> bool:
    """Half-open interval test: touching boundaries do not overlap."""
    a, b = _fields(a), _fields(b)
    start_a, end_a = time_to_minutes(a.get("startTime")), time_to_minutes(a.get("endTime"))
    start_b, end_b = time_to_minutes(b.get("startTime")), time_to_minutes(b.get("endTime"))
    return not (end_a <= start_b or end_b <= start_a)


def same_day(a: MeetingLike, b: MeetingLike) -> bool:
    a, b = _fields(a), _fields(b)
    day_a, day_b = parse_date(a.get("date")), parse_date(b.get("date"))
    if day_a is not None and day_b is not None:
        return day_a == day_b
    return a.get("date") == b.get("date")


def find_conflicts(
    candidate: MeetingLike,
    existing: Iterable[MeetingLike],
    exclude_id: str | None = None,
) -> list[Meeting]:
    """
    Meetings in `existing` that share room and date with `candidate`, are
    not ended and overlap it. A candidate that is itself ended never
    conflicts. Records without readable times are skipped.
    """
    fields = _fields(candidate)
    if is_marked_ended(fields) or not _has_times(fields):
        return []

    room = RoomId.parse(fields.get("room"))
    conflicts: list[Meeting] = []
    for other_value in existing:
        other = _fields(other_value)
        if exclude_id is not None and other.get("id") == exclude_id:
            continue
        if is_marked_ended(other) or not _has_times(other):
            continue
        if RoomId.parse(other.get("room")) != room or not same_day(fields, other):
            continue
        if not intervals_overlap(fields, other):
            continue
        try:
            conflicts.append(as_meeting(other_value))
        except ValidationError:
            logger.warning("Skipping unreadable meeting %r in conflict check", other.get("id"))
    return conflicts


def ensure_no_conflict(
    candidate: MeetingLike,
    existing: Iterable[MeetingLike],
    exclude_id: str | None = None,
) -> None:
    conflicts = find_conflicts(candidate, existing, exclude_id=exclude_id)
    if conflicts:
        raise MeetingConflictError(conflicts)


def meeting_state(value: MeetingLike, today: date_type, now_minutes: int) -> MeetingState:
    """
    Derive the lifecycle tag at civil date `today`, `now_minutes` past midnight.

    A meeting is ACTIVE iff it is today, not ended, and
    `start <= now <= end`; SCHEDULED iff it is later today (or on a later
    date) and not ended. A meeting of today without readable times is
    never active or upcoming.
    """
    fields = _fields(value)
    if fields.get("forceEndedByUser"):
        return MeetingState.ENDED_EARLY
    if fields.get("isEnded"):
        return MeetingState.ENDED_NATURALLY

    day = parse_date(fields.get("date"))
    if day is not None and day != today:
        return MeetingState.SCHEDULED if day > today else MeetingState.ENDED_NATURALLY
    if not _has_times(fields):
        return MeetingState.ENDED_NATURALLY

    start = time_to_minutes(fields["startTime"])
    end = time_to_minutes(fields["endTime"])
    if now_minutes < start:
        return MeetingState.SCHEDULED
    if now_minutes <= end:
        return MeetingState.ACTIVE
    return MeetingState.ENDED_NATURALLY


def is_active(value: MeetingLike, today: date_type, now_minutes: int) -> bool:
    return meeting_state(value, today, now_minutes) is MeetingState.ACTIVE


def is_upcoming(value: MeetingLike, today: date_type, now_minutes: int) -> bool:
    return meeting_state(value, today, now_minutes) is MeetingState.SCHEDULED


def purpose_class(purpose: Any) -> str:
    """CSS color class for a meeting purpose."""
    lowered = str(purpose or "").lower()
    for keyword, css_class in _PURPOSE_CLASSES:
        if keyword in lowered:
            return css_class
    if "pv" in lowered.split():
        return "purpose-phongvan"
    return "purpose-khac"
