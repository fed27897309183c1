# tests/test_meeting_rules.py
from datetime import date

import pytest

from helpers import meeting_payload
from roomsync.services.meeting_rules import (
    MeetingConflictError,
    MeetingState,
    MeetingValidationError,
    ensure_no_conflict,
    find_conflicts,
    is_active,
    is_marked_ended,
    is_upcoming,
    meeting_state,
    purpose_class,
    validate_meeting,
)

TODAY = date(2025, 1, 15)


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def test_validate_accepts_well_formed_meeting():
    meeting = validate_meeting(meeting_payload())
    assert meeting.start_time == "09:00"


@pytest.mark.parametrize(
    "overrides, kind",
    [
        ({"room": ""}, "missing"),
        ({"startTime": None}, "missing"),
        ({"date": "2025-01-15"}, "format"),
        ({"startTime": "9h"}, "format"),
        ({"endTime": "09:00"}, "range"),
        ({"endTime": "08:00"}, "range"),
    ],
)
def test_validate_reports_kind_of_problem(overrides, kind):
    payload = {**meeting_payload(), **overrides}

    with pytest.raises(MeetingValidationError) as excinfo:
        validate_meeting(payload)

    assert excinfo.value.kind == kind
    assert excinfo.value.reasons


def test_conflict_names_the_offending_meeting():
    existing = [meeting_payload(title="Kickoff")]

    with pytest.raises(MeetingConflictError) as excinfo:
        ensure_no_conflict(meeting_payload("m2", start="09:30", end="10:30"), existing)

    assert "Kickoff (09:00-10:00)" in str(excinfo.value)
    assert [m.id for m in excinfo.value.conflicts] == ["m1"]


@pytest.mark.parametrize(
    "start, end, conflicts",
    [
        ("10:00", "11:00", False),
        ("08:00", "09:00", False),
        ("08:30", "09:01", True),
        ("09:10", "09:50", True),
        ("08:00", "11:00", True),
    ],
)
def test_half_open_interval_overlap(start, end, conflicts):
    found = find_conflicts(meeting_payload("m2", start=start, end=end), [meeting_payload()])
    assert bool(found) is conflicts


def test_room_variants_are_the_same_room_for_conflicts():
    existing = [meeting_payload(room="P.Họp lầu 3")]
    candidate = meeting_payload("m2", room="  phòng họp   LẦU 3 ", start="09:30", end="10:30")

    assert find_conflicts(candidate, existing)


def test_ended_meetings_and_excluded_id_never_conflict():
    ended = meeting_payload(isEnded=True)
    assert find_conflicts(meeting_payload("m2"), [ended]) == []
    assert find_conflicts(meeting_payload(), [meeting_payload()], exclude_id="m1") == []
    assert find_conflicts(meeting_payload("m2", forceEndedByUser=True), [meeting_payload()]) == []


@pytest.mark.parametrize(
    "now, state",
    [
        ("08:59", MeetingState.SCHEDULED),
        ("09:00", MeetingState.ACTIVE),
        ("09:59", MeetingState.ACTIVE),
        ("10:00", MeetingState.ACTIVE),
        ("10:01", MeetingState.ENDED_NATURALLY),
    ],
)
def test_time_predicate_across_the_day(now, state):
    """
    Active iff start <= now <= end; Upcoming iff now < start; otherwise ended.
    """
    meeting = meeting_payload()

    assert meeting_state(meeting, TODAY, _minutes(now)) is state
    assert is_active(meeting, TODAY, _minutes(now)) is (state is MeetingState.ACTIVE)
    assert is_upcoming(meeting, TODAY, _minutes(now)) is (state is MeetingState.SCHEDULED)


def test_time_predicate_at_civil_midnight_boundary():
    """
    A meeting at 00:00 on the 15th is upcoming at 23:59 on the 14th and
    active at 00:00 on the 15th (both +07:00 wall clock).
    """
    meeting = meeting_payload(start="00:00", end="01:00")

    assert meeting_state(meeting, date(2025, 1, 14), _minutes("23:59")) is MeetingState.SCHEDULED
    assert meeting_state(meeting, TODAY, 0) is MeetingState.ACTIVE
    assert meeting_state(meeting, date(2025, 1, 16), 0) is MeetingState.ENDED_NATURALLY


def test_ended_flags_take_precedence():
    early = meeting_payload(isEnded=True, forceEndedByUser=True, originalEndTime="10:00")
    ended = meeting_payload(isEnded=True)

    assert meeting_state(early, TODAY, _minutes("09:30")) is MeetingState.ENDED_EARLY
    assert meeting_state(ended, TODAY, _minutes("09:30")) is MeetingState.ENDED_NATURALLY
    assert MeetingState.ENDED_EARLY.is_ended
    assert not MeetingState.ACTIVE.is_ended


@pytest.mark.parametrize(
    "purpose, css_class",
    [
        ("Họp giao ban", "purpose-hop"),
        ("Đào tạo nội bộ", "purpose-daotao"),
        ("Phỏng vấn ứng viên", "purpose-phongvan"),
        ("Thảo luận", "purpose-thaoluan"),
        ("Báo cáo tuần", "purpose-baocao"),
        ("", "purpose-khac"),
        (None, "purpose-khac"),
    ],
)
def test_purpose_class(purpose, css_class):
    assert purpose_class(purpose) == css_class


def test_free_form_fields_pass_validation():
    meeting = validate_meeting(meeting_payload(duration=60, dayOfWeek=4, title=None))

    assert meeting.duration == 60
    assert meeting.to_payload()["dayOfWeek"] == 4


def test_unreadable_identifying_field_is_a_format_problem():
    with pytest.raises(MeetingValidationError) as excinfo:
        validate_meeting(meeting_payload(room=["Room A"]))

    assert excinfo.value.kind == "format"


def test_conflict_check_skips_records_it_cannot_read():
    existing = [
        meeting_payload("numeric", duration=60, title="Retro"),
        {"id": 42, "room": "Room A", "date": "15/01/2025", "startTime": "09:00", "endTime": "10:00"},
        meeting_payload("untimed", startTime=None, endTime=None),
    ]

    conflicts = find_conflicts(meeting_payload("new", start="09:30", end="10:30"), existing)

    assert [m.id for m in conflicts] == ["numeric"]


def test_state_of_record_without_readable_times():
    untimed = meeting_payload(startTime=900, endTime=None)

    assert meeting_state(untimed, TODAY, _minutes("00:00")) is MeetingState.ENDED_NATURALLY
    assert meeting_state(untimed, date(2025, 1, 14), 0) is MeetingState.SCHEDULED
    assert is_marked_ended(meeting_payload(isEnded=1)) is True
