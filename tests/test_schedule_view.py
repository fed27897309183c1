# tests/test_schedule_view.py
import asyncio
from datetime import date

import pytest

from helpers import FakeManager, frozen_clock, meeting_payload
from roomsync.client.events import BOOKING_REQUESTED, MEETING_DATA_UPDATED, EventBus
from roomsync.client.schedule_view import ScheduleView


def _view(meetings, day="15/01/2025", hhmm="09:20"):
    clock, now = frozen_clock(day, hhmm)
    bus = EventBus()
    view = ScheduleView(FakeManager(meetings, clock), bus, clock=clock)
    return view, bus, now


def test_week_covers_monday_to_sunday_of_anchor():
    """
    Anchor Wednesday 15/01/2025: the grid spans 13/01..19/01, so a meeting
    on Sunday 12/01 is left out and one on Sunday 19/01 is drawn.
    """
    view, _, _ = _view(
        [
            meeting_payload("sun-before", date="12/01/2025"),
            meeting_payload("mon", date="13/01/2025"),
            meeting_payload("sun", date="19/01/2025"),
            meeting_payload("mon-after", date="20/01/2025"),
        ]
    )

    grid = view.render()

    assert [d.date for d in grid.days][0] == date(2025, 1, 13)
    assert [d.date for d in grid.days][-1] == date(2025, 1, 19)
    assert grid.period_label == "13/01/2025 - 19/01/2025"
    assert grid.meeting_ids() == ["mon", "sun"]


def test_now_indicator_only_in_todays_column():
    view, _, _ = _view([])

    grid = view.render()

    assert [d.is_today for d in grid.days] == [False, False, True, False, False, False, False]
    indicator = grid.now_indicator
    assert indicator.date == date(2025, 1, 15)
    assert indicator.label == "09:20"
    assert indicator.top_percent == pytest.approx(20 / 60 * 100)

    assert view.next_week().now_indicator is None
    assert view.go_to_today().now_indicator is not None


def test_scroll_to_now_happens_on_first_render_only():
    view, _, _ = _view([])

    first = view.refresh()
    second = view.refresh()

    assert first.scroll_to == pytest.approx(9 * 60 + 20 - 300)
    assert second.scroll_to is None


def test_block_position_and_class():
    view, _, _ = _view([meeting_payload(start="09:30", end="10:15", purpose="Đào tạo")])

    (block,) = view.render().blocks()

    assert block.hour == 9
    assert block.top_percent == pytest.approx(50)
    assert block.height_px == pytest.approx(45)
    assert block.css_class == "purpose-daotao"


def test_ended_meetings_are_not_drawn():
    view, _, _ = _view(
        [
            meeting_payload("live"),
            meeting_payload("ended", start="11:00", end="12:00", isEnded=True, forceEndedByUser=True),
        ]
    )

    assert view.render().meeting_ids() == ["live"]


def test_room_filter_only_toggles_visibility():
    view, _, _ = _view(
        [
            meeting_payload("a"),
            meeting_payload("a2", room="room a - east", start="11:00", end="12:00"),
            meeting_payload("b", room="Room B"),
        ]
    )

    grid = view.set_room_filter("ROOM A")
    assert grid.meeting_ids() == ["a", "b", "a2"]
    assert sorted(grid.meeting_ids(visible_only=True)) == ["a", "a2"]

    grid = view.set_room_filter("all")
    assert sorted(grid.meeting_ids(visible_only=True)) == ["a", "a2", "b"]


def test_week_navigation():
    view, _, _ = _view([])

    assert view.next_week().period_label == "20/01/2025 - 26/01/2025"
    assert view.previous_week().period_label == "13/01/2025 - 19/01/2025"
    assert view.previous_week().period_label == "06/01/2025 - 12/01/2025"
    assert view.set_anchor("01/02/2025").period_label == "27/01/2025 - 02/02/2025"

    with pytest.raises(ValueError):
        view.set_anchor("not a date")


def test_cell_click_requests_one_hour_booking():
    view, bus, _ = _view([])
    requests = []
    bus.subscribe(BOOKING_REQUESTED, requests.append)

    prefill = view.cell_clicked(date(2025, 1, 16), 14)
    late = view.cell_clicked(date(2025, 1, 16), 23, 30)

    assert (prefill.date, prefill.start_time, prefill.end_time) == ("16/01/2025", "14:00", "15:00")
    assert late.end_time == "23:59"
    assert requests[0].detail == {"date": "16/01/2025", "startTime": "14:00", "endTime": "15:00"}


def test_cell_click_is_ignored_in_delete_mode():
    view, bus, _ = _view([])
    requests = []
    bus.subscribe(BOOKING_REQUESTED, requests.append)
    view.enter_delete_mode()

    assert view.cell_clicked(date(2025, 1, 16), 14) is None
    assert requests == []


def test_selection_is_pruned_when_meeting_disappears():
    meetings = [meeting_payload("m1"), meeting_payload("m2", start="11:00", end="12:00")]
    view, _, _ = _view(meetings)
    view.enter_delete_mode()

    assert view.toggle_selection("m1") is True
    assert view.toggle_selection("m2") is True
    assert view.toggle_selection("m2") is False
    view.toggle_selection("m2")

    meetings.pop(0)
    grid = view.refresh()

    assert view.selected == {"m2"}
    assert [b.selected for b in grid.blocks()] == [True]


def test_toggle_outside_delete_mode_does_nothing():
    view, _, _ = _view([meeting_payload()])
    assert view.toggle_selection("m1") is False
    assert view.selected == set()


def test_tick_jumps_back_to_today_after_midnight():
    view, _, now = _view([])
    view.next_week()

    now.set("16/01/2025", "00:01")
    grid = view.tick()

    assert view.anchor == date(2025, 1, 16)
    assert grid.now_indicator.date == date(2025, 1, 16)


@pytest.mark.asyncio
async def test_bursts_of_updates_render_once():
    view, bus, _ = _view([meeting_payload()])
    before = view.render_count

    for _ in range(5):
        bus.emit(MEETING_DATA_UPDATED, {"source": "test"})
    await asyncio.sleep(0.4)

    assert view.render_count == before + 1
    await view.stop()


def test_records_with_free_form_fields_still_render():
    view, _, _ = _view(
        [
            meeting_payload("numeric", duration=60, purpose=None, title=7),
            meeting_payload("no-times", startTime=None, endTime=930),
        ]
    )

    grid = view.render()

    block = next(b for b in grid.blocks() if b.meeting_id == "numeric")
    assert block.title == "7"
    assert block.css_class == "purpose-khac"
    assert "numeric" in grid.meeting_ids()
