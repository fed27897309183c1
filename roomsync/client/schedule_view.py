# roomsync/client/schedule_view.py
"""
Week schedule render model.

`ScheduleView.render()` turns the Data Manager's mirror into a `WeekGrid`:
seven `DayColumn`s (Monday..Sunday) of positioned `MeetingBlock`s plus a
`NowIndicator` on today's column. A presentation layer draws the grid;
nothing here touches a UI toolkit.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Optional

from roomsync.client.data_manager import DataManager
from roomsync.client.events import (
    BOOKING_REQUESTED,
    MEETING_DATA_UPDATED,
    MEETING_ENDED_EARLY,
    DebouncedSubscriber,
    Event,
    EventBus,
    spawn,
)
from roomsync.core.civil_time import (
    CivilClock,
    day_name,
    format_date,
    minutes_to_time,
    parse_date,
    time_to_minutes,
    week_dates,
    week_start,
)
from roomsync.services.meeting_rules import is_marked_ended, purpose_class
from roomsync.services.rooms import RoomId

logger = logging.getLogger(__name__)

ALL_ROOMS = "all"
DATA_REFRESH_DELAY = 0.3
ENDED_REFRESH_DELAY = 0.1
TICK_INTERVAL = 60.0


@dataclass
class MeetingBlock:
    meeting_id: str
    room: str
    title: str
    start_time: str
    end_time: str
    hour: int
    top_percent: float
    height_px: float
    css_class: str
    visible: bool = True
    selected: bool = False
    meeting: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class DayColumn:
    date: date
    name: str
    is_today: bool
    blocks: list[MeetingBlock] = field(default_factory=list)

    @property
    def date_label(self) -> str:
        return format_date(self.date)


@dataclass
class NowIndicator:
    date: date
    hour: int
    minute: int
    top_percent: float
    label: str
    scroll_offset: float


@dataclass
class WeekGrid:
    week_start: date
    hours: list[int]
    days: list[DayColumn]
    now_indicator: Optional[NowIndicator]
    room_filter: str
    scroll_to: Optional[float] = None

    @property
    def period_label(self) -> str:
        return f"{format_date(self.days[0].date)} - {format_date(self.days[-1].date)}"

    def blocks(self, visible_only: bool = False) -> list[MeetingBlock]:
        return [
            block
            for day in self.days
            for block in day.blocks
            if block.visible or not visible_only
        ]

    def meeting_ids(self, visible_only: bool = False) -> list[str]:
        return [block.meeting_id for block in self.blocks(visible_only)]


@dataclass
class BookingPrefill:
    date: str
    start_time: str
    end_time: str


class ScheduleView:
    def __init__(
        self,
        manager: DataManager,
        bus: EventBus,
        clock: Optional[CivilClock] = None,
        start_hour: int = 0,
        end_hour: int = 24,
        hour_height: int = 60,
        viewport_height: int = 600,
    ) -> None:
        self.manager = manager
        self.bus = bus
        self.clock = clock or manager.clock
        self.start_hour = start_hour
        self.end_hour = end_hour
        self.hour_height = hour_height
        self.viewport_height = viewport_height

        self.anchor: date = self.clock.today()
        self.room_filter = ALL_ROOMS
        self.delete_mode = False
        self.selected: set[str] = set()

        self.grid: Optional[WeekGrid] = None
        self.render_count = 0
        self._current_day = self.clock.today()
        self._scrolled = False
        self._subscribers = [
            (MEETING_DATA_UPDATED, DebouncedSubscriber(self._on_data_updated, DATA_REFRESH_DELAY)),
            (MEETING_ENDED_EARLY, DebouncedSubscriber(self._on_data_updated, ENDED_REFRESH_DELAY)),
        ]
        self._unsubscribers = [bus.subscribe(name, sub) for name, sub in self._subscribers]
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    @property
    def hours(self) -> list[int]:
        return list(range(self.start_hour, self.end_hour))

    def _block_visible(self, room: Any) -> bool:
        if self.room_filter == ALL_ROOMS:
            return True
        return RoomId.parse(self.room_filter).matches(room)

    def _build_block(self, meeting: dict[str, Any]) -> Optional[MeetingBlock]:
        start = time_to_minutes(meeting.get("startTime"))
        end = time_to_minutes(meeting.get("endTime"))
        hour, minute = divmod(start, 60)
        if hour not in self.hours:
            return None

        return MeetingBlock(
            meeting_id=meeting.get("id", ""),
            room=str(meeting.get("room") or ""),
            title=str(meeting.get("title") or meeting.get("content") or ""),
            start_time=meeting.get("startTime", ""),
            end_time=meeting.get("endTime", ""),
            hour=hour,
            top_percent=minute / 60 * 100,
            height_px=(end - start) * self.hour_height / 60,
            css_class=purpose_class(meeting.get("purpose")),
            visible=self._block_visible(meeting.get("room")),
            selected=meeting.get("id") in self.selected,
            meeting=meeting,
        )

    def _now_indicator(self, monday: date) -> Optional[NowIndicator]:
        now = self.clock.now()
        today = now.date()
        if not monday <= today <= monday + timedelta(days=6):
            return None
        if now.hour not in self.hours:
            return None

        position = (now.hour - self.start_hour) * self.hour_height + now.minute / 60 * self.hour_height
        return NowIndicator(
            date=today,
            hour=now.hour,
            minute=now.minute,
            top_percent=now.minute / 60 * 100,
            label=f"{now.hour:02d}:{now.minute:02d}",
            scroll_offset=max(0.0, position - self.viewport_height / 2),
        )

    def render(self) -> WeekGrid:
        """
        Build the grid for the week containing `anchor`.

        Ended meetings are not drawn. Every other meeting dated inside the
        week gets a block; the room filter only toggles `visible`.
        """
        monday = week_start(self.anchor)
        today = self.clock.today()
        days = [
            DayColumn(date=day, name=day_name(day), is_today=day == today)
            for day in week_dates(self.anchor)
        ]
        by_date = {day.date: day for day in days}

        for meeting in self.manager.list():
            if is_marked_ended(meeting):
                continue
            column = by_date.get(parse_date(meeting.get("date")))
            if column is None:
                continue
            block = self._build_block(meeting)
            if block is not None:
                column.blocks.append(block)

        for column in days:
            column.blocks.sort(key=lambda b: time_to_minutes(b.start_time))

        indicator = self._now_indicator(monday)
        scroll_to = None
        if indicator is not None and not self._scrolled:
            scroll_to = indicator.scroll_offset
            self._scrolled = True

        return WeekGrid(
            week_start=monday,
            hours=self.hours,
            days=days,
            now_indicator=indicator,
            room_filter=self.room_filter,
            scroll_to=scroll_to,
        )

    def refresh(self) -> WeekGrid:
        self.grid = self.render()
        self.render_count += 1
        if self.delete_mode:
            rendered = set(self.grid.meeting_ids())
            dropped = self.selected - rendered
            if dropped:
                self.selected -= dropped
                for block in self.grid.blocks():
                    block.selected = block.meeting_id in self.selected
        return self.grid

    def _on_data_updated(self, event: Event) -> None:
        self.refresh()

    # ------------------------------------------------------------------
    # Navigation and filter
    # ------------------------------------------------------------------

    def next_week(self) -> WeekGrid:
        self.anchor += timedelta(days=7)
        return self.refresh()

    def previous_week(self) -> WeekGrid:
        self.anchor -= timedelta(days=7)
        return self.refresh()

    def go_to_today(self) -> WeekGrid:
        self.anchor = self.clock.today()
        return self.refresh()

    def set_anchor(self, value: date | str) -> WeekGrid:
        anchor = parse_date(value) if isinstance(value, str) else value
        if anchor is None:
            raise ValueError(f"Invalid date: {value}")
        self.anchor = anchor
        return self.refresh()

    def set_room_filter(self, room: Optional[str]) -> WeekGrid:
        self.room_filter = room if room and room != ALL_ROOMS else ALL_ROOMS
        return self.refresh()

    def cell_clicked(self, day: date, hour: int, minute: int = 0) -> Optional[BookingPrefill]:
        """
        Empty-cell click: request a booking for that slot with a one-hour
        default span. Ignored in delete mode.
        """
        if self.delete_mode:
            return None
        start = hour * 60 + minute
        prefill = BookingPrefill(
            date=format_date(day),
            start_time=minutes_to_time(start),
            end_time=minutes_to_time(start + 60),
        )
        self.bus.emit(
            BOOKING_REQUESTED,
            {"date": prefill.date, "startTime": prefill.start_time, "endTime": prefill.end_time},
        )
        return prefill

    # ------------------------------------------------------------------
    # Delete-mode selection
    # ------------------------------------------------------------------

    def enter_delete_mode(self) -> None:
        self.delete_mode = True
        self.selected.clear()
        self.refresh()

    def exit_delete_mode(self) -> None:
        self.delete_mode = False
        self.selected.clear()
        self.refresh()

    def toggle_selection(self, meeting_id: str) -> bool:
        """Returns whether `meeting_id` is selected afterwards."""
        if not self.delete_mode:
            return False
        if meeting_id in self.selected:
            self.selected.discard(meeting_id)
        else:
            self.selected.add(meeting_id)
        if self.grid is not None:
            for block in self.grid.blocks():
                if block.meeting_id == meeting_id:
                    block.selected = meeting_id in self.selected
        return meeting_id in self.selected

    def selected_meetings(self) -> list[dict[str, Any]]:
        return [m for m in self.manager.list() if m.get("id") in self.selected]

    # ------------------------------------------------------------------
    # Clock
    # ------------------------------------------------------------------

    def tick(self) -> WeekGrid:
        """Advance the now indicator; on a civil day rollover jump back to today."""
        today = self.clock.today()
        if today != self._current_day:
            logger.info("Civil day rolled over to %s", format_date(today))
            self._current_day = today
            self.anchor = today
        return self.refresh()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(TICK_INTERVAL)
            self.tick()

    def start(self) -> None:
        self.refresh()
        if self._task is None or self._task.done():
            self._task = spawn(self._run(), name="schedule-tick")

    async def stop(self) -> None:
        for _, subscriber in self._subscribers:
            subscriber.cancel()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
