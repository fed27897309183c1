# roomsync/client/room_view.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from roomsync.client.data_manager import DataManager
from roomsync.client.events import (
    MEETING_DATA_UPDATED,
    REFRESH_ROOM_STATUS,
    ROOM_STATUS_UPDATE,
    Event,
    EventBus,
    spawn,
)
from roomsync.core.civil_time import CivilClock, parse_date, time_to_minutes
from roomsync.services.meeting_rules import MeetingState
from roomsync.services.rooms import RoomId, discover_rooms

logger = logging.getLogger(__name__)


class RoomStatus(str, Enum):
    EMPTY = "Empty"
    ACTIVE = "Active"
    UPCOMING = "Upcoming"


@dataclass
class RoomCard:
    """
    Status card of one room.

    `meeting` is the active meeting for ACTIVE, the next meeting for
    UPCOMING and None for EMPTY.
    """

    room: Optional[RoomId]
    status: Optional[RoomStatus] = RoomStatus.EMPTY
    meeting: Optional[dict[str, Any]] = None
    upcoming: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def template(cls, room: RoomId) -> "RoomCard":
        return cls(room=room)

    @property
    def is_intact(self) -> bool:
        return self.room is not None and self.status is not None

    def show(self, other: "RoomCard") -> None:
        self.status = other.status
        self.meeting = other.meeting
        self.upcoming = other.upcoming

    @property
    def name(self) -> str:
        return str(self.room) if self.room is not None else ""

    @property
    def title(self) -> str:
        if self.meeting is None:
            return ""
        return self.meeting.get("title") or self.meeting.get("content") or self.meeting.get("purpose") or ""

    @property
    def start_time(self) -> str:
        return self.meeting.get("startTime", "") if self.meeting else ""

    @property
    def end_time(self) -> str:
        return self.meeting.get("endTime", "") if self.meeting else ""


class RoomView:
    """
    One card per room, kept current by the 15-second timer and by data
    events. Meetings are matched to cards with the tolerant room rule so
    naming variants such as `P.Họp lầu 3` land on the right card.
    """

    def __init__(
        self,
        manager: DataManager,
        bus: EventBus,
        default_rooms: Iterable[str] = ("Phòng họp lầu 3", "Phòng họp lầu 4"),
        clock: Optional[CivilClock] = None,
        refresh_interval: float = 15.0,
    ) -> None:
        self.manager = manager
        self.bus = bus
        self.default_rooms = list(default_rooms)
        self.clock = clock or manager.clock
        self.refresh_interval = refresh_interval

        self.cards: dict[str, RoomCard] = {}
        self.refresh_count = 0
        self._unsubscribers = [
            bus.subscribe(MEETING_DATA_UPDATED, self._on_data_updated),
            bus.subscribe(ROOM_STATUS_UPDATE, self._on_status_event),
            bus.subscribe(REFRESH_ROOM_STATUS, self._on_status_event),
        ]
        self._task: Optional[asyncio.Task] = None

    def discover(self, meetings: Optional[list[dict[str, Any]]] = None) -> list[RoomId]:
        meetings = self.manager.list() if meetings is None else meetings
        return discover_rooms((m.get("room") for m in meetings), self.default_rooms)

    def _ensure_cards(self, rooms: list[RoomId]) -> None:
        for room in rooms:
            card = self.cards.get(room.key)
            if card is None:
                self.cards[room.key] = RoomCard.template(room)
            elif not card.is_intact:
                logger.warning("Room card for %s was damaged; recreating it", room)
                self.cards[room.key] = RoomCard.template(room)

    def status_for(self, room: RoomId, meetings: list[dict[str, Any]]) -> RoomCard:
        today = self.clock.today()
        todays = [
            m
            for m in meetings
            if parse_date(m.get("date")) == today and room.matches(m.get("room"))
        ]

        active = [m for m in todays if self.manager.state_of(m) is MeetingState.ACTIVE]
        upcoming = sorted(
            (m for m in todays if self.manager.state_of(m) is MeetingState.SCHEDULED),
            key=lambda m: time_to_minutes(m.get("startTime")),
        )
        if active:
            current = max(active, key=lambda m: time_to_minutes(m.get("startTime")))
            return RoomCard(room=room, status=RoomStatus.ACTIVE, meeting=current, upcoming=upcoming)
        if upcoming:
            return RoomCard(room=room, status=RoomStatus.UPCOMING, meeting=upcoming[0], upcoming=upcoming)
        return RoomCard(room=room, status=RoomStatus.EMPTY, upcoming=upcoming)

    def refresh(self) -> dict[str, RoomCard]:
        """
        Recompute every card in place. Cards are reused across refreshes;
        only missing or damaged ones are rebuilt from the template.
        """
        meetings = self.manager.list()
        rooms = self.discover(meetings)
        self._ensure_cards(rooms)
        for room in rooms:
            self.cards[room.key].show(self.status_for(room, meetings))
        self.refresh_count += 1
        return self.cards

    def card(self, room: RoomId | str) -> Optional[RoomCard]:
        room_id = room if isinstance(room, RoomId) else RoomId.parse(room)
        return self.cards.get(room_id.key)

    def _on_data_updated(self, event: Event) -> None:
        if event.detail.get("isNewMeeting"):
            meeting = event.detail.get("meeting") or {}
            if parse_date(meeting.get("date")) != self.clock.today():
                return
        self.refresh()

    def _on_status_event(self, event: Event) -> None:
        self.refresh()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            self.refresh()

    def start(self) -> None:
        self.refresh()
        if self._task is None or self._task.done():
            self._task = spawn(self._run(), name="room-status")

    async def stop(self) -> None:
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
