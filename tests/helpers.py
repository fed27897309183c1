# tests/helpers.py
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from roomsync.core.civil_time import CivilClock
from roomsync.services.meeting_rules import meeting_state

CIVIL_TZ = timezone(timedelta(hours=7))
BASE_URL = "http://testserver/api"


def civil_instant(day: str, hhmm: str) -> datetime:
    """`15/01/2025`, `09:20` (+07:00 wall clock) -> aware datetime."""
    d, m, y = (int(part) for part in day.split("/"))
    hour, minute = (int(part) for part in hhmm.split(":"))
    return datetime(y, m, d, hour, minute, tzinfo=CIVIL_TZ)


class FrozenNow:
    """Settable time source for `CivilClock`."""

    def __init__(self, value: datetime):
        self.value = value

    def __call__(self) -> datetime:
        return self.value

    def set(self, day: str, hhmm: str) -> None:
        self.value = civil_instant(day, hhmm)

    def advance(self, **kwargs) -> None:
        self.value = self.value + timedelta(**kwargs)


def frozen_clock(day: str = "15/01/2025", hhmm: str = "09:20") -> tuple[CivilClock, FrozenNow]:
    now = FrozenNow(civil_instant(day, hhmm))
    return CivilClock(offset_hours=7, source=now), now


class RecordingTransport(httpx.AsyncBaseTransport):
    """
    Delegates to an inner transport and remembers every request sent.
    """

    def __init__(self, inner: httpx.AsyncBaseTransport):
        self.inner = inner
        self.requests: list[httpx.Request] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return await self.inner.handle_async_request(request)

    def calls(self) -> list[str]:
        return [f"{r.method} {r.url.path}" for r in self.requests]


async def no_sleep(_: float) -> None:
    return None


def meeting_payload(
    meeting_id: str = "m1",
    room: str = "Room A",
    date: str = "15/01/2025",
    start: str = "09:00",
    end: str = "10:00",
    **extra: Any,
) -> dict:
    payload = {
        "id": meeting_id,
        "room": room,
        "date": date,
        "startTime": start,
        "endTime": end,
        "purpose": "họp",
        "content": "Kickoff",
    }
    payload.update(extra)
    return payload


class FakeManager:
    """
    Just enough of `DataManager` for the views: a fixed list and a clock.
    """

    def __init__(self, meetings: list[dict], clock: CivilClock):
        self.meetings = meetings
        self.clock = clock

    def list(self) -> list[dict]:
        return [dict(m) for m in self.meetings]

    def state_of(self, meeting: dict):
        return meeting_state(meeting, self.clock.today(), self.clock.minutes_now())
