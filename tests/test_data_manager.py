# tests/test_data_manager.py
import asyncio
import json
from http import HTTPStatus

import httpx
import pytest

from helpers import BASE_URL, RecordingTransport, meeting_payload, no_sleep
from roomsync.client.api_client import ApiClientError, MeetingApiClient
from roomsync.client.data_manager import DataManager, NoActiveMeetingError
from roomsync.client.events import (
    API_CONNECTION_ERROR,
    CONNECTION_RESTORED,
    MEETING_DATA_UPDATED,
    MEETING_ENDED_EARLY,
    NOTIFICATION,
    REFRESH_ROOM_STATUS,
    ROOM_STATUS_UPDATE,
)
from roomsync.services.meeting_rules import (
    MeetingConflictError,
    MeetingNotFoundError,
    MeetingState,
    MeetingValidationError,
)


class _SwitchableTransport(httpx.AsyncBaseTransport):
    """Fails every request with a connection error while `down` is set."""

    def __init__(self, inner: httpx.AsyncBaseTransport):
        self.inner = inner
        self.down = False

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        return await self.inner.handle_async_request(request)


class _GatedServer:
    """
    In-memory meetings endpoint whose POST waits for `release` before
    storing, so a create can be held in flight.
    """

    def __init__(self):
        self.meetings = []
        self.release = asyncio.Event()
        self.gets = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            self.gets += 1
            return httpx.Response(HTTPStatus.OK, json=list(self.meetings), headers={"ETag": '"v"'})
        if request.method == "POST":
            await self.release.wait()
            record = json.loads(request.content)
            self.meetings.append(record)
            return httpx.Response(HTTPStatus.CREATED, json=record)
        return httpx.Response(HTTPStatus.METHOD_NOT_ALLOWED)


def _collect(bus, *names):
    events = []
    for name in names:
        bus.subscribe(name, events.append)
    return events


def _posts(transport: RecordingTransport) -> list[str]:
    return [call for call in transport.calls() if call == "POST /api/meetings"]


@pytest.fixture
def switchable(app):
    return _SwitchableTransport(httpx.ASGITransport(app=app))


@pytest.fixture
def flaky_manager(switchable, bus, clock) -> DataManager:
    api = MeetingApiClient(BASE_URL, transport=switchable, sleep=no_sleep)
    return DataManager(api, bus, clock=clock, confirm_delay=0)


@pytest.mark.asyncio
async def test_create_persists_fills_derived_fields_and_emits(manager, bus, store):
    events = _collect(bus, MEETING_DATA_UPDATED, ROOM_STATUS_UPDATE)

    created = await manager.create(meeting_payload())
    await manager.wait_idle()

    assert created["dayOfWeek"] == "4"
    assert created["duration"] == "1h"
    assert created["isEnded"] is False
    assert [m["id"] for m in store.read_all()] == ["m1"]
    assert [m["id"] for m in manager.list()] == ["m1"]

    first = events[0]
    assert first.name == MEETING_DATA_UPDATED
    assert first.detail["isNewMeeting"] is True
    assert first.detail["meeting"]["id"] == "m1"
    assert [m["id"] for m in first.detail["todayMeetings"]] == ["m1"]
    assert events[1].name == ROOM_STATUS_UPDATE


@pytest.mark.asyncio
async def test_new_meeting_on_other_day_skips_room_status(manager, bus):
    events = _collect(bus, ROOM_STATUS_UPDATE)

    await manager.create(meeting_payload(date="20/01/2025"))

    assert events == []
    await manager.wait_idle()


@pytest.mark.asyncio
async def test_conflicting_create_is_rejected_without_request(manager, transport, store):
    """
    An overlapping meeting is refused locally: no POST, mirror unchanged.
    """
    await manager.create(meeting_payload(title="Kickoff"))
    await manager.wait_idle()
    posts_before = len(_posts(transport))

    with pytest.raises(MeetingConflictError) as excinfo:
        await manager.create(meeting_payload("m2", start="09:30", end="10:30"))

    assert "Kickoff" in str(excinfo.value)
    assert len(_posts(transport)) == posts_before
    assert [m["id"] for m in manager.list()] == ["m1"]
    assert [m["id"] for m in store.read_all()] == ["m1"]


@pytest.mark.asyncio
async def test_touching_meeting_is_accepted(manager):
    await manager.create(meeting_payload())
    await manager.create(meeting_payload("m3", start="10:00", end="11:00"))

    assert [m["id"] for m in manager.list()] == ["m1", "m3"]


@pytest.mark.asyncio
async def test_invalid_draft_is_rejected_before_anything_changes(manager, transport):
    with pytest.raises(MeetingValidationError) as excinfo:
        await manager.create(meeting_payload(start="10:00", end="09:00"))

    assert excinfo.value.kind == "range"
    assert manager.list() == []
    assert transport.calls() == []


@pytest.mark.asyncio
@pytest.mark.usefixtures("conflict_checking")
async def test_server_rejection_rolls_back_and_notifies(manager, bus, store):
    store.write_all([meeting_payload("other", start="09:30", end="10:30")])
    notifications = _collect(bus, NOTIFICATION)

    with pytest.raises(ApiClientError) as excinfo:
        await manager.create(meeting_payload())

    assert excinfo.value.status_code == HTTPStatus.CONFLICT
    assert manager.list() == []
    assert manager.dirty is False
    assert notifications[-1].detail["level"] == "error"


@pytest.mark.asyncio
async def test_end_by_room_ends_meeting_at_current_minute(manager, bus, store):
    """
    At 09:20 ending Room A's meeting sets endTime to 09:20, keeps the
    scheduled end and leaves the room without an active meeting.
    """
    await manager.create(meeting_payload())
    assert manager.current_for("Room A")["id"] == "m1"
    ended_events = _collect(bus, MEETING_ENDED_EARLY)

    ended = await manager.end_by_room("Room A")

    assert ended["endTime"] == "09:20"
    assert ended["isEnded"] is True
    assert ended["forceEndedByUser"] is True
    assert ended["originalEndTime"] == "10:00"
    assert manager.state_of(ended) is MeetingState.ENDED_EARLY
    assert manager.current_for("Room A") is None
    assert store.find("m1")["endTime"] == "09:20"

    assert ended_events[0].detail["originalEndTime"] == "10:00"
    assert ended_events[0].detail["newEndTime"] == "09:20"


@pytest.mark.asyncio
async def test_end_by_room_without_active_meeting_raises(manager):
    await manager.create(meeting_payload(start="11:00", end="12:00"))

    with pytest.raises(NoActiveMeetingError):
        await manager.end_by_room("Room A")


@pytest.mark.asyncio
async def test_end_now_refuses_meeting_that_has_not_started(manager, transport, store):
    await manager.create(meeting_payload(start="11:00", end="12:00"))
    await manager.wait_idle()
    calls = len(transport.calls())

    with pytest.raises(NoActiveMeetingError) as excinfo:
        await manager.end_now("m1")

    assert excinfo.value.meeting_id == "m1"
    assert manager.find("m1")["endTime"] == "12:00"
    assert store.find("m1")["isEnded"] is False
    assert len(transport.calls()) == calls

@pytest.mark.asyncio
async def test_update_recomputes_derived_fields(manager, store):
    await manager.create(meeting_payload())

    updated = await manager.update("m1", {"endTime": "10:30", "room": "p.họp lầu 3"})

    assert updated["duration"] == "1h30m"
    assert updated["room"] == "Phòng họp lầu 3"
    assert store.find("m1")["endTime"] == "10:30"


@pytest.mark.asyncio
async def test_update_of_meeting_deleted_elsewhere_prunes_it(manager, store):
    await manager.create(meeting_payload())
    await manager.wait_idle()
    store.write_all([])

    with pytest.raises(MeetingNotFoundError):
        await manager.update("m1", {"title": "Renamed"})

    assert manager.list() == []


@pytest.mark.asyncio
async def test_remove_treats_404_as_already_deleted(manager, store, bus):
    await manager.create(meeting_payload())
    await manager.wait_idle()
    store.write_all([])
    notifications = _collect(bus, NOTIFICATION)

    removed = await manager.remove("m1")

    assert removed["id"] == "m1"
    assert manager.list() == []
    assert notifications[-1].detail == {
        "level": "warning",
        "message": "Meeting no longer exists on the server",
    }


@pytest.mark.asyncio
async def test_transport_failure_keeps_change_and_marks_offline(flaky_manager, switchable, bus):
    errors = _collect(bus, API_CONNECTION_ERROR)
    switchable.down = True

    created = await flaky_manager.create(meeting_payload())

    assert created["id"] == "m1"
    assert [m["id"] for m in flaky_manager.list()] == ["m1"]
    assert flaky_manager.online is False
    assert flaky_manager.dirty is True
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_local_changes_are_pushed_when_connection_returns(flaky_manager, switchable, bus, store):
    await flaky_manager.load_from_server()
    flaky_manager.start()
    switchable.down = True
    await flaky_manager.create(meeting_payload())
    await flaky_manager.create(meeting_payload("m2", start="11:00", end="12:00"))
    assert store.read_all() == []

    switchable.down = False
    bus.emit(CONNECTION_RESTORED, {"baseUrl": BASE_URL})
    await flaky_manager.wait_idle()
    await flaky_manager.stop()

    assert [m["id"] for m in store.read_all()] == ["m1", "m2"]
    assert flaky_manager.dirty is False


@pytest.mark.asyncio
async def test_push_after_server_changed_reloads_server_list(flaky_manager, switchable, bus, store):
    """
    The push is conditional on the last list read; when another client
    wrote in between, the server list wins and the user is told.
    """
    await flaky_manager.load_from_server()
    switchable.down = True
    await flaky_manager.create(meeting_payload())
    store.write_all([meeting_payload("m5", start="14:00", end="15:00")])
    notifications = _collect(bus, NOTIFICATION)

    switchable.down = False
    pushed = await flaky_manager.push_all()

    assert pushed is False
    assert [m["id"] for m in store.read_all()] == ["m5"]
    assert [m["id"] for m in flaky_manager.list()] == ["m5"]
    assert flaky_manager.dirty is False
    assert notifications[0].detail["level"] == "warning"


@pytest.mark.asyncio
async def test_fetch_while_dirty_keeps_local_changes(flaky_manager, switchable, store):
    await flaky_manager.load_from_server()
    switchable.down = True
    await flaky_manager.create(meeting_payload())
    switchable.down = False

    assert [m["id"] for m in await flaky_manager.load_from_server("periodic")] == ["m1"]
    assert [m["id"] for m in await flaky_manager.load_from_server("force")] == []


@pytest.mark.asyncio
async def test_fetches_never_overwrite_a_create_in_flight(bus, clock):
    server = _GatedServer()
    api = MeetingApiClient(BASE_URL, transport=httpx.MockTransport(server), sleep=no_sleep)
    manager = DataManager(api, bus, clock=clock, confirm_delay=0)

    pending = asyncio.create_task(manager.create(meeting_payload()))
    for _ in range(100):
        if manager.in_flight:
            break
        await asyncio.sleep(0)
    assert manager.in_flight == 1

    periodic = await manager.load_from_server("periodic")
    assert server.gets == 0
    assert [m["id"] for m in periodic] == ["m1"]

    stale = await manager.load_from_server("load")
    assert server.gets == 1
    assert [m["id"] for m in stale] == ["m1"]

    server.release.set()
    await pending
    await manager.wait_idle()

    assert manager.in_flight == 0
    assert [m["id"] for m in manager.list()] == ["m1"]


@pytest.mark.asyncio
async def test_force_refresh_emits_refresh_room_status(manager, bus, store):
    store.write_all([meeting_payload()])
    events = _collect(bus, REFRESH_ROOM_STATUS)

    meetings = await manager.force_refresh()

    assert [m["id"] for m in meetings] == ["m1"]
    assert len(events) == 1
    assert manager.last_sync is not None


@pytest.mark.asyncio
async def test_queries_by_room_and_time(manager, store, now):
    store.write_all(
        [
            meeting_payload("a", start="09:00", end="10:00"),
            meeting_payload("b", room="room a", start="09:10", end="09:40"),
            meeting_payload("c", start="13:00", end="14:00"),
            meeting_payload("d", start="11:00", end="12:00"),
            meeting_payload("e", room="Room B", start="09:00", end="10:00"),
            meeting_payload("f", date="16/01/2025"),
        ]
    )
    await manager.load_from_server()

    assert manager.current_for("ROOM A")["id"] == "b"
    assert [m["id"] for m in manager.upcoming_for("Room A")] == ["d", "c"]
    assert [m["id"] for m in manager.by_date("16/01/2025")] == ["f"]
    assert len(manager.today()) == 5


@pytest.mark.asyncio
async def test_remove_many_reports_failures_in_one_notification(manager, bus, store):
    await manager.create(meeting_payload())
    await manager.create(meeting_payload("m2", start="11:00", end="12:00"))
    notifications = _collect(bus, NOTIFICATION)

    result = await manager.remove_many(["m1", "ghost", "m2"])

    assert [m["id"] for m in result.deleted] == ["m1", "m2"]
    assert list(result.failed) == ["ghost"]
    assert len(notifications) == 1
    assert notifications[0].detail["message"] == "Deleted 2 meeting(s), 1 failed"
    assert store.read_all() == []
