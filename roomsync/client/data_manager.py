# roomsync/client/data_manager.py
"""
Client-side mirror of the meeting list.

The Data Manager is the only writer of the mirror. Views receive the
handle explicitly and react to the events it emits on the `EventBus`.

Mutation policy
---------------
- Validation and conflict errors are raised before anything changes and
  no request is sent.
- Changes are applied to the mirror first (optimistic) and then sent.
- Transport failure (service unreachable): the local change is kept,
  the manager is marked offline and the mirror is flagged dirty so it is
  pushed with the batch endpoint when the connection comes back.
- HTTP error status: the local change is rolled back and an error
  notification is emitted. A 404 on update/delete prunes the record.

Mutations are serialized by an `asyncio.Lock`. Every local change bumps a
generation number and every request in flight is counted; a fetch whose
generation is stale, or that completes while a mutation is in flight, is
discarded instead of overwriting optimistic records.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from roomsync.client.api_client import ApiClientError, MeetingApiClient
from roomsync.client.connection import ConnectionProber
from roomsync.client.events import (
    API_CONNECTION_ERROR,
    CONNECTION_RESTORED,
    MEETING_DATA_UPDATED,
    MEETING_ENDED_EARLY,
    NOTIFICATION,
    REFRESH_ROOM_STATUS,
    ROOM_STATUS_UPDATE,
    Event,
    EventBus,
    spawn,
)
from roomsync.core.civil_time import (
    CivilClock,
    day_of_week_label,
    duration_label,
    parse_date,
    time_to_minutes,
)
from roomsync.services.meeting_rules import (
    MeetingNotFoundError,
    MeetingState,
    MeetingValidationError,
    ensure_no_conflict,
    meeting_state,
    validate_meeting,
)
from roomsync.services.rooms import RoomId

logger = logging.getLogger(__name__)

MeetingDict = dict[str, Any]


class NoActiveMeetingError(LookupError):
    def __init__(self, room: str, meeting_id: Optional[str] = None) -> None:
        self.room = room
        self.meeting_id = meeting_id
        if meeting_id is None:
            super().__init__(f"No active meeting found for room {room}")
        else:
            super().__init__(f"Meeting {meeting_id} in room {room} is not in progress")


@dataclass
class BulkDeleteResult:
    deleted: list[MeetingDict] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary(self) -> str:
        if self.ok:
            return f"Deleted {len(self.deleted)} meeting(s)"
        return f"Deleted {len(self.deleted)} meeting(s), {len(self.failed)} failed"


def _room_key(value: Any) -> RoomId:
    return value if isinstance(value, RoomId) else RoomId.parse(value)


class DataManager:
    def __init__(
        self,
        api: MeetingApiClient,
        bus: EventBus,
        clock: Optional[CivilClock] = None,
        prober: Optional[ConnectionProber] = None,
        sync_interval: float = 300.0,
        confirm_delay: float = 1.0,
    ) -> None:
        self.api = api
        self.bus = bus
        self.clock = clock or CivilClock()
        self.prober = prober
        self.sync_interval = sync_interval
        self.confirm_delay = confirm_delay

        self._meetings: list[MeetingDict] = []
        self._lock = asyncio.Lock()
        self._generation = 0
        self._in_flight = 0
        self._loading = False
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe = None

        self.online: Optional[bool] = None
        self.dirty = False
        self.last_sync = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self) -> list[MeetingDict]:
        return copy.deepcopy(self._meetings)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def generation(self) -> int:
        return self._generation

    def _source(self, meetings: Optional[Iterable[MeetingDict]]) -> list[MeetingDict]:
        return list(self._meetings if meetings is None else meetings)

    def today(self, meetings: Optional[Iterable[MeetingDict]] = None) -> list[MeetingDict]:
        today = self.clock.today()
        return [m for m in self._source(meetings) if parse_date(m.get("date")) == today]

    def by_date(self, date_str: str, meetings: Optional[Iterable[MeetingDict]] = None) -> list[MeetingDict]:
        day = parse_date(date_str)
        return [m for m in self._source(meetings) if parse_date(m.get("date")) == day]

    def by_room(self, room: RoomId | str, meetings: Optional[Iterable[MeetingDict]] = None) -> list[MeetingDict]:
        room_id = _room_key(room)
        return [m for m in self._source(meetings) if RoomId.parse(m.get("room")) == room_id]

    def state_of(self, meeting: MeetingDict) -> MeetingState:
        return meeting_state(meeting, self.clock.today(), self.clock.minutes_now())

    def current_for(
        self, room: RoomId | str, meetings: Optional[Iterable[MeetingDict]] = None
    ) -> Optional[MeetingDict]:
        """The active meeting of `room`; the latest-starting one if several are active."""
        active = [
            m for m in self.by_room(room, meetings) if self.state_of(m) is MeetingState.ACTIVE
        ]
        if not active:
            return None
        return max(active, key=lambda m: time_to_minutes(m.get("startTime")))

    def upcoming_for(
        self, room: RoomId | str, meetings: Optional[Iterable[MeetingDict]] = None
    ) -> list[MeetingDict]:
        """Meetings of `room` later today, earliest first."""
        today = self.clock.today()
        upcoming = [
            m
            for m in self.by_room(room, meetings)
            if parse_date(m.get("date")) == today and self.state_of(m) is MeetingState.SCHEDULED
        ]
        return sorted(upcoming, key=lambda m: time_to_minutes(m.get("startTime")))

    def find(self, meeting_id: str) -> Optional[MeetingDict]:
        for meeting in self._meetings:
            if meeting.get("id") == meeting_id:
                return meeting
        return None

    # ------------------------------------------------------------------
    # Events and connection state
    # ------------------------------------------------------------------

    def _emit_update(
        self,
        source: str,
        action: str,
        is_new_meeting: bool = False,
        meeting: Optional[MeetingDict] = None,
    ) -> None:
        meetings = self.list()
        today = self.today(meetings)
        detail = {
            "meetings": meetings,
            "todayMeetings": today,
            "source": source,
            "action": action,
            "isNewMeeting": is_new_meeting,
        }
        if meeting is not None:
            detail["meeting"] = copy.deepcopy(meeting)
        self.bus.emit(MEETING_DATA_UPDATED, detail)
        # A new meeting on another day leaves today's room statuses as they are.
        if is_new_meeting and meeting is not None and parse_date(meeting.get("date")) != self.clock.today():
            return
        self.bus.emit(ROOM_STATUS_UPDATE, {"todayMeetings": today})

    def _notify(self, level: str, message: str) -> None:
        self.bus.emit(NOTIFICATION, {"level": level, "message": message})

    def _mark_online(self) -> None:
        self.online = True
        if self.prober is not None:
            self.prober.mark_connected()

    def _mark_offline(self, error: ApiClientError) -> None:
        self.online = False
        self.dirty = True
        logger.warning("Service unreachable, keeping local changes: %s", error)
        self.bus.emit(API_CONNECTION_ERROR, {"error": str(error)})
        if self.prober is not None:
            self.prober.mark_degraded(str(error))

    def _replace_local(self, meeting_id: str, record: Optional[MeetingDict]) -> None:
        """Swap (or, with `record=None`, drop) the mirror entry for `meeting_id`."""
        for index, meeting in enumerate(self._meetings):
            if meeting.get("id") == meeting_id:
                if record is None:
                    del self._meetings[index]
                else:
                    self._meetings[index] = record
                self._generation += 1
                return

    async def _send(self, call):
        self._in_flight += 1
        try:
            return await call
        finally:
            self._in_flight -= 1

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _new_id(self) -> str:
        millis = int(self.clock.now().timestamp() * 1000)
        return f"meeting_{millis}_{secrets.randbelow(10000)}"

    def build_meeting(self, draft: dict[str, Any]) -> MeetingDict:
        """
        Validated meeting record for `draft` with derived fields filled in.

        Raises MeetingValidationError.
        """
        validate_meeting(draft)
        record = {key: value for key, value in draft.items() if value is not None}
        record["id"] = record.get("id") or self._new_id()
        record["room"] = RoomId.parse(record["room"]).name
        record["dayOfWeek"] = record.get("dayOfWeek") or day_of_week_label(record["date"])
        record["duration"] = duration_label(record["startTime"], record["endTime"])
        record.setdefault("isEnded", False)
        record.setdefault("forceEndedByUser", False)
        record["createdAt"] = record.get("createdAt") or self.clock.iso_now()
        return record

    async def create(self, draft: dict[str, Any]) -> MeetingDict:
        """
        Validate, conflict-check and store a new meeting.

        Raises MeetingValidationError / MeetingConflictError without touching
        the mirror, and ApiClientError when the service rejects the record.
        """
        async with self._lock:
            record = self.build_meeting(draft)
            if self.find(record["id"]) is not None:
                raise MeetingValidationError(
                    [f"Meeting with id '{record['id']}' already exists"], kind="duplicate"
                )
            ensure_no_conflict(record, self._meetings)

            self._meetings.append(record)
            self._generation += 1

            if self.online is False:
                self.dirty = True
                logger.warning("Server connection unavailable, meeting %s saved locally", record["id"])
            else:
                try:
                    stored = await self._send(self.api.create_meeting(record))
                except ApiClientError as exc:
                    if not exc.is_transport_error:
                        self._replace_local(record["id"], None)
                        self._emit_update("create", "rollback")
                        self._notify("error", f"Failed to save meeting: {exc.detail or exc}")
                        raise
                    self._mark_offline(exc)
                else:
                    self._mark_online()
                    self._replace_local(record["id"], stored)
                    record = stored
                    self._schedule_confirm()

            self._emit_update("create", "create", is_new_meeting=True, meeting=record)
            return copy.deepcopy(record)

    async def update(self, meeting_id: str, patch: dict[str, Any]) -> MeetingDict:
        async with self._lock:
            existing = self.find(meeting_id)
            if existing is None:
                raise MeetingNotFoundError(meeting_id)

            merged = {**existing, **patch, "id": meeting_id}
            if {"startTime", "endTime", "date"} & patch.keys():
                validate_meeting(merged)
                merged["duration"] = duration_label(merged["startTime"], merged["endTime"])
                merged["dayOfWeek"] = day_of_week_label(merged["date"])
            if "room" in patch:
                merged["room"] = RoomId.parse(merged["room"]).name
            ensure_no_conflict(merged, self._meetings, exclude_id=meeting_id)

            sent = {key: merged[key] for key in merged if merged[key] != existing.get(key)}
            updated = await self._apply_update(existing, merged, sent, action="update")
            self._emit_update("update", "update")
            return copy.deepcopy(updated)

    async def _apply_update(
        self,
        existing: MeetingDict,
        merged: MeetingDict,
        sent: dict[str, Any],
        action: str,
    ) -> MeetingDict:
        meeting_id = existing["id"]
        previous = copy.deepcopy(existing)
        self._replace_local(meeting_id, merged)

        if self.online is False:
            self.dirty = True
            return merged

        try:
            stored = await self._send(self.api.update_meeting(meeting_id, sent))
        except ApiClientError as exc:
            if exc.is_not_found:
                self._replace_local(meeting_id, None)
                self._emit_update(action, "prune")
                self._notify("warning", "Meeting no longer exists on the server")
                raise MeetingNotFoundError(meeting_id) from exc
            if not exc.is_transport_error:
                self._replace_local(meeting_id, previous)
                self._emit_update(action, "rollback")
                self._notify("error", f"Failed to update meeting: {exc.detail or exc}")
                raise
            self._mark_offline(exc)
            return merged

        self._mark_online()
        if stored:
            self._replace_local(meeting_id, stored)
            return stored
        return merged

    async def remove(self, meeting_id: str) -> MeetingDict:
        async with self._lock:
            removed = await self._remove_one(meeting_id)
            self._emit_update("delete", "delete")
            return removed

    async def _remove_one(self, meeting_id: str) -> MeetingDict:
        existing = self.find(meeting_id)
        if existing is None:
            raise MeetingNotFoundError(meeting_id)

        index = self._meetings.index(existing)
        self._replace_local(meeting_id, None)

        if self.online is False:
            self.dirty = True
            return existing

        try:
            await self._send(self.api.delete_meeting(meeting_id))
        except ApiClientError as exc:
            if exc.is_not_found:
                logger.info("Meeting %s was already deleted on the server", meeting_id)
                self._notify("warning", "Meeting no longer exists on the server")
                return existing
            if not exc.is_transport_error:
                self._meetings.insert(index, existing)
                self._generation += 1
                raise
            self._mark_offline(exc)
            return existing

        self._mark_online()
        return existing

    async def remove_many(self, meeting_ids: Iterable[str]) -> BulkDeleteResult:
        """Delete each id in turn; failures are collected, not raised."""
        result = BulkDeleteResult()
        async with self._lock:
            for meeting_id in meeting_ids:
                try:
                    result.deleted.append(await self._remove_one(meeting_id))
                except (MeetingNotFoundError, ApiClientError) as exc:
                    result.failed[meeting_id] = str(exc)
            self._emit_update("delete", "delete-many")

        self._notify("success" if result.ok else "error", result.summary())
        return result

    async def end_now(self, meeting_id: str) -> MeetingDict:
        """
        End a meeting at the current wall-clock minute.

        `endTime` becomes now, `originalEndTime` keeps the scheduled end and
        both end flags are set. Only an ACTIVE meeting can be ended.
        """
        async with self._lock:
            existing = self.find(meeting_id)
            if existing is None:
                raise MeetingNotFoundError(meeting_id)
            if self.state_of(existing) is not MeetingState.ACTIVE:
                raise NoActiveMeetingError(str(existing.get("room") or ""), meeting_id)

            original_end = existing.get("originalEndTime") or existing.get("endTime")
            now = self.clock.current_time()
            sent = {
                "endTime": now,
                "isEnded": True,
                "forceEndedByUser": True,
                "originalEndTime": original_end,
            }
            merged = {**existing, **sent}
            updated = await self._apply_update(existing, merged, sent, action="end")

            self._emit_update("end", "end")
            self.bus.emit(
                MEETING_ENDED_EARLY,
                {"meeting": copy.deepcopy(updated), "originalEndTime": original_end, "newEndTime": now},
            )
            self._notify("success", "Meeting ended")
            return copy.deepcopy(updated)

    async def end_by_room(self, room: RoomId | str) -> MeetingDict:
        current = self.current_for(room)
        if current is None:
            raise NoActiveMeetingError(str(room))
        return await self.end_now(current["id"])

    # ------------------------------------------------------------------
    # Server synchronization
    # ------------------------------------------------------------------

    async def load_from_server(self, source: str = "load") -> list[MeetingDict]:
        """
        Replace the mirror with the server list.

        Returns the mirror unchanged when another load is running, when a
        periodic fetch would run during a mutation, or when the fetched list
        is stale (the mirror changed while the request was out).
        """
        if self._loading:
            return self.list()
        if source == "periodic" and self._in_flight:
            logger.info("Skipping periodic sync: %d mutation(s) in flight", self._in_flight)
            return self.list()

        self._loading = True
        generation = self._generation
        try:
            meetings = await self.api.list_meetings()
        except ApiClientError as exc:
            logger.error("Failed to load meetings from server: %s", exc)
            if exc.is_transport_error:
                self.online = False
                self.bus.emit(API_CONNECTION_ERROR, {"error": str(exc)})
                if self.prober is not None:
                    self.prober.mark_degraded(str(exc))
            return self.list()
        finally:
            self._loading = False

        self._mark_online()
        if generation != self._generation or self._in_flight:
            logger.info("Discarding stale %s fetch", source)
            return self.list()
        if self.dirty and source not in ("force", "conflict"):
            logger.info("Keeping unsynced local changes; %s fetch ignored", source)
            return self.list()

        self._meetings = meetings
        self._generation += 1
        self.dirty = False
        self.last_sync = self.clock.now()
        self._emit_update(source, "load")
        return self.list()

    async def force_refresh(self) -> list[MeetingDict]:
        meetings = await self.load_from_server(source="force")
        self.bus.emit(REFRESH_ROOM_STATUS, {"todayMeetings": self.today(meetings)})
        return meetings

    async def push_all(self) -> bool:
        """
        Send the whole mirror with the batch endpoint, conditional on the
        last list version read. A 412 means the server moved on: the mirror
        is reloaded and the local changes are dropped.
        """
        reload = False
        async with self._lock:
            if not self.dirty:
                return True
            snapshot = self.list()
            try:
                await self._send(self.api.replace_all(snapshot, if_match=self.api.last_etag))
            except ApiClientError as exc:
                if exc.status_code == 412:
                    logger.warning("Server list changed while offline; reloading")
                    self.dirty = False
                    self._notify("warning", "Server data changed; local changes were replaced")
                    reload = True
                elif exc.is_transport_error:
                    self._mark_offline(exc)
                    return False
                else:
                    self._notify("error", f"Failed to save meetings: {exc.detail or exc}")
                    return False
            else:
                self._mark_online()
                self.dirty = False
                logger.info("Pushed %d meetings to the server", len(snapshot))
                return True

        if reload:
            await self.load_from_server(source="conflict")
        return False

    async def sync(self, source: str = "periodic") -> list[MeetingDict]:
        if self.dirty:
            await self.push_all()
        return await self.load_from_server(source=source)

    def _on_connection_restored(self, event: Event) -> None:
        self.online = True
        if self.dirty:
            self._spawn(self.push_all(), "push-on-reconnect")

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = spawn(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_confirm(self) -> None:
        async def _confirm() -> None:
            await asyncio.sleep(self.confirm_delay)
            await self.load_from_server(source="confirm")

        self._spawn(_confirm(), "confirm-fetch")

    async def _periodic_sync(self) -> None:
        while True:
            await asyncio.sleep(self.sync_interval)
            try:
                await self.sync(source="periodic")
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic sync failed")

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(CONNECTION_RESTORED, self._on_connection_restored)
        self._spawn(self._periodic_sync(), "periodic-sync")

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def wait_idle(self) -> None:
        """Wait for scheduled confirm fetches and pushes (not the periodic loop)."""
        pending = [t for t in self._tasks if t.get_name() != "periodic-sync"]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
