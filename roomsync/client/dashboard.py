# roomsync/client/dashboard.py
from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Optional

import httpx

from roomsync.client.api_client import MeetingApiClient
from roomsync.client.auth_gate import BookingGate, DeleteGate
from roomsync.client.booking import BookingFlow
from roomsync.client.connection import ConnectionProber
from roomsync.client.data_manager import DataManager
from roomsync.client.delete_flow import DeleteFlow
from roomsync.client.events import BOOKING_REQUESTED, NOTIFICATION, Event, EventBus
from roomsync.client.room_view import RoomView
from roomsync.client.schedule_view import ScheduleView
from roomsync.client.storage import KeyValueStore
from roomsync.core.civil_time import CivilClock
from roomsync.core.config import ClientSettings, get_client_settings

logger = logging.getLogger(__name__)


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    exc = context.get("exception")
    logger.error("Unhandled error in dashboard: %s", context.get("message", "unknown"), exc_info=exc)


class Dashboard:
    """
    Wires one dashboard instance together.

    Every component gets its collaborators explicitly; the event bus is
    the only channel between the Data Manager and the views.
    """

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[CivilClock] = None,
        storage: Optional[KeyValueStore] = None,
    ) -> None:
        settings = settings or get_client_settings()
        self.settings = settings
        self.clock = clock or CivilClock(offset_hours=settings.CIVIL_UTC_OFFSET_HOURS)
        self.storage = storage if storage is not None else KeyValueStore(settings.STATE_FILE)
        self.bus = EventBus()

        self.api = MeetingApiClient(
            settings.API_BASE_URL,
            timeout_seconds=settings.REQUEST_TIMEOUT,
            transport=transport,
        )
        self.prober = ConnectionProber(
            self.api,
            self.bus,
            storage=self.storage,
            interval=settings.PROBE_INTERVAL,
            fast_interval=settings.PROBE_FAST_INTERVAL,
            timeout=settings.PROBE_TIMEOUT,
        )
        self.manager = DataManager(
            self.api,
            self.bus,
            clock=self.clock,
            prober=self.prober,
            sync_interval=settings.SYNC_INTERVAL,
            confirm_delay=settings.CONFIRM_DELAY,
        )

        self.schedule = ScheduleView(self.manager, self.bus, clock=self.clock)
        self.rooms = RoomView(
            self.manager,
            self.bus,
            default_rooms=settings.DEFAULT_ROOMS,
            clock=self.clock,
            refresh_interval=settings.ROOM_REFRESH_INTERVAL,
        )

        self.booking_gate = BookingGate(settings.SHARED_SECRET, storage=self.storage, clock=self.clock)
        self.delete_gate = DeleteGate(settings.SHARED_SECRET, storage=self.storage, clock=self.clock)
        self.booking = BookingFlow(
            self.manager,
            self.booking_gate,
            default_room=settings.DEFAULT_ROOMS[0] if settings.DEFAULT_ROOMS else "",
        )
        self.delete = DeleteFlow(self.manager, self.schedule, self.delete_gate, self.bus)

        self.notifications: deque[dict[str, Any]] = deque(maxlen=50)
        self._unsubscribers = [
            self.bus.subscribe(BOOKING_REQUESTED, self._on_booking_requested),
            self.bus.subscribe(NOTIFICATION, self._on_notification),
        ]
        self.started = False

    def _on_booking_requested(self, event: Event) -> None:
        self.booking.open(event.detail)

    def _on_notification(self, event: Event) -> None:
        self.notifications.append(event.detail)
        log = logger.error if event.detail.get("level") == "error" else logger.info
        log("Notification: %s", event.detail.get("message"))

    async def start(self) -> None:
        """Initial load, then the periodic sync, the prober and both view timers."""
        asyncio.get_running_loop().set_exception_handler(_log_loop_exception)
        await self.manager.load_from_server(source="initial")
        self.manager.start()
        self.prober.start()
        self.schedule.start()
        self.rooms.start()
        self.started = True
        logger.info("Dashboard started against %s", self.api.base_url)

    async def stop(self) -> None:
        await self.rooms.stop()
        await self.schedule.stop()
        await self.prober.stop()
        await self.manager.stop()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self.started = False
