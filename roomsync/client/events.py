# roomsync/client/events.py
"""
In-process event bus for the dashboard client.

Views never read shared state directly: they subscribe to named events
emitted by the Data Manager, the connection prober and the flows, and pull
what they need from the handle they were given.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Event names
MEETING_DATA_UPDATED = "meetingDataUpdated"
ROOM_STATUS_UPDATE = "roomStatusUpdate"
REFRESH_ROOM_STATUS = "refreshRoomStatus"
MEETING_ENDED_EARLY = "meetingEndedEarly"
API_CONNECTION_ERROR = "apiConnectionError"
CONNECTION_LOST = "connectionLost"
CONNECTION_RESTORED = "connectionRestored"
NOTIFICATION = "notification"
BOOKING_REQUESTED = "bookingRequested"


@dataclass(frozen=True)
class Event:
    name: str
    detail: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[Event], Any]


def spawn(coro: Awaitable[Any], name: str | None = None) -> asyncio.Task:
    """
    Run `coro` as a background task whose failure is logged, never raised.
    """
    task = asyncio.ensure_future(coro)
    if name and hasattr(task, "set_name"):
        task.set_name(name)
    task.add_done_callback(_log_task_failure)
    return task


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s failed", task.get_name(), exc_info=exc)


class EventBus:
    """
    Synchronous publish/subscribe.

    `emit` calls every handler in subscription order before returning. A
    handler that raises is logged and does not stop delivery to the others.
    Coroutine handlers are scheduled with `spawn`.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        self._handlers[name].append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers[name]:
                self._handlers[name].remove(handler)

        return _unsubscribe

    def emit(self, name: str, detail: dict[str, Any] | None = None) -> Event:
        event = Event(name=name, detail=dict(detail or {}))
        for handler in list(self._handlers.get(name, ())):
            try:
                result = handler(event)
            except Exception:
                logger.exception("Handler for %s failed", name)
                continue
            if inspect.isawaitable(result):
                try:
                    spawn(result, name=f"{name}-handler")
                except RuntimeError:
                    logger.warning("Dropped async handler for %s: no running event loop", name)
                    if inspect.iscoroutine(result):
                        result.close()
        return event

    def handler_count(self, name: str) -> int:
        return len(self._handlers.get(name, ()))


class DebouncedSubscriber:
    """
    Coalesce bursts of events into a single callback.

    Each call re-arms a timer of `delay` seconds; when it fires the callback
    receives the latest event. Without a running loop the callback runs
    immediately.
    """

    def __init__(self, callback: Callable[[Event], Any], delay: float) -> None:
        self._callback = callback
        self._delay = delay
        self._handle: asyncio.TimerHandle | None = None
        self._pending: Event | None = None
        self.calls = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def __call__(self, event: Event) -> None:
        self._pending = event
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self._delay, self.flush)

    def flush(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        event, self._pending = self._pending, None
        if event is None:
            return
        self.calls += 1
        try:
            self._callback(event)
        except Exception:
            logger.exception("Debounced handler for %s failed", event.name)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = None
