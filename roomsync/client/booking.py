# roomsync/client/booking.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from roomsync.client.api_client import ApiClientError
from roomsync.client.auth_gate import AuthenticationRequired, BookingGate
from roomsync.client.data_manager import DataManager
from roomsync.client.schedule_view import BookingPrefill
from roomsync.core.civil_time import CivilClock, minutes_to_time
from roomsync.schemas.meeting import Meeting
from roomsync.services.meeting_rules import MeetingConflictError, MeetingValidationError

logger = logging.getLogger(__name__)

DEFAULT_SPAN_MINUTES = 60


class BookingError(ValueError):
    """
    Raised when a booking is refused. `reason` is one of `missing`,
    `format`, `range`, `conflict` or `auth`.
    """

    def __init__(self, reason: str, message: str, conflicts: Optional[list[Meeting]] = None) -> None:
        self.reason = reason
        self.conflicts = conflicts or []
        super().__init__(message)


@dataclass
class BookingForm:
    room: str = ""
    date: str = ""
    start_time: str = ""
    end_time: str = ""
    purpose: str = ""
    department: str = ""
    title: str = ""
    description: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def to_draft(self) -> dict[str, Any]:
        draft = {
            "room": self.room.strip(),
            "date": self.date.strip(),
            "startTime": self.start_time.strip(),
            "endTime": self.end_time.strip(),
            "purpose": self.purpose.strip() or None,
            "department": self.department.strip() or None,
            "title": self.title.strip() or None,
            "content": self.description.strip() or None,
        }
        draft.update(self.extra)
        return draft


class BookingFlow:
    """
    New-meeting form: opened from the "New meeting" button or an empty
    grid cell, submitted through the booking gate into the Data Manager.
    """

    def __init__(
        self,
        manager: DataManager,
        gate: BookingGate,
        clock: Optional[CivilClock] = None,
        default_room: str = "",
    ) -> None:
        self.manager = manager
        self.gate = gate
        self.clock = clock or manager.clock
        self.default_room = default_room
        self.form: Optional[BookingForm] = None

    @property
    def is_open(self) -> bool:
        return self.form is not None

    def open(self, prefill: Optional[BookingPrefill | dict[str, Any]] = None) -> BookingForm:
        """
        Open the form. Without a prefill the date is today and the slot is
        the next full hour with the default one-hour span.
        """
        if isinstance(prefill, dict):
            prefill = BookingPrefill(
                date=prefill.get("date", ""),
                start_time=prefill.get("startTime", ""),
                end_time=prefill.get("endTime", ""),
            )
        if prefill is None:
            start = (self.clock.minutes_now() // 60 + 1) * 60
            prefill = BookingPrefill(
                date=self.clock.today_str(),
                start_time=minutes_to_time(start),
                end_time=minutes_to_time(start + DEFAULT_SPAN_MINUTES),
            )

        self.form = BookingForm(
            room=self.default_room,
            date=prefill.date,
            start_time=prefill.start_time,
            end_time=prefill.end_time,
        )
        return self.form

    def close(self) -> None:
        self.form = None

    async def submit(self, form: Optional[BookingForm] = None, password: Optional[str] = None) -> dict[str, Any]:
        """
        Create the meeting described by `form` (default: the open form).

        Raises BookingError naming the exact reason; the form stays open on
        failure and closes on success.
        """
        form = form or self.form
        if form is None:
            raise BookingError("missing", "Booking form is not open")

        try:
            self.gate.require(password)
        except AuthenticationRequired as exc:
            raise BookingError("auth", str(exc)) from exc

        try:
            created = await self.manager.create(form.to_draft())
        except MeetingValidationError as exc:
            reason = "conflict" if exc.kind == "duplicate" else exc.kind
            raise BookingError(reason, str(exc)) from exc
        except MeetingConflictError as exc:
            raise BookingError("conflict", str(exc), conflicts=exc.conflicts) from exc
        except ApiClientError as exc:
            if exc.status_code == 409:
                raise BookingError("conflict", str(exc.detail or exc)) from exc
            raise

        logger.info("Meeting %s booked", created.get("id"))
        self.close()
        return created
