# roomsync/schemas/meeting.py
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Meeting(BaseModel):
    """
    A single scheduled use of a room, as stored in the meetings document.

    Field names are exposed in camelCase on the wire (`startTime`,
    `forceEndedByUser`, ...). Unknown keys are kept so that a record
    written by a newer client survives a round trip through the service.

    Only the identifying fields are typed. Presentational fields and the
    ended flags are stored as sent (`duration` may be `"1h"` or `60`).
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    id: str | None = Field(
        None,
        description="Opaque unique identifier, assigned by the creator.",
        examples=["meeting_1736904000000_4821"],
    )
    room: str | None = Field(None, examples=["Phòng họp lầu 3"])
    date: str | None = Field(
        None,
        description="Civil date in the fixed timezone, DD/MM/YYYY.",
        examples=["15/01/2025"],
    )
    day_of_week: Any = Field(None, examples=["4"])
    start_time: str | None = Field(None, description="HH:MM, 24-hour.", examples=["09:00"])
    end_time: str | None = Field(None, description="HH:MM, 24-hour.", examples=["10:00"])
    duration: Any = Field(None, examples=["1h", 60])
    purpose: Any = Field(None, examples=["Họp"])
    department: Any = None
    title: Any = None
    content: Any = Field(None, examples=["Kickoff"])
    is_ended: Any = False
    force_ended_by_user: Any = False
    original_end_time: Any = None
    created_at: Any = None
    updated_at: Any = None

    def to_payload(self) -> dict[str, Any]:
        """Wire representation: camelCase keys, unset optional fields omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)


class MeetingUpdateResult(BaseModel):
    """
    Response body of `PUT /api/meetings/{id}`.
    """

    success: bool = Field(True, examples=[True])
    meeting: dict[str, Any] = Field(..., description="Merged stored meeting.")
    message: str = Field("Meeting updated successfully")


class BatchReplaceResult(BaseModel):
    """
    Response body of `POST /api/meetings/batch`.
    """

    success: bool = Field(True, examples=[True])
    count: int = Field(..., description="Number of meetings now stored.", examples=[3])
