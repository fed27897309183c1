# roomsync/api/routes/meetings.py
import logging
import secrets
from http import HTTPStatus
from typing import Any

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Path, Response

from roomsync.api.dependencies.stores import get_app_settings, get_clock, get_store
from roomsync.core.civil_time import CivilClock
from roomsync.core.config import Settings
from roomsync.db.store import MeetingStore, StoreError, VersionMismatchError
from roomsync.schemas.meeting import BatchReplaceResult, Meeting, MeetingUpdateResult
from roomsync.services.meeting_rules import (
    MeetingConflictError,
    MeetingValidationError,
    ensure_no_conflict,
    validate_meeting,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/meetings", tags=["Meetings"])

_EXAMPLE_MEETING = {
    "id": "m1",
    "room": "Room A",
    "date": "15/01/2025",
    "dayOfWeek": "4",
    "startTime": "09:00",
    "endTime": "10:00",
    "duration": "1h",
    "purpose": "họp",
    "content": "Kickoff",
    "isEnded": False,
    "forceEndedByUser": False,
    "createdAt": "2025-01-15T01:55:00.000Z",
}


def _etag(version: str) -> str:
    return f'"{version}"'


def _parse_if_match(value: str | None) -> str | None:
    """`"abc"` / `W/"abc"` -> `abc`; `*` and a missing header mean unconditional."""
    if value is None:
        return None
    value = value.strip()
    if not value or value == "*":
        return None
    if value.startswith("W/"):
        value = value[2:]
    return value.strip('"')


def _new_meeting_id(clock: CivilClock) -> str:
    millis = int(clock.now().timestamp() * 1000)
    return f"meeting_{millis}_{secrets.randbelow(10000)}"


def _check_conflicts(
    record: dict[str, Any],
    meetings: list[dict[str, Any]],
    exclude_id: str | None,
) -> None:
    """
    Reject an overlapping record with 409.

    Records that do not pass validation are stored as sent; only well-formed
    records can be compared.
    """
    try:
        validate_meeting(record)
    except MeetingValidationError:
        return
    try:
        ensure_no_conflict(record, meetings, exclude_id=exclude_id)
    except MeetingConflictError as exc:
        raise HTTPException(status_code=HTTPStatus.CONFLICT, detail=str(exc)) from exc


@router.get(
    "",
    response_model=list[dict[str, Any]],
    summary="List all meetings",
    description=(
        "Return the whole Meeting List Document as stored on disk.\n\n"
        "The response carries an `ETag` header identifying this version of the "
        "document. Pass it back as `If-Match` on `POST /api/meetings/batch` to "
        "make a full replacement conditional.\n\n"
        "Unknown query parameters (cache-busting timestamps) are ignored."
    ),
    responses={
        200: {
            "description": "Meeting list returned successfully.",
            "content": {"application/json": {"example": [_EXAMPLE_MEETING]}},
        },
        500: {
            "description": "The meetings document could not be read.",
            "content": {"application/json": {"example": {"detail": "Failed to read meetings data"}}},
        },
    },
)
def list_meetings(
    response: Response,
    store: MeetingStore = Depends(get_store),
) -> list[dict[str, Any]]:
    """
    Fetch every stored meeting.
    """
    try:
        meetings, version = store.snapshot()
    except StoreError as exc:
        logger.error("Error reading meetings: %s", exc)
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail="Failed to read meetings data",
        ) from exc

    response.headers["ETag"] = _etag(version)
    return meetings


@router.post(
    "/batch",
    response_model=BatchReplaceResult,
    summary="Replace the whole meeting list",
    description=(
        "Overwrite the Meeting List Document with the request body, which must "
        "be a JSON array of meetings. A backup of the previous document is "
        "taken first.\n\n"
        "When an `If-Match` header is present the replacement only happens if "
        "the stored document still has that version; otherwise the request "
        "fails with 412 and nothing is written."
    ),
    responses={
        200: {
            "description": "List replaced.",
            "content": {"application/json": {"example": {"success": True, "count": 3}}},
        },
        400: {
            "description": "Body is not an array.",
            "content": {
                "application/json": {
                    "example": {"detail": "Request body must be an array of meetings"}
                }
            },
        },
        412: {"description": "The stored document changed since the given version."},
    },
)
def replace_meetings(
    response: Response,
    payload: Any = Body(..., description="Full array of meetings."),
    if_match: str | None = Header(
        default=None,
        alias="If-Match",
        description="Version (ETag) the replacement is based on.",
    ),
    store: MeetingStore = Depends(get_store),
) -> BatchReplaceResult:
    """
    Replace every meeting at once.
    """
    if not isinstance(payload, list):
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST,
            detail="Request body must be an array of meetings",
        )

    logger.info("Batch update received: %d meetings", len(payload))
    try:
        version = store.write_all(payload, expected_version=_parse_if_match(if_match))
    except VersionMismatchError as exc:
        logger.warning("Rejected batch update: %s", exc)
        raise HTTPException(
            status_code=HTTPStatus.PRECONDITION_FAILED,
            detail="Meetings changed on the server; reload before replacing the list",
        ) from exc
    except StoreError as exc:
        logger.error("Error batch updating meetings: %s", exc)
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail="Failed to update meetings",
        ) from exc

    response.headers["ETag"] = _etag(version)
    return BatchReplaceResult(success=True, count=len(payload))


@router.get(
    "/{meeting_id}",
    response_model=dict[str, Any],
    summary="Get a meeting by id",
    responses={
        200: {
            "description": "Meeting found.",
            "content": {"application/json": {"example": _EXAMPLE_MEETING}},
        },
        404: {
            "description": "No meeting has this id.",
            "content": {"application/json": {"example": {"detail": "Meeting not found"}}},
        },
    },
)
def get_meeting(
    meeting_id: str = Path(..., description="Meeting identifier.", examples=["m1"]),
    store: MeetingStore = Depends(get_store),
) -> dict[str, Any]:
    try:
        meeting = store.find(meeting_id)
    except StoreError as exc:
        logger.error("Error finding meeting %s: %s", meeting_id, exc)
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail="Failed to read meeting data",
        ) from exc

    if meeting is None:
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail="Meeting not found")
    return meeting


@router.post(
    "",
    response_model=dict[str, Any],
    status_code=HTTPStatus.CREATED,
    summary="Create a meeting",
    description=(
        "Append a meeting to the list.\n\n"
        "- `id` is generated (`meeting_<epoch-ms>_<random>`) when omitted.\n"
        "- `createdAt` is set to the current UTC time when omitted.\n"
        "- With `SERVER_CONFLICT_CHECK` enabled, a well-formed meeting that "
        "overlaps a non-ended meeting of the same room and date is rejected "
        "with 409."
    ),
    responses={
        201: {
            "description": "Meeting stored.",
            "content": {"application/json": {"example": _EXAMPLE_MEETING}},
        },
        409: {
            "description": "Duplicate id or overlapping meeting.",
            "content": {
                "application/json": {
                    "example": {
                        "detail": "Meeting conflicts with existing meeting(s): Kickoff (09:00-10:00)"
                    }
                }
            },
        },
        500: {"description": "The meetings document could not be written."},
    },
)
def create_meeting(
    payload: Meeting,
    response: Response,
    store: MeetingStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
    clock: CivilClock = Depends(get_clock),
) -> dict[str, Any]:
    """
    Store a new meeting and return it as stored.
    """
    record = payload.model_dump(by_alias=True, exclude_unset=True)
    record["id"] = record.get("id") or _new_meeting_id(clock)
    record["createdAt"] = record.get("createdAt") or clock.iso_now()

    def _append(meetings: list[dict[str, Any]]) -> dict[str, Any]:
        if any(m.get("id") == record["id"] for m in meetings):
            raise HTTPException(
                status_code=HTTPStatus.CONFLICT,
                detail=f"Meeting with id '{record['id']}' already exists",
            )
        if settings.SERVER_CONFLICT_CHECK:
            _check_conflicts(record, meetings, exclude_id=None)
        meetings.append(record)
        return record

    try:
        created = store.mutate(_append)
    except StoreError as exc:
        logger.error("Error creating meeting: %s", exc)
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail="Failed to create meeting",
        ) from exc

    logger.info("Meeting %s created", created["id"])
    response.headers["ETag"] = _etag(store.version())
    return created


@router.put(
    "/{meeting_id}",
    response_model=MeetingUpdateResult,
    summary="Update a meeting",
    description=(
        "Merge the given fields into the stored meeting.\n\n"
        "`id` and `createdAt` are preserved; `updatedAt` is refreshed."
    ),
    responses={
        200: {
            "description": "Meeting updated.",
            "content": {
                "application/json": {
                    "example": {
                        "success": True,
                        "meeting": {**_EXAMPLE_MEETING, "updatedAt": "2025-01-15T02:20:00.000Z"},
                        "message": "Meeting updated successfully",
                    }
                }
            },
        },
        404: {"description": "No meeting has this id."},
        409: {"description": "The merged meeting overlaps another meeting."},
    },
)
def update_meeting(
    payload: Meeting,
    response: Response,
    meeting_id: str = Path(..., description="Meeting identifier.", examples=["m1"]),
    store: MeetingStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
    clock: CivilClock = Depends(get_clock),
) -> MeetingUpdateResult:
    """
    Apply a partial update to one meeting.
    """
    patch = payload.model_dump(by_alias=True, exclude_unset=True)
    logger.info("Updating meeting %s (%s)", meeting_id, ", ".join(sorted(patch)))

    def _merge(meetings: list[dict[str, Any]]) -> dict[str, Any]:
        for index, original in enumerate(meetings):
            if original.get("id") == meeting_id:
                break
        else:
            raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail="Meeting not found")

        merged = {**original, **patch, "id": meeting_id}
        if original.get("createdAt") is not None:
            merged["createdAt"] = original["createdAt"]
        else:
            merged.pop("createdAt", None)
        merged["updatedAt"] = clock.iso_now()

        if settings.SERVER_CONFLICT_CHECK:
            _check_conflicts(merged, meetings, exclude_id=meeting_id)
        meetings[index] = merged
        return merged

    try:
        updated = store.mutate(_merge)
    except StoreError as exc:
        logger.error("Error updating meeting %s: %s", meeting_id, exc)
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail="Failed to update meeting",
        ) from exc

    response.headers["ETag"] = _etag(store.version())
    return MeetingUpdateResult(success=True, meeting=updated)


@router.delete(
    "/{meeting_id}",
    response_model=dict[str, Any],
    summary="Delete a meeting",
    responses={
        200: {
            "description": "Meeting removed; the removed record is returned.",
            "content": {"application/json": {"example": _EXAMPLE_MEETING}},
        },
        404: {"description": "No meeting has this id."},
    },
)
def delete_meeting(
    response: Response,
    meeting_id: str = Path(..., description="Meeting identifier.", examples=["m1"]),
    store: MeetingStore = Depends(get_store),
) -> dict[str, Any]:
    """
    Remove one meeting and return it.
    """

    def _remove(meetings: list[dict[str, Any]]) -> dict[str, Any]:
        for index, meeting in enumerate(meetings):
            if meeting.get("id") == meeting_id:
                return meetings.pop(index)
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail="Meeting not found")

    try:
        removed = store.mutate(_remove)
    except StoreError as exc:
        logger.error("Error deleting meeting %s: %s", meeting_id, exc)
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail="Failed to delete meeting",
        ) from exc

    logger.info("Meeting %s deleted", meeting_id)
    response.headers["ETag"] = _etag(store.version())
    return removed
