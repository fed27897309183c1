# roomsync/api/routes/health.py
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from roomsync.api.dependencies.stores import get_app_settings, get_store
from roomsync.core.config import Settings
from roomsync.db.store import MeetingStore, StoreError


router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    """
    Response schema for the health check endpoint.
    """

    status: str = Field(
        ...,
        description="Overall health status: `ok`, or `degraded` when the meetings file is unreadable.",
        examples=["ok"],
    )
    app_name: str = Field(
        ...,
        description="Human-friendly name of the running application.",
        examples=["RoomSync"],
    )
    environment: str = Field(
        ...,
        description="Current deployment environment (local/dev/stage/prod).",
        examples=["local"],
    )
    timestamp_utc: datetime = Field(
        ...,
        description="Server-side timestamp (UTC) at which this health check was generated.",
        examples=["2025-01-15T02:00:00Z"],
    )
    meetings_file_ok: bool = Field(
        ...,
        description="Whether meetings.json exists and parses as a JSON array.",
        examples=[True],
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check for the RoomSync service",
    description=(
        "Lightweight endpoint to verify that the booking service is up.\n\n"
        "Typical use-cases:\n"
        "- Process manager / container health probes\n"
        "- Dashboards deciding which server address to use\n"
    ),
    responses={
        200: {
            "description": "Service is responding.",
            "content": {
                "application/json": {
                    "example": {
                        "status": "ok",
                        "app_name": "RoomSync",
                        "environment": "local",
                        "timestamp_utc": "2025-01-15T02:00:00Z",
                        "meetings_file_ok": True,
                    }
                }
            },
        }
    },
)
def health_check(
    settings: Settings = Depends(get_app_settings),
    store: MeetingStore = Depends(get_store),
) -> HealthResponse:
    """
    Returns the current health status of the service.

    A broken meetings file does not fail the probe; it is reported as
    `degraded` so operators can tell the process is alive.
    """
    try:
        store.read_all()
        file_ok = store.meetings_file.exists()
    except StoreError:
        file_ok = False

    return HealthResponse(
        status="ok" if file_ok else "degraded",
        app_name=settings.APP_NAME,
        environment=settings.APP_ENV,
        timestamp_utc=datetime.now(tz=timezone.utc),
        meetings_file_ok=file_ok,
    )
