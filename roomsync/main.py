# roomsync/main.py
import logging
import socket
from contextlib import asynccontextmanager
from http import HTTPStatus

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from roomsync.api.routes import backgrounds, health, meetings
from roomsync.core.civil_time import CivilClock
from roomsync.core.config import Settings, get_settings
from roomsync.core.limiter import create_limiter, enforce_rate_limit
from roomsync.core.logging import configure_logging
from roomsync.db.backgrounds import BackgroundStore
from roomsync.db.store import MeetingStore

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def get_server_ips() -> list[str]:
    """Non-loopback IPv4 addresses other devices can reach this host on."""
    addresses: list[str] = []
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except OSError:
        return addresses
    for info in infos:
        address = info[4][0]
        if not address.startswith("127.") and address not in addresses:
            addresses.append(address)
    return addresses


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    store: MeetingStore = app.state.store

    store.ensure_layout()
    app.state.backgrounds.ensure_layout()
    if store.startup_backup() is not None:
        logger.info("Startup backup created in %s", store.backup_dir)

    logger.info("%s running on port %s", settings.APP_NAME, settings.PORT)
    logger.info("Data stored in %s", store.data_dir.resolve())
    logger.info("Local access: http://localhost:%s", settings.PORT)
    for ip in get_server_ips():
        logger.info("Network access: http://%s:%s", ip, settings.PORT)
    yield


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Application factory for the RoomSync persistence service.
    """
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Meeting-room booking service.\n\n"
            "Owns the canonical meeting list as a single JSON document on disk, "
            "takes a rolling backup before every mutation and exposes a small "
            "CRUD + batch API to the room dashboards."
        ),
        version="0.1.0",
        lifespan=lifespan,
        dependencies=[Depends(enforce_rate_limit)],
    )

    app.state.settings = settings
    app.state.clock = CivilClock(offset_hours=settings.CIVIL_UTC_OFFSET_HOURS)
    app.state.store = MeetingStore(settings.DATA_DIR, max_backups=settings.MAX_BACKUPS)
    app.state.backgrounds = BackgroundStore(settings.DATA_DIR, max_bytes=settings.MAX_UPLOAD_BYTES)
    app.state.limiter = create_limiter(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Cache-Control", "Pragma", "Expires", "If-Match"],
        expose_headers=["ETag"],
        max_age=60,
    )

    @app.middleware("http")
    async def no_cache(request: Request, call_next):
        response = await call_next(request)
        if request.url.path.startswith("/api"):
            response.headers.update(NO_CACHE_HEADERS)
        return response

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("API error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
            headers=NO_CACHE_HEADERS,
        )

    # Routers
    app.include_router(health.router)
    app.include_router(meetings.router)
    app.include_router(backgrounds.router)

    return app


app = create_app()


def run() -> None:  # pragma: no cover
    import uvicorn

    settings = get_settings()
    uvicorn.run("roomsync.main:app", host=settings.HOST, port=settings.PORT)
