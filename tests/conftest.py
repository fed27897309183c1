# tests/conftest.py
import httpx
import pytest
from fastapi.testclient import TestClient

from helpers import BASE_URL, FrozenNow, RecordingTransport, civil_instant, no_sleep
from roomsync.client.api_client import MeetingApiClient
from roomsync.client.data_manager import DataManager
from roomsync.client.events import EventBus
from roomsync.core.civil_time import CivilClock
from roomsync.core.config import Settings
from roomsync.main import create_app


@pytest.fixture
def now() -> FrozenNow:
    """Wednesday 15/01/2025, 09:20 in +07:00."""
    return FrozenNow(civil_instant("15/01/2025", "09:20"))


@pytest.fixture
def clock(now) -> CivilClock:
    return CivilClock(offset_hours=7, source=now)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATA_DIR=str(tmp_path / "data"),
        MAX_BACKUPS=10,
        RATE_LIMIT="10000/minute",
    )


@pytest.fixture
def conflict_checking(settings) -> Settings:
    """Turns on the server-side overlap check, which is off by default."""
    settings.SERVER_CONFLICT_CHECK = True
    return settings

@pytest.fixture
def app(settings, clock):
    """
    Application bound to a temporary data root and the frozen clock.

    The data layout is created here so that in-process transports, which
    do not run the lifespan, find it too.
    """
    application = create_app(settings)
    application.state.clock = clock
    application.state.store.ensure_layout()
    application.state.backgrounds.ensure_layout()
    return application


@pytest.fixture
def client(app) -> TestClient:
    """
    TestClient for the service; entering it runs the startup lifespan.
    """
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def store(app):
    return app.state.store


@pytest.fixture
def transport(app) -> RecordingTransport:
    return RecordingTransport(httpx.ASGITransport(app=app))


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def api(transport) -> MeetingApiClient:
    return MeetingApiClient(BASE_URL, transport=transport, sleep=no_sleep)


@pytest.fixture
def manager(api, bus, clock) -> DataManager:
    """
    Data Manager talking to the in-process service, no periodic tasks.
    """
    return DataManager(api, bus, clock=clock, confirm_delay=0)
