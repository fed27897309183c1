# roomsync/api/dependencies/stores.py
from fastapi import Request

from roomsync.core.civil_time import CivilClock
from roomsync.core.config import Settings
from roomsync.db.backgrounds import BackgroundStore
from roomsync.db.store import MeetingStore


def get_app_settings(request: Request) -> Settings:
    """
    Settings the running application was built with.

    `create_app(settings)` may receive an explicit instance (tests do), so
    routes read it from app state instead of the cached `get_settings()`.
    """
    return request.app.state.settings


def get_store(request: Request) -> MeetingStore:
    return request.app.state.store


def get_background_store(request: Request) -> BackgroundStore:
    return request.app.state.backgrounds


def get_clock(request: Request) -> CivilClock:
    return request.app.state.clock
