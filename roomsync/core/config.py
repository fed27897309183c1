# roomsync/core/config.py
from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """
    Persistence Service configuration.

    Values are loaded from environment variables (or a local `.env` file)
    at runtime. The data root holds the meetings document, the rolling
    backups and the uploaded background images.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "RoomSync"
    APP_ENV: str = Field("local", description="Environment name: local/dev/stage/prod")

    HOST: str = Field("0.0.0.0", description="Interface uvicorn binds to.")
    PORT: int = Field(3000, description="Port uvicorn listens on.")

    DATA_DIR: str = Field(
        "./data",
        description="Data root holding meetings.json, backups/ and backgrounds/.",
    )

    ALLOWED_ORIGINS: Annotated[list[str], NoDecode] = Field(
        default=["*"],
        description="CORS allow-list. Accepts a comma-separated string.",
    )

    MAX_UPLOAD_BYTES: int = Field(
        15 * 1024 * 1024,
        description="Maximum decoded size of an uploaded background image.",
    )

    MAX_BACKUPS: int = Field(
        10,
        ge=1,
        description="Number of meetings backups kept in the backups directory.",
    )

    RATE_LIMIT: str = Field(
        "1000/hour",
        description="Default per-client request limit (slowapi syntax).",
    )

    SERVER_CONFLICT_CHECK: bool = Field(
        False,
        description=(
            "Opt-in: reject POST/PUT requests whose meeting overlaps another "
            "non-ended meeting in the same room and date (409). Off by default; "
            "the dashboards check conflicts before writing."
        ),
    )

    CIVIL_UTC_OFFSET_HOURS: int = Field(
        7,
        description="Fixed civil timezone offset used for every date and time.",
    )

    LOG_LEVEL: str = Field("INFO", description="Root logging level.")

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def split_origins(cls, value: list[str] | str) -> list[str]:
        """Allow both comma-separated strings and list inputs."""
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value


class ClientSettings(BaseSettings):
    """
    Dashboard client configuration.

    Read from `ROOMSYNC_*` environment variables. The shared secret is the
    single obfuscation barrier guarding booking and delete operations.
    """

    model_config = SettingsConfigDict(
        env_prefix="ROOMSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    API_BASE_URL: str = "http://localhost:3000/api"
    SHARED_SECRET: str = "1234"
    STATE_FILE: str = "./dashboard-state.json"
    DEFAULT_ROOMS: Annotated[list[str], NoDecode] = ["Phòng họp lầu 3", "Phòng họp lầu 4"]

    REQUEST_TIMEOUT: float = 30.0
    PROBE_TIMEOUT: float = 10.0
    PROBE_INTERVAL: float = 30.0
    PROBE_FAST_INTERVAL: float = 5.0
    SYNC_INTERVAL: float = 5 * 60.0
    CONFIRM_DELAY: float = 1.0
    ROOM_REFRESH_INTERVAL: float = 15.0
    CIVIL_UTC_OFFSET_HOURS: int = 7

    @field_validator("DEFAULT_ROOMS", mode="before")
    @classmethod
    def split_rooms(cls, value: list[str] | str) -> list[str]:
        if isinstance(value, str):
            return [room.strip() for room in value.split(",") if room.strip()]
        return value


@lru_cache()
def get_settings() -> Settings:
    """
    Cached accessor for service settings.

    Settings are read and validated once per process.
    """
    return Settings()


@lru_cache()
def get_client_settings() -> ClientSettings:
    return ClientSettings()
