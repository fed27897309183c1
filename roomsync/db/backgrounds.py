# roomsync/db/backgrounds.py
from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

BACKGROUND_TYPES = ("main", "schedule")
CONFIG_FILENAME = "backgrounds.json"
IMAGES_DIRNAME = "backgrounds"

_DATA_URL_RE = re.compile(
    r"^data:image/(?P<kind>jpeg|jpg|png|gif|webp);base64,(?P<data>.*)$", re.DOTALL
)
_EXTENSIONS = {"jpeg": "jpg", "jpg": "jpg", "png": "png", "gif": "gif", "webp": "webp"}
_SAFE_FILENAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class BackgroundError(ValueError):
    """
    Raised for an invalid background request (unknown type, bad data URL).
    """


class BackgroundTooLargeError(BackgroundError):
    def __init__(self, max_bytes: int) -> None:
        self.max_bytes = max_bytes
        super().__init__(
            f"Image too large. Maximum size is {max_bytes / 1024 / 1024:g}MB"
        )


def _config_key(background_type: str) -> str:
    return f"{background_type}Background"


def _check_type(background_type: str) -> None:
    if background_type not in BACKGROUND_TYPES:
        raise BackgroundError("Invalid type. Must be 'main' or 'schedule'")


class BackgroundStore:
    """
    Uploaded dashboard background images plus the `backgrounds.json`
    document recording which file is active for each slot.
    """

    def __init__(
        self,
        data_dir: str | Path,
        max_bytes: int = 15 * 1024 * 1024,
        now: Callable[[], datetime] = lambda: datetime.now(tz=timezone.utc),
    ) -> None:
        self.data_dir = Path(data_dir)
        self.images_dir = self.data_dir / IMAGES_DIRNAME
        self.config_file = self.data_dir / CONFIG_FILENAME
        self.max_bytes = max_bytes
        self._now = now

    def ensure_layout(self) -> None:
        self.images_dir.mkdir(parents=True, exist_ok=True)
        if not self.config_file.exists():
            self._write_config({_config_key(t): None for t in BACKGROUND_TYPES})

    def read_config(self) -> dict[str, str | None]:
        try:
            config = json.loads(self.config_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            config = {}
        for background_type in BACKGROUND_TYPES:
            config.setdefault(_config_key(background_type), None)
        return config

    def _write_config(self, config: dict[str, str | None]) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.config_file.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(config, indent=2), encoding="utf-8")
        os.replace(tmp, self.config_file)

    def upload(self, background_type: str | None, image_data: str | None) -> str:
        """
        Decode a `data:image/...;base64,` URL, store it and make it the
        active background of `background_type`. Returns the new filename.
        """
        if not background_type or not image_data:
            raise BackgroundError("Missing type or imageData")
        _check_type(background_type)
        if not image_data.startswith("data:image/"):
            raise BackgroundError("Invalid image data format")

        # Base64 inflates by roughly a third.
        if len(image_data) * 0.75 > self.max_bytes:
            raise BackgroundTooLargeError(self.max_bytes)

        match = _DATA_URL_RE.match(image_data)
        if not match:
            raise BackgroundError("Unsupported image type (expected JPEG, PNG, GIF or WebP)")
        try:
            content = base64.b64decode(match.group("data"), validate=False)
        except (binascii.Error, ValueError) as exc:
            raise BackgroundError("Invalid base64 image data") from exc

        now = self._now().astimezone(timezone.utc)
        stamp = f"{now:%Y-%m-%dT%H-%M-%S}-{now.microsecond // 1000:03d}Z"
        filename = f"{background_type}-background-{stamp}.{_EXTENSIONS[match.group('kind')]}"

        self.images_dir.mkdir(parents=True, exist_ok=True)
        (self.images_dir / filename).write_bytes(content)

        config = self.read_config()
        config[_config_key(background_type)] = filename
        self._write_config(config)

        logger.info("Background uploaded: %s -> %s", background_type, filename)
        return filename

    def path_for(self, filename: str) -> Path | None:
        """Resolved path of a stored image, or None if absent or unsafe."""
        if not _SAFE_FILENAME_RE.match(filename):
            return None
        path = self.images_dir / filename
        return path if path.is_file() else None

    def reset(self, background_type: str) -> None:
        _check_type(background_type)
        config = self.read_config()
        config[_config_key(background_type)] = None
        self._write_config(config)
        logger.info("Background reset: %s", background_type)
