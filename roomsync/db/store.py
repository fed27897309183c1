# roomsync/db/store.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)

MEETINGS_FILENAME = "meetings.json"
BACKUP_DIRNAME = "backups"
BACKUP_PREFIX = "meetings-"

_BACKUP_NAME_RE = re.compile(
    r"(?P<stamp>\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3}Z)(?:-(?P<counter>\d+))?\.json$"
)


class StoreError(RuntimeError):
    """
    Raised when the meetings document cannot be read or written.
    """


class VersionMismatchError(StoreError):
    """
    Raised by a conditional write whose expected version is stale.
    """

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Meetings document changed (expected {expected}, found {actual})")


def _backup_timestamp(now: datetime) -> str:
    """2025-01-15T02:00:00.123Z -> 2025-01-15T02-00-00-123Z"""
    stamp = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-")
    return f"{stamp}{now.microsecond // 1000:03d}Z"


def _backup_sort_key(path: Path) -> tuple[int, str, int]:
    """mtime first; equal mtimes fall back to the stamp and collision counter in the name."""
    match = _BACKUP_NAME_RE.search(path.name)
    stamp = match.group("stamp") if match else ""
    counter = int(match.group("counter") or 0) if match else 0
    return path.stat().st_mtime_ns, stamp, counter


class MeetingStore:
    """
    Single JSON document holding the whole meeting list.

    Responsibilities
    ----------------
    - Read the list and compute a content version (used as ETag).
    - Safe write: copy the current bytes to `backups/` and then replace
      `meetings.json` atomically (temp file + rename).
    - Rotate backups so that at most `max_backups` files remain, newest
      by mtime kept.

    Notes
    -----
    - A process-local lock serializes read-modify-write cycles of this
      process. There is no lock across processes.
    - A failing backup is logged and never aborts the write.
    """

    def __init__(
        self,
        data_dir: str | Path,
        max_backups: int = 10,
        now: Callable[[], datetime] = lambda: datetime.now(tz=timezone.utc),
    ) -> None:
        self.data_dir = Path(data_dir)
        self.meetings_file = self.data_dir / MEETINGS_FILENAME
        self.backup_dir = self.data_dir / BACKUP_DIRNAME
        self.max_backups = max_backups
        self._now = now
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def ensure_layout(self) -> None:
        """Create the data directories and an empty document if missing."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        if not self.meetings_file.exists():
            self._atomic_write(b"[]")

    def startup_backup(self) -> Path | None:
        """Snapshot the existing document as `meetings-startup-<ts>.json`."""
        if not self.meetings_file.exists():
            return None
        return self.create_backup(label="startup")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_bytes(self) -> bytes:
        try:
            return self.meetings_file.read_bytes()
        except FileNotFoundError:
            return b"[]"
        except OSError as exc:
            raise StoreError(f"Failed to read meetings data: {exc}") from exc

    def read_all(self) -> list[dict[str, Any]]:
        raw = self.read_bytes()
        try:
            meetings = json.loads(raw.decode("utf-8") or "[]")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StoreError(f"Meetings document is not valid JSON: {exc}") from exc
        if not isinstance(meetings, list):
            raise StoreError("Meetings document is not a JSON array")
        return meetings

    def version(self) -> str:
        return self.version_of(self.read_bytes())

    @staticmethod
    def version_of(raw: bytes) -> str:
        return hashlib.sha256(raw).hexdigest()[:16]

    def snapshot(self) -> tuple[list[dict[str, Any]], str]:
        """Meeting list and the version it was read at."""
        with self._lock:
            raw = self.read_bytes()
            meetings = self.read_all()
            return meetings, self.version_of(raw)

    def find(self, meeting_id: str) -> dict[str, Any] | None:
        for meeting in self.read_all():
            if meeting.get("id") == meeting_id:
                return meeting
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write_all(
        self,
        meetings: list[dict[str, Any]],
        expected_version: str | None = None,
    ) -> str:
        """
        Replace the whole document after taking a backup.

        When `expected_version` is given the write only happens if the
        current document still has that version.
        """
        with self._lock:
            if expected_version is not None:
                actual = self.version()
                if actual != expected_version:
                    raise VersionMismatchError(expected_version, actual)

            self.create_backup()
            content = json.dumps(meetings, indent=2, ensure_ascii=False).encode("utf-8")
            self._atomic_write(content)
            return self.version_of(content)

    def mutate(self, change: Callable[[list[dict[str, Any]]], Any]) -> Any:
        """
        Read-modify-write under the store lock.

        `change` edits the list in place and returns a result. When it
        raises, nothing is written.
        """
        with self._lock:
            meetings = self.read_all()
            result = change(meetings)
            self.write_all(meetings)
            return result

    def _atomic_write(self, content: bytes) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=".meetings-", suffix=".tmp", dir=str(self.data_dir)
        )
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.meetings_file)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise StoreError(f"Failed to write meetings data: {exc}") from exc

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def create_backup(self, label: str | None = None) -> Path | None:
        """
        Copy the current document into the backup directory, then rotate.

        Returns the backup path, or None when there was nothing to copy or
        the copy failed (the failure is logged).
        """
        if not self.meetings_file.exists():
            return None

        stamp = _backup_timestamp(self._now())
        base = f"{BACKUP_PREFIX}{label}-{stamp}" if label else f"{BACKUP_PREFIX}{stamp}"
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            target = self.backup_dir / f"{base}.json"
            counter = 1
            while target.exists():
                target = self.backup_dir / f"{base}-{counter}.json"
                counter += 1
            # copyfile leaves the new file with a fresh mtime.
            shutil.copyfile(self.meetings_file, target)
        except OSError:
            logger.exception("Failed to create meetings backup")
            return None

        self.rotate_backups()
        return target

    def list_backups(self) -> list[Path]:
        """Backup files, newest first."""
        if not self.backup_dir.exists():
            return []
        files = [
            path
            for path in self.backup_dir.iterdir()
            if path.is_file() and path.name.startswith(BACKUP_PREFIX) and path.suffix == ".json"
        ]
        return sorted(files, key=_backup_sort_key, reverse=True)

    def rotate_backups(self) -> int:
        """Delete every backup beyond the newest `max_backups`. Returns the count removed."""
        removed = 0
        try:
            for path in self.list_backups()[self.max_backups:]:
                path.unlink(missing_ok=True)
                removed += 1
        except OSError:
            logger.exception("Failed to rotate meetings backups")
        if removed:
            logger.debug("Removed %d old meetings backups", removed)
        return removed
