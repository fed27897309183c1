# roomsync/client/auth_gate.py
"""
Shared-secret gate in front of booking and deletion.

This is an obfuscation barrier for a wall-mounted dashboard, not identity
authentication: one secret, a short-lived booking session, and a
persistent lockout after repeated wrong attempts.
"""
from __future__ import annotations

import hmac
import logging
from datetime import datetime, time, timedelta
from typing import Optional

from roomsync.client.storage import KeyValueStore
from roomsync.core.civil_time import CivilClock

logger = logging.getLogger(__name__)


class AuthenticationRequired(PermissionError):
    """
    Raised when an operation needs a verified secret that was not given.
    """


class AuthenticationLocked(AuthenticationRequired):
    def __init__(self, remaining_seconds: int) -> None:
        self.remaining_seconds = remaining_seconds
        minutes = max(1, -(-remaining_seconds // 60))
        super().__init__(f"Too many wrong attempts. Try again in {minutes} minute(s).")


class AuthenticationFailed(AuthenticationRequired):
    def __init__(self, attempts_left: int) -> None:
        self.attempts_left = attempts_left
        super().__init__(f"Wrong password. {attempts_left} attempt(s) left.")


class _AttemptTracker:
    """Consecutive wrong attempts and the lockout deadline, kept in `storage`."""

    def __init__(
        self,
        storage: KeyValueStore,
        clock: CivilClock,
        prefix: str,
        max_attempts: int,
        lockout: timedelta,
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._attempts_key = f"{prefix}FailedAttempts"
        self._lockout_key = f"{prefix}LockoutUntil"
        self.max_attempts = max_attempts
        self.lockout = lockout

    def _now(self) -> float:
        return self._clock.now().timestamp()

    @property
    def failed_attempts(self) -> int:
        return int(self._storage.get(self._attempts_key, 0) or 0)

    def lockout_remaining(self) -> int:
        until = float(self._storage.get(self._lockout_key, 0) or 0)
        return max(0, int(round(until - self._now())))

    def is_locked(self) -> bool:
        return self.lockout_remaining() > 0

    def check(self) -> None:
        remaining = self.lockout_remaining()
        if remaining:
            raise AuthenticationLocked(remaining)
        if self._lockout_key in self._storage:
            # Lockout elapsed: start over with a fresh budget.
            self._storage.delete(self._lockout_key, self._attempts_key)

    def record_failure(self) -> None:
        attempts = self.failed_attempts + 1
        if attempts >= self.max_attempts:
            until = self._now() + self.lockout.total_seconds()
            self._storage.set(self._lockout_key, until)
            self._storage.set(self._attempts_key, attempts)
            logger.warning("Locking out after %d wrong attempts", attempts)
            raise AuthenticationLocked(int(self.lockout.total_seconds()))
        self._storage.set(self._attempts_key, attempts)
        raise AuthenticationFailed(self.max_attempts - attempts)

    def reset(self) -> None:
        self._storage.delete(self._attempts_key, self._lockout_key)


def _secret_matches(given: str, expected: str) -> bool:
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


class BookingGate:
    """
    Booking session: after a correct secret, bookings are allowed for
    `session_hours` or until the civil day ends, whichever comes first.
    """

    SESSION_KEY = "bookingSession"

    def __init__(
        self,
        secret: str,
        storage: Optional[KeyValueStore] = None,
        clock: Optional[CivilClock] = None,
        session_hours: float = 8,
        max_attempts: int = 3,
        lockout_minutes: float = 15,
    ) -> None:
        self._secret = secret
        self.storage = storage or KeyValueStore()
        self.clock = clock or CivilClock()
        self.session_length = timedelta(hours=session_hours)
        self.attempts = _AttemptTracker(
            self.storage, self.clock, "password", max_attempts, timedelta(minutes=lockout_minutes)
        )

    def _session(self) -> Optional[dict]:
        session = self.storage.get(self.SESSION_KEY)
        return session if isinstance(session, dict) else None

    def _session_expiry(self, now: datetime) -> float:
        end_of_day = datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=now.tzinfo)
        return min(now + self.session_length, end_of_day).timestamp()

    def is_authenticated(self) -> bool:
        session = self._session()
        if session is None:
            return False
        now = self.clock.now()
        if now.timestamp() >= float(session.get("expiresAt", 0)) or session.get("day") != self.clock.today_str():
            self.storage.delete(self.SESSION_KEY)
            return False
        return True

    def verify(self, password: str) -> None:
        """
        Check `password` and open a session.

        Raises AuthenticationLocked while locked out, AuthenticationFailed
        on a wrong secret (AuthenticationLocked on the last allowed one).
        """
        self.attempts.check()
        if not _secret_matches(password or "", self._secret):
            self.attempts.record_failure()

        self.attempts.reset()
        now = self.clock.now()
        self.storage.set(
            self.SESSION_KEY,
            {
                "createdAt": now.timestamp(),
                "expiresAt": self._session_expiry(now),
                "day": self.clock.today_str(),
            },
        )
        logger.info("Booking session opened")

    def require(self, password: Optional[str] = None) -> None:
        """Pass when a session is open, or when `password` verifies."""
        if self.is_authenticated():
            return
        if password is None:
            raise AuthenticationRequired("Password required to book a meeting")
        self.verify(password)

    def remaining_session_seconds(self) -> int:
        if not self.is_authenticated():
            return 0
        session = self._session() or {}
        return max(0, int(round(float(session["expiresAt"]) - self.clock.now().timestamp())))

    def lockout_remaining_seconds(self) -> int:
        return self.attempts.lockout_remaining()

    def extend_session(self) -> bool:
        if not self.is_authenticated():
            return False
        session = self._session() or {}
        session["expiresAt"] = self._session_expiry(self.clock.now())
        self.storage.set(self.SESSION_KEY, session)
        return True

    def logout(self) -> None:
        self.storage.delete(self.SESSION_KEY)


class DeleteGate:
    """
    One-shot challenge: every entry into delete mode needs the secret,
    whatever the state of the booking session.
    """

    def __init__(
        self,
        secret: str,
        storage: Optional[KeyValueStore] = None,
        clock: Optional[CivilClock] = None,
        max_attempts: int = 3,
        lockout_minutes: float = 5,
    ) -> None:
        self._secret = secret
        self.storage = storage or KeyValueStore()
        self.clock = clock or CivilClock()
        self.attempts = _AttemptTracker(
            self.storage, self.clock, "deletePassword", max_attempts, timedelta(minutes=lockout_minutes)
        )

    def verify(self, password: Optional[str]) -> None:
        self.attempts.check()
        if not _secret_matches(password or "", self._secret):
            self.attempts.record_failure()
        self.attempts.reset()

    def lockout_remaining_seconds(self) -> int:
        return self.attempts.lockout_remaining()
