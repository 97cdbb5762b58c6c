"""
Per-user login throttle against brute-force of the OAuth callback.
Locks a user for the lockout duration after max consecutive failures; a success clears it.
An expired lock is reset lazily on the next check.

Process-local and thread-safe; a multi-instance deployment needs a shared store.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from drivebot_auth.config import LOCKOUT_SECONDS, MAX_LOGIN_ATTEMPTS
from drivebot_auth.errors import AccountLocked
from drivebot_auth.models import utc_now
from drivebot_auth.security_events import (
    EVENT_RATE_LIMIT_EXCEEDED,
    SEVERITY_HIGH,
    SEVERITY_MEDIUM,
    SecurityEventLog,
)

logger = logging.getLogger(__name__)


@dataclass
class LoginAttempts:
    count: int
    last_attempt: datetime
    locked_until: datetime | None = None


@dataclass
class LoginCheck:
    allowed: bool
    remaining_attempts: int
    locked_until: datetime | None = None


class LoginAttemptGuard:
    def __init__(
        self,
        events: SecurityEventLog,
        max_attempts: int = MAX_LOGIN_ATTEMPTS,
        lockout: timedelta = timedelta(seconds=LOCKOUT_SECONDS),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.events = events
        self.max_attempts = max_attempts
        self.lockout = lockout
        self._clock = clock
        self._attempts: dict[str, LoginAttempts] = {}
        self._lock = threading.Lock()

    def check(self, subject: str, *, ip_address: str | None = None) -> LoginCheck:
        now = self._clock()
        with self._lock:
            attempts = self._attempts.get(subject)
            if attempts is None:
                return LoginCheck(True, self.max_attempts)
            if attempts.locked_until is not None:
                if attempts.locked_until > now:
                    locked_until = attempts.locked_until
                else:
                    del self._attempts[subject]
                    return LoginCheck(True, self.max_attempts)
            else:
                remaining = max(0, self.max_attempts - attempts.count)
                return LoginCheck(attempts.count < self.max_attempts, remaining)

        self.events.record(
            EVENT_RATE_LIMIT_EXCEEDED,
            subject,
            {"reason": "Account locked due to too many failed attempts", "locked_until": locked_until.isoformat()},
            severity=SEVERITY_MEDIUM,
            ip_address=ip_address,
        )
        return LoginCheck(False, 0, locked_until)

    def require(self, subject: str, *, ip_address: str | None = None) -> LoginCheck:
        result = self.check(subject, ip_address=ip_address)
        if not result.allowed:
            raise AccountLocked(result.locked_until or self._clock() + self.lockout)
        return result

    def record_failure(self, subject: str, *, ip_address: str | None = None) -> LoginAttempts:
        now = self._clock()
        with self._lock:
            attempts = self._attempts.get(subject)
            if attempts is None or (attempts.locked_until is not None and attempts.locked_until <= now):
                attempts = LoginAttempts(count=0, last_attempt=now)
            attempts.count += 1
            attempts.last_attempt = now
            newly_locked = attempts.count >= self.max_attempts and attempts.locked_until is None
            if newly_locked:
                attempts.locked_until = now + self.lockout
            self._attempts[subject] = attempts

        if newly_locked:
            logger.warning("Locking subject=%s until %s after %s failed logins", subject, attempts.locked_until, attempts.count)
            self.events.record(
                EVENT_RATE_LIMIT_EXCEEDED,
                subject,
                {
                    "reason": "Maximum login attempts exceeded",
                    "attempts": attempts.count,
                    "locked_until": attempts.locked_until.isoformat(),
                },
                severity=SEVERITY_HIGH,
                ip_address=ip_address,
            )
        return attempts

    def record_success(self, subject: str) -> None:
        with self._lock:
            self._attempts.pop(subject, None)

    def cleanup(self) -> int:
        """Drop records whose lock has expired."""
        now = self._clock()
        with self._lock:
            expired = [s for s, a in self._attempts.items() if a.locked_until is not None and a.locked_until <= now]
            for s in expired:
                del self._attempts[s]
        return len(expired)

    def locked_count(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for a in self._attempts.values() if a.locked_until is not None and a.locked_until > now)
