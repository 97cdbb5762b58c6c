"""
Per-user, per-command rate limiting. Fixed window, persisted in rate_limit_counters
so limits survive restarts.

Fixed windows allow up to 2x the limit in a burst straddling a window boundary.
On a database failure the limiter fails open: the request is allowed and the fault logged.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from drivebot_auth.config import RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_MS
from drivebot_auth.errors import RateLimitExceeded
from drivebot_auth.models import RateLimitCounter, as_utc, utc_now
from drivebot_auth.security_events import EVENT_RATE_LIMIT_EXCEEDED, SEVERITY_LOW, SecurityEventLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window: timedelta


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int
    message: str | None = None


_15_MIN = timedelta(minutes=15)
_1_HOUR = timedelta(hours=1)

DEFAULT_POLICIES: dict[str, RateLimitPolicy] = {
    # Authentication
    "login": RateLimitPolicy(5, _15_MIN),
    "logout": RateLimitPolicy(10, _15_MIN),
    "status": RateLimitPolicy(20, _15_MIN),
    # File operations
    "upload": RateLimitPolicy(20, _15_MIN),
    "download": RateLimitPolicy(30, _15_MIN),
    "delete": RateLimitPolicy(10, _15_MIN),
    "list": RateLimitPolicy(50, _15_MIN),
    "create-folder": RateLimitPolicy(10, _15_MIN),
    "rename": RateLimitPolicy(15, _15_MIN),
    "move": RateLimitPolicy(15, _15_MIN),
    "copy": RateLimitPolicy(15, _15_MIN),
    "share": RateLimitPolicy(20, _15_MIN),
    # Bulk operations
    "bulk-upload": RateLimitPolicy(3, _1_HOUR),
    "bulk-download": RateLimitPolicy(5, _1_HOUR),
    # Utility
    "search": RateLimitPolicy(100, _15_MIN),
    "recent": RateLimitPolicy(30, _15_MIN),
    "storage": RateLimitPolicy(20, _15_MIN),
    "favorites": RateLimitPolicy(20, _15_MIN),
    "help": RateLimitPolicy(50, _15_MIN),
}

DEFAULT_POLICY = RateLimitPolicy(RATE_LIMIT_MAX_REQUESTS, timedelta(milliseconds=RATE_LIMIT_WINDOW_MS))


def _denial_message(action: str, policy: RateLimitPolicy, reset_at: datetime) -> str:
    minutes = round(policy.window.total_seconds() / 60)
    return (
        f"Rate limit exceeded. You can use this command {policy.max_requests} times per "
        f"{minutes} minutes. Try again at {reset_at.isoformat()}."
    )


class RateLimiter:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        policies: dict[str, RateLimitPolicy] | None = None,
        default_policy: RateLimitPolicy = DEFAULT_POLICY,
        events: SecurityEventLog | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._policies = dict(DEFAULT_POLICIES if policies is None else policies)
        self.default_policy = default_policy
        self.events = events
        self._clock = clock

    def policy_for(self, action: str) -> RateLimitPolicy:
        return self._policies.get(action, self.default_policy)

    def check_and_consume(self, subject: str, action: str) -> RateLimitResult:
        policy = self.policy_for(action)
        now = self._clock()
        try:
            with self._session_factory() as db:
                # Row lock so concurrent requests for the same (subject, action) serialize
                # (no-op on SQLite, which serializes writers anyway)
                counter = db.execute(
                    select(RateLimitCounter)
                    .where(RateLimitCounter.subject_id == subject, RateLimitCounter.action == action)
                    .with_for_update()
                ).scalar_one_or_none()
                result = self._apply(db, counter, subject, action, policy, now)
                db.commit()
        except SQLAlchemyError:
            logger.exception("Rate limit check failed for subject=%s action=%s; allowing", subject, action)
            return RateLimitResult(
                allowed=True,
                remaining=policy.max_requests,
                reset_at=now + policy.window,
                limit=policy.max_requests,
            )

        if not result.allowed:
            logger.info("Rate limit exceeded subject=%s action=%s reset_at=%s", subject, action, result.reset_at)
            if self.events is not None:
                self.events.record(
                    EVENT_RATE_LIMIT_EXCEEDED,
                    subject,
                    {"action": action, "max": policy.max_requests, "reset_at": result.reset_at.isoformat()},
                    severity=SEVERITY_LOW,
                )
        return result

    @staticmethod
    def _apply(
        db: Session,
        counter: RateLimitCounter | None,
        subject: str,
        action: str,
        policy: RateLimitPolicy,
        now: datetime,
    ) -> RateLimitResult:
        if counter is None:
            db.add(RateLimitCounter(subject_id=subject, action=action, count=1, window_start=now))
            return RateLimitResult(True, policy.max_requests - 1, now + policy.window, policy.max_requests)

        window_start = as_utc(counter.window_start)
        if now - window_start >= policy.window:
            counter.count = 1
            counter.window_start = now
            return RateLimitResult(True, policy.max_requests - 1, now + policy.window, policy.max_requests)

        reset_at = window_start + policy.window
        if counter.count >= policy.max_requests:
            return RateLimitResult(
                False, 0, reset_at, policy.max_requests, _denial_message(action, policy, reset_at)
            )

        counter.count += 1
        return RateLimitResult(True, policy.max_requests - counter.count, reset_at, policy.max_requests)

    def enforce(self, subject: str, action: str) -> RateLimitResult:
        """check_and_consume, raising RateLimitExceeded when denied."""
        result = self.check_and_consume(subject, action)
        if not result.allowed:
            retry_after = max(1, math.ceil((result.reset_at - self._clock()).total_seconds()))
            raise RateLimitExceeded(action, result.reset_at, result.message, retry_after=retry_after)
        return result

    def cleanup_expired(self, older_than: timedelta = timedelta(hours=24)) -> int:
        """Delete counters whose window started before now - older_than."""
        cutoff = self._clock() - older_than
        try:
            with self._session_factory() as db:
                deleted = db.execute(delete(RateLimitCounter).where(RateLimitCounter.window_start < cutoff)).rowcount
                db.commit()
        except SQLAlchemyError:
            logger.exception("Failed to clean up expired rate limits")
            return 0
        if deleted:
            logger.info("Cleaned up %s expired rate limit counters", deleted)
        return deleted or 0

    def reset_subject(self, subject: str) -> int:
        with self._session_factory() as db:
            deleted = db.execute(delete(RateLimitCounter).where(RateLimitCounter.subject_id == subject)).rowcount
            db.commit()
        return deleted or 0

    def get_policies(self) -> dict[str, RateLimitPolicy]:
        return dict(self._policies)

    def update_policy(self, action: str, max_requests: int, window: timedelta) -> None:
        if max_requests < 1 or window <= timedelta(0):
            raise ValueError("max_requests must be >= 1 and window must be positive")
        self._policies[action] = RateLimitPolicy(max_requests, window)
        logger.info("Updated rate limit for action=%s max=%s window=%s", action, max_requests, window)
