"""
Process-local security event log: bounded ring buffer with 24-hour retention.
Feeds /security/stats. Not shared across instances; clustered deployments need
a shared backing store instead.
"""
import logging
import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from drivebot_auth.config import SECURITY_EVENT_CAPACITY, SECURITY_EVENT_RETENTION_SECONDS
from drivebot_auth.models import utc_now

logger = logging.getLogger(__name__)

EVENT_LOGIN_ATTEMPT = "login_attempt"
EVENT_CSRF_VIOLATION = "csrf_violation"
EVENT_SUSPICIOUS_ACTIVITY = "suspicious_activity"
EVENT_RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
EVENT_FILE_UPLOAD_BLOCKED = "file_upload_blocked"
EVENT_INVALID_STATE = "invalid_state"
EVENT_CORRUPTED_CIPHERTEXT = "corrupted_ciphertext"

EVENT_TYPES = frozenset(
    {
        EVENT_LOGIN_ATTEMPT,
        EVENT_CSRF_VIOLATION,
        EVENT_SUSPICIOUS_ACTIVITY,
        EVENT_RATE_LIMIT_EXCEEDED,
        EVENT_FILE_UPLOAD_BLOCKED,
        EVENT_INVALID_STATE,
        EVENT_CORRUPTED_CIPHERTEXT,
    }
)

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"

SEVERITIES = (SEVERITY_LOW, SEVERITY_MEDIUM, SEVERITY_HIGH, SEVERITY_CRITICAL)

_LOG_LEVELS = {
    SEVERITY_LOW: logging.INFO,
    SEVERITY_MEDIUM: logging.INFO,
    SEVERITY_HIGH: logging.WARNING,
    SEVERITY_CRITICAL: logging.ERROR,
}


@dataclass
class SecurityEvent:
    type: str
    subject: str
    severity: str
    details: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "subject": self.subject,
            "severity": self.severity,
            "details": {k: str(v) for k, v in self.details.items()},
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "timestamp": self.timestamp.isoformat(),
        }


def _no_review(event: SecurityEvent) -> None:
    pass


class SecurityEventLog:
    def __init__(
        self,
        capacity: int = SECURITY_EVENT_CAPACITY,
        retention: timedelta = timedelta(seconds=SECURITY_EVENT_RETENTION_SECONDS),
        review_hook: Callable[[SecurityEvent], None] = _no_review,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._events: deque[SecurityEvent] = deque(maxlen=capacity)
        self.retention = retention
        self.review_hook = review_hook
        self._clock = clock
        self._lock = threading.Lock()

    def record(
        self,
        type: str,
        subject: str,
        details: dict[str, Any] | None = None,
        severity: str = SEVERITY_MEDIUM,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SecurityEvent:
        if type not in EVENT_TYPES:
            raise ValueError(f"Unknown security event type: {type}")
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")
        event = SecurityEvent(
            type=type,
            subject=subject,
            severity=severity,
            details=dict(details or {}),
            ip_address=ip_address,
            user_agent=user_agent,
            timestamp=self._clock(),
        )
        with self._lock:
            self._events.append(event)

        logger.log(
            _LOG_LEVELS[severity],
            "Security event type=%s subject=%s severity=%s details=%s ip=%s",
            type,
            subject,
            severity,
            event.details,
            ip_address,
        )
        if severity == SEVERITY_CRITICAL:
            self._handle_critical(event)
        return event

    def _handle_critical(self, event: SecurityEvent) -> None:
        logger.error("Critical security event requires review: type=%s subject=%s", event.type, event.subject)
        try:
            self.review_hook(event)
        except Exception:
            # Hook failures are logged, never raised to the caller
            logger.exception("Security review hook failed for event type=%s", event.type)

    def cleanup(self) -> int:
        """Drop events older than the retention window. Returns how many were removed."""
        cutoff = self._clock() - self.retention
        with self._lock:
            before = len(self._events)
            kept = [e for e in self._events if e.timestamp > cutoff]
            self._events.clear()
            self._events.extend(kept)
            return before - len(kept)

    def events(self) -> list[SecurityEvent]:
        with self._lock:
            return list(self._events)

    def stats(self, recent: int = 10) -> dict[str, Any]:
        events = self.events()
        return {
            "total_events": len(events),
            "events_by_type": dict(Counter(e.type for e in events)),
            "events_by_severity": dict(Counter(e.severity for e in events)),
            "recent_events": [e.to_dict() for e in events[-recent:]] if recent > 0 else [],
        }
