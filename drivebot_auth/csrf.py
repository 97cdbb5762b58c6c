"""
Single-use CSRF tokens bound to a chat user.
A token validates at most once: the successful check deletes it, and the delete is
atomic, so a replay (or a racing second request) finds nothing.
"""
import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable

from drivebot_auth.config import CSRF_TOKEN_TTL_SECONDS
from drivebot_auth.errors import CsrfValidationFailed
from drivebot_auth.kv_store import KeyValueStore
from drivebot_auth.models import utc_now
from drivebot_auth.security_events import EVENT_CSRF_VIOLATION, SEVERITY_MEDIUM, SecurityEventLog

logger = logging.getLogger(__name__)


def _preview(token: str) -> str:
    return token[:8] + "..."


class CsrfTokenService:
    key_prefix = "csrf_token:"

    def __init__(
        self,
        store: KeyValueStore,
        events: SecurityEventLog,
        ttl_seconds: int = CSRF_TOKEN_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self.events = events
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _key(self, token: str) -> str:
        return f"{self.key_prefix}{token}"

    def issue(self, subject: str) -> str:
        token = secrets.token_hex(32)
        now = self._clock()
        record = {
            "subject": subject,
            "created_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=self.ttl_seconds)).isoformat(),
        }
        self._store.set(self._key(token), json.dumps(record), self.ttl_seconds)
        logger.debug("CSRF token issued for subject=%s token=%s", subject, _preview(token))
        return token

    def _violation(self, subject: str, reason: str, ip_address: str | None, **details) -> bool:
        self.events.record(
            EVENT_CSRF_VIOLATION,
            subject,
            {"reason": reason, **details},
            severity=SEVERITY_MEDIUM,
            ip_address=ip_address,
        )
        return False

    def validate(self, token: str | None, subject: str, *, ip_address: str | None = None) -> bool:
        if not token:
            return self._violation(subject, "Missing CSRF token", ip_address)
        raw = self._store.get(self._key(token))
        if raw is None:
            return self._violation(subject, "Token not found", ip_address, token=_preview(token))
        try:
            record = json.loads(raw)
            expires_at = datetime.fromisoformat(record["expires_at"])
            owner = record["subject"]
        except (ValueError, KeyError, TypeError):
            logger.warning("Unreadable CSRF token record token=%s", _preview(token))
            return self._violation(subject, "Token record unreadable", ip_address, token=_preview(token))

        if owner != subject:
            # Not consumed: the rightful owner can still use it
            return self._violation(subject, "User ID mismatch", ip_address, token_subject=owner)
        if expires_at <= self._clock():
            return self._violation(subject, "Token expired", ip_address, expires_at=expires_at.isoformat())

        if not self._store.delete(self._key(token)):
            # Lost a race with a concurrent use of the same token
            return self._violation(subject, "Token already used", ip_address, token=_preview(token))
        return True

    def require(self, token: str | None, subject: str, *, ip_address: str | None = None) -> None:
        if not self.validate(token, subject, ip_address=ip_address):
            raise CsrfValidationFailed("CSRF token rejected")
