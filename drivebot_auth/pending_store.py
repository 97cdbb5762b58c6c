"""
Pending PKCE authorizations, keyed by chat user (subject).
Written at /login, consumed once by the OAuth callback, expires after 15 minutes.
One live entry per subject: a new login overwrites the previous one.
"""
import json
from dataclasses import dataclass

from drivebot_auth.config import PENDING_AUTH_TTL_SECONDS
from drivebot_auth.kv_store import KeyValueStore


@dataclass
class PendingAuthorization:
    code_verifier: str
    state_token: str


class PendingAuthorizationStore:
    key_prefix = "oauth_code_verifier:"

    def __init__(self, store: KeyValueStore, ttl_seconds: int = PENDING_AUTH_TTL_SECONDS):
        self._store = store
        self.ttl_seconds = ttl_seconds

    def _key(self, subject: str) -> str:
        return f"{self.key_prefix}{subject}"

    def put(self, subject: str, code_verifier: str, state_token: str) -> None:
        value = json.dumps({"code_verifier": code_verifier, "state_token": state_token})
        self._store.set(self._key(subject), value, self.ttl_seconds)

    @staticmethod
    def _decode(raw: str | None) -> PendingAuthorization | None:
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return PendingAuthorization(code_verifier=data["code_verifier"], state_token=data["state_token"])
        except (ValueError, KeyError, TypeError):
            return None

    def peek(self, subject: str) -> PendingAuthorization | None:
        """Read without consuming."""
        return self._decode(self._store.get(self._key(subject)))

    def consume(self, subject: str) -> PendingAuthorization | None:
        """Read and remove the entry. Returns None if missing, expired, or already consumed."""
        return self._decode(self._store.pop(self._key(subject)))

    def discard(self, subject: str) -> None:
        self._store.delete(self._key(subject))
