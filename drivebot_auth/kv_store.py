"""
TTL key/value store used for pending authorizations and CSRF tokens.
MemoryKVStore is for a single process (and tests); RedisKVStore is shared across instances.
Both give atomic pop() and delete() so a value can be consumed exactly once.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable

from redis import Redis

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    @abstractmethod
    def get(self, key: str) -> str | None:
        """Value for key, or None if missing or expired."""

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store value, replacing any existing one; it disappears after ttl_seconds."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove key. True only for the caller that actually removed a live entry."""

    @abstractmethod
    def pop(self, key: str) -> str | None:
        """Atomically read and remove key."""

    def purge_expired(self) -> int:
        """Drop expired entries; backends with native TTL have nothing to do."""
        return 0


class MemoryKVStore(KeyValueStore):
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl_seconds)

    def delete(self, key: str) -> bool:
        with self._lock:
            if self._live(key) is None:
                return False
            del self._data[key]
            return True

    def pop(self, key: str) -> str | None:
        with self._lock:
            value = self._live(key)
            if value is not None:
                del self._data[key]
            return value

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, exp) in self._data.items() if now >= exp]
            for k in expired:
                del self._data[k]
        return len(expired)


class RedisKVStore(KeyValueStore):
    """Redis backend; keys expire natively via EX."""

    def __init__(self, client: Redis, prefix: str = "drivebot:"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, redis_url: str, *, socket_timeout: float = 5.0, prefix: str = "drivebot:") -> "RedisKVStore":
        client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> str | None:
        return self.client.get(self._key(key))

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(self._key(key), value, ex=max(1, int(ttl_seconds)))

    def delete(self, key: str) -> bool:
        return self.client.delete(self._key(key)) == 1

    def pop(self, key: str) -> str | None:
        # GETDEL (Redis >= 6.2) reads and removes in one command
        return self.client.getdel(self._key(key))

    def verify_connection(self) -> None:
        self.client.ping()
        logger.info("Connected to Redis KV store")
