"""
Pytest configuration for drivebot_auth. In-memory SQLite, in-memory KV store, a
controllable clock, and a fake Google provider so tests never touch the network.
"""
import os
import threading
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

# Set before drivebot_auth.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.setdefault("DATABASE_ENCRYPTION_KEY", "test-master-key-0123456789abcdefghij")

import pytest

from drivebot_auth.crypto import CredentialCipher
from drivebot_auth.database import init_db, make_engine, make_session_factory
from drivebot_auth.kv_store import MemoryKVStore
from drivebot_auth.provider import AccountIdentity, TokenGrant
from drivebot_auth.security_events import SecurityEventLog
from drivebot_auth.services import assemble_services

TEST_MASTER_KEY = "x" * 32


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeProvider:
    """In-memory OAuthProvider. Set *_error to make the next calls raise."""

    def __init__(self):
        self.grant = TokenGrant(access_token="access-1", refresh_token="refresh-1", expires_in=3600)
        self.refresh_grant = TokenGrant(access_token="access-2", expires_in=3600)
        self.identity = AccountIdentity(account_id="1234", email="user@example.com", name="Test User")
        self.exchange_error = None
        self.refresh_error = None
        self.revoke_error = None
        self.identity_error = None
        self.refresh_delay = 0.0
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, name, *args):
        with self._lock:
            self.calls.append((name, *args))

    def count(self, name):
        with self._lock:
            return sum(1 for c in self.calls if c[0] == name)

    def authorization_url(self, state, code_challenge):
        return "https://accounts.example.com/auth?" + urlencode({"state": state, "code_challenge": code_challenge})

    def exchange_code(self, code, code_verifier):
        self._record("exchange_code", code, code_verifier)
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.grant

    def refresh(self, refresh_token):
        self._record("refresh", refresh_token)
        if self.refresh_delay:
            time.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.refresh_grant

    def revoke(self, token):
        self._record("revoke", token)
        if self.revoke_error is not None:
            raise self.revoke_error

    def fetch_identity(self, access_token):
        self._record("fetch_identity", access_token)
        if self.identity_error is not None:
            raise self.identity_error
        return self.identity


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def cipher():
    return CredentialCipher(TEST_MASTER_KEY)


@pytest.fixture
def kv_store(clock):
    return MemoryKVStore(clock=lambda: clock().timestamp())


@pytest.fixture
def events(clock):
    return SecurityEventLog(clock=clock)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def services(session_factory, kv_store, cipher, provider, events, clock):
    return assemble_services(
        session_factory=session_factory,
        kv_store=kv_store,
        cipher=cipher,
        provider=provider,
        events=events,
        clock=clock,
    )


@pytest.fixture
def authorize(services):
    """Run /login plus a successful callback for subject; returns the stored credential."""

    def _authorize(subject="user-1", code="auth-code"):
        request = services.flow.initiate(subject)
        return services.flow.handle_callback(code, request.state, subject)

    return _authorize
