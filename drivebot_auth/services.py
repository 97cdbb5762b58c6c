"""
Explicit construction of the credential subsystem. The host process (bot or web app)
builds one AuthServices and passes it to whatever needs it; nothing here is a global.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from drivebot_auth import config
from drivebot_auth.authorization import AuthorizationFlow
from drivebot_auth.credentials import CredentialLifecycleManager, CredentialRepository
from drivebot_auth.crypto import CredentialCipher
from drivebot_auth.csrf import CsrfTokenService
from drivebot_auth.database import init_db, make_engine, make_session_factory
from drivebot_auth.kv_store import KeyValueStore, MemoryKVStore, RedisKVStore
from drivebot_auth.login_guard import LoginAttemptGuard
from drivebot_auth.models import utc_now
from drivebot_auth.pending_store import PendingAuthorizationStore
from drivebot_auth.provider import GoogleOAuthProvider, OAuthProvider
from drivebot_auth.rate_limit import RateLimiter
from drivebot_auth.security_events import SecurityEventLog

logger = logging.getLogger(__name__)


@dataclass
class AuthServices:
    session_factory: sessionmaker[Session]
    kv_store: KeyValueStore
    events: SecurityEventLog
    cipher: CredentialCipher
    provider: OAuthProvider
    credentials: CredentialRepository
    lifecycle: CredentialLifecycleManager
    flow: AuthorizationFlow
    rate_limiter: RateLimiter
    csrf: CsrfTokenService
    login_guard: LoginAttemptGuard


def assemble_services(
    *,
    session_factory: sessionmaker[Session],
    kv_store: KeyValueStore,
    cipher: CredentialCipher,
    provider: OAuthProvider,
    events: SecurityEventLog | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> AuthServices:
    """Wire the services together from already-built backends."""
    if events is None:
        events = SecurityEventLog(clock=clock)
    repository = CredentialRepository(session_factory, clock=clock)
    lifecycle = CredentialLifecycleManager(repository, cipher, provider, events, clock=clock)
    flow = AuthorizationFlow(
        provider=provider,
        pending=PendingAuthorizationStore(kv_store),
        repository=repository,
        cipher=cipher,
        lifecycle=lifecycle,
        events=events,
        clock=clock,
    )
    return AuthServices(
        session_factory=session_factory,
        kv_store=kv_store,
        events=events,
        cipher=cipher,
        provider=provider,
        credentials=repository,
        lifecycle=lifecycle,
        flow=flow,
        rate_limiter=RateLimiter(session_factory, events=events, clock=clock),
        csrf=CsrfTokenService(kv_store, events, clock=clock),
        login_guard=LoginAttemptGuard(events, clock=clock),
    )


def build_services() -> AuthServices:
    """Build everything from config (env). Fails fast on missing secrets."""
    if not config.GOOGLE_CLIENT_ID or not config.GOOGLE_CLIENT_SECRET:
        raise ValueError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are required")
    cipher = CredentialCipher(config.ENCRYPTION_KEY)

    engine = make_engine(config.DATABASE_URL)
    init_db(engine)

    if config.REDIS_URL:
        kv_store: KeyValueStore = RedisKVStore.from_url(config.REDIS_URL)
        kv_store.verify_connection()
    else:
        logger.warning("REDIS_URL not set; pending logins and CSRF tokens are kept in process memory")
        kv_store = MemoryKVStore()

    provider = GoogleOAuthProvider(
        client_id=config.GOOGLE_CLIENT_ID,
        client_secret=config.GOOGLE_CLIENT_SECRET,
        redirect_uri=config.GOOGLE_REDIRECT_URI,
        scopes=config.GOOGLE_DRIVE_SCOPES,
    )
    return assemble_services(
        session_factory=make_session_factory(engine),
        kv_store=kv_store,
        cipher=cipher,
        provider=provider,
    )
