"""
Per-user OAuth credential storage and lifecycle.

CredentialLifecycleManager.get_live_access_token() is the only sanctioned way for
the rest of the bot to obtain an access token: it decrypts the stored token while
it is live and refreshes it transparently once it has expired. Concurrent refreshes
for one user are collapsed into a single provider call by a per-user lock.
"""
import logging
import threading
import weakref
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from drivebot_auth.audit import (
    EVENT_OAUTH_REFRESH,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    log_audit,
)
from drivebot_auth.config import TOKEN_REFRESH_SKEW_SECONDS
from drivebot_auth.crypto import CredentialCipher
from drivebot_auth.errors import CorruptedCiphertext, InvalidGrant, ReauthorizationRequired
from drivebot_auth.models import Credential, utc_now
from drivebot_auth.provider import AccountIdentity, OAuthProvider
from drivebot_auth.security_events import (
    EVENT_CORRUPTED_CIPHERTEXT,
    SEVERITY_HIGH,
    SecurityEventLog,
)

logger = logging.getLogger(__name__)


class CredentialRepository:
    """Credential table access. Rows are returned detached and safe to pass around."""

    def __init__(self, session_factory: sessionmaker[Session], clock: Callable[[], datetime] = utc_now):
        self.session_factory = session_factory
        self._clock = clock

    def get(self, subject_id: str) -> Credential | None:
        with self.session_factory() as db:
            return db.get(Credential, subject_id)

    def upsert_authorized(
        self,
        subject_id: str,
        *,
        provider_account: str,
        encrypted_access_token: str,
        encrypted_refresh_token: str | None,
        token_expires_at: datetime,
    ) -> Credential:
        """
        Create on first authorization, or overwrite on re-authorization.
        encrypted_refresh_token=None keeps the stored refresh token (provider issued none).
        """
        now = self._clock()
        with self.session_factory() as db:
            cred = db.get(Credential, subject_id)
            if cred is None:
                if encrypted_refresh_token is None:
                    raise ValueError("A refresh token is required for a first authorization")
                cred = Credential(
                    subject_id=subject_id,
                    provider_account=provider_account,
                    encrypted_refresh_token=encrypted_refresh_token,
                    encrypted_access_token=encrypted_access_token,
                    token_expires_at=token_expires_at,
                    created_at=now,
                    updated_at=now,
                    is_active=True,
                )
                db.add(cred)
            else:
                cred.provider_account = provider_account
                if encrypted_refresh_token is not None:
                    cred.encrypted_refresh_token = encrypted_refresh_token
                cred.encrypted_access_token = encrypted_access_token
                cred.token_expires_at = token_expires_at
                cred.updated_at = now
                cred.is_active = True
            db.commit()
            return cred

    def replace_access_token(
        self,
        subject_id: str,
        *,
        encrypted_access_token: str,
        token_expires_at: datetime,
        encrypted_refresh_token: str | None = None,
    ) -> Credential | None:
        """Swap access token and expiry together in one commit."""
        with self.session_factory() as db:
            cred = db.get(Credential, subject_id)
            if cred is None:
                return None
            cred.encrypted_access_token = encrypted_access_token
            cred.token_expires_at = token_expires_at
            if encrypted_refresh_token is not None:
                cred.encrypted_refresh_token = encrypted_refresh_token
            cred.updated_at = self._clock()
            db.commit()
            return cred

    def deactivate(self, subject_id: str) -> bool:
        """Clear the active flag. The row is kept for audit."""
        with self.session_factory() as db:
            cred = db.get(Credential, subject_id)
            if cred is None:
                return False
            cred.is_active = False
            cred.updated_at = self._clock()
            db.commit()
            return True

    def audit(self, event_type: str, subject_id: str, provider_account: str | None, outcome: str) -> None:
        with self.session_factory() as db:
            log_audit(db, event_type, subject_id, provider_account=provider_account, outcome=outcome)


class CredentialLifecycleManager:
    def __init__(
        self,
        repository: CredentialRepository,
        cipher: CredentialCipher,
        provider: OAuthProvider,
        events: SecurityEventLog,
        *,
        skew_seconds: int = TOKEN_REFRESH_SKEW_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.cipher = cipher
        self.provider = provider
        self.events = events
        self.skew_seconds = skew_seconds
        self._clock = clock
        # Entries vanish once no caller holds the lock
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _subject_lock(self, subject_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(subject_id)
            if lock is None:
                lock = self._locks[subject_id] = threading.Lock()
            return lock

    def decrypt_secret(self, credential: Credential, ciphertext: str) -> str:
        try:
            return self.cipher.decrypt(ciphertext)
        except CorruptedCiphertext:
            self.events.record(
                EVENT_CORRUPTED_CIPHERTEXT,
                credential.subject_id,
                {"reason": "Stored token failed to decrypt"},
                severity=SEVERITY_HIGH,
            )
            raise

    def get_live_access_token(self, credential: Credential) -> str:
        """
        Decrypted access token for credential, refreshing it first if it has expired.
        Raises ReauthorizationRequired if the refresh token is dead or the credential was revoked;
        TransientProviderError if the provider is unreachable (caller may retry).
        """
        if not credential.is_active:
            raise ReauthorizationRequired("credential is not active")
        if not credential.access_token_expired(self._clock(), self.skew_seconds):
            return self.decrypt_secret(credential, credential.encrypted_access_token)

        subject_id = credential.subject_id
        with self._subject_lock(subject_id):
            # Another request may have refreshed while we waited for the lock
            current = self.repository.get(subject_id)
            if current is None or not current.is_active:
                raise ReauthorizationRequired("credential is missing or revoked")
            if not current.access_token_expired(self._clock(), self.skew_seconds):
                self._sync(credential, current)
                return self.decrypt_secret(current, current.encrypted_access_token)
            return self._refresh(credential, current)

    def _refresh(self, credential: Credential, current: Credential) -> str:
        subject_id = current.subject_id
        refresh_token = self.decrypt_secret(current, current.encrypted_refresh_token)
        logger.info("Refreshing access token for subject=%s", subject_id)
        try:
            grant = self.provider.refresh(refresh_token)
        except InvalidGrant as e:
            logger.warning("Refresh token rejected for subject=%s; re-authorization required", subject_id)
            self.repository.audit(EVENT_OAUTH_REFRESH, subject_id, current.provider_account, OUTCOME_FAIL)
            raise ReauthorizationRequired(e.detail) from e

        # Rotating providers hand back a new refresh token; the old one is then dead
        new_refresh = None
        if grant.refresh_token and grant.refresh_token != refresh_token:
            new_refresh = self.cipher.encrypt(grant.refresh_token)
        updated = self.repository.replace_access_token(
            subject_id,
            encrypted_access_token=self.cipher.encrypt(grant.access_token),
            token_expires_at=grant.expires_at(self._clock()),
            encrypted_refresh_token=new_refresh,
        )
        if updated is None:
            raise ReauthorizationRequired("credential disappeared during refresh")
        self._sync(credential, updated)
        self.repository.audit(EVENT_OAUTH_REFRESH, subject_id, updated.provider_account, OUTCOME_SUCCESS)
        logger.info("Access token refreshed for subject=%s expires_at=%s", subject_id, updated.token_expires_at)
        return grant.access_token

    @staticmethod
    def _sync(target: Credential, source: Credential) -> None:
        # Keep the caller's copy current so its next call does not refresh again
        if target is source:
            return
        target.encrypted_access_token = source.encrypted_access_token
        target.encrypted_refresh_token = source.encrypted_refresh_token
        target.token_expires_at = source.token_expires_at
        target.updated_at = source.updated_at

    def verify(self, credential: Credential) -> bool:
        """Liveness check with a cheap provider call. Never raises."""
        try:
            token = self.get_live_access_token(credential)
            self.provider.fetch_identity(token)
            return True
        except Exception as e:
            logger.warning("Token verification failed for subject=%s: %s", credential.subject_id, type(e).__name__)
            return False

    def get_account_info(self, credential: Credential) -> AccountIdentity:
        return self.provider.fetch_identity(self.get_live_access_token(credential))
