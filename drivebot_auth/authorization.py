"""
PKCE authorization flow: /login initiation, OAuth callback, and /logout revocation.

State is "<subject>:<anti-forgery token>". The callback is accepted only when the
state's subject matches the caller's subject, a pending authorization for that
subject still exists (consumed exactly once), and the anti-forgery token matches.
"""
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from drivebot_auth.audit import EVENT_OAUTH_LOGIN, EVENT_OAUTH_LOGOUT, OUTCOME_FAIL, OUTCOME_SUCCESS
from drivebot_auth.credentials import CredentialLifecycleManager, CredentialRepository
from drivebot_auth.crypto import CredentialCipher
from drivebot_auth.errors import (
    AuthError,
    InvalidGrant,
    InvalidState,
    ProviderError,
    SessionExpired,
    classify_provider_error,
)
from drivebot_auth.models import Credential, utc_now
from drivebot_auth.pending_store import PendingAuthorizationStore
from drivebot_auth.pkce import compose_state, generate_pkce, generate_state_token, split_state
from drivebot_auth.provider import OAuthProvider
from drivebot_auth.security_events import EVENT_INVALID_STATE, SEVERITY_HIGH, SecurityEventLog

logger = logging.getLogger(__name__)


@dataclass
class AuthorizationRequest:
    url: str
    state: str
    expires_in: int


class AuthorizationFlow:
    def __init__(
        self,
        provider: OAuthProvider,
        pending: PendingAuthorizationStore,
        repository: CredentialRepository,
        cipher: CredentialCipher,
        lifecycle: CredentialLifecycleManager,
        events: SecurityEventLog,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.provider = provider
        self.pending = pending
        self.repository = repository
        self.cipher = cipher
        self.lifecycle = lifecycle
        self.events = events
        self._clock = clock

    def initiate(self, subject: str) -> AuthorizationRequest:
        """Build the provider authorization URL and remember the verifier. No network call."""
        if not subject or ":" in subject:
            raise ValueError("subject must be a non-empty identifier without ':'")
        code_verifier, code_challenge = generate_pkce()
        state_token = generate_state_token()
        state = compose_state(subject, state_token)
        # Overwrites any earlier pending login for this subject
        self.pending.put(subject, code_verifier, state_token)
        url = self.provider.authorization_url(state=state, code_challenge=code_challenge)
        logger.info("OAuth URL generated for subject=%s", subject)
        return AuthorizationRequest(url=url, state=state, expires_in=self.pending.ttl_seconds)

    def _reject_state(self, subject: str, reason: str, ip_address: str | None) -> InvalidState:
        self.events.record(
            EVENT_INVALID_STATE,
            subject,
            {"reason": reason},
            severity=SEVERITY_HIGH,
            ip_address=ip_address,
        )
        return InvalidState(reason)

    def state_subject(self, state: str | None) -> str | None:
        parts = split_state(state)
        return parts[0] if parts else None

    def bound_subject(self, state: str | None) -> str | None:
        """
        Subject of state only if its anti-forgery token matches that subject's live
        pending authorization. Does not consume the entry.
        """
        parts = split_state(state)
        if parts is None:
            return None
        subject, state_token = parts
        pending = self.pending.peek(subject)
        if pending is None or not hmac.compare_digest(pending.state_token, state_token):
            return None
        return subject

    def handle_callback(
        self,
        code: str,
        state: str,
        subject: str | None = None,
        *,
        ip_address: str | None = None,
    ) -> Credential:
        """
        Complete the authorization: verify state, consume the pending verifier,
        exchange the code, and persist the encrypted credential.
        subject is the caller's own identity when known (chat context); the HTTP
        callback has none and relies on the state token check.
        """
        parts = split_state(state)
        if parts is None:
            raise self._reject_state(subject or "anonymous", "Malformed state parameter", ip_address)
        state_subject, state_token = parts
        if subject is not None and state_subject != subject:
            raise self._reject_state(subject, "State subject does not match caller", ip_address)

        # A stale or forged token is rejected without burning the user's live login
        pending = self.pending.peek(state_subject)
        if pending is None:
            logger.info("No pending authorization for subject=%s (expired or already used)", state_subject)
            raise SessionExpired("pending authorization missing or expired")
        if not hmac.compare_digest(pending.state_token, state_token):
            raise self._reject_state(state_subject, "State token does not match pending authorization", ip_address)
        # Atomic pop decides the single winner among concurrent callbacks
        pending = self.pending.consume(state_subject)
        if pending is None or not hmac.compare_digest(pending.state_token, state_token):
            raise SessionExpired("pending authorization consumed or replaced concurrently")
        if not code:
            raise InvalidGrant("callback carried no authorization code")

        try:
            grant = self.provider.exchange_code(code, pending.code_verifier)
            identity = self.provider.fetch_identity(grant.access_token)
        except AuthError as e:
            logger.warning("OAuth token exchange failed for subject=%s: %s", state_subject, e.code)
            self.repository.audit(EVENT_OAUTH_LOGIN, state_subject, None, OUTCOME_FAIL)
            raise

        existing = self.repository.get(state_subject)
        if grant.refresh_token is None and existing is None:
            self.repository.audit(EVENT_OAUTH_LOGIN, state_subject, identity.email, OUTCOME_FAIL)
            raise ProviderError("token response had no refresh_token on first authorization")

        credential = self.repository.upsert_authorized(
            state_subject,
            provider_account=identity.email,
            encrypted_access_token=self.cipher.encrypt(grant.access_token),
            encrypted_refresh_token=self.cipher.encrypt(grant.refresh_token) if grant.refresh_token else None,
            token_expires_at=grant.expires_at(self._clock()),
        )
        self.repository.audit(EVENT_OAUTH_LOGIN, state_subject, identity.email, OUTCOME_SUCCESS)
        logger.info(
            "OAuth login complete for subject=%s (%s)",
            state_subject,
            "re-authorized" if existing else "new credential",
        )
        return credential

    def handle_provider_error(
        self,
        state: str | None,
        error: str,
        *,
        ip_address: str | None = None,
    ) -> AuthError:
        """
        The callback came back with ?error=... instead of a code. Drop the pending
        login only when state carries that login's anti-forgery token, and return the
        classified error for the caller to raise.
        """
        subject = self.bound_subject(state)
        if subject is not None:
            self.pending.discard(subject)
            self.repository.audit(EVENT_OAUTH_LOGIN, subject, None, OUTCOME_FAIL)
        else:
            claimed = self.state_subject(state)
            if claimed is not None:
                self._reject_state(claimed, "Provider error with unmatched state token", ip_address)
        logger.info("Provider returned error=%s for subject=%s", error, subject)
        return classify_provider_error(error)

    def revoke(self, credential: Credential) -> None:
        """
        Revoke both tokens at the provider (best effort) and deactivate the credential.
        A failure on either token is logged and does not stop the deactivation.
        """
        subject_id = credential.subject_id
        for label, ciphertext in (
            ("access", credential.encrypted_access_token),
            ("refresh", credential.encrypted_refresh_token),
        ):
            try:
                token = self.lifecycle.decrypt_secret(credential, ciphertext)
                self.provider.revoke(token)
            except AuthError as e:
                logger.warning("Failed to revoke %s token for subject=%s: %s", label, subject_id, e.code)

        try:
            if not self.repository.deactivate(subject_id):
                logger.warning("Revoke: no stored credential for subject=%s", subject_id)
        except SQLAlchemyError:
            logger.exception("Revoke: failed to deactivate credential for subject=%s", subject_id)
        credential.is_active = False
        self.repository.audit(EVENT_OAUTH_LOGOUT, subject_id, credential.provider_account, OUTCOME_SUCCESS)
        logger.info("Credential revoked for subject=%s", subject_id)
