"""
OAuth2 provider boundary.

The rest of the subsystem depends only on the OAuthProvider protocol
(authorization_url, exchange_code, refresh, revoke, fetch_identity).
GoogleOAuthProvider implements it over plain HTTPS with httpx: every call has a
bounded timeout, and idempotent calls are retried with exponential backoff on
transient failures only. The adapter holds no per-user state.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import httpx
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from drivebot_auth.config import (
    GOOGLE_AUTH_URI,
    GOOGLE_REVOKE_URI,
    GOOGLE_TOKEN_URI,
    GOOGLE_USERINFO_URI,
    PROVIDER_MAX_RETRIES,
    PROVIDER_TIMEOUT_SECONDS,
)
from drivebot_auth.errors import (
    AuthError,
    ProviderError,
    ReauthorizationRequired,
    TransientProviderError,
    classify_provider_error,
)
from drivebot_auth.pkce import build_authorize_url

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600


@dataclass
class TokenGrant:
    access_token: str
    expires_in: int
    refresh_token: str | None = None
    scope: str = ""
    token_type: str = "Bearer"

    def expires_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.expires_in)


@dataclass
class AccountIdentity:
    account_id: str
    email: str
    name: str = ""
    picture: str | None = None


class OAuthProvider(Protocol):
    def authorization_url(self, state: str, code_challenge: str) -> str: ...

    def exchange_code(self, code: str, code_verifier: str) -> TokenGrant: ...

    def refresh(self, refresh_token: str) -> TokenGrant: ...

    def revoke(self, token: str) -> None: ...

    def fetch_identity(self, access_token: str) -> AccountIdentity: ...


def _error_code(r: httpx.Response) -> tuple[str | None, str | None]:
    """(error, error_description) from an OAuth JSON error body, if any."""
    try:
        body = r.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    err = body.get("error")
    # Google userinfo errors nest: {"error": {"status": ..., "message": ...}}
    if isinstance(err, dict):
        return err.get("status"), err.get("message")
    return err, body.get("error_description")


def _raise_for_error(r: httpx.Response, operation: str) -> None:
    if r.status_code < 400:
        return
    if r.status_code >= 500 or r.status_code == 429:
        raise TransientProviderError(f"{operation}: provider returned {r.status_code}")
    error, description = _error_code(r)
    raise classify_provider_error(error, f"{operation}: {error or r.status_code} {description or ''}".strip())


def _parse_grant(r: httpx.Response, operation: str) -> TokenGrant:
    try:
        data = r.json()
    except ValueError as e:
        raise ProviderError(f"{operation}: token response is not JSON") from e
    access_token = data.get("access_token") if isinstance(data, dict) else None
    if not access_token:
        raise ProviderError(f"{operation}: token response has no access_token")
    try:
        expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
    except (TypeError, ValueError) as e:
        raise ProviderError(f"{operation}: token response has a non-numeric expires_in") from e
    return TokenGrant(
        access_token=access_token,
        refresh_token=data.get("refresh_token") or None,
        expires_in=expires_in,
        scope=data.get("scope", ""),
        token_type=data.get("token_type", "Bearer"),
    )


class GoogleOAuthProvider:
    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: list[str],
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        max_retries: int = PROVIDER_MAX_RETRIES,
        retry_wait_seconds: float = 0.5,
        auth_uri: str = GOOGLE_AUTH_URI,
        token_uri: str = GOOGLE_TOKEN_URI,
        revoke_uri: str = GOOGLE_REVOKE_URI,
        userinfo_uri: str = GOOGLE_USERINFO_URI,
        http_client: httpx.Client | None = None,
    ):
        self.client_id = client_id
        self._client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes)
        self.max_retries = max_retries
        self.retry_wait_seconds = retry_wait_seconds
        self.auth_uri = auth_uri
        self.token_uri = token_uri
        self.revoke_uri = revoke_uri
        self.userinfo_uri = userinfo_uri
        self._http = http_client or httpx.Client(timeout=timeout)

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_wait_seconds, max=10),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _send(
        self,
        method: str,
        url: str,
        operation: str,
        *,
        data: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        all_headers = {"Accept": "application/json"}
        if headers:
            all_headers.update(headers)
        try:
            r = self._http.request(method, url, data=data, headers=all_headers)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"{operation}: timed out") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"{operation}: {type(e).__name__}") from e
        _raise_for_error(r, operation)
        return r

    def _send_with_retry(self, method: str, url: str, operation: str, **kwargs) -> httpx.Response:
        for attempt in self._retrying():
            with attempt:
                return self._send(method, url, operation, **kwargs)
        raise AssertionError("unreachable")  # reraise=True always raises on exhaustion

    def authorization_url(self, state: str, code_challenge: str) -> str:
        return build_authorize_url(
            auth_uri=self.auth_uri,
            client_id=self.client_id,
            redirect_uri=self.redirect_uri,
            scopes=self.scopes,
            state=state,
            code_challenge=code_challenge,
            # offline + consent so Google always returns a refresh token
            extra_params={"access_type": "offline", "prompt": "consent"},
        )

    def exchange_code(self, code: str, code_verifier: str) -> TokenGrant:
        # Authorization codes are single-use: no retry
        r = self._send(
            "POST",
            self.token_uri,
            "exchange_code",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": code_verifier,
                "redirect_uri": self.redirect_uri,
                "client_id": self.client_id,
                "client_secret": self._client_secret,
            },
        )
        return _parse_grant(r, "exchange_code")

    def refresh(self, refresh_token: str) -> TokenGrant:
        r = self._send_with_retry(
            "POST",
            self.token_uri,
            "refresh",
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self._client_secret,
            },
        )
        return _parse_grant(r, "refresh")

    def revoke(self, token: str) -> None:
        try:
            self._send_with_retry(
                "POST",
                self.revoke_uri,
                "revoke",
                data={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except AuthError as e:
            if isinstance(e, TransientProviderError):
                raise
            # Google answers 400 invalid_token for tokens that are already dead
            logger.debug("revoke: provider rejected token (%s); treating as revoked", e.code)

    def fetch_identity(self, access_token: str) -> AccountIdentity:
        try:
            r = self._send_with_retry(
                "GET",
                self.userinfo_uri,
                "fetch_identity",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except ProviderError as e:
            raise ReauthorizationRequired(e.detail) from e
        try:
            data = r.json()
        except ValueError as e:
            raise ProviderError("fetch_identity: userinfo response is not JSON") from e
        email = data.get("email") if isinstance(data, dict) else None
        if not email:
            raise ProviderError("fetch_identity: provider returned no email")
        return AccountIdentity(
            account_id=str(data.get("id", "")),
            email=email,
            name=data.get("name", ""),
            picture=data.get("picture"),
        )

    def close(self) -> None:
        self._http.close()
