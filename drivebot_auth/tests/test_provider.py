"""Tests for the Google OAuth adapter over a mocked HTTP transport."""
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from drivebot_auth.errors import (
    AccessDenied,
    InvalidClientConfig,
    InvalidGrant,
    ProviderError,
    ReauthorizationRequired,
    RedirectMismatch,
    TransientProviderError,
)
from drivebot_auth.provider import GoogleOAuthProvider

TOKEN_URI = "https://oauth2.example.com/token"
REVOKE_URI = "https://oauth2.example.com/revoke"
USERINFO_URI = "https://www.example.com/oauth2/v2/userinfo"


class Recorder:
    """MockTransport handler returning queued responses and recording requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        # Fresh copy so a queued response can be served more than once
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)


def make_provider(handler, **kwargs):
    return GoogleOAuthProvider(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="http://localhost:3000/oauth/callback",
        scopes=["https://www.googleapis.com/auth/drive"],
        retry_wait_seconds=0,
        token_uri=TOKEN_URI,
        revoke_uri=REVOKE_URI,
        userinfo_uri=USERINFO_URI,
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


def form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


TOKEN_OK = httpx.Response(
    200,
    json={
        "access_token": "ya29.access",
        "refresh_token": "1//refresh",
        "expires_in": 3599,
        "scope": "https://www.googleapis.com/auth/drive",
        "token_type": "Bearer",
    },
)


def test_authorization_url_requests_offline_access():
    provider = make_provider(Recorder(TOKEN_OK))
    url = provider.authorization_url(state="u1:tok", code_challenge="challenge")
    params = parse_qs(urlparse(url).query)
    assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    assert params["access_type"] == ["offline"]
    assert params["prompt"] == ["consent"]
    assert params["code_challenge_method"] == ["S256"]
    assert params["client_id"] == ["client-id"]
    assert params["scope"] == ["https://www.googleapis.com/auth/drive"]
    assert "client-secret" not in url


def test_exchange_code_posts_verifier():
    recorder = Recorder(TOKEN_OK)
    grant = make_provider(recorder).exchange_code("the-code", "the-verifier")

    assert grant.access_token == "ya29.access"
    assert grant.refresh_token == "1//refresh"
    assert grant.expires_in == 3599
    request = recorder.requests[0]
    assert str(request.url) == TOKEN_URI
    body = form(request)
    assert body["grant_type"] == "authorization_code"
    assert body["code"] == "the-code"
    assert body["code_verifier"] == "the-verifier"
    assert body["redirect_uri"] == "http://localhost:3000/oauth/callback"
    assert body["client_secret"] == "client-secret"


def test_exchange_code_default_expiry():
    recorder = Recorder(httpx.Response(200, json={"access_token": "a", "refresh_token": "r"}))
    assert make_provider(recorder).exchange_code("c", "v").expires_in == 3600


def test_exchange_code_is_not_retried():
    recorder = Recorder(httpx.Response(503))
    with pytest.raises(TransientProviderError):
        make_provider(recorder).exchange_code("c", "v")
    assert len(recorder.requests) == 1


@pytest.mark.parametrize(
    "error,expected",
    [
        ("invalid_grant", InvalidGrant),
        ("redirect_uri_mismatch", RedirectMismatch),
        ("invalid_client", InvalidClientConfig),
        ("unauthorized_client", InvalidClientConfig),
        ("access_denied", AccessDenied),
        ("something_else", ProviderError),
    ],
)
def test_exchange_code_error_classification(error, expected):
    recorder = Recorder(httpx.Response(400, json={"error": error, "error_description": "nope"}))
    with pytest.raises(expected):
        make_provider(recorder).exchange_code("c", "v")


def test_missing_access_token_is_provider_error():
    recorder = Recorder(httpx.Response(200, json={"token_type": "Bearer"}))
    with pytest.raises(ProviderError):
        make_provider(recorder).exchange_code("c", "v")


def test_non_json_token_response_is_provider_error():
    recorder = Recorder(httpx.Response(200, text="<html>oops</html>"))
    with pytest.raises(ProviderError):
        make_provider(recorder).exchange_code("c", "v")


def test_refresh_posts_refresh_token():
    recorder = Recorder(httpx.Response(200, json={"access_token": "new", "expires_in": 3600}))
    grant = make_provider(recorder).refresh("1//refresh")
    assert grant.access_token == "new"
    assert grant.refresh_token is None
    body = form(recorder.requests[0])
    assert body["grant_type"] == "refresh_token"
    assert body["refresh_token"] == "1//refresh"


def test_refresh_retries_transient_then_succeeds():
    recorder = Recorder(
        httpx.Response(503),
        httpx.Response(429),
        httpx.Response(200, json={"access_token": "new", "expires_in": 3600}),
    )
    grant = make_provider(recorder, max_retries=2).refresh("r")
    assert grant.access_token == "new"
    assert len(recorder.requests) == 3


def test_refresh_gives_up_after_max_retries():
    recorder = Recorder(httpx.Response(500))
    with pytest.raises(TransientProviderError):
        make_provider(recorder, max_retries=2).refresh("r")
    assert len(recorder.requests) == 3


def test_refresh_invalid_grant_not_retried():
    recorder = Recorder(httpx.Response(400, json={"error": "invalid_grant"}))
    with pytest.raises(InvalidGrant):
        make_provider(recorder).refresh("r")
    assert len(recorder.requests) == 1


def test_timeout_is_transient():
    recorder = Recorder(httpx.ReadTimeout("timed out"))
    with pytest.raises(TransientProviderError):
        make_provider(recorder, max_retries=1).refresh("r")
    assert len(recorder.requests) == 2


def test_connection_error_is_transient():
    recorder = Recorder(httpx.ConnectError("connection refused"))
    with pytest.raises(TransientProviderError):
        make_provider(recorder, max_retries=0).exchange_code("c", "v")


def test_revoke_posts_token():
    recorder = Recorder(httpx.Response(200))
    make_provider(recorder).revoke("tok")
    request = recorder.requests[0]
    assert str(request.url) == REVOKE_URI
    assert form(request) == {"token": "tok"}


def test_revoke_of_dead_token_is_not_an_error():
    recorder = Recorder(httpx.Response(400, json={"error": "invalid_token"}))
    make_provider(recorder).revoke("already-dead")


def test_revoke_transient_failure_raises():
    recorder = Recorder(httpx.Response(503))
    with pytest.raises(TransientProviderError):
        make_provider(recorder, max_retries=1).revoke("tok")
    assert len(recorder.requests) == 2


def test_fetch_identity():
    recorder = Recorder(
        httpx.Response(200, json={"id": "1234", "email": "user@example.com", "name": "User", "picture": "p"})
    )
    identity = make_provider(recorder).fetch_identity("ya29.access")
    assert identity.account_id == "1234"
    assert identity.email == "user@example.com"
    assert identity.name == "User"
    assert recorder.requests[0].headers["Authorization"] == "Bearer ya29.access"


def test_fetch_identity_unauthorized_requires_reauthorization():
    recorder = Recorder(
        httpx.Response(401, json={"error": {"code": 401, "status": "UNAUTHENTICATED", "message": "Invalid Credentials"}})
    )
    with pytest.raises(ReauthorizationRequired):
        make_provider(recorder).fetch_identity("bad")


def test_non_numeric_expires_in_is_provider_error():
    recorder = Recorder(httpx.Response(200, json={"access_token": "a", "refresh_token": "r", "expires_in": "soon"}))
    with pytest.raises(ProviderError):
        make_provider(recorder).exchange_code("c", "v")


def test_fetch_identity_non_json_body_is_provider_error():
    recorder = Recorder(httpx.Response(200, text="<html>captive portal</html>"))
    with pytest.raises(ProviderError):
        make_provider(recorder).fetch_identity("tok")


def test_fetch_identity_without_email():
    recorder = Recorder(httpx.Response(200, json={"id": "1234"}))
    with pytest.raises(ProviderError):
        make_provider(recorder).fetch_identity("tok")
