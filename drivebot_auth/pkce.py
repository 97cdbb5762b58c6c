"""
PKCE (RFC 7636) and authorization-request helpers.
S256 only. The OAuth state binds the callback to a chat user: "<subject>:<random token>".
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode
from urllib.parse import urlencode

STATE_SEPARATOR = ":"


def generate_pkce() -> tuple[str, str]:
    """
    Generate code_verifier and code_challenge (S256).
    Returns (code_verifier, code_challenge). Verifier is 43 chars (256 bits entropy).
    """
    code_verifier = secrets.token_urlsafe(32)
    return code_verifier, code_challenge_for(code_verifier)


def code_challenge_for(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_state_token() -> str:
    """Anti-forgery half of the state parameter."""
    return secrets.token_hex(32)


def compose_state(subject: str, state_token: str) -> str:
    return f"{subject}{STATE_SEPARATOR}{state_token}"


def split_state(state: str | None) -> tuple[str, str] | None:
    """Return (subject, state_token), or None if state is not of the form subject:token."""
    if not state:
        return None
    subject, sep, token = state.partition(STATE_SEPARATOR)
    if not sep or not subject or not token:
        return None
    return subject, token


def build_authorize_url(
    *,
    auth_uri: str,
    client_id: str,
    redirect_uri: str,
    scopes: list[str],
    state: str,
    code_challenge: str,
    extra_params: dict[str, str] | None = None,
) -> str:
    """Build the provider authorization URL with required and provider-specific params."""
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": " ".join(scopes),
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    if extra_params:
        params.update(extra_params)
    return f"{auth_uri}?{urlencode(params)}"
