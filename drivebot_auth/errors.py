"""
Error taxonomy for the credential subsystem.
Each error carries a stable code and a user-safe message; raw provider payloads
and token material never end up in either.
"""
from datetime import datetime


class AuthError(Exception):
    code = "auth_error"
    user_message = "Authentication failed. Please try again."
    retryable = False

    def __init__(self, detail: str | None = None):
        # detail is for logs only; never shown to the user
        self.detail = detail
        super().__init__(detail or self.code)


class InvalidState(AuthError):
    code = "invalid_state"
    user_message = "This login link is not valid for your account. Please run /login again."


class SessionExpired(AuthError):
    code = "session_expired"
    user_message = "Your login session expired. Please run /login again."


class InvalidGrant(AuthError):
    code = "invalid_grant"
    user_message = "The authorization code is invalid or was already used. Please log in again."


class RedirectMismatch(AuthError):
    code = "redirect_uri_mismatch"
    user_message = "The bot's redirect address is misconfigured. Please contact support."


class InvalidClientConfig(AuthError):
    code = "invalid_client"
    user_message = "The bot's Google client configuration is invalid. Please contact support."


class AccessDenied(AuthError):
    code = "access_denied"
    user_message = "Access was denied. Please grant the requested permissions to continue."


class ReauthorizationRequired(AuthError):
    code = "reauthorization_required"
    user_message = "Your Google Drive access has expired or was revoked. Please run /login again."


class TransientProviderError(AuthError):
    code = "provider_unavailable"
    user_message = "Google is not responding right now. Please try again in a moment."
    retryable = True


class ProviderError(AuthError):
    """Provider rejected the request with an error we have no specific kind for."""

    code = "provider_error"
    user_message = "Google rejected the request. Please try logging in again."


class CorruptedCiphertext(AuthError):
    code = "corrupted_ciphertext"
    user_message = "Your stored credentials could not be read. Please run /login again."


class CsrfValidationFailed(AuthError):
    code = "csrf_validation_failed"
    user_message = "This request could not be verified. Please start again from the bot."


class RateLimitExceeded(AuthError):
    code = "rate_limit_exceeded"

    def __init__(self, action: str, reset_at: datetime, message: str | None = None, retry_after: int = 1):
        self.action = action
        self.reset_at = reset_at
        self.retry_after = retry_after
        self.user_message = message or f"Too many '{action}' requests. Try again at {reset_at.isoformat()}."
        super().__init__(f"rate limit exceeded for action={action}")


class AccountLocked(AuthError):
    code = "account_locked"

    def __init__(self, locked_until: datetime):
        self.locked_until = locked_until
        self.user_message = (
            f"Too many failed login attempts. Try again after {locked_until.isoformat()}."
        )
        super().__init__(f"locked until {locked_until.isoformat()}")


# OAuth2 error codes (RFC 6749 §4.1.2.1, §5.2) -> error kind
_PROVIDER_ERRORS: dict[str, type[AuthError]] = {
    "invalid_grant": InvalidGrant,
    "redirect_uri_mismatch": RedirectMismatch,
    "invalid_client": InvalidClientConfig,
    "unauthorized_client": InvalidClientConfig,
    "access_denied": AccessDenied,
    "temporarily_unavailable": TransientProviderError,
    "server_error": TransientProviderError,
}


def classify_provider_error(error_code: str | None, detail: str | None = None) -> AuthError:
    """Map an OAuth error code to a distinct error kind (ProviderError if unknown)."""
    cls = _PROVIDER_ERRORS.get((error_code or "").strip().lower(), ProviderError)
    return cls(detail or error_code)
