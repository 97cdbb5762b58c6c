"""
HTTP surface of the credential subsystem.
POST /auth/start/{subject}: CSRF-checked, rate-limited login start; returns the Google URL.
GET /oauth/callback: Google redirects here; completes the PKCE exchange and stores the credential.
GET /security/stats, GET /audit: operational views (no tokens or secrets), X-Admin-Token required.
"""
import asyncio
import hmac
import html
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy.orm import Session

from drivebot_auth import config
from drivebot_auth.audit import list_audit_events
from drivebot_auth.database import get_db
from drivebot_auth.errors import AuthError, RateLimitExceeded
from drivebot_auth.maintenance import run_cleanup
from drivebot_auth.services import AuthServices, build_services

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 60 * 60

_STATUS_BY_CODE = {
    "invalid_state": 400,
    "session_expired": 400,
    "invalid_grant": 400,
    "access_denied": 400,
    "csrf_validation_failed": 403,
    "reauthorization_required": 401,
    "rate_limit_exceeded": 429,
    "account_locked": 429,
    "provider_unavailable": 503,
    "provider_error": 502,
    "redirect_uri_mismatch": 500,
    "invalid_client": 500,
    "corrupted_ciphertext": 500,
}


def status_for(error: AuthError) -> int:
    return _STATUS_BY_CODE.get(error.code, 400)


def get_client_ip(request: Request | None) -> str | None:
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def get_services(request: Request) -> AuthServices:
    return request.app.state.services


def get_session(request: Request):
    yield from get_db(get_services(request).session_factory)


def require_admin_token(expected: str):
    """Dependency factory: X-Admin-Token must equal the configured admin token."""

    def _check(x_admin_token: str | None = Header(default=None)) -> None:
        if not expected or not x_admin_token or not hmac.compare_digest(
            x_admin_token.encode("utf-8"), expected.encode("utf-8")
        ):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"error": "forbidden", "error_description": "Admin token required"},
            )

    return Depends(_check)


def _page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  <p>{html.escape(message)}</p>
  <p>You can close this window and return to the chat.</p>
</body>
</html>""",
        status_code=status_code,
    )


async def _cleanup_loop(app: FastAPI) -> None:
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
        try:
            await asyncio.to_thread(run_cleanup, app.state.services)
        except Exception:
            logger.exception("Periodic cleanup failed")


def create_app(services: AuthServices | None = None, admin_token: str | None = None) -> FastAPI:
    require_admin = require_admin_token(config.ADMIN_API_TOKEN if admin_token is None else admin_token)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build services from env unless injected; run the periodic cleanup loop."""
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()
        task = asyncio.create_task(_cleanup_loop(app))
        try:
            yield
        finally:
            task.cancel()

    app = FastAPI(title="Drive Bot Auth", version="1.0.0", lifespan=lifespan)
    app.state.services = services

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "drivebot_auth"}

    @app.post("/auth/start/{subject}")
    def start_login(
        subject: str,
        request: Request,
        x_csrf_token: str | None = Header(default=None),
        svc: AuthServices = Depends(get_services),
    ):
        """Start the Google login for a chat user. Requires the CSRF token the bot issued."""
        ip = get_client_ip(request)
        try:
            svc.csrf.require(x_csrf_token, subject, ip_address=ip)
            svc.rate_limiter.enforce(subject, "login")
            auth = svc.flow.initiate(subject)
        except RateLimitExceeded as e:
            return JSONResponse(
                {"error": e.code, "message": e.user_message},
                status_code=429,
                headers={"Retry-After": str(e.retry_after)},
            )
        except AuthError as e:
            return JSONResponse({"error": e.code, "message": e.user_message}, status_code=status_for(e))
        except ValueError:
            return JSONResponse({"error": "invalid_subject", "message": "Invalid user id."}, status_code=400)
        return {"auth_url": auth.url, "expires_in": auth.expires_in}

    @app.get("/oauth/callback", response_class=HTMLResponse)
    def oauth_callback(
        request: Request,
        code: str | None = None,
        state: str | None = None,
        error: str | None = None,
        svc: AuthServices = Depends(get_services),
    ):
        """
        Google redirects here with ?code&state (or ?error&state). Provider error payloads
        and token material are never echoed back.
        """
        ip = get_client_ip(request)
        if error:
            err = svc.flow.handle_provider_error(state, error, ip_address=ip)
            return _page("Login error", err.user_message, status_for(err))
        if not state:
            return _page("Error", "Missing state parameter.", 400)

        # Only a state bound to the user's live pending login touches that user's lockout;
        # forged or stale states are recorded as security events by the flow
        subject = svc.flow.bound_subject(state)
        try:
            if subject is not None:
                svc.login_guard.require(subject, ip_address=ip)
            credential = svc.flow.handle_callback(code or "", state, ip_address=ip)
        except AuthError as e:
            if subject is not None and e.code != "account_locked" and not e.retryable:
                svc.login_guard.record_failure(subject, ip_address=ip)
            logger.info("OAuth callback failed subject=%s error=%s", svc.flow.state_subject(state), e.code)
            return _page("Login failed", e.user_message, status_for(e))

        svc.login_guard.record_success(credential.subject_id)
        return _page(
            "Connected to Google Drive",
            f"Successfully connected {credential.provider_account}.",
        )

    @app.get("/security/stats", dependencies=[require_admin])
    def security_stats(recent: int = 10, svc: AuthServices = Depends(get_services)):
        """Event counts by type and severity, recent events, locked accounts."""
        stats = svc.events.stats(recent=min(max(0, recent), 100))
        stats["locked_accounts"] = svc.login_guard.locked_count()
        return stats

    @app.get("/audit", dependencies=[require_admin])
    def audit(
        limit: int = 100,
        event_type: str | None = None,
        subject_id: str | None = None,
        db: Session = Depends(get_session),
    ):
        """Recent credential lifecycle events, most recent first."""
        return list_audit_events(db, limit=limit, event_type=event_type, subject_id=subject_id)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "drivebot_auth.main:app",
        host="127.0.0.1",
        port=3000,
        reload=True,
    )
