"""
Drive bot credential subsystem configuration.
Secrets (master key, client secret) come from env only and are never logged.
"""
import os

# Master secret for encrypting stored OAuth tokens (>= 32 chars; required at startup)
ENCRYPTION_KEY = os.environ.get("DATABASE_ENCRYPTION_KEY", "")

# Google OAuth client registration
GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.environ.get("GOOGLE_CLIENT_SECRET", "")
GOOGLE_REDIRECT_URI = os.environ.get("GOOGLE_REDIRECT_URI", "http://localhost:3000/oauth/callback")

# Comma-separated, as in the bot's .env
GOOGLE_DRIVE_SCOPES = [
    s.strip()
    for s in os.environ.get(
        "GOOGLE_DRIVE_SCOPES",
        "https://www.googleapis.com/auth/drive,"
        "https://www.googleapis.com/auth/userinfo.email,"
        "https://www.googleapis.com/auth/userinfo.profile",
    ).split(",")
    if s.strip()
]

# Google endpoints
GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URI = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URI = "https://www.googleapis.com/oauth2/v2/userinfo"

# Outbound provider calls: per-request timeout and retries for idempotent calls
PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "10"))
PROVIDER_MAX_RETRIES = int(os.environ.get("PROVIDER_MAX_RETRIES", "2"))

# Refresh this many seconds before the stored expiry (0 = only once actually expired)
TOKEN_REFRESH_SKEW_SECONDS = int(os.environ.get("TOKEN_REFRESH_SKEW_SECONDS", "0"))

# SQLite for development; Postgres/MySQL URL in production
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./drivebot_auth.db")

# Shared KV store for pending authorizations and CSRF tokens. Empty = in-process memory.
REDIS_URL = os.environ.get("REDIS_URL", "").strip() or None

# Pending PKCE authorization lifetime (15 minutes)
PENDING_AUTH_TTL_SECONDS = 900

# CSRF token lifetime (1 hour)
CSRF_TOKEN_TTL_SECONDS = 3600

# Login-attempt guard
MAX_LOGIN_ATTEMPTS = int(os.environ.get("MAX_LOGIN_ATTEMPTS", "5"))
LOCKOUT_SECONDS = int(os.environ.get("LOCKOUT_SECONDS", "900"))

# Fallback rate limit for actions missing from the policy table
RATE_LIMIT_WINDOW_MS = int(os.environ.get("RATE_LIMIT_WINDOW_MS", "900000"))
RATE_LIMIT_MAX_REQUESTS = int(os.environ.get("RATE_LIMIT_MAX_REQUESTS", "100"))

# Security event log: in-memory ring buffer size and retention
SECURITY_EVENT_CAPACITY = 1000
SECURITY_EVENT_RETENTION_SECONDS = 24 * 60 * 60

# Shared secret for /audit and /security/stats (X-Admin-Token). Empty = those views are disabled.
ADMIN_API_TOKEN = os.environ.get("ADMIN_API_TOKEN", "")
