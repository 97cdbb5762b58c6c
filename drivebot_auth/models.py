"""
SQLAlchemy models: per-user OAuth credential, rate-limit counters, audit trail.
Token columns hold ciphertext from crypto.CredentialCipher only.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on round-trip; treat naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class Credential(Base):
    __tablename__ = "credentials"

    # Chat-platform user ID (opaque, stable)
    subject_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Provider account, e.g. Google email
    provider_account: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    encrypted_refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_access_token: Mapped[str] = mapped_column(Text, nullable=False)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    def access_token_expired(self, now: datetime, skew_seconds: int = 0) -> bool:
        remaining = (as_utc(self.token_expires_at) - now).total_seconds()
        return remaining <= skew_seconds

    def __repr__(self) -> str:
        # Never include the encrypted columns
        return f"<Credential subject_id={self.subject_id} active={self.is_active}>"


class RateLimitCounter(Base):
    __tablename__ = "rate_limit_counters"

    subject_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    action: Mapped[str] = mapped_column(String(50), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class AuditLog(Base):
    """Credential lifecycle events. No tokens stored."""
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_account: Mapped[str | None] = mapped_column(String(255), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # success | fail
