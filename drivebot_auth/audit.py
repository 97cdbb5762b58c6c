"""
Audit trail for credential lifecycle events (login, refresh, logout).
No tokens, codes, or verifiers are ever written here.
"""
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from drivebot_auth.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_OAUTH_LOGIN = "oauth_login"
EVENT_OAUTH_REFRESH = "oauth_refresh"
EVENT_OAUTH_LOGOUT = "oauth_logout"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def log_audit(
    db: Session,
    event_type: str,
    subject_id: str,
    *,
    provider_account: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """Append one audit record. A failed write is logged, never raised to the caller."""
    try:
        db.add(
            AuditLog(
                event_type=event_type,
                subject_id=subject_id,
                provider_account=provider_account,
                outcome=outcome,
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to write audit record event=%s subject=%s", event_type, subject_id)


def list_audit_events(
    db: Session,
    *,
    limit: int = 100,
    event_type: str | None = None,
    subject_id: str | None = None,
) -> list[dict]:
    """Recent audit events, most recent first."""
    q = db.query(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    if event_type:
        q = q.filter(AuditLog.event_type == event_type)
    if subject_id:
        q = q.filter(AuditLog.subject_id == subject_id)
    rows = q.limit(min(max(1, limit), 500)).all()
    return [
        {
            "created_at": r.created_at.isoformat() if r.created_at else None,
            "event_type": r.event_type,
            "subject_id": r.subject_id,
            "provider_account": r.provider_account,
            "outcome": r.outcome,
        }
        for r in rows
    ]
