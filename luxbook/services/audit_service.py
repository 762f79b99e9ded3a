from __future__ import annotations

from typing import Any, Mapping

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from luxbook.models.audit_log import AuditLog

# Approval tokens grant a decision to whoever holds them; contact details are PII.
REDACTED_KEYS = {"token", "email", "display_name", "smtp_password"}

REDACTED = "<redacted>"


def _is_redacted(key: str) -> bool:
    return key in REDACTED_KEYS or key.endswith("_token")


def _sanitize(obj: Any) -> Any:
    if isinstance(obj, Mapping):
        return {k: REDACTED if _is_redacted(str(k)) else _sanitize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_sanitize(v) for v in obj]
    return obj


def _client_meta(request: Request | None) -> tuple[str, str]:
    if request is None:
        return "", ""
    ip = request.client.host if request.client else ""
    return ip, request.headers.get("user-agent", "")[:255]


def write_audit_log(
    db: Session,
    *,
    organization_id: str,
    actor_user_id: str | None,
    action_type: str,
    target_type: str = "",
    target_id: str = "",
    summary: str = "",
    diff_json: Mapping[str, Any] | None = None,
    request: Request | None = None,
) -> AuditLog:
    """Stage an audit entry in the caller's transaction.

    The entry is flushed, not committed: it lands together with the state change it
    describes, or not at all.
    """
    ip, ua = _client_meta(request)
    log = AuditLog(
        organization_id=organization_id,
        actor_user_id=actor_user_id,
        action_type=action_type,
        target_type=target_type,
        target_id=str(target_id),
        summary=summary[:255],
        diff_json=_sanitize(diff_json) if diff_json is not None else None,
        ip_address=ip,
        user_agent=ua,
    )
    db.add(log)
    db.flush()
    return log


def list_audit_trail(db: Session, *, target_type: str, target_id: str) -> list[AuditLog]:
    """Entries for one reservation or approval, oldest first."""
    q = (
        select(AuditLog)
        .where(AuditLog.target_type == target_type, AuditLog.target_id == target_id)
        .order_by(AuditLog.created_at.asc())
    )
    return list(db.execute(q).scalars().all())
