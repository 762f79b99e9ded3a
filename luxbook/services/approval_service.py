from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Mapping, Sequence

from fastapi import Request
from sqlalchemy import exists, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from luxbook.core.config import get_settings
from luxbook.core.errors import (
    AlreadyRespondedError,
    ApprovalNotFoundError,
    ApprovalPersistenceError,
    ReservationNotFoundError,
)
from luxbook.core.logging import get_logger
from luxbook.core.timeutils import ensure_aware, to_utc, utcnow
from luxbook.models.reservation import ACTIVE_STATUSES, Reservation
from luxbook.models.reservation import APPROVED as RESERVATION_APPROVED
from luxbook.models.reservation import PENDING as RESERVATION_PENDING
from luxbook.models.reservation import REJECTED as RESERVATION_REJECTED
from luxbook.models.rule_approval import APPROVED, PENDING, REJECTED, RuleApproval
from luxbook.schemas.reservation import RuleCheckResult
from luxbook.services.audit_service import write_audit_log

logger = get_logger(__name__)

ACTION_TO_STATUS = {"approve": APPROVED, "reject": REJECTED}

REJECTED_REASON = "Rejected by approver"


@dataclass(frozen=True)
class ApprovalResponseResult:
    # recorded | already_responded | expired | not_found
    outcome: str
    approval_status: str | None = None
    reservation_status: str | None = None


def generate_approval_token() -> str:
    return secrets.token_urlsafe(32)


def resolve_approvers(
    rule: RuleCheckResult,
    principal_user_ids: Sequence[str],
    tier_member_ids_by_tier: Mapping[str, Sequence[str]],
) -> list[str]:
    """Concrete approver user ids for one triggered rule.

    ``any_approver`` and unrecognised types fall back to the principal tier.
    """
    if rule.approval_type == "all_principals":
        ids: Iterable[str] = principal_user_ids
    elif rule.approval_type == "tier_members":
        ids = tier_member_ids_by_tier.get(rule.approver_tier_id, []) if rule.approver_tier_id else []
    elif rule.approval_type == "specific_users":
        ids = rule.approver_user_ids
    else:
        ids = principal_user_ids

    # keep first-seen order, drop blanks and duplicates
    return list(dict.fromkeys(i for i in ids if i))


def create_approval_requests(
    db: Session,
    *,
    organization_id: str,
    reservation_id: str,
    triggered_rules: Sequence[RuleCheckResult],
    principal_user_ids: Sequence[str],
    tier_member_ids_by_tier: Mapping[str, Sequence[str]],
    now: datetime | None = None,
) -> list[RuleApproval]:
    """Create one pending ``RuleApproval`` per (rule, approver) pair.

    All rows go to the database in a single flush inside the caller's transaction.
    On failure the transaction is rolled back and ``ApprovalPersistenceError`` is
    raised; the caller must not treat the booking as created.
    """
    settings = get_settings()
    now = to_utc(now) if now else utcnow()
    expires_at = now + timedelta(hours=settings.approval_token_ttl_hours)

    approvals: list[RuleApproval] = []
    for rule in triggered_rules:
        if not rule.requires_approval or rule.blocking:
            continue

        approvers = resolve_approvers(rule, principal_user_ids, tier_member_ids_by_tier)
        if not approvers:
            logger.warning(
                "approval.no_approvers",
                reservation_id=reservation_id,
                rule_id=rule.rule_id,
                approval_type=rule.approval_type,
                approver_tier_id=rule.approver_tier_id,
            )
            continue

        for user_id in approvers:
            approvals.append(
                RuleApproval(
                    organization_id=organization_id,
                    reservation_id=reservation_id,
                    rule_id=rule.rule_id,
                    user_id=user_id,
                    status=PENDING,
                    token=generate_approval_token(),
                    token_expires_at=expires_at,
                )
            )

    if not approvals:
        return []

    try:
        db.add_all(approvals)
        db.flush()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("approval.fan_out_failed", reservation_id=reservation_id, count=len(approvals), exc_info=True)
        raise ApprovalPersistenceError("Failed to create approval requests", {"reservation_id": reservation_id}) from e

    logger.info("approval.fan_out", reservation_id=reservation_id, count=len(approvals))
    return approvals


def _lock_reservation(db: Session, reservation_id: str) -> Reservation:
    reservation = db.execute(
        select(Reservation).where(Reservation.id == reservation_id).with_for_update()
    ).scalar_one_or_none()
    if reservation is None:
        raise ReservationNotFoundError(reservation_id)
    return reservation


def _record_response(db: Session, approval_id: str, status: str, now: datetime) -> bool:
    """pending -> approved|rejected. False when another response got there first."""
    result = db.execute(
        update(RuleApproval)
        .where(RuleApproval.id == approval_id, RuleApproval.status == PENDING)
        .values(status=status, responded_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def apply_aggregate_outcome(db: Session, reservation_id: str, *, now: datetime | None = None) -> str | None:
    """Recompute the reservation status from its approvals.

    Any rejected approval moves an active reservation to ``rejected``. Otherwise a
    pending reservation becomes ``approved`` once every approval row is approved.
    Both transitions are single guarded UPDATEs, so only one caller ever performs
    a given transition. Returns the new status when this call transitioned it.
    """
    now = to_utc(now) if now else utcnow()

    has_rejection = exists().where(RuleApproval.reservation_id == reservation_id, RuleApproval.status == REJECTED)
    rejected = db.execute(
        update(Reservation)
        .where(Reservation.id == reservation_id, Reservation.status.in_(ACTIVE_STATUSES), has_rejection)
        .values(status=RESERVATION_REJECTED, rejected_at=now, rejected_reason=REJECTED_REASON)
        .execution_options(synchronize_session=False)
    )
    if rejected.rowcount:
        return RESERVATION_REJECTED

    has_rows = exists().where(RuleApproval.reservation_id == reservation_id)
    has_outstanding = exists().where(RuleApproval.reservation_id == reservation_id, RuleApproval.status != APPROVED)
    approved = db.execute(
        update(Reservation)
        .where(Reservation.id == reservation_id, Reservation.status == RESERVATION_PENDING, has_rows, ~has_outstanding)
        .values(status=RESERVATION_APPROVED, approved_at=now)
        .execution_options(synchronize_session=False)
    )
    if approved.rowcount:
        return RESERVATION_APPROVED
    return None


def _respond(
    db: Session,
    approval: RuleApproval,
    status: str,
    *,
    now: datetime,
    request: Request | None = None,
) -> ApprovalResponseResult:
    try:
        try:
            reservation = _lock_reservation(db, approval.reservation_id)
        except ReservationNotFoundError:
            db.rollback()
            logger.warning("approval.orphaned", approval_id=approval.id, reservation_id=approval.reservation_id)
            raise

        if not _record_response(db, approval.id, status, now):
            db.rollback()
            db.refresh(approval)
            return ApprovalResponseResult("already_responded", approval_status=approval.status)

        transitioned = apply_aggregate_outcome(db, reservation.id, now=now)

        write_audit_log(
            db,
            organization_id=approval.organization_id,
            actor_user_id=approval.user_id,
            action_type="APPROVAL_APPROVE" if status == APPROVED else "APPROVAL_REJECT",
            target_type="rule_approval",
            target_id=approval.id,
            summary=f"Approval {status}",
            diff_json={"reservation_id": reservation.id, "rule_id": approval.rule_id},
            request=request,
        )
        if transitioned:
            write_audit_log(
                db,
                organization_id=reservation.organization_id,
                actor_user_id=approval.user_id,
                action_type=f"RESERVATION_{transitioned.upper()}",
                target_type="reservation",
                target_id=reservation.id,
                summary=f"Reservation {transitioned} by approvals",
                request=request,
            )

        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("approval.response_failed", approval_id=approval.id, exc_info=True)
        raise ApprovalPersistenceError("Failed to record approval response", {"approval_id": approval.id}) from e

    db.refresh(approval)
    db.refresh(reservation)

    logger.info(
        "approval.recorded",
        approval_id=approval.id,
        reservation_id=reservation.id,
        status=status,
        reservation_status=reservation.status,
    )
    return ApprovalResponseResult("recorded", approval_status=approval.status, reservation_status=reservation.status)


def submit_approval_response(
    db: Session,
    *,
    token: str,
    action: str,
    now: datetime | None = None,
    request: Request | None = None,
) -> ApprovalResponseResult:
    """Resolve an approval from a one-time email link.

    Token problems are outcomes, not errors: ``not_found``, ``expired`` and
    ``already_responded`` each map to their own confirmation page.
    """
    if action not in ACTION_TO_STATUS:
        raise ValueError(f"Unknown approval action: {action}")
    now = to_utc(now) if now else utcnow()

    approval = db.execute(select(RuleApproval).where(RuleApproval.token == token)).scalar_one_or_none()
    if approval is None:
        return ApprovalResponseResult("not_found")

    if ensure_aware(approval.token_expires_at) < now:
        return ApprovalResponseResult("expired", approval_status=approval.status)

    if approval.status != PENDING:
        return ApprovalResponseResult("already_responded", approval_status=approval.status)

    return _respond(db, approval, ACTION_TO_STATUS[action], now=now, request=request)


def respond_to_approval(
    db: Session,
    *,
    approval_id: str,
    user_id: str,
    action: str,
    now: datetime | None = None,
    request: Request | None = None,
) -> ApprovalResponseResult:
    """Approve or reject from the signed-in approver's inbox."""
    if action not in ACTION_TO_STATUS:
        raise ValueError(f"Unknown approval action: {action}")

    approval = db.get(RuleApproval, approval_id)
    if approval is None or approval.user_id != user_id:
        raise ApprovalNotFoundError(approval_id)
    if approval.status != PENDING:
        raise AlreadyRespondedError(approval_id, approval.status)

    result = _respond(db, approval, ACTION_TO_STATUS[action], now=to_utc(now) if now else utcnow(), request=request)
    if result.outcome == "already_responded":
        raise AlreadyRespondedError(approval_id, result.approval_status or "")
    return result


def list_pending_approvals(db: Session, *, user_id: str, organization_id: str | None = None) -> list[RuleApproval]:
    q = select(RuleApproval).where(RuleApproval.user_id == user_id, RuleApproval.status == PENDING)
    if organization_id:
        q = q.where(RuleApproval.organization_id == organization_id)
    q = q.order_by(RuleApproval.created_at.asc())
    return list(db.execute(q).scalars().all())


def list_reservation_approvals(db: Session, reservation_id: str) -> list[RuleApproval]:
    q = select(RuleApproval).where(RuleApproval.reservation_id == reservation_id).order_by(RuleApproval.created_at.asc())
    return list(db.execute(q).scalars().all())
