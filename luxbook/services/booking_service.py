from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from fastapi import Request
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from luxbook.core.config import get_settings
from luxbook.core.errors import (
    ApprovalPersistenceError,
    AssetUnavailableError,
    BookingBlockedError,
    InvalidBookingWindowError,
)
from luxbook.core.logging import get_logger
from luxbook.core.timeutils import ensure_aware, to_utc, utcnow
from luxbook.models.booking_rule import BookingRule, BookingRuleAsset
from luxbook.models.reservation import ACTIVE_STATUSES, APPROVED, PENDING, Reservation
from luxbook.models.rule_approval import RuleApproval
from luxbook.schemas.booking_rule import ConsecutiveBookingConditions, parse_conditions
from luxbook.schemas.reservation import BookingEvaluation
from luxbook.services.approval_service import create_approval_requests
from luxbook.services.audit_service import write_audit_log
from luxbook.services.notification_service import notify_approvers
from luxbook.services.rule_evaluators import BookingWindow, EvaluationContext, ReservationSnapshot
from luxbook.services.rule_matcher import first_blocking, match_rules, prioritize_rules
from luxbook.services.tier_service import get_member_ids_by_tier, get_principal_user_ids

logger = get_logger(__name__)


@dataclass
class BookingOutcome:
    reservation: Reservation
    evaluation: BookingEvaluation
    approvals: list[RuleApproval] = field(default_factory=list)


def _load_tier_rules(db: Session, organization_id: str, tier_id: str | None) -> list[BookingRule]:
    if not tier_id:
        return []
    q = (
        select(BookingRule)
        .where(BookingRule.organization_id == organization_id)
        .where(BookingRule.tier_id == tier_id)
        .where(BookingRule.is_active == True)  # noqa: E712
        .order_by(BookingRule.priority.asc())
    )
    return list(db.execute(q).scalars().all())


def _load_rule_asset_links(db: Session, rules: list[BookingRule], asset_id: str) -> list[BookingRuleAsset]:
    rule_ids = [r.id for r in rules if not r.applies_to_all_assets]
    if not rule_ids:
        return []
    q = select(BookingRuleAsset).where(BookingRuleAsset.rule_id.in_(rule_ids), BookingRuleAsset.asset_id == asset_id)
    return list(db.execute(q).scalars().all())


def _consecutive_horizon(rules: list[BookingRule]) -> timedelta:
    """How far around the candidate a consecutive-booking run can reach."""
    days = 0
    for rule in rules:
        if rule.rule_type != "consecutive_booking":
            continue
        conditions = parse_conditions(rule.rule_type, rule.conditions)
        if not isinstance(conditions, ConsecutiveBookingConditions):
            continue
        per_unit = 7 if conditions.unit == "weekends" else 1
        days = max(days, (conditions.count + 1) * per_unit)
    return timedelta(days=days)


def _load_existing_reservations(
    db: Session,
    *,
    organization_id: str,
    window: BookingWindow,
    horizon: timedelta,
    exclude_reservation_id: str | None = None,
) -> list[ReservationSnapshot]:
    same_asset_nearby = and_(
        Reservation.asset_id == window.asset_id,
        Reservation.start_at < window.end_at + horizon,
        Reservation.end_at > window.start_at - horizon,
    )
    same_user_overlapping = and_(
        Reservation.user_id == window.user_id,
        Reservation.start_at < window.end_at,
        Reservation.end_at > window.start_at,
    )
    q = (
        select(Reservation)
        .where(Reservation.organization_id == organization_id)
        .where(Reservation.status.in_(ACTIVE_STATUSES))
        .where(or_(same_asset_nearby, same_user_overlapping))
    )
    if exclude_reservation_id:
        q = q.where(Reservation.id != exclude_reservation_id)

    return [
        ReservationSnapshot(
            asset_id=r.asset_id,
            user_id=r.user_id,
            start_at=ensure_aware(r.start_at),
            end_at=ensure_aware(r.end_at),
            reservation_id=r.id,
        )
        for r in db.execute(q).scalars().all()
    ]


def evaluate_booking(
    db: Session,
    *,
    organization_id: str,
    asset_id: str,
    user_id: str,
    tier_id: str | None,
    start_at: datetime,
    end_at: datetime,
    now: datetime | None = None,
    exclude_reservation_id: str | None = None,
) -> BookingEvaluation:
    """Match the requester's tier rules against a candidate booking.

    Read-only: nothing is persisted. ``blocked`` is set when a rule refuses the
    booking outright; ``triggered_rules`` holds the other triggered rules in
    precedence order.
    """
    start_at = to_utc(start_at)
    end_at = to_utc(end_at)
    if start_at >= end_at:
        raise InvalidBookingWindowError()

    settings = get_settings()
    now = to_utc(now) if now else utcnow()
    window = BookingWindow(asset_id=asset_id, user_id=user_id, start_at=start_at, end_at=end_at)

    rules = _load_tier_rules(db, organization_id, tier_id)
    links = _load_rule_asset_links(db, rules, asset_id)
    existing = _load_existing_reservations(
        db,
        organization_id=organization_id,
        window=window,
        horizon=_consecutive_horizon(rules),
        exclude_reservation_id=exclude_reservation_id,
    )
    context = EvaluationContext(now=now, tz=ZoneInfo(settings.timezone), existing_reservations=existing)

    results = match_rules(window, rules, links, context, tier_id=tier_id)
    blocking = first_blocking(results)
    triggered = prioritize_rules(results)

    logger.info(
        "booking.evaluated",
        organization_id=organization_id,
        asset_id=asset_id,
        user_id=user_id,
        rules_checked=len(rules),
        triggered=[r.rule_id for r in triggered],
        blocked=blocking is not None,
    )

    if blocking is not None:
        return BookingEvaluation(
            blocked=True,
            block_reason=blocking.message,
            blocking_rule_id=blocking.rule_id,
            triggered_rules=triggered,
        )
    return BookingEvaluation(blocked=False, triggered_rules=triggered)


def _has_overlapping_reservation(db: Session, asset_id: str, start_at: datetime, end_at: datetime) -> bool:
    q = (
        select(Reservation.id)
        .where(Reservation.asset_id == asset_id)
        .where(Reservation.status.in_(ACTIVE_STATUSES))
        .where(Reservation.start_at < end_at)
        .where(Reservation.end_at > start_at)
        .limit(1)
    )
    return db.execute(q).first() is not None


def create_reservation(
    db: Session,
    *,
    organization_id: str,
    asset_id: str,
    user_id: str,
    tier_id: str | None,
    start_at: datetime,
    end_at: datetime,
    title: str = "",
    now: datetime | None = None,
    request: Request | None = None,
) -> BookingOutcome:
    """Evaluate, persist and fan out approvals for a booking request.

    The reservation, its approval rows and the audit entry commit together. A
    reservation is created ``approved`` when no triggered rule requires approval,
    otherwise ``pending``.
    """
    now = to_utc(now) if now else utcnow()
    start_at = to_utc(start_at)
    end_at = to_utc(end_at)
    evaluation = evaluate_booking(
        db,
        organization_id=organization_id,
        asset_id=asset_id,
        user_id=user_id,
        tier_id=tier_id,
        start_at=start_at,
        end_at=end_at,
        now=now,
    )
    if evaluation.blocked:
        raise BookingBlockedError(evaluation.block_reason or "Booking not allowed", evaluation.blocking_rule_id)

    if _has_overlapping_reservation(db, asset_id, start_at, end_at):
        raise AssetUnavailableError(asset_id)

    needs_approval = evaluation.requires_approval
    reservation = Reservation(
        organization_id=organization_id,
        asset_id=asset_id,
        user_id=user_id,
        title=title,
        start_at=start_at,
        end_at=end_at,
        status=PENDING if needs_approval else APPROVED,
        approved_at=None if needs_approval else now,
    )

    approvals: list[RuleApproval] = []
    try:
        db.add(reservation)
        db.flush()

        if needs_approval:
            tier_ids = [r.approver_tier_id for r in evaluation.triggered_rules if r.approval_type == "tier_members" and r.approver_tier_id]
            approvals = create_approval_requests(
                db,
                organization_id=organization_id,
                reservation_id=reservation.id,
                triggered_rules=evaluation.triggered_rules,
                principal_user_ids=get_principal_user_ids(db, organization_id),
                tier_member_ids_by_tier=get_member_ids_by_tier(db, organization_id, tier_ids),
                now=now,
            )

        write_audit_log(
            db,
            organization_id=organization_id,
            actor_user_id=user_id,
            action_type="RESERVATION_CREATE",
            target_type="reservation",
            target_id=reservation.id,
            summary="Reservation created",
            diff_json={
                "asset_id": asset_id,
                "status": reservation.status,
                "triggered_rules": [r.rule_id for r in evaluation.triggered_rules],
                "approvals": len(approvals),
            },
            request=request,
        )
        db.commit()
    except ApprovalPersistenceError:
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("booking.create_failed", organization_id=organization_id, asset_id=asset_id, exc_info=True)
        raise ApprovalPersistenceError("Failed to create reservation", {"asset_id": asset_id}) from e

    db.refresh(reservation)
    logger.info(
        "booking.created",
        reservation_id=reservation.id,
        status=reservation.status,
        approvals=len(approvals),
    )

    if approvals:
        notify_approvers(db, reservation=reservation, approvals=approvals, triggered_rules=evaluation.triggered_rules)

    return BookingOutcome(reservation=reservation, evaluation=evaluation, approvals=approvals)
