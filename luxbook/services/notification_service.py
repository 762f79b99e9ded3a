from __future__ import annotations

import smtplib
from typing import Sequence
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from luxbook.core.config import get_settings
from luxbook.core.logging import get_logger
from luxbook.core.timeutils import ensure_aware
from luxbook.models.reservation import Reservation
from luxbook.models.rule_approval import RuleApproval
from luxbook.schemas.reservation import RuleCheckResult
from luxbook.services.mailer import build_message, send_messages
from luxbook.services.tier_service import get_member_emails

logger = get_logger(__name__)


def approval_link(token: str, action: str) -> str:
    settings = get_settings()
    query = urlencode({"token": token, "action": action})
    return f"{settings.public_base_url.rstrip('/')}{settings.api_prefix}/approvals/respond?{query}"


def _approval_email_body(reservation: Reservation, rule: RuleCheckResult | None, approval: RuleApproval) -> str:
    tz = ZoneInfo(get_settings().timezone)
    start = ensure_aware(reservation.start_at).astimezone(tz).strftime("%Y-%m-%d %H:%M")
    end = ensure_aware(reservation.end_at).astimezone(tz).strftime("%Y-%m-%d %H:%M")

    lines = [
        "A booking needs your approval.",
        "",
        f"Booking: {reservation.title or reservation.id}",
        f"Dates: {start} - {end}",
    ]
    if rule is not None:
        lines.append(f"Rule: {rule.rule_name}")
        lines.append(f"Reason: {rule.message}")
    lines += [
        "",
        f"Approve: {approval_link(approval.token, 'approve')}",
        f"Reject: {approval_link(approval.token, 'reject')}",
        "",
        "These links can be used once and expire.",
    ]
    return "\n".join(lines)


def notify_approvers(
    db: Session,
    *,
    reservation: Reservation,
    approvals: Sequence[RuleApproval],
    triggered_rules: Sequence[RuleCheckResult],
) -> int:
    """Email every approver their approve/reject links. Returns how many emails went out.

    Runs after the booking has committed; a failed delivery is logged and the
    approval stays answerable from the in-app inbox.
    """
    settings = get_settings()
    if not settings.email_enabled or not approvals:
        return 0

    rules_by_id = {r.rule_id: r for r in triggered_rules}
    emails = get_member_emails(db, reservation.organization_id, [a.user_id for a in approvals])

    messages = []
    for approval in approvals:
        to_email = emails.get(approval.user_id)
        if not to_email:
            logger.warning("approval.notify_no_email", approval_id=approval.id, user_id=approval.user_id)
            continue
        body = _approval_email_body(reservation, rules_by_id.get(approval.rule_id), approval)
        messages.append(build_message(to_email, "Booking approval requested", body, settings))

    try:
        refused = send_messages(messages)
    except (smtplib.SMTPException, OSError):
        logger.error("approval.notify_failed", reservation_id=reservation.id, total=len(messages), exc_info=True)
        return 0

    sent = len(messages) - len(refused)
    logger.info("approval.notified", reservation_id=reservation.id, sent=sent, refused=len(refused), total=len(approvals))
    return sent
