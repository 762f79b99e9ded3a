from __future__ import annotations

from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from luxbook.models.tier import Member, Tier


def get_principal_tier(db: Session, organization_id: str) -> Tier | None:
    # Principal tier = lowest priority number (priority 1 when configured normally)
    q = (
        select(Tier)
        .where(Tier.organization_id == organization_id)
        .order_by(Tier.priority.asc(), Tier.created_at.asc())
        .limit(1)
    )
    return db.execute(q).scalar_one_or_none()


def get_tier_member_ids(db: Session, organization_id: str, tier_id: str) -> list[str]:
    q = (
        select(Member.user_id)
        .where(Member.organization_id == organization_id, Member.tier_id == tier_id)
        .order_by(Member.user_id)
    )
    return list(db.execute(q).scalars().all())


def get_principal_user_ids(db: Session, organization_id: str) -> list[str]:
    tier = get_principal_tier(db, organization_id)
    if tier is None:
        return []
    return get_tier_member_ids(db, organization_id, tier.id)


def get_member_ids_by_tier(db: Session, organization_id: str, tier_ids: Iterable[str]) -> dict[str, list[str]]:
    wanted = {t for t in tier_ids if t}
    if not wanted:
        return {}

    rows = db.execute(
        select(Member.tier_id, Member.user_id)
        .where(Member.organization_id == organization_id, Member.tier_id.in_(wanted))
        .order_by(Member.user_id)
    ).all()

    by_tier: dict[str, list[str]] = {t: [] for t in wanted}
    for tier_id, user_id in rows:
        by_tier[tier_id].append(user_id)
    return by_tier


def get_member_emails(db: Session, organization_id: str, user_ids: Iterable[str]) -> dict[str, str]:
    ids = set(user_ids)
    if not ids:
        return {}
    rows = db.execute(
        select(Member.user_id, Member.email).where(Member.organization_id == organization_id, Member.user_id.in_(ids))
    ).all()
    return {user_id: email for user_id, email in rows if email}
