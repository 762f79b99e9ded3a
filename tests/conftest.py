import os

os.environ.setdefault("LUXBOOK_DATABASE_URL", "sqlite://")
os.environ.setdefault("LUXBOOK_TIMEZONE", "UTC")
os.environ.setdefault("LUXBOOK_SECRET_KEY", "test-secret")
os.environ.setdefault("LUXBOOK_LOG_JSON", "false")

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import luxbook.models  # noqa: F401
from luxbook.db.base import Base
from luxbook.models.booking_rule import BookingRule, BookingRuleAsset
from luxbook.models.reservation import Reservation
from luxbook.models.rule_approval import RuleApproval
from luxbook.models.tier import Member, Tier

ORG = "org-1"

# A Monday, noon UTC
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def build_rule(**overrides: Any) -> BookingRule:
    """Transient BookingRule with every column set (column defaults only apply on flush)."""
    fields: Dict[str, Any] = {
        "id": "rule-1",
        "organization_id": ORG,
        "tier_id": "tier-guest",
        "name": "Rule",
        "description": None,
        "rule_type": "custom",
        "conditions": {},
        "requires_approval": True,
        "approval_type": "all_principals",
        "approver_tier_id": None,
        "approver_user_ids": [],
        "is_override": False,
        "priority": 10,
        "applies_to_all_assets": True,
        "is_active": True,
    }
    fields.update(overrides)
    return BookingRule(**fields)


class Factory:
    """Creates committed rows for tests."""

    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def tier(self, name: str = "Tier", priority: int = 1, tier_id: Optional[str] = None) -> Tier:
        return self._save(Tier(id=tier_id or self._next("tier"), organization_id=ORG, name=name, priority=priority))

    def member(self, user_id: str, tier: Optional[Tier] = None, email: str = "") -> Member:
        return self._save(
            Member(
                organization_id=ORG,
                user_id=user_id,
                tier_id=tier.id if tier else None,
                email=email or f"{user_id}@example.com",
                display_name=user_id,
            )
        )

    def rule(self, tier: Tier, rule_type: str = "custom", conditions: Optional[dict] = None, **overrides: Any) -> BookingRule:
        fields: Dict[str, Any] = {
            "id": self._next("rule"),
            "tier_id": tier.id,
            "name": f"{rule_type} rule",
            "rule_type": rule_type,
            "conditions": conditions if conditions is not None else {},
        }
        fields.update(overrides)
        return self._save(build_rule(**fields))

    def link(self, rule: BookingRule, asset_id: str) -> BookingRuleAsset:
        return self._save(BookingRuleAsset(rule_id=rule.id, asset_id=asset_id))

    def reservation(
        self,
        asset_id: str = "asset-a",
        user_id: str = "guest",
        start_at: Optional[datetime] = None,
        hours: int = 24,
        status: str = "pending",
    ) -> Reservation:
        start_at = start_at or NOW + timedelta(days=14)
        return self._save(
            Reservation(
                organization_id=ORG,
                asset_id=asset_id,
                user_id=user_id,
                title="Trip",
                start_at=start_at,
                end_at=start_at + timedelta(hours=hours),
                status=status,
            )
        )

    def approval(
        self,
        reservation: Reservation,
        rule: BookingRule,
        user_id: str,
        status: str = "pending",
        expires_at: Optional[datetime] = None,
    ) -> RuleApproval:
        return self._save(
            RuleApproval(
                organization_id=ORG,
                reservation_id=reservation.id,
                rule_id=rule.id,
                user_id=user_id,
                status=status,
                token=self._next("token"),
                token_expires_at=expires_at or NOW + timedelta(days=7),
            )
        )


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make(db):
    return Factory(db)


@pytest.fixture
def principal_tier(make):
    tier = make.tier(name="Principals", priority=1, tier_id="tier-principal")
    make.member("owner-1", tier)
    make.member("owner-2", tier)
    return tier


@pytest.fixture
def guest_tier(make):
    tier = make.tier(name="Guests", priority=3, tier_id="tier-guest")
    make.member("guest", tier)
    return tier
