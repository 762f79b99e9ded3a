from __future__ import annotations

import uuid

from sqlalchemy import Boolean, ForeignKey, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from luxbook.db.base import Base
from luxbook.models._mixins import TimestampMixin


class BookingRule(Base, TimestampMixin):
    __tablename__ = "booking_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    tier_id: Mapped[str] = mapped_column(String(36), ForeignKey("tiers.id"), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    # date_range | consecutive_booking | concurrent_booking | lead_time | custom
    rule_type: Mapped[str] = mapped_column(String(32), nullable=False)
    conditions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # any_approver | all_principals | tier_members | specific_users
    approval_type: Mapped[str] = mapped_column(String(32), nullable=False, default="any_approver")
    approver_tier_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("tiers.id"), nullable=True)
    approver_user_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    is_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)

    applies_to_all_assets: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class BookingRuleAsset(Base):
    __tablename__ = "booking_rule_assets"
    __table_args__ = (UniqueConstraint("rule_id", "asset_id", name="uq_booking_rule_asset"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    rule_id: Mapped[str] = mapped_column(String(36), ForeignKey("booking_rules.id"), nullable=False, index=True)
    asset_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
