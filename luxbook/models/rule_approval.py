from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from luxbook.db.base import Base
from luxbook.models._mixins import TimestampMixin

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"


class RuleApproval(Base, TimestampMixin):
    __tablename__ = "rule_approvals"
    __table_args__ = (UniqueConstraint("reservation_id", "rule_id", "user_id", name="uq_rule_approval_triple"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    reservation_id: Mapped[str] = mapped_column(String(36), ForeignKey("reservations.id"), nullable=False, index=True)
    rule_id: Mapped[str] = mapped_column(String(36), ForeignKey("booking_rules.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PENDING)  # pending/approved/rejected

    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
