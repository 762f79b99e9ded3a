from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ApprovalAction = Literal["approve", "reject"]
TokenOutcome = Literal["recorded", "already_responded", "expired", "not_found"]


class ApprovalResponseIn(BaseModel):
    token: str = Field(min_length=1, max_length=64)
    action: ApprovalAction = "approve"


class ApprovalResponseOut(BaseModel):
    outcome: TokenOutcome
    approval_status: str | None = None
    reservation_status: str | None = None


class RuleApprovalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    reservation_id: str
    rule_id: str
    user_id: str
    status: str
    token_expires_at: datetime
    responded_at: datetime | None = None
    created_at: datetime


class ApprovalDecisionOut(BaseModel):
    approval: RuleApprovalOut
    reservation_status: str
