from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from luxbook.core.timeutils import to_utc


class BookingWindowIn(BaseModel):
    asset_id: str = Field(min_length=1, max_length=36)
    start_at: datetime
    end_at: datetime

    @model_validator(mode="after")
    def _check_window(self) -> "BookingWindowIn":
        # naive datetimes are UTC
        if to_utc(self.start_at) >= to_utc(self.end_at):
            raise ValueError("start_at must be before end_at")
        return self


class ReservationCreate(BookingWindowIn):
    title: str = Field(default="", max_length=255)


class RuleCheckResult(BaseModel):
    rule_id: str
    rule_name: str
    rule_description: str | None = None
    triggered: bool
    message: str
    requires_approval: bool
    approval_type: str
    approver_tier_id: str | None = None
    approver_user_ids: list[str] = Field(default_factory=list)

    is_override: bool = False
    priority: int = 0
    # True when the rule refuses the booking outright (no approval path)
    blocking: bool = False


class BookingEvaluation(BaseModel):
    blocked: bool
    block_reason: str | None = None
    blocking_rule_id: str | None = None
    triggered_rules: list[RuleCheckResult] = Field(default_factory=list)

    @property
    def requires_approval(self) -> bool:
        return any(r.requires_approval for r in self.triggered_rules)


class ReservationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    asset_id: str
    user_id: str
    title: str
    start_at: datetime
    end_at: datetime
    status: str
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    rejected_reason: str = ""


class ReservationCreated(BaseModel):
    reservation: ReservationOut
    triggered_rules: list[RuleCheckResult] = Field(default_factory=list)
    approvals_requested: int = 0
