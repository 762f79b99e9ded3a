from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

RULE_TYPES = ("date_range", "consecutive_booking", "concurrent_booking", "lead_time", "custom")
APPROVAL_TYPES = ("any_approver", "all_principals", "tier_members", "specific_users")

MONTH_DAY_PATTERN = r"^(0[1-9]|1[0-2])-(0[1-9]|[12][0-9]|3[01])$"


class _Conditions(BaseModel):
    # Stored rows use snake_case keys; camelCase is accepted for payloads from the web client.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class DateRangeConditions(_Conditions):
    kind: Literal["date_range"] = "date_range"
    start_month_day: str = Field(pattern=MONTH_DAY_PATTERN)
    end_month_day: str = Field(pattern=MONTH_DAY_PATTERN)

    @property
    def wraps_year(self) -> bool:
        return self.start_month_day > self.end_month_day


class ConsecutiveBookingConditions(_Conditions):
    kind: Literal["consecutive_booking"] = "consecutive_booking"
    count: int = Field(ge=1)
    unit: Literal["weekends", "days"] = "weekends"


class ConcurrentBookingConditions(_Conditions):
    kind: Literal["concurrent_booking"] = "concurrent_booking"
    max_assets: int = Field(ge=1)
    min_request_days_before: int = Field(default=0, ge=0)


class LeadTimeConditions(_Conditions):
    kind: Literal["lead_time"] = "lead_time"
    min_hours: float = Field(ge=0)


class CustomConditions(_Conditions):
    kind: Literal["custom"] = "custom"
    description: str | None = None

    @field_validator("description", mode="before")
    @classmethod
    def _text_or_none(cls, v: Any) -> Any:
        # a custom rule always applies; a bad description only loses its text
        return v if isinstance(v, str) and v.strip() else None


RuleConditions = Annotated[
    Union[
        DateRangeConditions,
        ConsecutiveBookingConditions,
        ConcurrentBookingConditions,
        LeadTimeConditions,
        CustomConditions,
    ],
    Field(discriminator="kind"),
]

_conditions_adapter: TypeAdapter[RuleConditions] = TypeAdapter(RuleConditions)


def parse_conditions(rule_type: str, raw: Any) -> RuleConditions | None:
    """Parse a rule's stored ``conditions`` bag into the variant for ``rule_type``.

    Returns None when the rule type is unknown or the bag is missing required
    fields or carries values of the wrong shape. Custom rules always parse.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        if rule_type == "custom":
            return CustomConditions()
        return None
    try:
        return _conditions_adapter.validate_python({**raw, "kind": rule_type})
    except ValidationError:
        return None
