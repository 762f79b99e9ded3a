"""Per-kind booking rule predicates.

Every evaluator is pure: it receives the parsed conditions for its rule kind, the
candidate booking window and an evaluation context, and returns a ``RuleVerdict``.
Rules whose stored conditions do not parse never trigger.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Sequence
from zoneinfo import ZoneInfo

from luxbook.core.logging import get_logger
from luxbook.core.timeutils import ensure_aware
from luxbook.schemas.booking_rule import (
    ConcurrentBookingConditions,
    ConsecutiveBookingConditions,
    CustomConditions,
    DateRangeConditions,
    LeadTimeConditions,
    parse_conditions,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class BookingWindow:
    asset_id: str
    user_id: str
    start_at: datetime
    end_at: datetime


@dataclass(frozen=True)
class ReservationSnapshot:
    """An existing active reservation, as seen by the evaluators."""

    asset_id: str
    user_id: str
    start_at: datetime
    end_at: datetime
    reservation_id: str = ""


@dataclass(frozen=True)
class EvaluationContext:
    now: datetime
    tz: ZoneInfo = field(default_factory=lambda: ZoneInfo("UTC"))
    existing_reservations: Sequence[ReservationSnapshot] = ()


@dataclass(frozen=True)
class RuleVerdict:
    triggered: bool
    message: str = ""
    # False only for hard refusals (the booking may not even be requested)
    can_request: bool = True


NOT_TRIGGERED = RuleVerdict(triggered=False)


def _local_date(dt: datetime, tz: ZoneInfo) -> date:
    return ensure_aware(dt).astimezone(tz).date()


def _month_day(dt: datetime, tz: ZoneInfo) -> str:
    return _local_date(dt, tz).strftime("%m-%d")


def weekend_index(d: date) -> int:
    """Index of the ISO week (Monday based) containing ``d``.

    Counts weeks from 0001-01-01 (a Monday), so consecutive weekends differ by
    exactly one even across a year boundary.
    """
    return (d.toordinal() - 1) // 7


def _run_length(indices: set[int], candidate: int) -> int:
    run = 1
    k = candidate - 1
    while k in indices:
        run += 1
        k -= 1
    k = candidate + 1
    while k in indices:
        run += 1
        k += 1
    return run


def check_date_range(conditions: DateRangeConditions, window: BookingWindow, context: EvaluationContext) -> RuleVerdict:
    start = conditions.start_month_day
    end = conditions.end_month_day
    days = (_month_day(window.start_at, context.tz), _month_day(window.end_at, context.tz))

    if conditions.wraps_year:
        # e.g. 12-08 .. 01-06
        hit = any(d >= start or d <= end for d in days)
    else:
        hit = any(start <= d <= end for d in days)

    if not hit:
        return NOT_TRIGGERED
    return RuleVerdict(True, f"Bookings between {start} and {end} require approval")


def check_consecutive_booking(
    conditions: ConsecutiveBookingConditions, window: BookingWindow, context: EvaluationContext
) -> RuleVerdict:
    if conditions.unit == "weekends":
        index: Callable[[date], int] = weekend_index
        label = "weekends"
    else:
        index = date.toordinal
        label = "days"

    candidate = index(_local_date(window.start_at, context.tz))
    taken = {
        index(_local_date(r.start_at, context.tz))
        for r in context.existing_reservations
        if r.asset_id == window.asset_id
    }

    if _run_length(taken, candidate) < conditions.count:
        return NOT_TRIGGERED
    return RuleVerdict(True, f"{conditions.count} consecutive {label} on the same asset require approval")


def check_concurrent_booking(
    conditions: ConcurrentBookingConditions, window: BookingWindow, context: EvaluationContext
) -> RuleVerdict:
    start_at = ensure_aware(window.start_at)
    end_at = ensure_aware(window.end_at)

    other_assets = {
        r.asset_id
        for r in context.existing_reservations
        if r.user_id == window.user_id
        and r.asset_id != window.asset_id
        and start_at < ensure_aware(r.end_at)
        and end_at > ensure_aware(r.start_at)
    }
    total = len(other_assets) + 1

    if total < conditions.max_assets:
        return NOT_TRIGGERED

    days_until = (start_at - ensure_aware(context.now)) // timedelta(days=1)
    if days_until > conditions.min_request_days_before:
        return RuleVerdict(
            True,
            f"You cannot request another asset for the same dates until {conditions.min_request_days_before} days before the booking",
            can_request=False,
        )
    return RuleVerdict(True, f"Booking {total} assets at the same time requires approval")


def check_lead_time(conditions: LeadTimeConditions, window: BookingWindow, context: EvaluationContext) -> RuleVerdict:
    hours_until = (ensure_aware(window.start_at) - ensure_aware(context.now)) / timedelta(hours=1)
    if hours_until >= conditions.min_hours:
        return NOT_TRIGGERED
    return RuleVerdict(True, f"Bookings require {conditions.min_hours:g} hours of notice")


def check_custom(conditions: CustomConditions, window: BookingWindow, context: EvaluationContext) -> RuleVerdict:
    return RuleVerdict(True, conditions.description or "This booking requires approval")


EVALUATORS: dict[str, Callable[[Any, BookingWindow, EvaluationContext], RuleVerdict]] = {
    "date_range": check_date_range,
    "consecutive_booking": check_consecutive_booking,
    "concurrent_booking": check_concurrent_booking,
    "lead_time": check_lead_time,
    "custom": check_custom,
}


def evaluate_rule(rule: Any, window: BookingWindow, context: EvaluationContext) -> RuleVerdict:
    """Run the evaluator matching ``rule.rule_type``.

    ``rule`` is anything with ``id``, ``rule_type``, ``conditions`` and ``is_active``
    (normally a ``BookingRule`` row).
    """
    if not rule.is_active:
        return NOT_TRIGGERED

    evaluator = EVALUATORS.get(rule.rule_type)
    if evaluator is None:
        logger.warning("booking_rule.unknown_type", rule_id=rule.id, rule_type=rule.rule_type)
        return NOT_TRIGGERED

    conditions = parse_conditions(rule.rule_type, rule.conditions)
    if conditions is None:
        logger.warning("booking_rule.malformed_conditions", rule_id=rule.id, rule_type=rule.rule_type)
        return NOT_TRIGGERED

    return evaluator(conditions, window, context)
