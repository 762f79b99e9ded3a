from __future__ import annotations

from typing import Any, Iterable, Sequence

from luxbook.schemas.reservation import RuleCheckResult
from luxbook.services.rule_evaluators import BookingWindow, EvaluationContext, evaluate_rule


def _linked_rule_ids(rule_asset_links: Iterable[Any], asset_id: str) -> set[str]:
    return {link.rule_id for link in rule_asset_links if link.asset_id == asset_id}


def applicable_rules(
    rules: Iterable[Any],
    *,
    tier_id: str | None,
    asset_id: str,
    rule_asset_links: Iterable[Any] = (),
) -> list[Any]:
    """Active rules of ``tier_id`` that cover ``asset_id``."""
    linked = _linked_rule_ids(rule_asset_links, asset_id)
    return [
        rule
        for rule in rules
        if rule.is_active
        and tier_id is not None
        and rule.tier_id == tier_id
        and (rule.applies_to_all_assets or rule.id in linked)
    ]


def match_rules(
    window: BookingWindow,
    tier_rules: Iterable[Any],
    rule_asset_links: Iterable[Any],
    context: EvaluationContext,
    *,
    tier_id: str | None,
) -> list[RuleCheckResult]:
    """Evaluate every applicable rule and return one result per triggered rule.

    A concurrent-booking verdict that may not even be requested comes back with
    ``blocking=True`` and ``requires_approval=False``; callers must refuse the
    booking instead of fanning out approvals.
    """
    results: list[RuleCheckResult] = []

    for rule in applicable_rules(tier_rules, tier_id=tier_id, asset_id=window.asset_id, rule_asset_links=rule_asset_links):
        verdict = evaluate_rule(rule, window, context)
        if not verdict.triggered:
            continue

        blocking = not verdict.can_request
        results.append(
            RuleCheckResult(
                rule_id=rule.id,
                rule_name=rule.name,
                rule_description=rule.description,
                triggered=True,
                message=verdict.message,
                requires_approval=False if blocking else bool(rule.requires_approval),
                approval_type=rule.approval_type,
                approver_tier_id=rule.approver_tier_id,
                approver_user_ids=list(rule.approver_user_ids or []),
                is_override=bool(rule.is_override),
                priority=rule.priority,
                blocking=blocking,
            )
        )

    return results


def prioritize_rules(results: Sequence[RuleCheckResult]) -> list[RuleCheckResult]:
    """Order triggered, non-blocking results: override rules first, then ascending priority.

    Purely an ordering; every triggered rule that requires approval still fans out.
    """
    candidates = [r for r in results if r.triggered and not r.blocking]
    return sorted(candidates, key=lambda r: (not r.is_override, r.priority))


def first_blocking(results: Sequence[RuleCheckResult]) -> RuleCheckResult | None:
    blocking = [r for r in results if r.blocking]
    if not blocking:
        return None
    return sorted(blocking, key=lambda r: (not r.is_override, r.priority))[0]
