from datetime import timedelta
from itertools import permutations

import pytest
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from conftest import NOW
from luxbook.core.errors import (
    AlreadyRespondedError,
    ApprovalNotFoundError,
    ApprovalPersistenceError,
    ReservationNotFoundError,
)
from luxbook.core.timeutils import ensure_aware
from luxbook.models.audit_log import AuditLog
from luxbook.models.reservation import Reservation
from luxbook.models.rule_approval import RuleApproval
from luxbook.schemas.reservation import RuleCheckResult
from luxbook.services.approval_service import (
    _record_response,
    _respond,
    apply_aggregate_outcome,
    create_approval_requests,
    list_pending_approvals,
    list_reservation_approvals,
    resolve_approvers,
    respond_to_approval,
    submit_approval_response,
)


def _triggered(rule_id: str, approval_type: str = "all_principals", **kw) -> RuleCheckResult:
    return RuleCheckResult(
        rule_id=rule_id,
        rule_name=rule_id,
        triggered=True,
        message="needs approval",
        requires_approval=kw.pop("requires_approval", True),
        approval_type=approval_type,
        **kw,
    )


def _audit_count(db, action_type: str) -> int:
    return db.execute(select(func.count()).select_from(AuditLog).where(AuditLog.action_type == action_type)).scalar_one()


def _status(session_factory, reservation_id: str) -> str:
    with session_factory() as s:
        return s.get(Reservation, reservation_id).status


class TestResolveApprovers:
    principals = ["owner-1", "owner-2"]
    by_tier = {"tier-family": ["kid-1", "kid-2"]}

    def test_all_principals(self):
        assert resolve_approvers(_triggered("r"), self.principals, self.by_tier) == ["owner-1", "owner-2"]

    def test_any_approver_falls_back_to_principals(self):
        assert resolve_approvers(_triggered("r", "any_approver"), self.principals, self.by_tier) == self.principals

    def test_tier_members(self):
        rule = _triggered("r", "tier_members", approver_tier_id="tier-family")
        assert resolve_approvers(rule, self.principals, self.by_tier) == ["kid-1", "kid-2"]

    def test_tier_members_without_tier_is_empty(self):
        assert resolve_approvers(_triggered("r", "tier_members"), self.principals, self.by_tier) == []

    def test_specific_users_deduplicated_in_order(self):
        rule = _triggered("r", "specific_users", approver_user_ids=["b", "a", "b", ""])
        assert resolve_approvers(rule, self.principals, self.by_tier) == ["b", "a"]


class TestFanOut:
    def test_one_row_per_rule_and_approver(self, db, make, principal_tier, guest_tier):
        r1 = make.rule(guest_tier)
        r2 = make.rule(guest_tier)
        reservation = make.reservation()

        approvals = create_approval_requests(
            db,
            organization_id="org-1",
            reservation_id=reservation.id,
            triggered_rules=[_triggered(r1.id), _triggered(r2.id, "specific_users", approver_user_ids=["owner-1"])],
            principal_user_ids=["owner-1", "owner-2"],
            tier_member_ids_by_tier={},
            now=NOW,
        )
        db.commit()

        assert sorted((a.rule_id, a.user_id) for a in approvals) == sorted(
            [(r1.id, "owner-1"), (r1.id, "owner-2"), (r2.id, "owner-1")]
        )
        assert all(a.status == "pending" for a in approvals)
        assert len({a.token for a in approvals}) == 3
        assert all(ensure_aware(a.token_expires_at) == NOW + timedelta(hours=168) for a in approvals)
        assert len(list_reservation_approvals(db, reservation.id)) == 3

    def test_skips_rules_without_approval_or_approvers(self, db, make, guest_tier):
        rule = make.rule(guest_tier)
        reservation = make.reservation()

        approvals = create_approval_requests(
            db,
            organization_id="org-1",
            reservation_id=reservation.id,
            triggered_rules=[
                _triggered(rule.id, requires_approval=False),
                _triggered(rule.id, "tier_members", approver_tier_id="tier-empty"),
            ],
            principal_user_ids=["owner-1"],
            tier_member_ids_by_tier={"tier-empty": []},
            now=NOW,
        )

        assert approvals == []

    def test_persistence_failure_raises_and_leaves_nothing(self, db, make, guest_tier, monkeypatch):
        rule = make.rule(guest_tier)
        reservation = make.reservation()

        def broken_flush(*args, **kwargs):
            raise SQLAlchemyError("disk full")

        monkeypatch.setattr(db, "flush", broken_flush)
        with pytest.raises(ApprovalPersistenceError):
            create_approval_requests(
                db,
                organization_id="org-1",
                reservation_id=reservation.id,
                triggered_rules=[_triggered(rule.id)],
                principal_user_ids=["owner-1"],
                tier_member_ids_by_tier={},
                now=NOW,
            )
        monkeypatch.undo()

        assert db.execute(select(func.count()).select_from(RuleApproval)).scalar_one() == 0


@pytest.fixture
def three_approvals(make, guest_tier):
    """Pending reservation with approvals from two rules (owner-1 on both, owner-2 on one)."""
    r1 = make.rule(guest_tier)
    r2 = make.rule(guest_tier)
    reservation = make.reservation()
    approvals = [
        make.approval(reservation, r1, "owner-1"),
        make.approval(reservation, r1, "owner-2"),
        make.approval(reservation, r2, "owner-1"),
    ]
    return reservation, approvals


@pytest.mark.parametrize("order", list(permutations(range(3))))
def test_approved_only_after_every_approval_in_any_order(order, session_factory, db, three_approvals):
    reservation, approvals = three_approvals

    for step, i in enumerate(order):
        with session_factory() as s:
            result = submit_approval_response(s, token=approvals[i].token, action="approve", now=NOW)
        assert result.outcome == "recorded"
        expected = "approved" if step == len(order) - 1 else "pending"
        assert result.reservation_status == expected
        assert _status(session_factory, reservation.id) == expected

    assert _audit_count(db, "RESERVATION_APPROVED") == 1
    assert _audit_count(db, "APPROVAL_APPROVE") == 3


@pytest.mark.parametrize("reject_first", [True, False])
def test_single_rejection_rejects_the_reservation(reject_first, session_factory, db, three_approvals):
    reservation, approvals = three_approvals
    steps = [(approvals[0], "reject"), (approvals[1], "approve"), (approvals[2], "approve")]
    if not reject_first:
        steps.reverse()

    for approval, action in steps:
        with session_factory() as s:
            assert submit_approval_response(s, token=approval.token, action=action, now=NOW).outcome == "recorded"

    with session_factory() as s:
        stored = s.get(Reservation, reservation.id)
        assert stored.status == "rejected"
        assert stored.rejected_reason == "Rejected by approver"
        assert stored.approved_at is None
    assert _audit_count(db, "RESERVATION_REJECTED") == 1
    assert _audit_count(db, "RESERVATION_APPROVED") == 0


def test_rejection_after_approval_still_rejects(make, session_factory, guest_tier):
    rule = make.rule(guest_tier)
    reservation = make.reservation()
    a1 = make.approval(reservation, rule, "owner-1")
    a2 = make.approval(reservation, rule, "owner-2")

    with session_factory() as s:
        submit_approval_response(s, token=a1.token, action="approve", now=NOW)
    with session_factory() as s:
        result = submit_approval_response(s, token=a2.token, action="reject", now=NOW)

    assert result.reservation_status == "rejected"


def test_aggregate_transition_happens_once(db, three_approvals):
    reservation, approvals = three_approvals
    for approval in approvals:
        assert _record_response(db, approval.id, "approved", NOW)

    assert apply_aggregate_outcome(db, reservation.id, now=NOW) == "approved"
    assert apply_aggregate_outcome(db, reservation.id, now=NOW) is None
    db.commit()

    db.refresh(reservation)
    assert reservation.status == "approved"
    assert ensure_aware(reservation.approved_at) == NOW


def _load(session, token: str) -> RuleApproval:
    return session.execute(select(RuleApproval).where(RuleApproval.token == token)).scalar_one()


def test_double_submitted_token_in_two_sessions(session_factory, db, three_approvals):
    reservation, approvals = three_approvals
    first, second = session_factory(), session_factory()
    try:
        # both requests read the approval as pending before either writes
        seen_first = _load(first, approvals[0].token)
        seen_second = _load(second, approvals[0].token)
        assert seen_first.status == seen_second.status == "pending"

        won = _respond(first, seen_first, "approved", now=NOW)
        lost = _respond(second, seen_second, "rejected", now=NOW)
    finally:
        first.close()
        second.close()

    assert won.outcome == "recorded"
    assert lost.outcome == "already_responded"
    assert lost.approval_status == "approved"
    assert _audit_count(db, "APPROVAL_APPROVE") == 1
    assert _audit_count(db, "APPROVAL_REJECT") == 0
    assert _status(session_factory, reservation.id) == "pending"


@pytest.mark.parametrize("reject_first", [True, False])
def test_rejection_racing_the_last_approval(reject_first, session_factory, db, three_approvals):
    reservation, approvals = three_approvals
    with session_factory() as s:
        submit_approval_response(s, token=approvals[0].token, action="approve", now=NOW)

    approver, rejecter = session_factory(), session_factory()
    try:
        # each request sees the reservation pending and its own approval open
        for session in (approver, rejecter):
            assert session.get(Reservation, reservation.id).status == "pending"
        to_approve = _load(approver, approvals[1].token)
        to_reject = _load(rejecter, approvals[2].token)

        steps = [(rejecter, to_reject, "rejected"), (approver, to_approve, "approved")]
        if not reject_first:
            steps.reverse()
        results = [_respond(session, approval, status, now=NOW) for session, approval, status in steps]
    finally:
        approver.close()
        rejecter.close()

    assert [r.outcome for r in results] == ["recorded", "recorded"]
    assert results[-1].reservation_status == "rejected"
    with session_factory() as s:
        stored = s.get(Reservation, reservation.id)
        assert stored.status == "rejected"
        assert stored.approved_at is None
    assert _audit_count(db, "RESERVATION_APPROVED") == 0
    assert _audit_count(db, "RESERVATION_REJECTED") == 1


def test_approval_for_missing_reservation_rolls_back(db, make, guest_tier):
    rule = make.rule(guest_tier)
    reservation = make.reservation()
    approval = make.approval(reservation, rule, "owner-1")
    db.execute(delete(Reservation).where(Reservation.id == reservation.id))
    db.commit()

    with pytest.raises(ReservationNotFoundError):
        submit_approval_response(db, token=approval.token, action="approve", now=NOW)

    assert not db.in_transaction()
    db.refresh(approval)
    assert approval.status == "pending"


def test_aggregate_without_approval_rows_leaves_reservation_alone(db, make):
    reservation = make.reservation()

    assert apply_aggregate_outcome(db, reservation.id, now=NOW) is None


class TestTokenResponses:
    def test_unknown_token(self, db, three_approvals):
        assert submit_approval_response(db, token="nope", action="approve", now=NOW).outcome == "not_found"

    def test_expired_token_is_not_applied(self, db, make, guest_tier):
        rule = make.rule(guest_tier)
        reservation = make.reservation()
        approval = make.approval(reservation, rule, "owner-1", expires_at=NOW - timedelta(hours=1))

        result = submit_approval_response(db, token=approval.token, action="approve", now=NOW)

        assert result.outcome == "expired"
        db.refresh(approval)
        assert approval.status == "pending"

    def test_second_use_is_a_no_op(self, session_factory, db, three_approvals):
        reservation, approvals = three_approvals
        for approval in approvals:
            with session_factory() as s:
                submit_approval_response(s, token=approval.token, action="approve", now=NOW)

        later = NOW + timedelta(hours=2)
        with session_factory() as s:
            again = submit_approval_response(s, token=approvals[0].token, action="reject", now=later)

        assert again.outcome == "already_responded"
        assert again.approval_status == "approved"
        with session_factory() as s:
            stored = s.get(Reservation, reservation.id)
            assert stored.status == "approved"
            assert ensure_aware(stored.approved_at) == NOW
        assert _audit_count(db, "APPROVAL_REJECT") == 0
        assert _audit_count(db, "RESERVATION_APPROVED") == 1

    def test_unknown_action(self, db):
        with pytest.raises(ValueError):
            submit_approval_response(db, token="x", action="maybe", now=NOW)


class TestInbox:
    def test_pending_list_and_direct_response(self, db, three_approvals):
        reservation, approvals = three_approvals

        mine = list_pending_approvals(db, user_id="owner-1", organization_id="org-1")
        assert {a.id for a in mine} == {approvals[0].id, approvals[2].id}

        result = respond_to_approval(db, approval_id=approvals[0].id, user_id="owner-1", action="approve", now=NOW)
        assert result.outcome == "recorded"
        assert [a.id for a in list_pending_approvals(db, user_id="owner-1")] == [approvals[2].id]

    def test_other_users_approval_is_not_found(self, db, three_approvals):
        _, approvals = three_approvals

        with pytest.raises(ApprovalNotFoundError):
            respond_to_approval(db, approval_id=approvals[1].id, user_id="owner-1", action="approve", now=NOW)

    def test_already_responded(self, db, three_approvals):
        _, approvals = three_approvals
        respond_to_approval(db, approval_id=approvals[1].id, user_id="owner-2", action="reject", now=NOW)

        with pytest.raises(AlreadyRespondedError):
            respond_to_approval(db, approval_id=approvals[1].id, user_id="owner-2", action="approve", now=NOW)
