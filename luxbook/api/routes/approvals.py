from __future__ import annotations

from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from luxbook.core.config import get_settings
from luxbook.core.deps import CurrentUser, get_current_user, get_db
from luxbook.core.errors import ApprovalPersistenceError
from luxbook.models.rule_approval import RuleApproval
from luxbook.schemas.approval import ApprovalDecisionOut, ApprovalResponseIn, ApprovalResponseOut, RuleApprovalOut
from luxbook.services.approval_service import (
    ACTION_TO_STATUS,
    list_pending_approvals,
    respond_to_approval,
    submit_approval_response,
)

router = APIRouter()


def _page(path: str, **params: str) -> RedirectResponse:
    settings = get_settings()
    url = f"{settings.public_base_url.rstrip('/')}{path}"
    if params:
        url = f"{url}?{urlencode(params)}"
    return RedirectResponse(url, status_code=303)


@router.get("/respond")
def respond_by_link(request: Request, token: str = "", action: str = "approve", db: Session = Depends(get_db)):
    """Entry point for the approve/reject links in approval emails."""
    if not token:
        return _page("/approve/error", reason="missing_token")
    if action not in ACTION_TO_STATUS:
        return _page("/approve/error", reason="invalid_action")

    try:
        result = submit_approval_response(db, token=token, action=action, request=request)
    except ApprovalPersistenceError:
        return _page("/approve/error", reason="update_failed")

    if result.outcome == "not_found":
        return _page("/approve/error", reason="invalid_token")
    if result.outcome == "expired":
        return _page("/approve/error", reason="expired_token")
    if result.outcome == "already_responded":
        return _page("/approve/already", status=result.approval_status or "")
    return _page("/approve/success", action=action, reservation_status=result.reservation_status or "")


@router.post("/respond", response_model=ApprovalResponseOut)
def respond_by_token(payload: ApprovalResponseIn, request: Request, db: Session = Depends(get_db)):
    result = submit_approval_response(db, token=payload.token, action=payload.action, request=request)
    return ApprovalResponseOut(
        outcome=result.outcome,
        approval_status=result.approval_status,
        reservation_status=result.reservation_status,
    )


@router.get("/mine", response_model=list[RuleApprovalOut])
def my_pending_approvals(db: Session = Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return list_pending_approvals(db, user_id=user.user_id, organization_id=user.organization_id)


def _decide(approval_id: str, action: str, request: Request, db: Session, user: CurrentUser) -> ApprovalDecisionOut:
    result = respond_to_approval(db, approval_id=approval_id, user_id=user.user_id, action=action, request=request)
    approval = db.get(RuleApproval, approval_id)
    return ApprovalDecisionOut(
        approval=RuleApprovalOut.model_validate(approval),
        reservation_status=result.reservation_status or "",
    )


@router.post("/{approval_id}/approve", response_model=ApprovalDecisionOut)
def approve(approval_id: str, request: Request, db: Session = Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return _decide(approval_id, "approve", request, db, user)


@router.post("/{approval_id}/reject", response_model=ApprovalDecisionOut)
def reject(approval_id: str, request: Request, db: Session = Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return _decide(approval_id, "reject", request, db, user)
