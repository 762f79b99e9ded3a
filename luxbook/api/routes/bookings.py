from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from luxbook.core.deps import CurrentUser, get_current_user, get_db
from luxbook.schemas.reservation import BookingEvaluation, BookingWindowIn, ReservationCreate, ReservationCreated, ReservationOut
from luxbook.services.booking_service import create_reservation, evaluate_booking

router = APIRouter()


@router.post("/evaluate", response_model=BookingEvaluation)
def evaluate(payload: BookingWindowIn, db: Session = Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return evaluate_booking(
        db,
        organization_id=user.organization_id,
        asset_id=payload.asset_id,
        user_id=user.user_id,
        tier_id=user.tier_id,
        start_at=payload.start_at,
        end_at=payload.end_at,
    )


@router.post("", response_model=ReservationCreated, status_code=201)
def create(payload: ReservationCreate, request: Request, db: Session = Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    outcome = create_reservation(
        db,
        organization_id=user.organization_id,
        asset_id=payload.asset_id,
        user_id=user.user_id,
        tier_id=user.tier_id,
        start_at=payload.start_at,
        end_at=payload.end_at,
        title=payload.title,
        request=request,
    )
    return ReservationCreated(
        reservation=ReservationOut.model_validate(outcome.reservation),
        triggered_rules=outcome.evaluation.triggered_rules,
        approvals_requested=len(outcome.approvals),
    )
