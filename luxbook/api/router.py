from __future__ import annotations

from fastapi import APIRouter

from luxbook.api.routes import approvals, bookings

api_router = APIRouter()

api_router.include_router(bookings.router, prefix="/bookings", tags=["bookings"])
api_router.include_router(approvals.router, prefix="/approvals", tags=["approvals"])
