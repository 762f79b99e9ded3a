"""
Domain errors raised by the booking engine.

Route handlers do not catch these; ``create_app`` registers a handler that renders
them as ``ErrorResponse`` with the status from ``status_code``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class LuxbookError(Exception):
    status_code: int = 400

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(code=self.code, message=self.message, details=self.details)


class InvalidBookingWindowError(LuxbookError):
    def __init__(self, message: str = "Invalid time range"):
        super().__init__("INVALID_BOOKING_WINDOW", message)


class BookingBlockedError(LuxbookError):
    """A blocking rule refuses the booking outright (no approval path)."""

    status_code = 409

    def __init__(self, message: str, rule_id: str | None = None):
        super().__init__("BOOKING_BLOCKED", message, {"rule_id": rule_id} if rule_id else None)


class ReservationNotFoundError(LuxbookError):
    status_code = 404

    def __init__(self, reservation_id: str):
        super().__init__("RESERVATION_NOT_FOUND", "Reservation not found", {"reservation_id": reservation_id})


class ApprovalNotFoundError(LuxbookError):
    status_code = 404

    def __init__(self, approval_id: str):
        super().__init__("APPROVAL_NOT_FOUND", "Approval not found", {"approval_id": approval_id})


class AlreadyRespondedError(LuxbookError):
    status_code = 409

    def __init__(self, approval_id: str, status: str):
        super().__init__("ALREADY_RESPONDED", "Approval was already responded", {"approval_id": approval_id, "status": status})


class ApprovalPersistenceError(LuxbookError):
    status_code = 503

    def __init__(self, message: str = "Failed to persist approval state", details: dict[str, Any] | None = None):
        super().__init__("APPROVAL_PERSISTENCE_FAILED", message, details)


class AssetUnavailableError(LuxbookError):
    status_code = 409

    def __init__(self, asset_id: str):
        super().__init__("ASSET_UNAVAILABLE", "Time slot already booked", {"asset_id": asset_id})
