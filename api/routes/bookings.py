"""
Booking endpoints.

- POST /bookings - create a booking (IN_PERSON or Stripe Checkout)
- POST /bookings/{booking_id}/cancel - customer cancellation with refund
"""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from api.dependencies import get_current_user_id
from engine.services.cancellation_service import cancel_booking
from engine.transactions.booking_transaction import BookingTransaction
from engine.validators.booking_validators import BookingErrorCode
from shared.booking_time import InvalidFormatError, parse_booking_date_time

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["bookings"])

CONFLICT_CODES = {
    BookingErrorCode.SLOT_TAKEN.value,
    BookingErrorCode.ALREADY_CANCELLED.value,
}
NOT_FOUND_CODES = {
    BookingErrorCode.NOT_FOUND.value,
    BookingErrorCode.NOT_OWNER.value,
}
UNAVAILABLE_CODES = {
    BookingErrorCode.PAYMENT_UNAVAILABLE.value,
    BookingErrorCode.REFUND_FAILED.value,
}
INTERNAL_CODES = {"DATABASE_ERROR", "DATABASE_INTEGRITY_ERROR", "BOOKING_TRANSACTION_ERROR"}


# =============================================================================
# Request Models
# =============================================================================


class CreateBookingRequest(BaseModel):
    barbershop_id: UUID
    barber_id: UUID
    service_ids: list[UUID] = Field(min_length=1)
    start_at: str = Field(description="ISO instant with offset, or local YYYY-MM-DDTHH:MM")


def _status_for(error_code: str) -> int:
    if error_code in CONFLICT_CODES:
        return status.HTTP_409_CONFLICT
    if error_code in NOT_FOUND_CODES:
        return status.HTTP_404_NOT_FOUND
    if error_code in UNAVAILABLE_CODES:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if error_code in INTERNAL_CODES:
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_400_BAD_REQUEST


def _error_response(result: dict) -> JSONResponse:
    error_code = result["error_code"]
    status_code = _status_for(error_code)
    message = result["error_message"]
    if status_code == status.HTTP_500_INTERNAL_SERVER_ERROR:
        message = "Internal error, please try again"
    return JSONResponse(
        status_code=status_code,
        content={"error": error_code, "message": message},
    )


# =============================================================================
# Endpoints
# =============================================================================


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_booking(
    body: CreateBookingRequest,
    user_id: Annotated[UUID, Depends(get_current_user_id)],
):
    """
    Create a booking.

    201 with the booking (and checkout_url for Stripe tenants), 400 on
    validation errors, 409 when the slot was taken.
    """
    try:
        start_at = parse_booking_date_time(body.start_at)
    except InvalidFormatError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    result = await BookingTransaction.execute(
        user_id=user_id,
        barbershop_id=body.barbershop_id,
        barber_id=body.barber_id,
        service_ids=body.service_ids,
        start_at=start_at,
    )
    if not result["success"]:
        return _error_response(result)
    return result


@router.post("/{booking_id}/cancel")
async def cancel_booking_route(
    booking_id: UUID,
    user_id: Annotated[UUID, Depends(get_current_user_id)],
):
    """Cancel the caller's booking. 409 if it was already cancelled."""
    result = await cancel_booking(booking_id, user_id)
    if not result["success"]:
        return _error_response(result)
    return result
