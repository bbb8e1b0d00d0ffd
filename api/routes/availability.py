"""Slot availability endpoint."""

import logging
from datetime import date
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_db_session
from engine.services.availability_service import get_available_slots_for_day
from shared.booking_time import InvalidFormatError, get_booking_date_key, parse_booking_date_only

logger = logging.getLogger(__name__)

router = APIRouter(tags=["availability"])


class AvailabilityResponse(BaseModel):
    date: str
    barber_id: UUID | None
    slots: list[str]


@router.get("/availability", response_model=AvailabilityResponse)
async def get_availability(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    barbershop_id: UUID,
    date_day: Annotated[str, Query(alias="date")],
    service_ids: Annotated[list[UUID], Query(alias="service_id")],
    barber_id: UUID | None = None,
):
    """
    List free start times ("HH:MM", business timezone) for a day.

    Unknown barbershop, barber or services yield an empty list.
    """
    try:
        target_day = date.fromisoformat(get_booking_date_key(parse_booking_date_only(date_day)))
    except InvalidFormatError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid date") from e

    slots = await get_available_slots_for_day(
        session,
        barbershop_id,
        service_ids,
        target_day,
        barber_id=barber_id,
    )
    return AvailabilityResponse(date=target_day.isoformat(), barber_id=barber_id, slots=slots)
