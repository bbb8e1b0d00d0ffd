"""Waitlist endpoints for customers."""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_current_user_id
from database.connection import get_db_session
from engine.services.waitlist_service import (
    WaitlistErrorCode,
    get_waitlist_status_for_day,
    join_waitlist,
    leave_waitlist,
    mark_fulfillment_seen,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/waitlist", tags=["waitlist"])

ERROR_STATUS = {
    WaitlistErrorCode.DUPLICATE_ENTRY.value: status.HTTP_409_CONFLICT,
    WaitlistErrorCode.SLOTS_AVAILABLE.value: status.HTTP_409_CONFLICT,
    WaitlistErrorCode.ENTRY_NOT_ACTIVE.value: status.HTTP_409_CONFLICT,
    WaitlistErrorCode.ENTRY_NOT_FOUND.value: status.HTTP_404_NOT_FOUND,
}


class JoinWaitlistRequest(BaseModel):
    barbershop_id: UUID
    barber_id: UUID
    service_id: UUID
    date: str = Field(description="Business-timezone day, YYYY-MM-DD")


class MarkSeenRequest(BaseModel):
    entry_ids: list[UUID] = Field(min_length=1, max_length=100)


def _error_response(result: dict) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS.get(result["error_code"], status.HTTP_400_BAD_REQUEST),
        content={"error": result["error_code"], "message": result["error_message"]},
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def join(
    body: JoinWaitlistRequest,
    user_id: Annotated[UUID, Depends(get_current_user_id)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
):
    result = await join_waitlist(
        session,
        user_id=user_id,
        barbershop_id=body.barbershop_id,
        barber_id=body.barber_id,
        service_id=body.service_id,
        date_day=body.date,
    )
    if not result["success"]:
        return _error_response(result)

    await session.commit()
    return {
        "entry_id": str(result["entry_id"]),
        "position": result["position"],
        "date": result["date_day"],
    }


@router.get("/status")
async def waitlist_status(
    barbershop_id: UUID,
    barber_id: UUID,
    service_id: UUID,
    user_id: Annotated[UUID, Depends(get_current_user_id)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
    date: Annotated[str, Query(description="Business-timezone day, YYYY-MM-DD")],
):
    result = await get_waitlist_status_for_day(
        session,
        user_id=user_id,
        barbershop_id=barbershop_id,
        barber_id=barber_id,
        service_id=service_id,
        date_day=date,
    )
    if not result["success"]:
        return _error_response(result)

    return {
        "is_in_queue": result["is_in_queue"],
        "entry_id": str(result["entry_id"]) if result["entry_id"] else None,
        "position": result["position"],
        "queue_length": result["queue_length"],
        "date": result.get("date_day"),
    }


@router.delete("/{entry_id}")
async def leave(
    entry_id: UUID,
    user_id: Annotated[UUID, Depends(get_current_user_id)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
):
    result = await leave_waitlist(session, user_id, entry_id)
    if not result["success"]:
        return _error_response(result)

    await session.commit()
    return {"entry_id": str(entry_id), "status": "left"}


@router.post("/seen")
async def mark_seen(
    body: MarkSeenRequest,
    user_id: Annotated[UUID, Depends(get_current_user_id)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
):
    """Acknowledge fulfilled entries so the app stops highlighting them."""
    updated = await mark_fulfillment_seen(session, user_id, body.entry_ids)
    await session.commit()
    return {"updated": updated}
