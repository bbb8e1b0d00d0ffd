"""Stripe webhook route handler."""

import logging
from typing import Any

import pybreaker
import stripe
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.middleware.signature_validation import validate_stripe_signature
from engine.services.reconciliation_service import handle_stripe_event
from shared.stripe_client import StripeConfigurationError, get_field

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe")
async def receive_stripe_webhook(
    event: Any = Depends(validate_stripe_signature),
) -> JSONResponse:
    """
    Receive Stripe Checkout events and reconcile the matching booking.

    Returns:
        200 when applied, replayed or ignored
        409 when the booking is unknown or the event conflicts with stored
            state (Stripe redelivers; operators review)
        502 when the session cannot be re-retrieved from Stripe
    """
    try:
        result = await handle_stripe_event(event)
    except (stripe.StripeError, StripeConfigurationError, pybreaker.CircuitBreakerError) as e:
        logger.error(f"Stripe lookup failed while handling webhook {get_field(event, 'id')}: {e}")
        return JSONResponse(status_code=502, content={"error": "Stripe lookup failed"})

    content = {
        "status": result.action.value,
        "booking_id": str(result.booking_id) if result.booking_id else None,
        "reason": result.reason,
    }
    if result.is_conflict:
        return JSONResponse(status_code=409, content=content)
    return JSONResponse(status_code=200, content=content)
