"""
Stripe API client for booking payments.

This module wraps the Stripe Checkout and Refund APIs used by the booking
engine and the helpers that interpret a Checkout Session:

- create_booking_checkout_session(): Start payment for a PENDING booking
- expire_checkout_session(): Abort a session whose booking could not be stored
- retrieve_checkout_session(): Authoritative session state (with payment_intent)
- create_refund(): Refund the charge of a cancelled paid booking
- resolve_charge_id() / should_mark_session_failed(): Session interpretation

The Stripe SDK is synchronous; calls run in the default executor so they do
not block the event loop. Read-only lookups are retried on transient errors.
"""

import asyncio
import json
import logging
from functools import partial
from typing import Any

import stripe
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shared.circuit_breaker import call_with_breaker, stripe_breaker
from shared.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

# Initialize Stripe with API key (use secret key for server-side operations)
stripe.api_key = settings.STRIPE_SECRET_KEY

# Transient errors worth retrying for idempotent reads
TRANSIENT_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


class StripeConfigurationError(Exception):
    """Raised when a Stripe operation is attempted without a secret key."""

    pass


def is_stripe_configured() -> bool:
    return bool(get_settings().STRIPE_SECRET_KEY)


def _require_configured() -> None:
    if not is_stripe_configured():
        raise StripeConfigurationError("STRIPE_SECRET_KEY is not configured")


async def _run_blocking(func, *args, **kwargs) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args, **kwargs))


# =============================================================================
# Session interpretation
# =============================================================================


def get_field(obj: Any, key: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def resolve_charge_id(checkout_session: Any) -> str | None:
    """
    Extract the charge id from a Checkout Session.

    payment_intent may be an id string (not expanded), null, or an object;
    its latest_charge may in turn be an id string or a Charge object.
    """
    payment_intent = get_field(checkout_session, "payment_intent")
    if payment_intent is None or isinstance(payment_intent, str):
        return None

    latest_charge = get_field(payment_intent, "latest_charge")
    if isinstance(latest_charge, str):
        return latest_charge or None
    if latest_charge is None:
        return None

    charge_id = get_field(latest_charge, "id")
    return charge_id if isinstance(charge_id, str) and charge_id else None


def is_session_paid(checkout_session: Any) -> bool:
    return get_field(checkout_session, "payment_status") == "paid"


def should_mark_session_failed(checkout_session: Any) -> bool:
    """Expired sessions, or completed sessions that did not end up paid."""
    status = get_field(checkout_session, "status")
    if status == "expired":
        return True
    return status == "complete" and not is_session_paid(checkout_session)


# =============================================================================
# API calls
# =============================================================================


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=4),
    retry=retry_if_exception_type(TRANSIENT_STRIPE_ERRORS),
    reraise=True,
)
def _retrieve_checkout_session_sync(session_id: str) -> Any:
    return stripe.checkout.Session.retrieve(session_id, expand=["payment_intent"])


async def retrieve_checkout_session(session_id: str) -> Any:
    """
    Retrieve a Checkout Session with its PaymentIntent expanded.

    Raises:
        StripeConfigurationError: If no secret key is configured
        stripe.StripeError: After retries are exhausted
    """
    _require_configured()
    try:
        return await call_with_breaker(
            stripe_breaker, _run_blocking, _retrieve_checkout_session_sync, session_id
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe API error retrieving checkout session {session_id}: {e}")
        raise


async def create_booking_checkout_session(
    *,
    barbershop_name: str,
    barber_name: str,
    service_names: list[str],
    total_price_in_cents: int,
    metadata: dict[str, Any],
) -> dict[str, Any]:
    """
    Create a Stripe Checkout Session for a booking.

    Args:
        barbershop_name: Shown as the product name
        barber_name: Shown in the product description
        service_names: Shown in the product description (truncated to 300 chars)
        total_price_in_cents: Amount in the smallest currency unit
        metadata: Booking details echoed back in webhook events

    Returns:
        dict with:
            - id: str - Checkout Session id
            - url: str - Hosted checkout URL

    Raises:
        StripeConfigurationError: If no secret key is configured
        stripe.StripeError: If Stripe API call fails
    """
    _require_configured()
    base_url = settings.APP_BASE_URL.rstrip("/")
    service_description = ", ".join(service_names)[:300]

    params: dict[str, Any] = {
        "payment_method_types": ["card"],
        "mode": "payment",
        "success_url": f"{base_url}/bookings?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{base_url}/bookings",
        "metadata": {key: str(value) for key, value in metadata.items()},
        "line_items": [
            {
                "price_data": {
                    "currency": settings.STRIPE_CURRENCY,
                    "unit_amount": total_price_in_cents,
                    "product_data": {
                        "name": f"{barbershop_name} - Reserva com {len(service_names)} servicos",
                        "description": f"Barbeiro: {barber_name}. Servicos: {service_description}",
                    },
                },
                "quantity": 1,
            }
        ],
    }

    try:
        checkout_session = await call_with_breaker(
            stripe_breaker, _run_blocking, stripe.checkout.Session.create, **params
        )
    except stripe.StripeError as e:
        logger.error(
            f"Stripe API error creating checkout session: {e} | "
            f"metadata={json.dumps(params['metadata'])}"
        )
        raise

    logger.info(f"Checkout session created: {checkout_session.id}")
    return {"id": checkout_session.id, "url": checkout_session.url}


async def expire_checkout_session(session_id: str) -> bool:
    """
    Expire an open Checkout Session.

    Returns:
        True if expired, False if Stripe refused (already completed/expired)
    """
    _require_configured()
    try:
        await _run_blocking(stripe.checkout.Session.expire, session_id)
        logger.info(f"Checkout session expired: {session_id}")
        return True
    except stripe.InvalidRequestError as e:
        logger.warning(f"Could not expire checkout session {session_id}: {e}")
        return False


async def create_refund(charge_id: str) -> dict[str, Any]:
    """
    Refund a charge in full.

    Raises:
        StripeConfigurationError: If no secret key is configured
        stripe.StripeError: If Stripe API call fails
    """
    _require_configured()
    try:
        refund = await call_with_breaker(
            stripe_breaker,
            _run_blocking,
            stripe.Refund.create,
            charge=charge_id,
            reason="requested_by_customer",
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe API error refunding charge {charge_id}: {e}")
        raise

    logger.info(f"Refund created: {refund.id} for charge {charge_id}")
    return {"id": refund.id, "status": refund.status}
