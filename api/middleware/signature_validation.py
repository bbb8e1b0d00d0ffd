"""Request authentication dependencies: Stripe webhook signatures and the cron secret."""

import hmac
import logging
from typing import Any

import stripe
from fastapi import HTTPException, Request
from stripe import SignatureVerificationError

from shared.config import get_settings

logger = logging.getLogger(__name__)


async def validate_stripe_signature(request: Request) -> Any:
    """
    Validate Stripe webhook signature and parse event.

    Returns:
        The verified stripe.Event

    Raises:
        HTTPException: 401 if signature verification fails
    """
    settings = get_settings()
    body = await request.body()

    signature_header: str | None = request.headers.get("Stripe-Signature")
    if not signature_header:
        logger.warning("Stripe webhook received without signature header")
        raise HTTPException(status_code=401, detail="Invalid Stripe signature")

    try:
        event = stripe.Webhook.construct_event(
            payload=body,
            sig_header=signature_header,
            secret=settings.STRIPE_WEBHOOK_SECRET,
        )
    except SignatureVerificationError as e:
        logger.warning(f"Stripe signature verification failed: {e}")
        raise HTTPException(status_code=401, detail="Invalid Stripe signature") from e
    except ValueError as e:
        logger.warning(f"Stripe webhook payload could not be parsed: {e}")
        raise HTTPException(status_code=401, detail="Invalid Stripe signature") from e

    logger.debug(f"Stripe signature validated: event_type={event['type']}")
    return event


def _extract_cron_token(request: Request) -> str | None:
    header_secret = request.headers.get("x-cron-secret")
    if header_secret:
        return header_secret.strip()

    authorization = request.headers.get("Authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


async def verify_cron_secret(request: Request) -> None:
    """
    Guard machine-to-machine endpoints.

    Accepts the secret in `x-cron-secret` or as `Authorization: Bearer <secret>`.

    Raises:
        HTTPException: 500 if CRON_SECRET is unset, 401 on a missing or wrong secret
    """
    expected = get_settings().CRON_SECRET.strip()
    if not expected:
        logger.error("CRON_SECRET is not configured, refusing internal request")
        raise HTTPException(status_code=500, detail="CRON_SECRET is not configured")

    provided = _extract_cron_token(request)
    if provided is None or not hmac.compare_digest(provided, expected):
        logger.warning(f"Unauthorized internal request: path={request.url.path}")
        raise HTTPException(status_code=401, detail="Unauthorized")
