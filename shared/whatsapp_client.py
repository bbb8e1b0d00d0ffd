"""
Twilio WhatsApp client for booking notifications.

This module provides the WhatsAppClient class for sending WhatsApp messages
through the Twilio Messages REST API. Each notification type maps to an
approved Content Template (ContentSid); outside production a plain-text Body
is sent when no template is configured.

Sends are NOT retried here. A retried POST can deliver the same message
twice; retries are scheduled by the notification dispatcher instead, which
records each attempt on the job row.
"""

import json
import logging
from dataclasses import dataclass

import httpx

from database.models import NotificationJobType
from shared.circuit_breaker import call_with_breaker, twilio_breaker
from shared.config import get_settings

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"


class WhatsAppSendError(Exception):
    """Raised when Twilio rejects or cannot accept a message."""

    pass


@dataclass(frozen=True)
class WhatsAppSendResult:
    provider_message_id: str


def normalize_whatsapp_address(value: str) -> str:
    """
    Return a "whatsapp:+E164" address.

    Raises:
        WhatsAppSendError: If the value is empty or not in E.164 form
    """
    trimmed = value.strip()
    if not trimmed:
        raise WhatsAppSendError("Empty WhatsApp address")
    if trimmed.startswith(WHATSAPP_PREFIX):
        return trimmed
    if not trimmed.startswith("+"):
        raise WhatsAppSendError(f"WhatsApp address must be E.164: {trimmed}")
    return f"{WHATSAPP_PREFIX}{trimmed}"


class WhatsAppClient:
    """Client for the Twilio Messages API (WhatsApp channel)."""

    def __init__(self):
        settings = get_settings()
        self.api_url = settings.TWILIO_API_URL.rstrip("/")
        self.account_sid = settings.TWILIO_ACCOUNT_SID.strip()
        self.auth_token = settings.TWILIO_AUTH_TOKEN.strip()
        self.default_from = settings.TWILIO_WHATSAPP_FROM.strip()
        self.timeout = settings.TWILIO_TIMEOUT_SECONDS
        self.is_production = settings.is_production
        self.content_sids: dict[NotificationJobType, str] = {
            NotificationJobType.BOOKING_CONFIRM: settings.TWILIO_WHATSAPP_CONTENT_SID_BOOKING_CONFIRM.strip(),
            NotificationJobType.REMINDER_24H: settings.TWILIO_WHATSAPP_CONTENT_SID_REMINDER_24H.strip(),
            NotificationJobType.REMINDER_1H: settings.TWILIO_WHATSAPP_CONTENT_SID_REMINDER_1H.strip(),
        }

    @property
    def messages_endpoint(self) -> str:
        return f"{self.api_url}/2010-04-01/Accounts/{self.account_sid}/Messages.json"

    def build_payload(
        self,
        to: str,
        from_: str,
        job_type: NotificationJobType,
        content_variables: dict[str, str],
        fallback_body: str | None,
    ) -> dict[str, str]:
        """
        Build the form payload for one message.

        Raises:
            WhatsAppSendError: Invalid addresses, or no template in production,
                or neither template nor fallback body available
        """
        payload = {
            "To": normalize_whatsapp_address(to),
            "From": normalize_whatsapp_address(from_),
        }

        content_sid = self.content_sids.get(job_type)
        if content_sid:
            payload["ContentSid"] = content_sid
            payload["ContentVariables"] = json.dumps(content_variables)
            return payload

        if self.is_production:
            raise WhatsAppSendError(
                f"No ContentSid configured for {job_type.value} in production"
            )
        if not fallback_body:
            raise WhatsAppSendError(f"No fallback body for {job_type.value}")

        payload["Body"] = fallback_body
        return payload

    async def _post_message(self, payload: dict[str, str]) -> WhatsAppSendResult:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                self.messages_endpoint,
                data=payload,
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout,
            )

        if response.is_error:
            raise WhatsAppSendError(
                f"[twilio] Send failed ({response.status_code}): {response.text[:500]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise WhatsAppSendError("[twilio] Invalid response from Messages API") from e

        sid = body.get("sid") if isinstance(body, dict) else None
        if not isinstance(sid, str) or not sid:
            raise WhatsAppSendError("[twilio] Response without message sid")

        return WhatsAppSendResult(provider_message_id=sid)

    async def send_message(
        self,
        to: str,
        job_type: NotificationJobType,
        content_variables: dict[str, str],
        fallback_body: str | None = None,
        from_: str | None = None,
    ) -> WhatsAppSendResult:
        """
        Send one WhatsApp message.

        Args:
            to: Destination phone in E.164
            job_type: Notification type (selects the Content Template)
            content_variables: Template variables {"1": ..., "2": ...}
            fallback_body: Plain-text body used when no template is configured
            from_: Sender override (barbershop number); defaults to TWILIO_WHATSAPP_FROM

        Returns:
            WhatsAppSendResult with the Twilio message sid

        Raises:
            WhatsAppSendError: Configuration, validation or provider failure
            httpx.HTTPError: Network failure or timeout
            pybreaker.CircuitBreakerError: Twilio circuit is open
        """
        if not self.account_sid or not self.auth_token:
            raise WhatsAppSendError("TWILIO_ACCOUNT_SID/TWILIO_AUTH_TOKEN not configured")

        sender = (from_ or "").strip() or self.default_from
        if not sender:
            raise WhatsAppSendError("No WhatsApp sender configured")

        payload = self.build_payload(to, sender, job_type, content_variables, fallback_body)

        result = await call_with_breaker(twilio_breaker, self._post_message, payload)
        logger.info(
            f"WhatsApp message sent | type={job_type.value} | sid={result.provider_message_id}"
        )
        return result
