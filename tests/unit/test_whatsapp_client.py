"""
Unit tests for shared/whatsapp_client.py.

Tests coverage:
- Address normalization
- Template vs fallback payloads, production rule
- send_message() configuration checks and Twilio response handling
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from database.models import NotificationJobType
from shared.circuit_breaker import twilio_breaker
from shared.whatsapp_client import (
    WhatsAppClient,
    WhatsAppSendError,
    WhatsAppSendResult,
    normalize_whatsapp_address,
)

MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"


@pytest.fixture(autouse=True)
def closed_breaker():
    twilio_breaker.close()
    yield
    twilio_breaker.close()


@pytest.fixture
def client():
    client = WhatsAppClient()
    client.account_sid = "AC123"
    client.auth_token = "token"
    client.default_from = "+5511900000000"
    client.is_production = False
    client.content_sids = {job_type: "" for job_type in NotificationJobType}
    return client


def twilio_response(status_code, payload=None, text=None):
    request = httpx.Request("POST", MESSAGES_URL)
    if text is not None:
        return httpx.Response(status_code, text=text, request=request)
    return httpx.Response(status_code, json=payload, request=request)


class TestNormalizeWhatsAppAddress:
    def test_adds_prefix(self):
        assert normalize_whatsapp_address(" +5511987654321 ") == "whatsapp:+5511987654321"

    def test_keeps_prefixed_address(self):
        assert normalize_whatsapp_address("whatsapp:+5511987654321") == "whatsapp:+5511987654321"

    @pytest.mark.parametrize("value", ["", "   ", "11987654321"])
    def test_rejects_invalid(self, value):
        with pytest.raises(WhatsAppSendError):
            normalize_whatsapp_address(value)


class TestBuildPayload:
    def test_template_payload(self, client):
        client.content_sids[NotificationJobType.REMINDER_24H] = "HX24"

        payload = client.build_payload(
            "+5511987654321", "+5511900000000", NotificationJobType.REMINDER_24H, {"1": "Ana"}, "body"
        )

        assert payload["ContentSid"] == "HX24"
        assert json.loads(payload["ContentVariables"]) == {"1": "Ana"}
        assert "Body" not in payload

    def test_fallback_body_outside_production(self, client):
        payload = client.build_payload(
            "+5511987654321", "+5511900000000", NotificationJobType.BOOKING_CONFIRM, {}, "Ola"
        )
        assert payload == {
            "To": "whatsapp:+5511987654321",
            "From": "whatsapp:+5511900000000",
            "Body": "Ola",
        }

    def test_production_requires_template(self, client):
        client.is_production = True
        with pytest.raises(WhatsAppSendError, match="production"):
            client.build_payload(
                "+5511987654321", "+5511900000000", NotificationJobType.BOOKING_CONFIRM, {}, "Ola"
            )

    def test_no_template_and_no_body(self, client):
        with pytest.raises(WhatsAppSendError):
            client.build_payload(
                "+5511987654321", "+5511900000000", NotificationJobType.BOOKING_CONFIRM, {}, None
            )


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_success_returns_sid(self, client):
        with patch.object(httpx.AsyncClient, "post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = twilio_response(201, {"sid": "SM123"})

            result = await client.send_message(
                to="+5511987654321",
                job_type=NotificationJobType.BOOKING_CONFIRM,
                content_variables={},
                fallback_body="Ola",
            )

        assert result == WhatsAppSendResult(provider_message_id="SM123")
        assert mock_post.await_args.args[0] == MESSAGES_URL
        assert mock_post.await_args.kwargs["data"]["From"] == "whatsapp:+5511900000000"

    @pytest.mark.asyncio
    async def test_barbershop_sender_overrides_default(self, client):
        with patch.object(httpx.AsyncClient, "post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = twilio_response(201, {"sid": "SM123"})

            await client.send_message(
                to="+5511987654321",
                job_type=NotificationJobType.BOOKING_CONFIRM,
                content_variables={},
                fallback_body="Ola",
                from_="+5511911112222",
            )

        assert mock_post.await_args.kwargs["data"]["From"] == "whatsapp:+5511911112222"

    @pytest.mark.asyncio
    async def test_provider_error_raises(self, client):
        with patch.object(httpx.AsyncClient, "post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = twilio_response(400, text="invalid To")

            with pytest.raises(WhatsAppSendError, match="400"):
                await client.send_message(
                    to="+5511987654321",
                    job_type=NotificationJobType.BOOKING_CONFIRM,
                    content_variables={},
                    fallback_body="Ola",
                )

    @pytest.mark.asyncio
    async def test_response_without_sid(self, client):
        with patch.object(httpx.AsyncClient, "post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = twilio_response(201, {"status": "queued"})

            with pytest.raises(WhatsAppSendError, match="sid"):
                await client.send_message(
                    to="+5511987654321",
                    job_type=NotificationJobType.BOOKING_CONFIRM,
                    content_variables={},
                    fallback_body="Ola",
                )

    @pytest.mark.asyncio
    async def test_missing_credentials(self, client):
        client.auth_token = ""
        with pytest.raises(WhatsAppSendError, match="not configured"):
            await client.send_message(
                to="+5511987654321",
                job_type=NotificationJobType.BOOKING_CONFIRM,
                content_variables={},
            )

    @pytest.mark.asyncio
    async def test_missing_sender(self, client):
        client.default_from = ""
        with pytest.raises(WhatsAppSendError, match="sender"):
            await client.send_message(
                to="+5511987654321",
                job_type=NotificationJobType.BOOKING_CONFIRM,
                content_variables={},
                fallback_body="Ola",
            )
