"""Unit tests for shared/startup_validator.py."""

from unittest.mock import MagicMock, patch

import pytest

from shared.startup_validator import (
    CRON_SECRET_PLACEHOLDER,
    STRIPE_WEBHOOK_SECRET_PLACEHOLDER,
    StartupValidationError,
    validate_startup_config,
)

MODULE = "shared.startup_validator"


def make_settings(**overrides):
    settings = MagicMock()
    settings.DATABASE_URL = "postgresql+asyncpg://app:secret@db:5432/barbershop"
    settings.BOOKING_TIMEZONE = "America/Sao_Paulo"
    settings.CRON_SECRET = "a-long-random-secret"
    settings.is_production = True
    settings.TWILIO_ACCOUNT_SID = "AC123"
    settings.TWILIO_AUTH_TOKEN = "token"
    settings.TWILIO_WHATSAPP_FROM = "+5511987654321"
    settings.STRIPE_SECRET_KEY = "sk_test_123"
    settings.STRIPE_WEBHOOK_SECRET = "whsec_real"
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


class TestValidateStartupConfig:
    @pytest.mark.asyncio
    async def test_all_checks_pass(self):
        with patch(f"{MODULE}.get_settings", return_value=make_settings()):
            results = await validate_startup_config(require_twilio=True)

        assert all(results.values())
        assert set(results) == {
            "database_url_format",
            "booking_timezone",
            "cron_secret",
            "twilio_configured",
            "stripe_configured",
            "stripe_webhook_secret",
            "whatsapp_default_sender",
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"DATABASE_URL": "postgresql://app:secret@db:5432/barbershop"},
            {"BOOKING_TIMEZONE": "Mars/Olympus_Mons"},
            {"CRON_SECRET": "   "},
            {"CRON_SECRET": CRON_SECRET_PLACEHOLDER},
        ],
    )
    async def test_critical_failures_block_startup(self, overrides):
        with patch(f"{MODULE}.get_settings", return_value=make_settings(**overrides)):
            with pytest.raises(StartupValidationError):
                await validate_startup_config()

    @pytest.mark.asyncio
    async def test_placeholder_cron_secret_allowed_outside_production(self):
        settings = make_settings(CRON_SECRET=CRON_SECRET_PLACEHOLDER, is_production=False)

        with patch(f"{MODULE}.get_settings", return_value=settings):
            results = await validate_startup_config()

        assert results["cron_secret"] is True

    @pytest.mark.asyncio
    async def test_missing_twilio_only_warns_for_api(self):
        settings = make_settings(TWILIO_ACCOUNT_SID="", TWILIO_AUTH_TOKEN="")

        with patch(f"{MODULE}.get_settings", return_value=settings):
            results = await validate_startup_config()

        assert results["twilio_configured"] is False

    @pytest.mark.asyncio
    async def test_missing_twilio_blocks_dispatcher(self):
        settings = make_settings(TWILIO_AUTH_TOKEN="")

        with patch(f"{MODULE}.get_settings", return_value=settings):
            with pytest.raises(StartupValidationError, match="TWILIO"):
                await validate_startup_config(require_twilio=True)

    @pytest.mark.asyncio
    async def test_stripe_gaps_are_warnings(self):
        settings = make_settings(
            STRIPE_SECRET_KEY="",
            STRIPE_WEBHOOK_SECRET=STRIPE_WEBHOOK_SECRET_PLACEHOLDER,
            TWILIO_WHATSAPP_FROM="",
        )

        with patch(f"{MODULE}.get_settings", return_value=settings):
            results = await validate_startup_config()

        assert results["stripe_configured"] is False
        assert results["stripe_webhook_secret"] is False
        assert results["whatsapp_default_sender"] is False
