"""
Startup configuration validation module.

Catches misconfigurations at process start (fail-fast) rather than when a
customer pays or a reminder is due.

Usage:
    from shared.startup_validator import validate_startup_config, StartupValidationError

    async def main():
        try:
            await validate_startup_config()
        except StartupValidationError as e:
            logger.critical(f"Startup blocked: {e}")
            sys.exit(1)
"""

import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from shared.config import get_settings

logger = logging.getLogger(__name__)

CRON_SECRET_PLACEHOLDER = "cron_secret_placeholder"
STRIPE_WEBHOOK_SECRET_PLACEHOLDER = "whsec_placeholder"


class StartupValidationError(Exception):
    """Raised when critical startup validation fails."""

    pass


async def validate_startup_config(require_twilio: bool = False) -> dict[str, bool]:
    """
    Validate configuration at startup.

    Tiered validation:
    - TIER 1 (CRITICAL): Block startup if any fail
    - TIER 2 (IMPORTANT): Warn but allow startup

    Args:
        require_twilio: If True, Twilio credentials are CRITICAL. The
                        notification dispatcher worker sets this; the API
                        only warns.

    Returns:
        dict of {check_name: passed} for all validations

    Raises:
        StartupValidationError: If any CRITICAL check fails
    """
    settings = get_settings()
    results: dict[str, bool] = {}
    critical_failures: list[str] = []

    # =========================================================================
    # TIER 1: CRITICAL (block startup if any fail)
    # =========================================================================

    # 1. Database URL uses the async driver
    if not settings.DATABASE_URL.startswith("postgresql+asyncpg://"):
        critical_failures.append(
            "DATABASE_URL must use the asyncpg driver: postgresql+asyncpg://..."
        )
        results["database_url_format"] = False
    else:
        results["database_url_format"] = True

    # 2. Business timezone resolves
    try:
        ZoneInfo(settings.BOOKING_TIMEZONE)
        results["booking_timezone"] = True
    except (ZoneInfoNotFoundError, ValueError):
        critical_failures.append(f"BOOKING_TIMEZONE is not a valid IANA zone: {settings.BOOKING_TIMEZONE}")
        results["booking_timezone"] = False

    # 3. Cron secret guards the dispatcher and admin routes
    cron_secret = settings.CRON_SECRET.strip()
    if not cron_secret or (settings.is_production and cron_secret == CRON_SECRET_PLACEHOLDER):
        critical_failures.append(
            "CRON_SECRET is unset or placeholder - set a random secret for internal endpoints"
        )
        results["cron_secret"] = False
    else:
        results["cron_secret"] = True
        if cron_secret == CRON_SECRET_PLACEHOLDER:
            logger.warning("  [WARN] CRON_SECRET is the development placeholder")

    # 4. Twilio credentials (critical for the dispatcher only)
    twilio_configured = bool(settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN)
    results["twilio_configured"] = twilio_configured
    if not twilio_configured:
        message = "TWILIO_ACCOUNT_SID/TWILIO_AUTH_TOKEN not configured - WhatsApp sends will fail"
        if require_twilio:
            critical_failures.append(message)
        else:
            logger.warning(f"  [WARN] {message}")
    else:
        logger.info("  [OK] Twilio credentials configured")

    # =========================================================================
    # TIER 2: IMPORTANT (warn but allow startup)
    # =========================================================================

    # 5. Stripe checkout and reconciliation
    if not settings.STRIPE_SECRET_KEY:
        logger.warning(
            "  [WARN] STRIPE_SECRET_KEY not configured - online payment and sweeps disabled"
        )
        results["stripe_configured"] = False
    else:
        results["stripe_configured"] = True
        logger.info("  [OK] Stripe secret key configured")

    # 6. Webhook secret
    if settings.STRIPE_WEBHOOK_SECRET == STRIPE_WEBHOOK_SECRET_PLACEHOLDER:
        logger.warning("  [WARN] STRIPE_WEBHOOK_SECRET is placeholder - webhooks will be rejected")
        results["stripe_webhook_secret"] = False
    else:
        results["stripe_webhook_secret"] = True

    # 7. Default WhatsApp sender
    if not settings.TWILIO_WHATSAPP_FROM:
        logger.info("  [INFO] TWILIO_WHATSAPP_FROM not set - barbershops need their own sender")
        results["whatsapp_default_sender"] = False
    else:
        results["whatsapp_default_sender"] = True

    # =========================================================================
    # Summary and result
    # =========================================================================

    passed = sum(1 for v in results.values() if v)
    total = len(results)
    logger.info(f"Startup validation: {passed}/{total} checks passed")

    if critical_failures:
        logger.critical("=" * 60)
        logger.critical("STARTUP BLOCKED - Critical configuration errors:")
        for i, failure in enumerate(critical_failures, 1):
            logger.critical(f"  {i}. {failure}")
        logger.critical("=" * 60)
        raise StartupValidationError(
            f"Critical startup validation failed ({len(critical_failures)} errors): "
            f"{'; '.join(critical_failures)}"
        )

    return results
