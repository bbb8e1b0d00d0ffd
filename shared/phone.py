"""Phone number normalization for WhatsApp destinations."""

import logging

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

logger = logging.getLogger(__name__)


def normalize_e164(phone: str | None) -> str | None:
    """
    Return the phone in E.164 form, or None if it is not a valid E.164 number.

    Only numbers already written with a leading "+" country code are accepted;
    no default region is assumed.
    """
    if not phone:
        return None

    candidate = phone.strip()
    if not candidate.startswith("+"):
        return None

    try:
        parsed = phonenumbers.parse(candidate, None)
    except NumberParseException:
        return None

    if not phonenumbers.is_valid_number(parsed):
        return None

    return phonenumbers.format_number(parsed, PhoneNumberFormat.E164)


def is_valid_e164(phone: str | None) -> bool:
    return normalize_e164(phone) is not None
