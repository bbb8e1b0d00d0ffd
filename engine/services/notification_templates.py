"""
WhatsApp message payloads for booking notifications (pt-BR).

Content variables fill the approved Twilio Content Templates:

    BOOKING_CONFIRM: 1=customer 2=barbershop 3=date 4=services 5=barber
                     6=total 7=phones 8=instruction
    REMINDER_24H/1H: 1=customer 2=barbershop 3=date 4=services 5=phones
                     6=instruction

The plain-text body is the fallback when no template is configured.
"""

from datetime import datetime
from typing import Any

from database.models import NotificationJobType
from shared.booking_time import to_booking_local

DEFAULT_CUSTOMER_NAME = "Cliente"
MISSING_BARBER_LABEL = "Nao informado"
MISSING_PHONES_LABEL = "telefone indisponivel"
MISSING_TOTAL_LABEL = "valor indisponivel"


def format_booking_date_time(instant: datetime) -> str:
    """DD/MM/YYYY HH:MM in the business timezone."""
    return to_booking_local(instant).strftime("%d/%m/%Y %H:%M")


def format_brl(cents: int | None) -> str:
    """R$ 1.234,56"""
    if cents is None:
        return MISSING_TOTAL_LABEL
    integer_part, decimal_part = divmod(abs(cents), 100)
    grouped = f"{integer_part:,}".replace(",", ".")
    sign = "-" if cents < 0 else ""
    return f"{sign}R$ {grouped},{decimal_part:02d}"


def get_service_names(booking: Any) -> str:
    services = getattr(booking, "services", None) or []
    if services:
        return ", ".join(service.name for service in services)
    return booking.service.name


def get_contact_phones_label(phones: list[str] | None) -> str:
    if not phones:
        return MISSING_PHONES_LABEL
    return " / ".join(phones)


def get_reminder_instruction(phones: list[str] | None) -> str:
    return f"Para reagendar ou cancelar, fale com a barbearia: {get_contact_phones_label(phones)}."


def _customer_name(booking: Any) -> str:
    return (booking.user.name or "").strip() or DEFAULT_CUSTOMER_NAME


def _barber_name(booking: Any) -> str:
    return booking.barber.name if booking.barber is not None else MISSING_BARBER_LABEL


def build_notification_content_variables(
    job_type: NotificationJobType, booking: Any
) -> dict[str, str]:
    """
    Template variables for a job.

    booking needs user, barbershop, barber, service and services loaded.
    """
    phones = booking.barbershop.phones
    common = {
        "1": _customer_name(booking),
        "2": booking.barbershop.name,
        "3": format_booking_date_time(booking.start_at),
        "4": get_service_names(booking),
    }

    if job_type == NotificationJobType.BOOKING_CONFIRM:
        return {
            **common,
            "5": _barber_name(booking),
            "6": format_brl(booking.total_price_in_cents),
            "7": get_contact_phones_label(phones),
            "8": get_reminder_instruction(phones),
        }

    return {
        **common,
        "5": get_contact_phones_label(phones),
        "6": get_reminder_instruction(phones),
    }


def build_notification_text_body(job_type: NotificationJobType, booking: Any) -> str:
    shop_name = booking.barbershop.name
    formatted_date = format_booking_date_time(booking.start_at)
    instruction = get_reminder_instruction(booking.barbershop.phones)

    if job_type == NotificationJobType.BOOKING_CONFIRM:
        lines = [
            f"Reserva confirmada na {shop_name}.",
            f"Data: {formatted_date}.",
            f"Servicos: {get_service_names(booking)}.",
            f"Barbeiro: {_barber_name(booking)}.",
            f"Total: {format_brl(booking.total_price_in_cents)}.",
            instruction,
        ]
    else:
        lines = [
            f"Lembrete da sua reserva na {shop_name}.",
            f"Data: {formatted_date}.",
            f"Servicos: {get_service_names(booking)}.",
            instruction,
        ]
    return "\n".join(lines)
