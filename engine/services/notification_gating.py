"""
Notification gating - Whether a tenant may receive a given message type.

Checked twice per job: when it is scheduled, and again right before it is
sent (the tenant may have downgraded or switched a toggle in between).
"""

from dataclasses import dataclass
from enum import Enum

from database.models import (
    Barbershop,
    BarbershopPlan,
    BarbershopWhatsAppSettings,
    NotificationJobType,
    WhatsAppProvider,
)


class NotificationBlockReason(str, Enum):
    PLAN_DOWNGRADE = "plan_downgrade"
    FEATURE_DISABLED = "feature_disabled"


@dataclass(frozen=True)
class NotificationToggles:
    send_booking_confirmation: bool = True
    send_reminder_24h: bool = True
    send_reminder_1h: bool = True

    @classmethod
    def from_row(cls, row: BarbershopWhatsAppSettings | None) -> "NotificationToggles":
        """Missing settings row means every message type is enabled."""
        if row is None:
            return cls()
        return cls(
            send_booking_confirmation=row.send_booking_confirmation,
            send_reminder_24h=row.send_reminder_24h,
            send_reminder_1h=row.send_reminder_1h,
        )

    def is_enabled(self, job_type: NotificationJobType) -> bool:
        if job_type == NotificationJobType.BOOKING_CONFIRM:
            return self.send_booking_confirmation
        if job_type == NotificationJobType.REMINDER_24H:
            return self.send_reminder_24h
        return self.send_reminder_1h


def get_notification_block_reason(
    barbershop: Barbershop,
    toggles: NotificationToggles,
    job_type: NotificationJobType,
) -> NotificationBlockReason | None:
    """
    Return why the job type is blocked for this tenant, or None if allowed.

    Order matters: a BASIC tenant reports plan_downgrade even when WhatsApp is
    also disabled.
    """
    if barbershop.plan != BarbershopPlan.PRO:
        return NotificationBlockReason.PLAN_DOWNGRADE

    if not barbershop.whatsapp_enabled or barbershop.whatsapp_provider != WhatsAppProvider.TWILIO:
        return NotificationBlockReason.FEATURE_DISABLED

    if not toggles.is_enabled(job_type):
        return NotificationBlockReason.FEATURE_DISABLED

    return None
