"""
SQLAlchemy ORM models for the booking engine.

This module defines the tenant tables the engine reads:
- barbershops: Tenants with plan, Stripe and WhatsApp configuration
- barbershop_opening_hours: Weekly opening window per tenant
- barbershop_whatsapp_settings: Per-tenant toggles for each notification type
- barbers / barbershop_services / users

And the tables the engine owns:
- bookings: Reservations of a barber's time, with payment state
- booking_services: Services included in a booking
- waitlist_entries: Customers waiting for a slot on a given day
- notification_jobs: Scheduled outbound WhatsApp messages

All models use:
- UUID primary keys (auto-generated)
- TIMESTAMP WITH TIME ZONE for datetime fields (stored as UTC)
- Proper indexes and constraints

Slot exclusivity is enforced by PostgreSQL, not by application checks: an
EXCLUDE constraint rejects two non-cancelled bookings of the same barber with
overlapping [start_at, end_at) ranges (SQLSTATE 23P01), and a partial unique
index rejects two non-cancelled bookings starting at the same instant
(SQLSTATE 23505).
"""

from datetime import UTC, date, datetime
from enum import Enum as PyEnum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    ARRAY,
    DATE,
    DDL,
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(UTC)


def _enum_values(enum_cls: type[PyEnum]) -> list[str]:
    return [member.value for member in enum_cls]


# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Enums
# ============================================================================


class BarbershopPlan(str, PyEnum):
    """Subscription plan. Only PRO includes automated WhatsApp messaging."""

    BASIC = "BASIC"
    PRO = "PRO"


class WhatsAppProvider(str, PyEnum):
    NONE = "NONE"
    TWILIO = "TWILIO"


class PaymentMethod(str, PyEnum):
    STRIPE = "STRIPE"
    IN_PERSON = "IN_PERSON"


class PaymentStatus(str, PyEnum):
    """Booking payment lifecycle: PENDING -> PAID | FAILED."""

    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class WaitlistStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    FULFILLED = "FULFILLED"
    EXPIRED = "EXPIRED"


class NotificationJobType(str, PyEnum):
    BOOKING_CONFIRM = "BOOKING_CONFIRM"
    REMINDER_24H = "REMINDER_24H"
    REMINDER_1H = "REMINDER_1H"


class NotificationJobStatus(str, PyEnum):
    PENDING = "PENDING"        # Waiting for scheduled_at
    SENDING = "SENDING"        # Claimed by a dispatcher run
    SENT = "SENT"
    FAILED = "FAILED"          # Attempts exhausted, terminal
    CANCELED = "CANCELED"      # Booking cancelled or tenant gating blocked


def _pg_enum(enum_cls: type[PyEnum], name: str) -> SQLEnum:
    return SQLEnum(enum_cls, name=name, values_callable=_enum_values)


# ============================================================================
# Tenant Models
# ============================================================================


class Barbershop(Base):
    """
    Barbershop model - A tenant of the platform.

    Holds the payment mode (Stripe Checkout or in-person) and the WhatsApp
    configuration that gates automated notifications.
    """

    __tablename__ = "barbershops"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    phones: Mapped[list[str]] = mapped_column(
        ARRAY(String(32)), default=list, server_default="{}", nullable=False
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true", nullable=False
    )
    stripe_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true", nullable=False
    )

    plan: Mapped[BarbershopPlan] = mapped_column(
        _pg_enum(BarbershopPlan, "barbershop_plan"),
        default=BarbershopPlan.BASIC,
        server_default=BarbershopPlan.BASIC.value,
        nullable=False,
    )
    whatsapp_provider: Mapped[WhatsAppProvider] = mapped_column(
        _pg_enum(WhatsAppProvider, "whatsapp_provider"),
        default=WhatsAppProvider.NONE,
        server_default=WhatsAppProvider.NONE.value,
        nullable=False,
    )
    whatsapp_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )
    # Sender override; falls back to TWILIO_WHATSAPP_FROM
    whatsapp_from: Mapped[str | None] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    opening_hours: Mapped[list["BarbershopOpeningHours"]] = relationship(
        "BarbershopOpeningHours", back_populates="barbershop"
    )
    whatsapp_settings: Mapped[Optional["BarbershopWhatsAppSettings"]] = relationship(
        "BarbershopWhatsAppSettings", back_populates="barbershop", uselist=False
    )

    def __repr__(self) -> str:
        return f"<Barbershop(id={self.id}, name='{self.name}', plan='{self.plan.value}')>"


class BarbershopOpeningHours(Base):
    """
    Weekly opening window for a barbershop.

    day_of_week: 0=Sunday .. 6=Saturday. Minutes are minute-of-day in the
    business timezone. A missing row means the default 09:00-17:00 window.
    """

    __tablename__ = "barbershop_opening_hours"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    barbershop_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("barbershops.id", ondelete="CASCADE"),
        nullable=False,
    )
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    open_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    close_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    closed: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )

    barbershop: Mapped["Barbershop"] = relationship("Barbershop", back_populates="opening_hours")

    __table_args__ = (
        UniqueConstraint("barbershop_id", "day_of_week", name="uq_opening_hours_shop_day"),
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="valid_day_of_week"),
        CheckConstraint(
            "open_minute >= 0 AND open_minute <= 1440 AND close_minute >= 0 AND close_minute <= 1440",
            name="valid_opening_minutes",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<BarbershopOpeningHours(day={self.day_of_week}, "
            f"open={self.open_minute}, close={self.close_minute}, closed={self.closed})>"
        )


class BarbershopWhatsAppSettings(Base):
    """Per-tenant toggles for each automated message type (all on by default)."""

    __tablename__ = "barbershop_whatsapp_settings"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    barbershop_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("barbershops.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    send_booking_confirmation: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true", nullable=False
    )
    send_reminder_24h: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true", nullable=False
    )
    send_reminder_1h: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true", nullable=False
    )

    barbershop: Mapped["Barbershop"] = relationship(
        "Barbershop", back_populates="whatsapp_settings"
    )


class Barber(Base):
    __tablename__ = "barbers"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    barbershop_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("barbershops.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Barber(id={self.id}, name='{self.name}')>"


class BarbershopService(Base):
    """
    Service offered by a barbershop.

    Soft-deleted via deleted_at; existing bookings and waitlist entries keep
    pointing at the row.
    """

    __tablename__ = "barbershop_services"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    barbershop_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("barbershops.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    duration_in_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    price_in_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("duration_in_minutes > 0", name="check_service_duration_positive"),
        CheckConstraint("price_in_cents >= 0", name="check_service_price_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<BarbershopService(id={self.id}, name='{self.name}', "
            f"duration={self.duration_in_minutes}min)>"
        )


class User(Base):
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    # E.164 when valid; anything else disables WhatsApp notifications
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, name='{self.name}')>"


# ============================================================================
# Booking Engine Models
# ============================================================================


class Booking(Base):
    """
    Booking model - One reservation of a barber's time for a customer.

    Created PENDING (Stripe Checkout) or directly PAID (in-person payment or
    waitlist promotion). Never deleted: cancellation sets cancelled_at.
    payment_status moves PENDING -> PAID | FAILED at most once.
    """

    __tablename__ = "bookings"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )

    barbershop_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("barbershops.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    barber_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("barbers.id", ondelete="SET NULL"),
        nullable=True,
    )
    # Primary service; the full list lives in booking_services
    service_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("barbershop_services.id", ondelete="RESTRICT"),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Scheduling
    start_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    total_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    total_price_in_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    # Payment
    payment_method: Mapped[PaymentMethod] = mapped_column(
        _pg_enum(PaymentMethod, "payment_method"), nullable=False
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _pg_enum(PaymentStatus, "payment_status"),
        default=PaymentStatus.PENDING,
        nullable=False,
        index=True,
    )
    stripe_session_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )
    stripe_charge_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_confirmed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    barbershop: Mapped["Barbershop"] = relationship("Barbershop")
    barber: Mapped[Optional["Barber"]] = relationship("Barber")
    user: Mapped["User"] = relationship("User")
    service: Mapped["BarbershopService"] = relationship("BarbershopService")
    services: Mapped[list["BarbershopService"]] = relationship(
        "BarbershopService", secondary="booking_services", viewonly=True
    )

    __table_args__ = (
        CheckConstraint("end_at > start_at", name="check_booking_end_after_start"),
        CheckConstraint("total_duration_minutes > 0", name="check_booking_duration_positive"),
        CheckConstraint(
            "payment_status <> 'PAID' OR payment_confirmed_at IS NOT NULL",
            name="check_paid_has_confirmation",
        ),
        Index(
            "uq_bookings_barber_start_active",
            "barber_id",
            "start_at",
            unique=True,
            postgresql_where=text("cancelled_at IS NULL"),
        ),
        Index("idx_bookings_barbershop_start", "barbershop_id", "start_at"),
        # Reconciliation sweeps: pending Stripe bookings by recency
        Index(
            "idx_bookings_pending_stripe",
            "payment_status",
            "created_at",
            postgresql_where=text("stripe_session_id IS NOT NULL AND cancelled_at IS NULL"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, barber_id={self.barber_id}, "
            f"start_at={self.start_at}, payment_status='{self.payment_status.value}')>"
        )


class BookingService(Base):
    """Association between a booking and the services it includes."""

    __tablename__ = "booking_services"

    booking_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        primary_key=True,
    )
    service_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("barbershop_services.id", ondelete="RESTRICT"),
        primary_key=True,
    )


class WaitlistEntry(Base):
    """
    WaitlistEntry model - A customer waiting for a slot on a given day.

    Served FIFO by (created_at, id). Terminal states: FULFILLED (converted
    into a booking) or EXPIRED (service no longer matches, or left).
    """

    __tablename__ = "waitlist_entries"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    barbershop_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("barbershops.id", ondelete="CASCADE"),
        nullable=False,
    )
    barber_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("barbers.id", ondelete="CASCADE"),
        nullable=False,
    )
    service_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("barbershop_services.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    date_day: Mapped[date] = mapped_column(DATE, nullable=False)
    status: Mapped[WaitlistStatus] = mapped_column(
        _pg_enum(WaitlistStatus, "waitlist_status"),
        default=WaitlistStatus.ACTIVE,
        nullable=False,
    )
    fulfilled_booking_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("bookings.id", ondelete="SET NULL"),
        nullable=True,
    )
    fulfilled_seen_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        # FIFO scan for a released slot
        Index(
            "idx_waitlist_fifo",
            "barbershop_id",
            "barber_id",
            "date_day",
            "status",
            "created_at",
            "id",
        ),
        # One ACTIVE entry per customer/barber/service/day
        Index(
            "uq_waitlist_active_entry",
            "user_id",
            "barber_id",
            "service_id",
            "date_day",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<WaitlistEntry(id={self.id}, date_day={self.date_day}, "
            f"status='{self.status.value}')>"
        )


class NotificationJob(Base):
    """
    NotificationJob model - One scheduled outbound WhatsApp message.

    At most one job per (booking_id, type). attempts only grows; reaching
    NOTIFICATION_MAX_ATTEMPTS makes the job terminally FAILED.
    """

    __tablename__ = "notification_jobs"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    booking_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
    )
    barbershop_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("barbershops.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[NotificationJobType] = mapped_column(
        _pg_enum(NotificationJobType, "notification_job_type"), nullable=False
    )
    status: Mapped[NotificationJobStatus] = mapped_column(
        _pg_enum(NotificationJobStatus, "notification_job_status"),
        default=NotificationJobStatus.PENDING,
        nullable=False,
    )
    scheduled_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    attempts: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    cancel_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("booking_id", "type", name="uq_notification_jobs_booking_type"),
        CheckConstraint("attempts >= 0", name="check_notification_attempts_non_negative"),
        # Dispatcher scan: due PENDING jobs in scheduled order
        Index("idx_notification_jobs_status_scheduled", "status", "scheduled_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationJob(id={self.id}, type='{self.type.value}', "
            f"status='{self.status.value}', attempts={self.attempts})>"
        )


# ============================================================================
# PostgreSQL-specific DDL
# ============================================================================

BOOKING_SLOT_EXCLUSION_CONSTRAINT = "bookings_barber_interval_excl"

event.listen(
    Base.metadata,
    "before_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)

event.listen(
    Booking.__table__,
    "after_create",
    DDL(
        f"ALTER TABLE bookings ADD CONSTRAINT {BOOKING_SLOT_EXCLUSION_CONSTRAINT} "
        "EXCLUDE USING gist (barber_id WITH =, tstzrange(start_at, end_at, '[)') WITH &&) "
        "WHERE (cancelled_at IS NULL)"
    ).execute_if(dialect="postgresql"),
)
