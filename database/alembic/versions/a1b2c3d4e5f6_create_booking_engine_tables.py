"""create booking engine tables

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-01-12

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'a1b2c3d4e5f6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ENUMS = {
    'barbershop_plan': ('BASIC', 'PRO'),
    'whatsapp_provider': ('NONE', 'TWILIO'),
    'payment_method': ('STRIPE', 'IN_PERSON'),
    'payment_status': ('PENDING', 'PAID', 'FAILED'),
    'waitlist_status': ('ACTIVE', 'FULFILLED', 'EXPIRED'),
    'notification_job_type': ('BOOKING_CONFIRM', 'REMINDER_24H', 'REMINDER_1H'),
    'notification_job_status': ('PENDING', 'SENDING', 'SENT', 'FAILED', 'CANCELED'),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade() -> None:
    # Required for "barber_id WITH =" inside a gist exclusion constraint
    op.execute('CREATE EXTENSION IF NOT EXISTS btree_gist')

    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        'barbershops',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(150), nullable=False),
        sa.Column('phones', postgresql.ARRAY(sa.String(32)), nullable=False, server_default='{}'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('stripe_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('plan', _enum('barbershop_plan'), nullable=False, server_default='BASIC'),
        sa.Column('whatsapp_provider', _enum('whatsapp_provider'), nullable=False,
                  server_default='NONE'),
        sa.Column('whatsapp_enabled', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('whatsapp_from', sa.String(32), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'barbershop_opening_hours',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('barbershop_id', sa.UUID(), nullable=False),
        sa.Column('day_of_week', sa.Integer(), nullable=False),
        sa.Column('open_minute', sa.Integer(), nullable=False),
        sa.Column('close_minute', sa.Integer(), nullable=False),
        sa.Column('closed', sa.Boolean(), nullable=False, server_default='false'),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['barbershop_id'], ['barbershops.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('barbershop_id', 'day_of_week', name='uq_opening_hours_shop_day'),
        sa.CheckConstraint('day_of_week >= 0 AND day_of_week <= 6', name='valid_day_of_week'),
        sa.CheckConstraint(
            'open_minute >= 0 AND open_minute <= 1440 AND close_minute >= 0 AND close_minute <= 1440',
            name='valid_opening_minutes',
        ),
    )

    op.create_table(
        'barbershop_whatsapp_settings',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('barbershop_id', sa.UUID(), nullable=False),
        sa.Column('send_booking_confirmation', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('send_reminder_24h', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('send_reminder_1h', sa.Boolean(), nullable=False, server_default='true'),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['barbershop_id'], ['barbershops.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('barbershop_id'),
    )

    op.create_table(
        'barbers',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('barbershop_id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['barbershop_id'], ['barbershops.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_barbers_barbershop_id', 'barbers', ['barbershop_id'])

    op.create_table(
        'barbershop_services',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('barbershop_id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(150), nullable=False),
        sa.Column('duration_in_minutes', sa.Integer(), nullable=False),
        sa.Column('price_in_cents', sa.Integer(), nullable=False),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['barbershop_id'], ['barbershops.id'], ondelete='CASCADE'),
        sa.CheckConstraint('duration_in_minutes > 0', name='check_service_duration_positive'),
        sa.CheckConstraint('price_in_cents >= 0', name='check_service_price_non_negative'),
    )
    op.create_index('ix_barbershop_services_barbershop_id', 'barbershop_services', ['barbershop_id'])

    op.create_table(
        'users',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(150), nullable=True),
        sa.Column('phone', sa.String(32), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'bookings',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('barbershop_id', sa.UUID(), nullable=False),
        sa.Column('barber_id', sa.UUID(), nullable=True),
        sa.Column('service_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('start_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('end_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('total_duration_minutes', sa.Integer(), nullable=False),
        sa.Column('total_price_in_cents', sa.Integer(), nullable=False),
        sa.Column('payment_method', _enum('payment_method'), nullable=False),
        sa.Column('payment_status', _enum('payment_status'), nullable=False,
                  server_default='PENDING'),
        sa.Column('stripe_session_id', sa.String(255), nullable=True),
        sa.Column('stripe_charge_id', sa.String(255), nullable=True),
        sa.Column('payment_confirmed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['barbershop_id'], ['barbershops.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['barber_id'], ['barbers.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['service_id'], ['barbershop_services.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('stripe_session_id'),
        sa.CheckConstraint('end_at > start_at', name='check_booking_end_after_start'),
        sa.CheckConstraint('total_duration_minutes > 0', name='check_booking_duration_positive'),
        sa.CheckConstraint(
            "payment_status <> 'PAID' OR payment_confirmed_at IS NOT NULL",
            name='check_paid_has_confirmation',
        ),
    )
    op.create_index('ix_bookings_barbershop_id', 'bookings', ['barbershop_id'])
    op.create_index('ix_bookings_user_id', 'bookings', ['user_id'])
    op.create_index('ix_bookings_payment_status', 'bookings', ['payment_status'])
    op.create_index('idx_bookings_barbershop_start', 'bookings', ['barbershop_id', 'start_at'])
    op.create_index(
        'uq_bookings_barber_start_active', 'bookings', ['barber_id', 'start_at'],
        unique=True, postgresql_where=sa.text('cancelled_at IS NULL'),
    )
    op.create_index(
        'idx_bookings_pending_stripe', 'bookings', ['payment_status', 'created_at'],
        postgresql_where=sa.text('stripe_session_id IS NOT NULL AND cancelled_at IS NULL'),
    )
    op.execute(
        "ALTER TABLE bookings ADD CONSTRAINT bookings_barber_interval_excl "
        "EXCLUDE USING gist (barber_id WITH =, tstzrange(start_at, end_at, '[)') WITH &&) "
        "WHERE (cancelled_at IS NULL)"
    )

    op.create_table(
        'booking_services',
        sa.Column('booking_id', sa.UUID(), nullable=False),
        sa.Column('service_id', sa.UUID(), nullable=False),
        sa.PrimaryKeyConstraint('booking_id', 'service_id'),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['service_id'], ['barbershop_services.id'], ondelete='RESTRICT'),
    )

    op.create_table(
        'waitlist_entries',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('barbershop_id', sa.UUID(), nullable=False),
        sa.Column('barber_id', sa.UUID(), nullable=False),
        sa.Column('service_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('date_day', sa.DATE(), nullable=False),
        sa.Column('status', _enum('waitlist_status'), nullable=False, server_default='ACTIVE'),
        sa.Column('fulfilled_booking_id', sa.UUID(), nullable=True),
        sa.Column('fulfilled_seen_at', sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['barbershop_id'], ['barbershops.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['barber_id'], ['barbers.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['service_id'], ['barbershop_services.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['fulfilled_booking_id'], ['bookings.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_waitlist_entries_user_id', 'waitlist_entries', ['user_id'])
    op.create_index(
        'idx_waitlist_fifo', 'waitlist_entries',
        ['barbershop_id', 'barber_id', 'date_day', 'status', 'created_at', 'id'],
    )
    op.create_index(
        'uq_waitlist_active_entry', 'waitlist_entries',
        ['user_id', 'barber_id', 'service_id', 'date_day'],
        unique=True, postgresql_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table(
        'notification_jobs',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('booking_id', sa.UUID(), nullable=False),
        sa.Column('barbershop_id', sa.UUID(), nullable=False),
        sa.Column('type', _enum('notification_job_type'), nullable=False),
        sa.Column('status', _enum('notification_job_status'), nullable=False,
                  server_default='PENDING'),
        sa.Column('scheduled_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('provider_message_id', sa.String(64), nullable=True),
        sa.Column('sent_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('canceled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancel_reason', sa.String(64), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['barbershop_id'], ['barbershops.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('booking_id', 'type', name='uq_notification_jobs_booking_type'),
        sa.CheckConstraint('attempts >= 0', name='check_notification_attempts_non_negative'),
    )
    op.create_index('ix_notification_jobs_barbershop_id', 'notification_jobs', ['barbershop_id'])
    op.create_index(
        'idx_notification_jobs_status_scheduled', 'notification_jobs', ['status', 'scheduled_at'],
    )


def downgrade() -> None:
    op.drop_table('notification_jobs')
    op.drop_table('waitlist_entries')
    op.drop_table('booking_services')
    op.drop_table('bookings')
    op.drop_table('users')
    op.drop_table('barbershop_services')
    op.drop_table('barbers')
    op.drop_table('barbershop_whatsapp_settings')
    op.drop_table('barbershop_opening_hours')
    op.drop_table('barbershops')

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
