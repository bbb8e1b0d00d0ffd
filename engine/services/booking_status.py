"""
Booking status predicates shared by availability, waitlist and notifications.

Two notions of "counts" exist:
- active: occupies its slot (blocks availability). A PENDING Stripe booking
  holds the slot while the customer is on the checkout page.
- confirmed: eligible for customer notifications. Requires the payment to be
  settled (in-person, PAID, or a known charge).
"""

from sqlalchemy import ColumnElement, or_

from database.models import Booking, PaymentMethod, PaymentStatus


def active_booking_clause() -> ColumnElement[bool]:
    """SQL predicate for bookings that occupy their slot (excluding cancellation)."""
    return or_(
        Booking.payment_method == PaymentMethod.IN_PERSON,
        Booking.payment_status.in_([PaymentStatus.PENDING, PaymentStatus.PAID]),
        Booking.stripe_charge_id.is_not(None),
    )


def is_booking_confirmed_for_notifications(booking: Booking) -> bool:
    return (
        booking.payment_method == PaymentMethod.IN_PERSON
        or booking.payment_status == PaymentStatus.PAID
        or booking.stripe_charge_id is not None
    )
