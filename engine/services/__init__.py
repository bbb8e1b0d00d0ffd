"""
Booking engine services.

Services:
- availability_service: Slot grid computation for a barber's day
- booking_status: Shared "active" / "confirmed" booking predicates
- payment_state_machine: PENDING -> PAID | FAILED transitions and side effects
- reconciliation_service: Stripe webhook + polling sweeps
- waitlist_service: Promotion of waitlisted customers into released slots
- notification_gating: Tenant plan / feature checks for WhatsApp jobs
- notification_jobs: Scheduling and cancellation of notification jobs
- notification_templates: WhatsApp template variables and fallback bodies
- cancellation_service: Customer cancellation with refund
- plan_service: Tenant plan and WhatsApp configuration changes
"""
