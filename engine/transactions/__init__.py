"""
Atomic transaction handlers.

Transaction handlers encapsulate multi-step operations that must execute
atomically (all succeed or all rollback) against PostgreSQL, coordinating
with Stripe Checkout when the tenant takes online payments.
"""
