"""
Circuit breakers for outbound provider calls.

Twilio (WhatsApp sends) and Stripe (checkout, session lookups, refunds) each
get one breaker. When a provider keeps failing, the breaker opens and calls
fail fast with pybreaker.CircuitBreakerError:
- the notification dispatcher counts it as a failed attempt and reschedules
  the job with backoff
- booking and reconciliation paths report the provider as unavailable

States: CLOSED (calls pass), OPEN (fail fast for reset_timeout seconds),
HALF_OPEN (next call probes the provider).

Usage:
    from shared.circuit_breaker import call_with_breaker, twilio_breaker

    result = await call_with_breaker(twilio_breaker, client.post, url, data=payload)
"""

import logging
import time
from typing import Any, Callable

import pybreaker
import stripe

logger = logging.getLogger(__name__)

# Per-breaker bookkeeping kept outside pybreaker's state storage
_failure_counts: dict[str, int] = {}
_opened_at: dict[str, float] = {}


class CircuitBreakerLogger(pybreaker.CircuitBreakerListener):
    """Log breaker transitions and remember when each circuit opened."""

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state, new_state) -> None:
        transition = f"{old_state.name if old_state else 'none'} -> {new_state.name}"
        if new_state.name == pybreaker.STATE_OPEN:
            _opened_at[cb.name] = time.monotonic()
            logger.warning(
                f"Circuit breaker '{cb.name}' opened | {transition} | "
                f"failing fast for {cb.reset_timeout}s"
            )
        else:
            if new_state.name == pybreaker.STATE_CLOSED:
                _failure_counts[cb.name] = 0
            logger.info(f"Circuit breaker '{cb.name}' | {transition}")


_breakers: dict[str, pybreaker.CircuitBreaker] = {}
_listener = CircuitBreakerLogger()


def get_circuit_breaker(
    name: str,
    fail_max: int = 5,
    reset_timeout: int = 30,
    exclude: list[type] | None = None,
) -> pybreaker.CircuitBreaker:
    """
    Get or create the named breaker (one instance per name per process).

    Exceptions listed in `exclude` are caller errors (bad request, declined
    card) and never count toward opening the circuit.
    """
    if name not in _breakers:
        _breakers[name] = pybreaker.CircuitBreaker(
            name=name,
            fail_max=fail_max,
            reset_timeout=reset_timeout,
            exclude=exclude or [],
            listeners=[_listener],
        )
        logger.debug(f"Circuit breaker registered | name={name} | fail_max={fail_max}")
    return _breakers[name]


# =============================================================================
# Provider breakers
# =============================================================================

twilio_breaker = get_circuit_breaker(name="twilio", fail_max=5, reset_timeout=60)

# Request-level Stripe errors mean our input was wrong, not that Stripe is down
stripe_breaker = get_circuit_breaker(
    name="stripe",
    fail_max=5,
    reset_timeout=30,
    exclude=[stripe.InvalidRequestError, stripe.CardError, stripe.AuthenticationError],
)


def _reset_timeout_elapsed(breaker: pybreaker.CircuitBreaker) -> bool:
    opened_at = _opened_at.get(breaker.name)
    if opened_at is None:
        # Opened before this process registered the listener
        _opened_at[breaker.name] = time.monotonic()
        return False
    return time.monotonic() >= opened_at + breaker.reset_timeout


def get_failure_count(breaker: pybreaker.CircuitBreaker) -> int:
    """Consecutive system errors seen by call_with_breaker since the last success."""
    return _failure_counts.get(breaker.name, 0)


async def call_with_breaker(
    breaker: pybreaker.CircuitBreaker,
    func: Callable,
    *args,
    **kwargs,
) -> Any:
    """
    Call async function with circuit breaker protection (native asyncio).

    pybreaker's call_async() requires Tornado, so the failure count and the
    open timestamp live in this module and transitions go through the
    breaker's open()/half_open()/close():
    - Fail fast when circuit is OPEN, probe once reset_timeout has elapsed
    - Count system errors toward fail_max and open the circuit when reached
    - A failure while HALF_OPEN reopens the circuit

    Raises:
        pybreaker.CircuitBreakerError: If circuit is open
        Exception: Any exception raised by func
    """
    if breaker.current_state == pybreaker.STATE_OPEN:
        if not _reset_timeout_elapsed(breaker):
            logger.warning(f"Circuit breaker '{breaker.name}' is OPEN, failing fast")
            raise pybreaker.CircuitBreakerError(breaker)
        breaker.half_open()

    try:
        result = await func(*args, **kwargs)

        if breaker.current_state == pybreaker.STATE_HALF_OPEN:
            breaker.close()
            logger.info(f"Circuit breaker '{breaker.name}' recovered, closing circuit")
        _failure_counts[breaker.name] = 0

        return result

    except pybreaker.CircuitBreakerError:
        raise

    except Exception as e:
        if breaker.is_system_error(e):
            failures = get_failure_count(breaker) + 1
            _failure_counts[breaker.name] = failures
            logger.warning(
                f"Circuit breaker '{breaker.name}' recorded failure | failures={failures}: "
                f"{type(e).__name__}: {e}"
            )

            if breaker.current_state == pybreaker.STATE_HALF_OPEN:
                breaker.open()
                logger.warning(
                    f"Circuit breaker '{breaker.name}' reopened after failure in half-open state"
                )
            elif failures >= breaker.fail_max:
                breaker.open()

        raise


def get_breaker_status() -> dict[str, dict[str, Any]]:
    """
    Get status of all circuit breakers for monitoring/health checks.

    Returns:
        Dict of {name: {state, fail_counter, reset_timeout}}
    """
    return {
        name: {
            "state": breaker.current_state,
            "fail_counter": get_failure_count(breaker),
            "reset_timeout": breaker.reset_timeout,
        }
        for name, breaker in _breakers.items()
    }
