"""Unit tests for shared/circuit_breaker.py."""

from unittest.mock import AsyncMock

import pybreaker
import pytest

from shared.circuit_breaker import (
    call_with_breaker,
    get_breaker_status,
    get_circuit_breaker,
    get_failure_count,
)


@pytest.fixture
def breaker():
    breaker = get_circuit_breaker("unit-test", fail_max=2, reset_timeout=60)
    breaker.close()
    yield breaker
    breaker.close()


class TestCallWithBreaker:
    @pytest.mark.asyncio
    async def test_success_passes_result_through(self, breaker):
        func = AsyncMock(return_value="ok")

        assert await call_with_breaker(breaker, func, 1, key="v") == "ok"
        func.assert_awaited_once_with(1, key="v")

    @pytest.mark.asyncio
    async def test_opens_after_fail_max(self, breaker):
        func = AsyncMock(side_effect=ConnectionError("down"))

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await call_with_breaker(breaker, func)

        assert breaker.current_state == pybreaker.STATE_OPEN
        with pytest.raises(pybreaker.CircuitBreakerError):
            await call_with_breaker(breaker, func)
        assert func.await_count == 2

    @pytest.mark.asyncio
    async def test_success_resets_failure_counter(self, breaker):
        failing = AsyncMock(side_effect=ConnectionError("down"))
        with pytest.raises(ConnectionError):
            await call_with_breaker(breaker, failing)

        await call_with_breaker(breaker, AsyncMock(return_value=None))

        assert get_failure_count(breaker) == 0

    def test_registry_is_singleton_and_reported(self, breaker):
        assert get_circuit_breaker("unit-test") is breaker
        assert get_breaker_status()["unit-test"]["state"] == pybreaker.STATE_CLOSED

    @pytest.mark.asyncio
    async def test_status_reports_consecutive_failures(self, breaker):
        with pytest.raises(ConnectionError):
            await call_with_breaker(breaker, AsyncMock(side_effect=ConnectionError("down")))

        assert get_failure_count(breaker) == 1
        assert get_breaker_status()["unit-test"]["fail_counter"] == 1

    @pytest.mark.asyncio
    async def test_close_clears_failure_count(self, breaker):
        with pytest.raises(ConnectionError):
            await call_with_breaker(breaker, AsyncMock(side_effect=ConnectionError("down")))
        breaker.open()
        breaker.close()

        assert get_failure_count(breaker) == 0


class TestRecovery:
    @pytest.mark.asyncio
    async def test_probe_after_reset_timeout_closes_circuit(self):
        breaker = get_circuit_breaker("unit-test-probe", fail_max=1, reset_timeout=0)
        breaker.close()

        with pytest.raises(ConnectionError):
            await call_with_breaker(breaker, AsyncMock(side_effect=ConnectionError("down")))
        assert breaker.current_state == pybreaker.STATE_OPEN

        assert await call_with_breaker(breaker, AsyncMock(return_value="up")) == "up"
        assert breaker.current_state == pybreaker.STATE_CLOSED

    @pytest.mark.asyncio
    async def test_excluded_errors_do_not_count(self):
        breaker = get_circuit_breaker("unit-test-excluded", fail_max=1, exclude=[ValueError])
        breaker.close()

        with pytest.raises(ValueError):
            await call_with_breaker(breaker, AsyncMock(side_effect=ValueError("bad input")))

        assert breaker.current_state == pybreaker.STATE_CLOSED
        assert get_failure_count(breaker) == 0

    @pytest.mark.asyncio
    async def test_failure_while_half_open_reopens_circuit(self):
        breaker = get_circuit_breaker("unit-test-reopen", fail_max=3, reset_timeout=0)
        breaker.close()
        breaker.open()

        with pytest.raises(ConnectionError):
            await call_with_breaker(breaker, AsyncMock(side_effect=ConnectionError("still down")))

        assert breaker.current_state == pybreaker.STATE_OPEN

    @pytest.mark.asyncio
    async def test_manually_opened_circuit_fails_fast_until_timeout(self):
        breaker = get_circuit_breaker("unit-test-manual", fail_max=3, reset_timeout=60)
        breaker.close()
        breaker.open()
        func = AsyncMock(return_value="up")

        with pytest.raises(pybreaker.CircuitBreakerError):
            await call_with_breaker(breaker, func)

        func.assert_not_awaited()
        breaker.close()
