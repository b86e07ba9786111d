"""Tests for the retry-forever and circuit-breaker policies."""

from __future__ import annotations

import asyncio

import pytest

from mailvault.archive.archive_events import ArchiveAuditEvents, ArchiveEventEmitter
from mailvault.archive.errors import (
    AuthenticationFailedError,
    CircuitOpenError,
    ConnectionFaultError,
    OperationCancelledError,
)
from mailvault.archive.resilience import BreakerState, CircuitBreakerPolicy, RetryForeverPolicy

from tests.archive.support import FakeClock, FakeSleeper, RecordingRecorder


class FlakyOperation:
    """Fails with connection resets ``failures`` times, then succeeds."""

    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.calls = 0
        self.error = error or ConnectionResetError("connection reset by peer")

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "done"


# ============================================================================
# RetryForeverPolicy
# ============================================================================


def test_delay_curve_doubles_up_to_ceiling():
    """Test the backoff doubles up to its ceiling."""
    policy = RetryForeverPolicy(base_delay=2, max_delay=300)

    delays = [policy.delay_for(attempt) for attempt in range(1, 11)]

    assert delays == [2, 4, 8, 16, 32, 64, 128, 256, 300, 300]


def test_jitter_never_exceeds_ceiling():
    """Test jittered delays stay under the ceiling."""
    policy = RetryForeverPolicy(base_delay=2, max_delay=10, jitter=True)

    assert all(policy.delay_for(attempt) <= 10 for attempt in range(1, 20))


@pytest.mark.asyncio
async def test_repeated_resets_retry_until_fault_clears():
    """Test repeated resets are retried until the operation succeeds."""
    sleeper = FakeSleeper()
    recorder = RecordingRecorder()
    policy = RetryForeverPolicy(base_delay=2, max_delay=60, sleep=sleeper, events=ArchiveEventEmitter(recorder))
    operation = FlakyOperation(failures=12)

    result = await policy.execute(operation)

    assert result == "done"
    assert operation.calls == 13
    assert policy.attempts == 12
    increasing = sleeper.delays[: sleeper.delays.index(60) + 1]
    assert all(a < b for a, b in zip(increasing, increasing[1:]))
    assert set(sleeper.delays[len(increasing):]) == {60}
    assert recorder.actions().count(ArchiveAuditEvents.RETRY_ATTEMPTED) == 12


@pytest.mark.asyncio
async def test_authentication_failure_is_not_retried():
    """Test authentication failures are not retried."""
    sleeper = FakeSleeper()
    policy = RetryForeverPolicy(sleep=sleeper)
    operation = FlakyOperation(failures=1, error=AuthenticationFailedError("bad password"))

    with pytest.raises(AuthenticationFailedError):
        await policy.execute(operation)

    assert operation.calls == 1
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_non_connection_errors_are_retried_too():
    """Test unexpected errors are retried."""
    sleeper = FakeSleeper()
    policy = RetryForeverPolicy(sleep=sleeper)

    assert await policy.execute(FlakyOperation(failures=2, error=RuntimeError("unexpected"))) == "done"
    assert sleeper.delays == [2, 4]


@pytest.mark.asyncio
async def test_circuit_open_waits_remaining_cooldown():
    """Test an open circuit waits out its remaining cooldown."""
    sleeper = FakeSleeper()
    policy = RetryForeverPolicy(sleep=sleeper)

    await policy.execute(FlakyOperation(failures=1, error=CircuitOpenError(42.5)))

    assert sleeper.delays == [42.5]


@pytest.mark.asyncio
async def test_cancel_event_interrupts_backoff_wait():
    """Test cancellation interrupts a backoff wait."""
    cancel = asyncio.Event()

    async def slow_sleep(delay: float) -> None:
        await asyncio.sleep(3600)

    policy = RetryForeverPolicy(sleep=slow_sleep)

    async def fail_then_cancel() -> None:
        asyncio.get_running_loop().call_soon(cancel.set)
        raise ConnectionFaultError("down")

    with pytest.raises(OperationCancelledError):
        await asyncio.wait_for(policy.execute(fail_then_cancel, cancel), timeout=5)


# ============================================================================
# CircuitBreakerPolicy
# ============================================================================


@pytest.mark.asyncio
async def test_breaker_opens_after_threshold_and_fails_fast():
    """Test the breaker opens at the threshold and then fails fast."""
    clock = FakeClock()
    recorder = RecordingRecorder()
    breaker = CircuitBreakerPolicy(failure_threshold=3, cooldown_seconds=120, clock=clock, events=ArchiveEventEmitter(recorder))
    operation = FlakyOperation(failures=100)

    for _ in range(3):
        with pytest.raises(ConnectionResetError):
            await breaker.execute(operation)

    assert breaker.state is BreakerState.OPEN
    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.execute(operation)
    assert operation.calls == 3
    assert excinfo.value.retry_after == pytest.approx(120)
    assert ArchiveAuditEvents.BREAKER_OPENED in recorder.actions()


@pytest.mark.asyncio
async def test_breaker_half_open_trial_closes_on_success():
    """Test a successful half-open trial closes the breaker."""
    clock = FakeClock()
    recorder = RecordingRecorder()
    breaker = CircuitBreakerPolicy(failure_threshold=2, cooldown_seconds=120, clock=clock, events=ArchiveEventEmitter(recorder))
    operation = FlakyOperation(failures=2)
    for _ in range(2):
        with pytest.raises(ConnectionResetError):
            await breaker.execute(operation)

    clock.advance(60)
    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.execute(operation)
    assert excinfo.value.retry_after == pytest.approx(60)

    clock.advance(60)
    assert await breaker.execute(operation) == "done"
    assert breaker.state is BreakerState.CLOSED
    assert breaker.failure_count == 0
    assert ArchiveAuditEvents.BREAKER_CLOSED in recorder.actions()


@pytest.mark.asyncio
async def test_breaker_half_open_failure_reopens():
    """Test a failed half-open trial reopens the breaker."""
    clock = FakeClock()
    breaker = CircuitBreakerPolicy(failure_threshold=2, cooldown_seconds=30, clock=clock)
    operation = FlakyOperation(failures=100)
    for _ in range(2):
        with pytest.raises(ConnectionResetError):
            await breaker.execute(operation)

    clock.advance(30)
    with pytest.raises(ConnectionResetError):
        await breaker.execute(operation)

    assert breaker.state is BreakerState.OPEN
    assert breaker.remaining_cooldown() == pytest.approx(30)


@pytest.mark.asyncio
async def test_breaker_ignores_authentication_failures():
    """Test authentication failures do not count toward the threshold."""
    breaker = CircuitBreakerPolicy(failure_threshold=1, clock=FakeClock())

    with pytest.raises(AuthenticationFailedError):
        await breaker.execute(FlakyOperation(failures=1, error=AuthenticationFailedError("nope")))

    assert breaker.state is BreakerState.CLOSED
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_success_resets_consecutive_failure_count():
    """Test a success resets the failure count."""
    breaker = CircuitBreakerPolicy(failure_threshold=3, clock=FakeClock())
    with pytest.raises(ConnectionResetError):
        await breaker.execute(FlakyOperation(failures=1))

    await breaker.execute(FlakyOperation(failures=0))

    assert breaker.failure_count == 0


# ============================================================================
# Composition
# ============================================================================


@pytest.mark.asyncio
async def test_retry_wrapping_breaker_recovers_after_outage():
    """Test retry around the breaker recovers after an outage."""
    clock = FakeClock()
    sleeper = FakeSleeper(clock)
    breaker = CircuitBreakerPolicy(failure_threshold=5, cooldown_seconds=120, clock=clock)
    retry = RetryForeverPolicy(base_delay=2, max_delay=300, sleep=sleeper)
    operation = FlakyOperation(failures=8)

    result = await retry.execute(lambda: breaker.execute(operation))

    assert result == "done"
    assert breaker.state is BreakerState.CLOSED
    # The fifth failure opens the breaker; the next wait is the rest of its cooldown.
    assert sleeper.delays[:5] == [2, 4, 8, 16, 32]
    assert sleeper.delays[5] == pytest.approx(120 - 32)
    assert sleeper.delays[6:] == [128, 256, 300]
