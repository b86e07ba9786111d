"""Retry-forever and circuit-breaker policies for archive sessions.

The two policies are independent and composed by wrapping::

    await retry.execute(lambda: breaker.execute(unit))

The breaker fails fast with ``CircuitOpenError`` while open; the retry policy
waits out the remaining cooldown and tries again. Authentication failures and
cancellation pass through both policies untouched.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from .archive_events import ArchiveAuditEvents, ArchiveEventEmitter
from .errors import CircuitOpenError, FailureKind, OperationCancelledError, classify_exception

logger = logging.getLogger(__name__)

T = TypeVar("T")

NON_RETRYABLE = frozenset({FailureKind.AUTHENTICATION, FailureKind.CANCELLED})


# ---------------------------------------------------------------------------
# Retry forever
# ---------------------------------------------------------------------------


@dataclass
class RetryForeverPolicy:
    """Exponential backoff with no attempt limit."""

    base_delay: float = 2.0
    max_delay: float = 300.0
    multiplier: float = 2.0
    jitter: bool = False
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    events: ArchiveEventEmitter = field(default_factory=ArchiveEventEmitter)

    attempts: int = field(default=0, init=False)

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (self.multiplier ** max(0, attempt - 1)), self.max_delay)
        if self.jitter:
            # ±25% jitter, still capped
            delay = min(delay * (0.75 + random.random() * 0.5), self.max_delay)
        return delay

    def is_retryable(self, exc: BaseException) -> bool:
        return classify_exception(exc) not in NON_RETRYABLE

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> T:
        """Run ``operation`` until it succeeds.

        Raises:
            AuthenticationFailedError: Propagated on the first occurrence
            OperationCancelledError: ``cancel_event`` was set while waiting
        """
        self.attempts = 0
        while True:
            try:
                return await operation()
            except Exception as exc:  # noqa: BLE001
                if not self.is_retryable(exc):
                    raise
                self.attempts += 1
                if isinstance(exc, CircuitOpenError):
                    delay = exc.retry_after
                else:
                    delay = self.delay_for(self.attempts)
                logger.warning(
                    "Session attempt %d failed (%s: %s); retrying in %.1fs",
                    self.attempts,
                    type(exc).__name__,
                    exc,
                    delay,
                    extra={"attempt": self.attempts, "delay_seconds": delay},
                )
                self.events.emit(
                    ArchiveAuditEvents.RETRY_ATTEMPTED,
                    status="retrying",
                    attempt=self.attempts,
                    delay_seconds=round(delay, 2),
                    error_type=type(exc).__name__,
                )
                await self._pause(delay, cancel_event, exc)

    async def _pause(
        self,
        delay: float,
        cancel_event: Optional[asyncio.Event],
        cause: BaseException,
    ) -> None:
        if cancel_event is None:
            await self.sleep(delay)
            return
        if cancel_event.is_set():
            raise OperationCancelledError("Cancelled before retry") from cause

        sleeper = asyncio.ensure_future(self.sleep(delay))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
        if cancel_event.is_set():
            raise OperationCancelledError("Cancelled while waiting to retry") from cause


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerPolicy:
    """Fails fast for a cooldown window after consecutive failures."""

    failure_threshold: int = 5
    cooldown_seconds: float = 120.0
    clock: Callable[[], float] = time.monotonic
    events: ArchiveEventEmitter = field(default_factory=ArchiveEventEmitter)

    state: BreakerState = field(default=BreakerState.CLOSED, init=False)
    failure_count: int = field(default=0, init=False)
    opened_at: Optional[float] = field(default=None, init=False)

    def remaining_cooldown(self) -> float:
        if self.state is not BreakerState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self.clock() - self.opened_at))

    def can_attempt(self) -> bool:
        """Check if an attempt is permitted, moving OPEN to HALF_OPEN after cooldown."""
        if self.state is BreakerState.OPEN:
            if self.remaining_cooldown() > 0:
                return False
            self.state = BreakerState.HALF_OPEN
            logger.info("Circuit breaker half-open; permitting a trial attempt")
        return True

    def record_success(self) -> None:
        was_tripped = self.state is not BreakerState.CLOSED
        self.failure_count = 0
        self.opened_at = None
        self.state = BreakerState.CLOSED
        if was_tripped:
            logger.info("Circuit breaker closed")
            self.events.emit(ArchiveAuditEvents.BREAKER_CLOSED)

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.state is BreakerState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self._open()

    def _open(self) -> None:
        self.state = BreakerState.OPEN
        self.opened_at = self.clock()
        logger.warning(
            "Circuit breaker opened after %d consecutive failures; cooling down for %.0fs",
            self.failure_count,
            self.cooldown_seconds,
            extra={"failure_count": self.failure_count},
        )
        self.events.emit(
            ArchiveAuditEvents.BREAKER_OPENED,
            status="open",
            failure_count=self.failure_count,
            cooldown_seconds=self.cooldown_seconds,
        )

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        if not self.can_attempt():
            raise CircuitOpenError(self.remaining_cooldown())
        try:
            result = await operation()
        except Exception as exc:  # noqa: BLE001
            if classify_exception(exc) not in NON_RETRYABLE:
                self.record_failure()
            raise
        self.record_success()
        return result


__all__ = ["BreakerState", "CircuitBreakerPolicy", "RetryForeverPolicy"]
