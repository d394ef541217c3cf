"""
Retry and circuit-breaking around external calls.

Every adapter that leaves the process (payment backends, accounting API,
custodian, identity resolver) goes through one :class:`ResiliencePolicy`.
The policy wraps each attempt in a per-backend :class:`CircuitBreaker` and
retries :class:`~settlement.errors.TransientError` with exponential backoff
and jitter using ``tenacity``.  A breaker that is open raises
:class:`~settlement.errors.CircuitOpenError` immediately; the policy does not
retry it, so callers with an alternative backend can fall through at once.

Breaker states:

* ``CLOSED``: calls pass.  Outcomes are kept in a rolling time window and the
  breaker opens when at least ``minimum_calls`` were made and the failure
  ratio reaches ``failure_ratio``.
* ``OPEN``: calls fail fast until ``cooldown_seconds`` have passed.
* ``HALF_OPEN``: at most ``half_open_max_calls`` probes are let through; that
  many successes close the breaker, any failure opens it again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Optional, Tuple, Type

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from .config import BreakerSettings, RetrySettings
from .errors import CircuitOpenError, TransientError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


StateListener = Callable[[str, CircuitState], None]


class CircuitBreaker:
    """In-process circuit breaker for one external backend."""

    def __init__(
        self,
        name: str,
        settings: Optional[BreakerSettings] = None,
        *,
        counted_exceptions: Tuple[Type[BaseException], ...] = (TransientError,),
        clock: Callable[[], float] = time.monotonic,
        listener: Optional[StateListener] = None,
    ) -> None:
        settings = settings or BreakerSettings()
        self.name = name
        self.failure_ratio = settings.failure_ratio
        self.minimum_calls = settings.minimum_calls
        self.window_seconds = settings.window_seconds
        self.cooldown_seconds = settings.cooldown_seconds
        self.half_open_max_calls = settings.half_open_max_calls
        self.counted_exceptions = counted_exceptions
        self._clock = clock
        self._listener = listener
        self._state = CircuitState.CLOSED
        self._outcomes: Deque[Tuple[float, bool]] = deque()
        self._opened_at: Optional[float] = None
        self._half_open_inflight = 0
        self._half_open_successes = 0

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    def _cooldown_elapsed(self) -> bool:
        return self._opened_at is not None and self._clock() - self._opened_at >= self.cooldown_seconds

    def _transition(self, state: CircuitState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        if state == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif state == CircuitState.HALF_OPEN:
            self._half_open_inflight = 0
            self._half_open_successes = 0
        elif state == CircuitState.CLOSED:
            self._outcomes.clear()
            self._opened_at = None
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log("Circuit %s: %s -> %s", self.name, previous.value, state.value)
        if self._listener is not None:
            self._listener(self.name, state)

    def _trim(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._outcomes and self._outcomes[0][0] < horizon:
            self._outcomes.popleft()

    def _before_call(self) -> None:
        state = self.state
        if state == CircuitState.OPEN:
            raise CircuitOpenError(self.name)
        if state == CircuitState.HALF_OPEN:
            if self._half_open_inflight >= self.half_open_max_calls:
                raise CircuitOpenError(self.name)
            self._half_open_inflight += 1

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._half_open_inflight = max(0, self._half_open_inflight - 1)
            self._half_open_successes += 1
            if self._half_open_successes >= self.half_open_max_calls:
                self._transition(CircuitState.CLOSED)
            return
        now = self._clock()
        self._outcomes.append((now, True))
        self._trim(now)

    def record_failure(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return
        now = self._clock()
        self._outcomes.append((now, False))
        self._trim(now)
        total = len(self._outcomes)
        if total < self.minimum_calls:
            return
        failures = sum(1 for _, ok in self._outcomes if not ok)
        if failures / total >= self.failure_ratio:
            self._transition(CircuitState.OPEN)

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Run ``func`` under the breaker, counting only configured failures."""
        self._before_call()
        try:
            result = await func(*args, **kwargs)
        except self.counted_exceptions:
            self.record_failure()
            raise
        except BaseException:
            # A definitive answer from the backend (or a cancellation)
            # says nothing about its health.
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_inflight = max(0, self._half_open_inflight - 1)
            raise
        self.record_success()
        return result


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TransientError) and not isinstance(exc, CircuitOpenError)


class ResiliencePolicy:
    """Retry with exponential backoff and jitter, each attempt behind a breaker."""

    def __init__(
        self,
        name: str,
        settings: Optional[RetrySettings] = None,
        breaker: Optional[CircuitBreaker] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        settings = settings or RetrySettings()
        self.name = name
        self.breaker = breaker
        self.max_attempts = settings.max_attempts
        self.initial_delay = settings.initial_delay
        self.max_delay = settings.max_delay
        self.multiplier = settings.multiplier
        self.jitter = settings.jitter
        self._sleep = sleep

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "%s attempt %d/%d failed (%s); retrying",
            self.name,
            retry_state.attempt_number,
            self.max_attempts,
            exc,
        )

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Call ``func`` until it succeeds, fails permanently or attempts run out.

        The last exception is re-raised unchanged; transient ones carry the
        number of attempts made in ``exc.context["attempts"]``.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.initial_delay, max=self.max_delay, exp_base=self.multiplier)
            + wait_random(0, self.jitter),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if self.breaker is not None:
                        result = await self.breaker.call(func, *args, **kwargs)
                    else:
                        result = await func(*args, **kwargs)
        except TransientError as exc:
            exc.context["attempts"] = attempts
            raise
        return result


def build_policy(
    name: str,
    retry: RetrySettings,
    breaker: BreakerSettings,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    listener: Optional[StateListener] = None,
) -> ResiliencePolicy:
    """Policy with its own breaker named after the backend."""
    return ResiliencePolicy(
        name, retry, CircuitBreaker(name, breaker, listener=listener), sleep=sleep
    )


__all__ = ["CircuitState", "CircuitBreaker", "ResiliencePolicy", "build_policy"]
