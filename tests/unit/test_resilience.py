"""Tests for the circuit breaker and the retry policy in ``settlement.resilience``."""

from __future__ import annotations

from typing import List

import pytest  # type: ignore

from settlement.config import BreakerSettings, RetrySettings
from settlement.errors import (
    BackendUnavailableError,
    CircuitOpenError,
    FailureReason,
    PermanentError,
    TransientError,
)
from settlement.resilience import CircuitBreaker, CircuitState, ResiliencePolicy

from tests.helpers.fakes import no_sleep


class Ticker:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _unavailable() -> BackendUnavailableError:
    return BackendUnavailableError(FailureReason.PROVIDER_UNAVAILABLE, "timeout")


async def _fail() -> None:
    raise _unavailable()


async def _ok() -> str:
    return "ok"


def _breaker(ticker: Ticker, transitions: List[CircuitState] | None = None) -> CircuitBreaker:
    settings = BreakerSettings(
        failure_ratio=0.5, minimum_calls=4, window_seconds=60, cooldown_seconds=30, half_open_max_calls=2
    )
    listener = (lambda name, state: transitions.append(state)) if transitions is not None else None
    return CircuitBreaker("custodian", settings, clock=ticker, listener=listener)


@pytest.mark.asyncio  # type: ignore
async def test_breaker_opens_at_failure_ratio_and_fails_fast() -> None:
    ticker = Ticker()
    transitions: List[CircuitState] = []
    breaker = _breaker(ticker, transitions)
    await breaker.call(_ok)
    await breaker.call(_ok)
    for _ in range(2):
        with pytest.raises(BackendUnavailableError):
            await breaker.call(_fail)
    assert breaker.state == CircuitState.OPEN
    assert transitions == [CircuitState.OPEN]

    calls = []

    async def tracked() -> str:
        calls.append(1)
        return "ok"

    with pytest.raises(CircuitOpenError):
        await breaker.call(tracked)
    assert calls == []


@pytest.mark.asyncio  # type: ignore
async def test_breaker_needs_minimum_calls_before_opening() -> None:
    breaker = _breaker(Ticker())
    for _ in range(3):
        with pytest.raises(BackendUnavailableError):
            await breaker.call(_fail)
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio  # type: ignore
async def test_breaker_half_open_probes_close_it_again() -> None:
    ticker = Ticker()
    transitions: List[CircuitState] = []
    breaker = _breaker(ticker, transitions)
    for _ in range(4):
        with pytest.raises(BackendUnavailableError):
            await breaker.call(_fail)
    ticker.now = 31
    assert breaker.state == CircuitState.HALF_OPEN
    assert await breaker.call(_ok) == "ok"
    assert await breaker.call(_ok) == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert transitions == [CircuitState.OPEN, CircuitState.HALF_OPEN, CircuitState.CLOSED]


@pytest.mark.asyncio  # type: ignore
async def test_breaker_failed_probe_reopens() -> None:
    ticker = Ticker()
    breaker = _breaker(ticker)
    for _ in range(4):
        with pytest.raises(BackendUnavailableError):
            await breaker.call(_fail)
    ticker.now = 31
    with pytest.raises(BackendUnavailableError):
        await breaker.call(_fail)
    assert breaker.state == CircuitState.OPEN


@pytest.mark.asyncio  # type: ignore
async def test_breaker_ignores_permanent_answers() -> None:
    breaker = _breaker(Ticker())

    async def rejected() -> None:
        raise PermanentError(FailureReason.INSUFFICIENT_BALANCE, "empty vault")

    for _ in range(6):
        with pytest.raises(PermanentError):
            await breaker.call(rejected)
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio  # type: ignore
async def test_policy_retries_transient_errors_until_success() -> None:
    delays: List[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    policy = ResiliencePolicy("ledger", RetrySettings(max_attempts=3, initial_delay=1.0, jitter=0.0), sleep=record_sleep)
    outcomes = [_unavailable(), _unavailable()]

    async def flaky() -> str:
        if outcomes:
            raise outcomes.pop(0)
        return "posted"

    assert await policy.call(flaky) == "posted"
    assert delays == [1.0, 2.0]


@pytest.mark.asyncio  # type: ignore
async def test_policy_backoff_is_capped_and_jittered_without_warnings(recwarn) -> None:
    delays: List[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    settings = RetrySettings(max_attempts=5, initial_delay=1.0, max_delay=3.0, jitter=0.5)
    policy = ResiliencePolicy("ledger", settings, sleep=record_sleep)
    with pytest.raises(TransientError):
        await policy.call(_fail)
    assert len(delays) == 4
    for floor, delay in zip([1.0, 2.0, 3.0, 3.0], delays):
        assert floor <= delay <= floor + 0.5
    retry_warnings = [w for w in recwarn if "tenacity" in w.filename or w.filename.endswith("resilience.py")]
    assert retry_warnings == []


@pytest.mark.asyncio  # type: ignore
async def test_policy_gives_up_and_reports_attempts() -> None:
    policy = ResiliencePolicy("ledger", RetrySettings(max_attempts=3), sleep=no_sleep)
    with pytest.raises(TransientError) as info:
        await policy.call(_fail)
    assert info.value.context["attempts"] == 3


@pytest.mark.asyncio  # type: ignore
async def test_policy_does_not_retry_permanent_errors() -> None:
    calls = []

    async def rejected() -> None:
        calls.append(1)
        raise PermanentError(FailureReason.POLICY_DENIED, "denied")

    policy = ResiliencePolicy("custodian", RetrySettings(max_attempts=5), sleep=no_sleep)
    with pytest.raises(PermanentError):
        await policy.call(rejected)
    assert calls == [1]


@pytest.mark.asyncio  # type: ignore
async def test_policy_does_not_retry_an_open_circuit() -> None:
    ticker = Ticker()
    breaker = _breaker(ticker)
    for _ in range(4):
        with pytest.raises(BackendUnavailableError):
            await breaker.call(_fail)
    policy = ResiliencePolicy("custodian", RetrySettings(max_attempts=5), breaker, sleep=no_sleep)
    with pytest.raises(CircuitOpenError) as info:
        await policy.call(_ok)
    assert info.value.context["attempts"] == 1
