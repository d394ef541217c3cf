"""Tests for payment proof verification.

The verifier routes a proof to the backends that can look it up, falls
through to the next one when a backend is unreachable and judges the
observation it gets back.  All backends here are offline fakes.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest  # type: ignore

from settlement.clients.payment_backends import ProofKind
from settlement.config import RetrySettings, VerificationSettings
from settlement.errors import FailureReason, TransientError
from settlement.models import Chain, PaymentStatus
from settlement.resilience import ResiliencePolicy
from settlement.services.payment_verifier import PaymentVerifier
from settlement.services.verification_cache import VerificationCache

from tests.helpers.fakes import PROCESSOR_ID, TX_HASH, FakeBackend, FixedClock, no_sleep, observation

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _verifier(*backends: FakeBackend, cache: VerificationCache | None = None) -> PaymentVerifier:
    policies = {
        b.name: ResiliencePolicy(b.name, RetrySettings(max_attempts=2), sleep=no_sleep) for b in backends
    }
    return PaymentVerifier(list(backends), policies, VerificationSettings(), cache, FixedClock(NOW))


@pytest.mark.asyncio  # type: ignore
async def test_valid_chain_payment() -> None:
    indexer = FakeBackend("bscscan", {TX_HASH: observation("1010.00")})
    result = await _verifier(indexer).verify(TX_HASH, Chain.BSC, Decimal("1010.00"))
    assert result.valid is True
    assert result.provider == "bscscan"
    assert result.confirmed_amount == Decimal("1010.00")
    assert result.confirmation_count == 15
    assert result.checks.all_passed()
    assert result.failure_reason is None


@pytest.mark.asyncio  # type: ignore
async def test_three_of_twelve_confirmations_is_insufficient() -> None:
    indexer = FakeBackend(
        "etherscan",
        {TX_HASH: observation("1010.00", network=Chain.ETH, confirmations=3, provider="etherscan")},
    )
    result = await _verifier(indexer).verify(TX_HASH, Chain.ETH, Decimal("1010.00"))
    assert result.valid is False
    assert result.failure_reason == FailureReason.INSUFFICIENT_CONFIRMATIONS
    assert result.confirmation_count == 3
    assert result.checks.status and result.checks.amount and not result.checks.confirmations


@pytest.mark.asyncio  # type: ignore
async def test_missing_and_malformed_proofs() -> None:
    verifier = _verifier(FakeBackend("bscscan"))
    missing = await verifier.verify(None, Chain.BSC)
    assert missing.failure_reason == FailureReason.PROOF_MISSING
    malformed = await verifier.verify("not-a-proof", Chain.BSC)
    assert malformed.failure_reason == FailureReason.PROOF_INVALID_FORMAT


@pytest.mark.asyncio  # type: ignore
@pytest.mark.parametrize(
    "obs, expected, reason",
    [
        (observation("1010.00", status=PaymentStatus.PENDING), "1010.00", FailureReason.PAYMENT_NOT_COMPLETE),
        (observation("1010.00", currency="USDC"), "1010.00", FailureReason.INVALID_TOKEN),
        (observation("1010.00", token_contract="0xfeed"), "1010.00", FailureReason.INVALID_TOKEN),
        (observation("900.00"), "1010.00", FailureReason.AMOUNT_MISMATCH),
        (
            observation("1010.00", timestamp=NOW - timedelta(hours=2)),
            "1010.00",
            FailureReason.TIMESTAMP_EXPIRED,
        ),
    ],
)
async def test_failure_reasons(obs, expected, reason) -> None:
    indexer = FakeBackend("bscscan", {TX_HASH: obs})
    result = await _verifier(indexer).verify(TX_HASH, Chain.BSC, Decimal(expected))
    assert result.valid is False
    assert result.failure_reason == reason


@pytest.mark.asyncio  # type: ignore
async def test_amount_tolerance_and_overpayment() -> None:
    indexer = FakeBackend(
        "bscscan",
        {
            TX_HASH: observation("1009.00"),
            "ef" * 32: observation("1500.00", payment_id="ef" * 32),
        },
    )
    verifier = _verifier(indexer)
    # 0.1 % of 1010.00 is 1.01, so 1009.00 is inside the tolerance
    assert (await verifier.verify(TX_HASH, Chain.BSC, Decimal("1010.00"))).valid
    assert (await verifier.verify("ef" * 32, Chain.BSC, Decimal("1010.00"))).valid


@pytest.mark.asyncio  # type: ignore
async def test_falls_through_to_processor_when_indexer_is_down() -> None:
    indexer = FakeBackend("bscscan", down=True)
    processor = FakeBackend(
        "nowpayments",
        {TX_HASH: observation("1010.00", confirmations=None, provider="nowpayments")},
        kinds=(ProofKind.TX_HASH, ProofKind.PROCESSOR_ID),
    )
    result = await _verifier(indexer, processor).verify(TX_HASH, Chain.BSC, Decimal("1010.00"))
    assert result.valid is True
    assert result.provider == "nowpayments"
    # Two attempts at the indexer, then one at the processor
    assert len(indexer.calls) == 2
    assert processor.calls == [TX_HASH]


@pytest.mark.asyncio  # type: ignore
async def test_processor_id_goes_to_processor_only() -> None:
    indexer = FakeBackend("bscscan")
    processor = FakeBackend(
        "nowpayments",
        {PROCESSOR_ID: observation("50.00", confirmations=None, provider="nowpayments", payment_id="5077263251")},
        kinds=(ProofKind.PROCESSOR_ID,),
    )
    result = await _verifier(indexer, processor).verify(PROCESSOR_ID, Chain.TRON, Decimal("50.00"))
    assert result.valid is True
    assert indexer.calls == []


@pytest.mark.asyncio  # type: ignore
async def test_every_backend_down_is_transient() -> None:
    verifier = _verifier(FakeBackend("bscscan", down=True), FakeBackend("nowpayments", down=True))
    with pytest.raises(TransientError) as info:
        await verifier.verify(TX_HASH, Chain.BSC, Decimal("10"))
    assert info.value.reason == FailureReason.VERIFICATION_ERROR


@pytest.mark.asyncio  # type: ignore
async def test_unknown_payment_is_not_complete() -> None:
    result = await _verifier(FakeBackend("bscscan")).verify(TX_HASH, Chain.BSC, Decimal("10"))
    assert result.valid is False
    assert result.failure_reason == FailureReason.PAYMENT_NOT_COMPLETE


@pytest.mark.asyncio  # type: ignore
async def test_results_are_cached_but_lookup_errors_are_not() -> None:
    cache = VerificationCache(ttl_seconds=600)
    indexer = FakeBackend("bscscan", {TX_HASH: observation("1010.00")})
    verifier = _verifier(indexer, cache=cache)
    first = await verifier.verify(TX_HASH, Chain.BSC, Decimal("1010.00"))
    second = await verifier.verify(TX_HASH, Chain.BSC, Decimal("1010.00"))
    assert first == second
    assert indexer.calls == [TX_HASH]

    down = FakeBackend("bscscan", down=True)
    failing = _verifier(down, cache=VerificationCache(ttl_seconds=600))
    for _ in range(2):
        with pytest.raises(TransientError):
            await failing.verify("ef" * 32, Chain.BSC, Decimal("1"))
    assert len(down.calls) == 4
