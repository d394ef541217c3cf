from __future__ import annotations

from decimal import Decimal

import pytest  # type: ignore

from settlement.errors import FailureReason, TransientError, UnbalancedPostingError
from settlement.models import (
    AccountKind,
    FeeBreakdown,
    Intent,
    JournalLine,
    JournalPosting,
    Side,
    balance_deltas,
)
from settlement.models_events import SettlementInstruction
from settlement.resilience import ResiliencePolicy
from settlement.services.ledger_poster import LedgerPoster

from tests.helpers.fakes import FlakyLedger, no_sleep


def _issuance(**overrides) -> SettlementInstruction:
    fields = dict(
        event_id="evt-1",
        match_id="m-1",
        intent=Intent.TREASURY_ISSUANCE,
        sender=None,
        receiver="usr-alice",
        buyer_id="usr-alice",
        seller_id="usr-treasury-vault-system",
        amount=1000,
        paid=Decimal("1010.00"),
        principal=Decimal("1000.00"),
        fees=FeeBreakdown(issuance=Decimal("10.00")),
    )
    fields.update(overrides)
    return SettlementInstruction(**fields)


def _purchase(**overrides) -> SettlementInstruction:
    fields = dict(
        event_id="evt-2",
        match_id="m-2",
        intent=Intent.MARKET_PURCHASE,
        sender="marketplace-settlement-locker",
        receiver="usr-alice",
        buyer_id="usr-alice",
        seller_id="usr-bob",
        amount=40,
        price_per_unit=Decimal("1.5"),
        paid=Decimal("61.00"),
        principal=Decimal("60.0"),
    )
    fields.update(overrides)
    return SettlementInstruction(**fields)


@pytest.fixture
def ledger() -> FlakyLedger:
    return FlakyLedger()


@pytest.fixture
def poster(store, ledger, settings, clock) -> LedgerPoster:
    policy = ResiliencePolicy("ledger", settings.retry, sleep=no_sleep)
    return LedgerPoster(store, ledger, policy, settings, clock)


@pytest.mark.parametrize(
    "instruction",
    [
        _issuance(),
        _purchase(),
        _purchase(fees=FeeBreakdown(liquidity=Decimal("1.20")), paid=Decimal("61.20")),
        SettlementInstruction(
            event_id="evt-3",
            match_id="m-3",
            intent=Intent.MARKET_SELL,
            sender="usr-bob",
            receiver="marketplace-settlement-locker",
            buyer_id="marketplace-settlement-locker",
            seller_id="usr-bob",
            amount=5000,
            paid=Decimal("100.00"),
            fees=FeeBreakdown(listing=Decimal("100.00")),
        ),
        SettlementInstruction(
            event_id="evt-4",
            match_id="m-4",
            intent=Intent.PEER_TRANSFER,
            sender="usr-bob",
            receiver="usr-carol",
            buyer_id="usr-carol",
            seller_id="usr-bob",
            amount=7,
        ),
    ],
)
def test_every_mapping_balances(poster, instruction) -> None:
    posting = poster.build_posting(instruction)
    assert posting.is_balanced()
    assert posting.posting_id == instruction.idempotency_key


def test_issuance_balance_deltas(poster) -> None:
    deltas = balance_deltas([poster.build_posting(_issuance())])
    assert deltas["assurance-fund"] == {"USDT": Decimal("1010.00")}
    assert deltas["usr-alice"] == {"SPECIES": Decimal("1000"), "USDT": Decimal("-1000.00")}
    assert deltas["usr-treasury-vault-system"] == {"SPECIES": Decimal("-1000"), "USDT": Decimal("-10.00")}


def test_excess_payment_goes_to_refund_payable(poster) -> None:
    posting = poster.build_posting(_purchase())
    refund = [l for l in posting.lines if l.kind == AccountKind.REFUND_PAYABLE]
    assert [(l.owner, l.amount) for l in refund] == [("usr-alice", Decimal("1.00"))]


@pytest.mark.asyncio  # type: ignore
async def test_post_is_idempotent(poster, ledger, store) -> None:
    first = await poster.post(_issuance())
    second = await poster.post(_issuance())
    assert first.posting_id == second.posting_id
    assert first.external_ref == second.external_ref
    assert ledger.calls == ["evt-1:m-1"]
    assert "assurance-fund/cash" in first.accounts_affected
    assert len(await store.postings_for_event("evt-1")) == 1


@pytest.mark.asyncio  # type: ignore
async def test_unbalanced_posting_is_never_submitted(poster, ledger) -> None:
    posting = JournalPosting(
        posting_id="bad",
        event_id="evt-x",
        match_id="m-x",
        lines=(
            JournalLine(owner="a", kind=AccountKind.CASH, currency="USDT", amount=Decimal("10"), side=Side.DEBIT),
            JournalLine(owner="b", kind=AccountKind.CASH, currency="USDT", amount=Decimal("9"), side=Side.CREDIT),
        ),
        description="off by one",
    )
    with pytest.raises(UnbalancedPostingError) as info:
        await poster.submit(posting)
    assert info.value.reason == FailureReason.LEDGER_IMBALANCE
    assert info.value.imbalances == {"USDT": Decimal("1")}
    assert ledger.calls == []


@pytest.mark.asyncio  # type: ignore
async def test_ledger_outage_is_retried(poster, ledger, settings) -> None:
    ledger.failures = 2
    posted = await poster.post(_issuance())
    assert posted.external_ref.startswith("paper-")

    ledger.failures = settings.retry.max_attempts
    with pytest.raises(TransientError) as info:
        await poster.post(_issuance(event_id="evt-9"))
    assert info.value.context["attempts"] == settings.retry.max_attempts


@pytest.mark.asyncio  # type: ignore
async def test_reversal_and_finalize(poster, store) -> None:
    await poster.post(_purchase())
    original = await store.get_posting("evt-2:m-2")
    reversal = await poster.reverse(original)
    assert reversal.reverses == original.posting_id
    assert not any(balance_deltas([original, reversal]).values())

    final = await poster.finalize(_purchase())
    assert final is not None and final.posting_id == "evt-2:m-2:final"
    assert balance_deltas([final]) == {"usr-bob": {}}
    assert await poster.finalize(_issuance()) is None
