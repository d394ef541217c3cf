"""Reconciler tests: completion, oracle mismatch and compensation."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest  # type: ignore

from settlement.clients.identity import StaticIdentityResolver
from settlement.config import RetrySettings
from settlement.errors import FailureReason, Stage
from settlement.models import (
    EventState,
    Intent,
    Listing,
    ListingStatus,
    ReceiptStatus,
    Request,
    ReservationStatus,
    VerificationResult,
)
from settlement.models_events import (
    OrderClassified,
    OrderCompleted,
    OrderFailed,
    OwnershipChanged,
    StageFailed,
)
from settlement.resilience import ResiliencePolicy
from settlement.services.ledger_poster import LedgerPoster
from settlement.services.matching_engine import MatchingEngine
from settlement.services.reconciler import Reconciler
from settlement.services.transfer_executor import TransferExecutor

from tests.helpers.fakes import TX_HASH, BlindOracleCustodian, FlakyCustodian, FlakyLedger, no_sleep


class Harness:
    def __init__(self, store, settings, clock, custodian) -> None:
        policy = ResiliencePolicy("test", RetrySettings(max_attempts=1), sleep=no_sleep)
        self.store = store
        self.custodian = custodian
        self.ledger_client = FlakyLedger()
        self.engine = MatchingEngine(store, settings, clock)
        self.ledger = LedgerPoster(store, self.ledger_client, policy, settings, clock)
        self.transfers = TransferExecutor(
            store, custodian, StaticIdentityResolver(settings.accounts), policy, accounts=settings.accounts, clock=clock
        )
        self.reconciler = Reconciler(store, custodian, policy, self.ledger, clock)

    async def issue(self, event_id: str = "evt-1"):
        request = Request.model_validate(
            {"eventId": event_id, "from": "usr-alice", "to": "usr-treasury-vault-system", "amount": 1000}
        )
        order = OrderClassified(
            event_id=event_id,
            request=request,
            intent=Intent.TREASURY_ISSUANCE,
            verification=VerificationResult(valid=True, proof=TX_HASH, confirmed_amount=Decimal("1010.00")),
        )
        await self.store.save_request(request)
        await self.store.save_order(order)
        plan, instruction = await self.engine.match(order)
        return plan, instruction


@pytest.mark.asyncio  # type: ignore
async def test_completes_after_oracle_agrees(store, settings, clock) -> None:
    h = Harness(store, settings, clock, FlakyCustodian())
    _, instruction = await h.issue()
    posted = await h.ledger.post(instruction)
    assert await h.reconciler.handle(posted) == []

    changed = await h.transfers.transfer(instruction)
    [done] = await h.reconciler.handle(changed)
    assert isinstance(done, OrderCompleted)
    receipt = done.receipt
    assert receipt.status == ReceiptStatus.COMPLETED
    assert receipt.intent == Intent.TREASURY_ISSUANCE
    assert receipt.fees.issuance == Decimal("10.00")
    assert [c.verified for c in receipt.oracle] == [True]
    assert receipt.balance_deltas["assurance-fund"] == {"USDT": Decimal("1010.00")}
    assert "RECONCILED" in receipt.timestamps

    # Redelivered messages after the receipt change nothing
    assert await h.reconciler.handle(changed) == []
    assert await store.get_receipt("evt-1") == receipt


@pytest.mark.asyncio  # type: ignore
async def test_oracle_mismatch_fails_the_event(store, settings, clock) -> None:
    h = Harness(store, settings, clock, BlindOracleCustodian())
    _, instruction = await h.issue()
    await h.ledger.post(instruction)
    changed = await h.transfers.transfer(instruction)
    assert isinstance(changed, OwnershipChanged)

    [failed] = await h.reconciler.handle(changed)
    assert isinstance(failed, OrderFailed)
    receipt = failed.receipt
    assert receipt.status == ReceiptStatus.FAILED
    assert receipt.error.stage == Stage.RECONCILIATION
    assert receipt.error.reason == FailureReason.ORACLE_VERIFICATION_FAILED
    # The units did move, so the posting for the leg stands
    assert [p.posting_id for p in receipt.ledger_postings] == [instruction.idempotency_key]
    assert len(receipt.transfers) == 1


@pytest.mark.asyncio  # type: ignore
async def test_failure_reverses_untransferred_postings(store, settings, clock) -> None:
    h = Harness(store, settings, clock, FlakyCustodian())
    _, instruction = await h.issue()
    await h.ledger.post(instruction)
    failure = StageFailed(
        event_id="evt-1",
        stage=Stage.TRANSFER,
        reason=FailureReason.POLICY_DENIED,
        detail="custodian policy denied",
        match_id=instruction.match_id,
    )
    [failed] = await h.reconciler.handle(failure)
    receipt = failed.receipt
    assert receipt.error.reason == FailureReason.POLICY_DENIED
    ids = [p.posting_id for p in receipt.ledger_postings]
    assert ids == [instruction.idempotency_key, f"{instruction.idempotency_key}:reversal"]
    assert not any(receipt.balance_deltas.values())

    # A second failure report is absorbed
    assert await h.reconciler.handle(failure) == []


@pytest.mark.asyncio  # type: ignore
async def test_failed_sell_cancels_listing(store, settings, clock) -> None:
    h = Harness(store, settings, clock, FlakyCustodian())
    request = Request.model_validate(
        {
            "eventId": "evt-sell",
            "from": "usr-bob",
            "to": "usr-liquidity-pool",
            "amount": 5000,
            "proceedsAddress": "TXproceeds",
            "pricePerUnit": "1.20",
        }
    )
    order = OrderClassified(
        event_id="evt-sell",
        request=request,
        intent=Intent.MARKET_SELL,
        verification=VerificationResult(valid=True, proof=TX_HASH, confirmed_amount=Decimal("100.00")),
    )
    await store.save_request(request)
    plan, instruction = await h.engine.match(order)
    await h.ledger.post(instruction)
    # Bob's vault is empty, so the lock leg cannot move
    outcome = await h.transfers.transfer(instruction)
    [failed] = await h.reconciler.handle(outcome)
    assert failed.receipt.error.reason == FailureReason.INSUFFICIENT_BALANCE
    assert failed.receipt.error.stage == Stage.TRANSFER
    listing = await store.get_listing(plan.listing.listing_id)
    assert listing.status == ListingStatus.CANCELLED


@pytest.mark.asyncio  # type: ignore
async def test_expired_reservation_fails_and_restocks(store, settings, clock) -> None:
    h = Harness(store, settings, clock, FlakyCustodian())
    await store.add_listing(
        Listing(
            listing_id="lst-bob",
            event_id="evt-listing",
            seller_id="usr-bob",
            total_amount=100,
            available_amount=100,
            price_per_unit=Decimal("1.5"),
            created_at=clock(),
            expires_at=clock() + timedelta(days=2),
        )
    )
    request = Request.model_validate(
        {"eventId": "evt-2", "from": "usr-alice", "to": "usr-bob", "amount": 40, "listingId": "lst-bob"}
    )
    order = OrderClassified(event_id="evt-2", request=request, intent=Intent.MARKET_PURCHASE)
    await store.save_request(request)
    await store.save_order(order)
    plan, _ = await h.engine.match(order)
    clock.advance(301)

    [failed] = await h.reconciler.handle(plan)
    assert failed.receipt.error.reason == FailureReason.RESERVATION_EXPIRED
    assert (await store.get_listing("lst-bob")).available_amount == 100
    reservation = await store.get_reservation(plan.legs[0])
    assert reservation.status == ReservationStatus.EXPIRED


@pytest.mark.asyncio  # type: ignore
async def test_finalize_outage_ends_in_failed_receipt(store, settings, clock) -> None:
    custodian = FlakyCustodian()
    custodian.seed("vault-marketplace-settlement-locker", 100)
    h = Harness(store, settings, clock, custodian)
    await store.add_listing(
        Listing(
            listing_id="lst-bob",
            event_id="evt-listing",
            seller_id="usr-bob",
            total_amount=100,
            available_amount=100,
            price_per_unit=Decimal("1.5"),
            created_at=clock(),
            expires_at=clock() + timedelta(days=2),
        )
    )
    request = Request.model_validate(
        {"eventId": "evt-buy", "from": "usr-alice", "to": "usr-bob", "amount": 40, "listingId": "lst-bob"}
    )
    order = OrderClassified(
        event_id="evt-buy",
        request=request,
        intent=Intent.MARKET_PURCHASE,
        verification=VerificationResult(valid=True, proof=TX_HASH, confirmed_amount=Decimal("60.00")),
    )
    await store.save_request(request)
    await store.save_order(order)
    _, instruction = await h.engine.match(order)
    await h.ledger.post(instruction)
    changed = await h.transfers.transfer(instruction)

    # The ledger goes away just as the seller's payable is settled
    h.ledger_client.failures = 1
    [failed] = await h.reconciler.handle(changed)
    assert isinstance(failed, OrderFailed)
    receipt = failed.receipt
    assert receipt.status == ReceiptStatus.FAILED
    assert receipt.error.stage == Stage.LEDGER
    assert receipt.error.reason == FailureReason.LEDGER_UNAVAILABLE
    assert [p.posting_id for p in receipt.ledger_postings] == [instruction.idempotency_key]
    assert "RECONCILED" not in receipt.timestamps
    assert await store.get_state("evt-buy") == EventState.FAILED
    assert await h.reconciler.handle(changed) == []
