"""Consistency rules shared by the in-memory and the SQLAlchemy store.

The database variant runs on a temporary SQLite file through ``aiosqlite``.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest  # type: ignore
import pytest_asyncio  # type: ignore

from settlement.errors import FailureReason, Stage
from settlement.models import (
    OPEN_RESERVATION_STATES,
    EventState,
    Listing,
    ListingStatus,
    MatchReservation,
    Receipt,
    ReceiptError,
    ReceiptStatus,
    Request,
    ReservationStatus,
)
from settlement.services.db_state_store import DatabaseSettlementStore
from settlement.services.state_store import InMemorySettlementStore


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def any_store(request, tmp_path):
    if request.param == "memory":
        yield InMemorySettlementStore()
        return
    store = DatabaseSettlementStore.from_uri(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")
    await store.init_db()
    yield store
    await store.dispose()


def _listing(clock, listing_id="lst-1", amount=100, price="1.5", age=0) -> Listing:
    created = clock() - timedelta(seconds=age)
    return Listing(
        listing_id=listing_id,
        event_id=f"evt-{listing_id}",
        seller_id="usr-bob",
        total_amount=amount,
        available_amount=amount,
        price_per_unit=Decimal(price),
        created_at=created,
        expires_at=created + timedelta(days=2),
    )


def _hold(clock, match_id: str, amount: int, listing_id="lst-1", event_id="evt-1") -> MatchReservation:
    return MatchReservation(
        match_id=match_id,
        event_id=event_id,
        buyer_id="usr-alice",
        seller_id="usr-bob",
        amount=amount,
        listing_id=listing_id,
        price_per_unit=Decimal("1.5"),
        created_at=clock(),
        expires_at=clock() + timedelta(seconds=300),
    )


@pytest.mark.asyncio  # type: ignore
async def test_request_is_put_if_absent(any_store) -> None:
    first = Request.model_validate({"eventId": "evt-1", "from": "a", "to": "b", "amount": 5})
    second = Request.model_validate({"eventId": "evt-1", "from": "a", "to": "b", "amount": 6})
    assert (await any_store.save_request(first)).amount == 5
    assert (await any_store.save_request(second)).amount == 5
    assert (await any_store.get_request("evt-1")).amount == 5
    assert await any_store.get_request("evt-2") is None


@pytest.mark.asyncio  # type: ignore
async def test_proof_claim_binds_first_event(any_store) -> None:
    assert await any_store.claim_proof("0xabc", "evt-1") == "evt-1"
    assert await any_store.claim_proof("0xabc", "evt-2") == "evt-1"
    assert await any_store.claim_proof("0xabc", "evt-1") == "evt-1"


@pytest.mark.asyncio  # type: ignore
async def test_state_only_moves_forward(any_store, clock) -> None:
    assert await any_store.advance_state("evt-1", EventState.MATCHED, clock()) == EventState.MATCHED
    assert await any_store.advance_state("evt-1", EventState.PAYMENT_CONFIRMED, clock()) == EventState.MATCHED
    assert await any_store.advance_state("evt-1", EventState.FAILED, clock()) == EventState.FAILED
    assert await any_store.advance_state("evt-1", EventState.RECONCILED, clock()) == EventState.FAILED
    assert await any_store.get_state("evt-1") == EventState.FAILED
    times = await any_store.state_timestamps("evt-1")
    assert times["MATCHED"] == clock()


@pytest.mark.asyncio  # type: ignore
async def test_receipt_is_written_once(any_store, clock) -> None:
    def receipt(status: ReceiptStatus) -> Receipt:
        return Receipt(
            event_id="evt-1",
            status=status,
            from_account="a",
            to_account="b",
            amount=5,
            error=ReceiptError(stage=Stage.LEDGER, reason=FailureReason.LEDGER_REJECTED)
            if status == ReceiptStatus.FAILED
            else None,
            composed_at=clock(),
        )

    stored, created = await any_store.save_receipt(receipt(ReceiptStatus.FAILED))
    assert created
    stored, created = await any_store.save_receipt(receipt(ReceiptStatus.COMPLETED))
    assert not created
    assert stored.status == ReceiptStatus.FAILED
    assert (await any_store.get_receipt("evt-1")).status == ReceiptStatus.FAILED


@pytest.mark.asyncio  # type: ignore
async def test_reservation_takes_and_returns_inventory(any_store, clock) -> None:
    await any_store.add_listing(_listing(clock))
    held = await any_store.create_reservation(_hold(clock, "m-1", 40))
    assert held is not None
    # Redelivery finds the same reservation and does not take twice
    again = await any_store.create_reservation(_hold(clock, "m-1", 40))
    assert again.match_id == "m-1"
    listing = await any_store.get_listing("lst-1")
    assert listing.available_amount == 60
    assert listing.status == ListingStatus.PARTIALLY_FILLED

    assert await any_store.create_reservation(_hold(clock, "m-2", 61, event_id="evt-2")) is None

    voided = await any_store.void_reservation("m-1", OPEN_RESERVATION_STATES, ReservationStatus.EXPIRED)
    assert voided.status == ReservationStatus.EXPIRED
    assert await any_store.void_reservation("m-1", OPEN_RESERVATION_STATES, ReservationStatus.EXPIRED) is None
    listing = await any_store.get_listing("lst-1")
    assert listing.available_amount == 100
    assert listing.status == ListingStatus.ACTIVE


@pytest.mark.asyncio  # type: ignore
async def test_concurrent_reservations_never_oversell(store, clock) -> None:
    # The per-listing lock of the in-memory store serialises these
    await store.add_listing(_listing(clock))
    holds = [_hold(clock, f"m-{n}", 30, event_id=f"evt-{n}") for n in range(5)]
    results = await asyncio.gather(*(store.create_reservation(h) for h in holds))
    taken = [r for r in results if r is not None]
    assert len(taken) == 3
    assert (await store.get_listing("lst-1")).available_amount == 10


@pytest.mark.asyncio  # type: ignore
async def test_transition_and_due_reservations(any_store, clock) -> None:
    await any_store.add_listing(_listing(clock))
    await any_store.create_reservation(_hold(clock, "m-1", 10))
    pending = await any_store.transition_reservation(
        "m-1", (ReservationStatus.RESERVED,), ReservationStatus.PAYMENT_PENDING
    )
    assert pending.status == ReservationStatus.PAYMENT_PENDING
    assert await any_store.transition_reservation(
        "m-1", (ReservationStatus.RESERVED,), ReservationStatus.CONFIRMED
    ) is None
    assert await any_store.due_reservations(clock()) == []
    due = await any_store.due_reservations(clock() + timedelta(seconds=300))
    assert [r.match_id for r in due] == ["m-1"]


@pytest.mark.asyncio  # type: ignore
async def test_open_listings_in_book_order(any_store, clock) -> None:
    await any_store.add_listing(_listing(clock, "lst-b", price="1.5", age=300))
    await any_store.add_listing(_listing(clock, "lst-d", price="1.2", age=100))
    await any_store.add_listing(_listing(clock, "lst-c", price="1.2", age=200))
    await any_store.add_listing(_listing(clock, "lst-old", age=3 * 86400))
    book = await any_store.open_listings(clock())
    assert [l.listing_id for l in book] == ["lst-c", "lst-d", "lst-b"]

    cancelled = await any_store.cancel_listing("lst-d")
    assert cancelled.status == ListingStatus.CANCELLED
    assert [l.listing_id for l in await any_store.open_listings(clock())] == ["lst-c", "lst-b"]
