"""
In-memory settlement store.

Holds everything the stages share: admitted requests, classification and
matching decisions, listings and their reservations, journal postings,
transfer records, receipts, per-event state and proof claims.

Consistency rules every store implementation honours:

* ``save_*`` calls are put-if-absent on the idempotency key and return the
  record that is stored, so a redelivered message sees the original result.
* Listing inventory only changes together with a reservation: a reservation
  is created and the listing decremented in one critical section, and a
  reservation leaves an open (or confirmed) state and the listing is
  restocked in another.  A compare-and-set on the reservation status makes
  the restock happen at most once.
* The event state only moves forward; the first time each state is reached
  is remembered for the receipt.

Each listing has its own asyncio lock, so concurrent purchases against one
listing serialize while different listings proceed independently.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from ..models import (
    EventState,
    JournalPosting,
    Listing,
    ListingStatus,
    MatchReservation,
    Receipt,
    Request,
    ReservationStatus,
    TransferRecord,
)
from ..models_events import OrderClassified, OrderMatched, SettlementInstruction


def book_order(listing: Listing) -> Tuple:
    """Price/time priority with the listing id as the final tie-breaker."""
    return (listing.price_per_unit, listing.created_at, listing.listing_id)


class InMemorySettlementStore:
    """Process-local store; suitable for dry-run mode and tests."""

    def __init__(self) -> None:
        self._requests: Dict[str, Request] = {}
        self._orders: Dict[str, OrderClassified] = {}
        self._plans: Dict[str, OrderMatched] = {}
        self._instructions: Dict[str, SettlementInstruction] = {}
        self._proofs: Dict[str, str] = {}
        self._listings: Dict[str, Listing] = {}
        self._reservations: Dict[str, MatchReservation] = {}
        self._postings: Dict[str, JournalPosting] = {}
        self._transfers: Dict[str, TransferRecord] = {}
        self._receipts: Dict[str, Receipt] = {}
        self._states: Dict[str, EventState] = {}
        self._timestamps: Dict[str, Dict[str, datetime]] = defaultdict(dict)
        self._listing_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._lock = asyncio.Lock()

    # requests, decisions and instructions -----------------------------

    async def save_request(self, request: Request) -> Request:
        return self._requests.setdefault(request.event_id, request)

    async def get_request(self, event_id: str) -> Optional[Request]:
        return self._requests.get(event_id)

    async def save_order(self, order: OrderClassified) -> OrderClassified:
        return self._orders.setdefault(order.event_id, order)

    async def get_order(self, event_id: str) -> Optional[OrderClassified]:
        return self._orders.get(event_id)

    async def save_plan(self, plan: OrderMatched) -> OrderMatched:
        return self._plans.setdefault(plan.event_id, plan)

    async def get_plan(self, event_id: str) -> Optional[OrderMatched]:
        return self._plans.get(event_id)

    async def save_instruction(self, instruction: SettlementInstruction) -> SettlementInstruction:
        return self._instructions.setdefault(instruction.match_id, instruction)

    async def get_instruction(self, match_id: str) -> Optional[SettlementInstruction]:
        return self._instructions.get(match_id)

    async def instructions_for_event(self, event_id: str) -> List[SettlementInstruction]:
        return [i for i in self._instructions.values() if i.event_id == event_id]

    async def claim_proof(self, proof: str, event_id: str) -> str:
        """Bind ``proof`` to ``event_id``; returns the event that owns it."""
        return self._proofs.setdefault(proof, event_id)

    # listings and reservations -----------------------------------------

    async def add_listing(self, listing: Listing) -> Listing:
        async with self._listing_locks[listing.listing_id]:
            return self._listings.setdefault(listing.listing_id, listing)

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        return self._listings.get(listing_id)

    async def open_listings(self, now: datetime) -> List[Listing]:
        live = [l for l in self._listings.values() if l.is_open(now) and l.available_amount > 0]
        return sorted(live, key=book_order)

    async def cancel_listing(self, listing_id: str) -> Optional[Listing]:
        async with self._listing_locks[listing_id]:
            listing = self._listings.get(listing_id)
            if listing is None:
                return None
            if listing.status not in (ListingStatus.FILLED, ListingStatus.CANCELLED):
                listing = listing.model_copy(update={"status": ListingStatus.CANCELLED})
                self._listings[listing_id] = listing
            return listing

    async def create_reservation(self, reservation: MatchReservation) -> Optional[MatchReservation]:
        """Store ``reservation``, taking its amount from the listing.

        Returns the stored reservation (the existing one on redelivery) or
        ``None`` when the listing is not open or lacks the amount.
        """
        if reservation.listing_id is None:
            async with self._lock:
                return self._reservations.setdefault(reservation.match_id, reservation)
        async with self._listing_locks[reservation.listing_id]:
            existing = self._reservations.get(reservation.match_id)
            if existing is not None:
                return existing
            listing = self._listings.get(reservation.listing_id)
            if listing is None or not listing.is_open(reservation.created_at):
                return None
            if listing.available_amount < reservation.amount:
                return None
            self._listings[listing.listing_id] = listing.with_available(
                listing.available_amount - reservation.amount
            )
            self._reservations[reservation.match_id] = reservation
            return reservation

    async def get_reservation(self, match_id: str) -> Optional[MatchReservation]:
        return self._reservations.get(match_id)

    async def reservations_for_event(self, event_id: str) -> List[MatchReservation]:
        found = [r for r in self._reservations.values() if r.event_id == event_id]
        return sorted(found, key=lambda r: (r.created_at, r.match_id))

    async def transition_reservation(
        self,
        match_id: str,
        expected: Iterable[ReservationStatus],
        new_status: ReservationStatus,
    ) -> Optional[MatchReservation]:
        """Compare-and-set the status without touching inventory."""
        expected = tuple(expected)
        async with self._lock:
            current = self._reservations.get(match_id)
            if current is None or current.status not in expected:
                return None
            updated = current.model_copy(update={"status": new_status})
            self._reservations[match_id] = updated
            return updated

    async def void_reservation(
        self,
        match_id: str,
        expected: Iterable[ReservationStatus],
        new_status: ReservationStatus,
    ) -> Optional[MatchReservation]:
        """Compare-and-set the status and give the held amount back to the listing.

        Only the caller that wins the status change restocks the listing;
        everyone else gets ``None``.
        """
        expected = tuple(expected)
        current = self._reservations.get(match_id)
        if current is None:
            return None
        lock = self._listing_locks[current.listing_id] if current.listing_id else self._lock
        async with lock:
            current = self._reservations.get(match_id)
            if current is None or current.status not in expected:
                return None
            updated = current.model_copy(update={"status": new_status})
            self._reservations[match_id] = updated
            if current.listing_id is not None:
                listing = self._listings[current.listing_id]
                self._listings[listing.listing_id] = listing.with_available(
                    listing.available_amount + current.amount
                )
            return updated

    async def due_reservations(self, now: datetime) -> List[MatchReservation]:
        return [r for r in self._reservations.values() if r.is_lapsed(now)]

    # postings, transfers and receipts -------------------------------------

    async def save_posting(self, posting: JournalPosting) -> JournalPosting:
        return self._postings.setdefault(posting.posting_id, posting)

    async def get_posting(self, posting_id: str) -> Optional[JournalPosting]:
        return self._postings.get(posting_id)

    async def postings_for_event(self, event_id: str) -> List[JournalPosting]:
        return [p for p in self._postings.values() if p.event_id == event_id]

    async def save_transfer(self, record: TransferRecord) -> TransferRecord:
        return self._transfers.setdefault(record.idempotency_key, record)

    async def get_transfer(self, idempotency_key: str) -> Optional[TransferRecord]:
        return self._transfers.get(idempotency_key)

    async def transfers_for_event(self, event_id: str) -> List[TransferRecord]:
        return [t for t in self._transfers.values() if t.event_id == event_id]

    async def save_receipt(self, receipt: Receipt) -> Tuple[Receipt, bool]:
        """Put-if-absent; the flag tells whether this call stored it."""
        async with self._lock:
            existing = self._receipts.get(receipt.event_id)
            if existing is not None:
                return existing, False
            self._receipts[receipt.event_id] = receipt
            return receipt, True

    async def get_receipt(self, event_id: str) -> Optional[Receipt]:
        return self._receipts.get(event_id)

    # event state -------------------------------------------------------------

    async def advance_state(self, event_id: str, state: EventState, at: datetime) -> EventState:
        """Move the event forward to ``state``; never backwards, never out of a terminal state."""
        async with self._lock:
            self._timestamps[event_id].setdefault(state.value, at)
            current = self._states.get(event_id)
            if current is None or (not current.terminal and (state == EventState.FAILED or state.rank > current.rank)):
                self._states[event_id] = state
                return state
            return current

    async def get_state(self, event_id: str) -> Optional[EventState]:
        return self._states.get(event_id)

    async def state_timestamps(self, event_id: str) -> Dict[str, datetime]:
        return dict(self._timestamps.get(event_id, {}))
