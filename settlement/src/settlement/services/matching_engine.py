"""
Matching engine.

Turns a classified order into settlement legs.

* **Treasury issuance** is one synthetic fill against the treasury; nothing
  is held, new units are issued on transfer.
* **Peer transfer** is one fill from sender to receiver without payment.
* **Market sell** creates a listing and one *lock* leg that moves the
  seller's units into the settlement locker and charges the listing fee.
* **Market purchase** reserves inventory: against the named listing, or by
  walking the book in price/time priority when the order was sent to the
  market account.  Each reservation is a fill and a leg of its own.

Reservation ids are derived from the event id and the listing id, so a
redelivered order finds the reservations it already made instead of
reserving twice.  A prepaid order has its reservations confirmed at once;
otherwise each one waits in ``PAYMENT_PENDING`` for a proof until its lease
runs out.  :meth:`MatchingEngine.expire_due` voids lapsed reservations and
returns their units to the listing.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, List, Optional, Sequence, Tuple

from ..config import Settings
from ..errors import FailureReason, PermanentError, Stage
from ..fees import FeeSchedule, quantize
from ..models import (
    OPEN_RESERVATION_STATES,
    EventState,
    FeeBreakdown,
    Intent,
    Listing,
    ListingStatus,
    MatchReservation,
    ReservationStatus,
    VerificationResult,
    utcnow,
)
from ..models_events import (
    Message,
    OrderClassified,
    OrderMatched,
    PaymentRequested,
    SettlementInstruction,
    StageFailed,
)

logger = logging.getLogger(__name__)

MATCH_NAMESPACE = uuid.UUID("6f1d7a52-3b0e-4c8e-9a51-2f4b8e0c7d19")
CAS_ATTEMPTS = 3
LAPSED_STATES = (ReservationStatus.RELEASED, ReservationStatus.EXPIRED)


def match_id_for(event_id: str, part: str) -> str:
    return str(uuid.uuid5(MATCH_NAMESPACE, f"{event_id}:{part}"))


def split_payment(paid: Decimal, principal: Decimal, fees: FeeBreakdown) -> Tuple[Decimal, FeeBreakdown]:
    """Shrink principal, then fees, until they fit into ``paid``."""
    shortfall = principal + fees.total - paid
    if shortfall <= 0:
        return principal, fees
    take = min(shortfall, principal)
    principal -= take
    shortfall -= take
    for name in ("liquidity", "issuance", "listing"):
        if shortfall <= 0:
            break
        value = getattr(fees, name)
        cut = min(value, shortfall)
        fees = fees.model_copy(update={name: value - cut})
        shortfall -= cut
    return principal, fees


def _fail(reason: FailureReason, detail: str, **context: Any) -> PermanentError:
    return PermanentError(reason, detail, stage=Stage.MATCHING, context=context)


class MatchingEngine:
    def __init__(self, store: Any, settings: Optional[Settings] = None, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.settings = settings or Settings()
        self.accounts = self.settings.accounts
        self.fees = FeeSchedule(self.settings.fees)
        self.clock = clock

    # helpers ----------------------------------------------------------------

    def _lease(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.settings.matching.reservation_ttl_seconds)

    def _instruction(
        self,
        fill: MatchReservation,
        intent: Intent,
        *,
        sender: Optional[str],
        receiver: str,
        payment: Optional[VerificationResult] = None,
        paid: Decimal = Decimal("0"),
        principal: Decimal = Decimal("0"),
        fees: Optional[FeeBreakdown] = None,
        proceeds_address: Optional[str] = None,
        match_id: Optional[str] = None,
    ) -> SettlementInstruction:
        principal, fees = split_payment(paid, principal, fees or FeeBreakdown())
        return SettlementInstruction(
            event_id=fill.event_id,
            match_id=match_id or fill.match_id,
            intent=intent,
            sender=sender,
            receiver=receiver,
            buyer_id=fill.buyer_id,
            seller_id=fill.seller_id,
            amount=fill.amount,
            listing_id=fill.listing_id,
            price_per_unit=fill.price_per_unit,
            payment=payment,
            paid=paid,
            principal=principal,
            fees=fees,
            proceeds_address=proceeds_address,
        )

    async def via_market(self, event_id: str) -> bool:
        order = await self.store.get_order(event_id)
        return order is not None and order.intent == Intent.MARKET_PURCHASE and not order.request.listing_id

    def leg_fees(self, fill: MatchReservation, via_market: bool) -> FeeBreakdown:
        return self.fees.quote(Intent.MARKET_PURCHASE, fill.amount, principal=fill.cost, via_market=via_market)

    async def amount_due(self, fill: MatchReservation) -> Decimal:
        """USDT owed for one purchase reservation, fees included."""
        fees = self.leg_fees(fill, await self.via_market(fill.event_id))
        return fill.cost + fees.total

    def _purchase_instruction(
        self,
        fill: MatchReservation,
        fees: FeeBreakdown,
        payment: Optional[VerificationResult],
        paid: Decimal,
    ) -> SettlementInstruction:
        return self._instruction(
            fill,
            Intent.MARKET_PURCHASE,
            sender=self.accounts.settlement_locker,
            receiver=fill.buyer_id,
            payment=payment,
            paid=paid,
            principal=fill.cost,
            fees=fees,
        )

    # per intent ---------------------------------------------------------------

    async def _treasury(self, order: OrderClassified, now: datetime) -> Tuple[OrderMatched, List[Message]]:
        request = order.request
        fill = MatchReservation(
            match_id=match_id_for(request.event_id, "treasury"),
            event_id=request.event_id,
            buyer_id=request.from_account,
            seller_id=self.accounts.treasury,
            amount=request.amount,
            price_per_unit=self.settings.matching.treasury_unit_price,
            status=ReservationStatus.CONFIRMED,
            created_at=now,
            expires_at=now,
        )
        fill = await self.store.create_reservation(fill)
        payment = order.verification
        instruction = self._instruction(
            fill,
            Intent.TREASURY_ISSUANCE,
            sender=None,
            receiver=fill.buyer_id,
            payment=payment,
            paid=payment.confirmed_amount if payment else Decimal("0"),
            principal=fill.cost,
            fees=self.fees.quote(Intent.TREASURY_ISSUANCE, fill.amount),
        )
        plan = OrderMatched(event_id=request.event_id, intent=order.intent, fills=[fill], legs=[fill.match_id])
        return plan, [instruction]

    async def _transfer(self, order: OrderClassified, now: datetime) -> Tuple[OrderMatched, List[Message]]:
        request = order.request
        fill = MatchReservation(
            match_id=match_id_for(request.event_id, "transfer"),
            event_id=request.event_id,
            buyer_id=request.to_account,
            seller_id=request.from_account,
            amount=request.amount,
            status=ReservationStatus.CONFIRMED,
            created_at=now,
            expires_at=now,
        )
        fill = await self.store.create_reservation(fill)
        instruction = self._instruction(
            fill, Intent.PEER_TRANSFER, sender=fill.seller_id, receiver=fill.buyer_id
        )
        plan = OrderMatched(event_id=request.event_id, intent=order.intent, fills=[fill], legs=[fill.match_id])
        return plan, [instruction]

    async def _sell(self, order: OrderClassified, now: datetime) -> Tuple[OrderMatched, List[Message]]:
        request = order.request
        matching = self.settings.matching
        if request.amount < matching.listing_min_amount:
            raise _fail(
                FailureReason.AMOUNT_BELOW_MINIMUM,
                f"listing of {request.amount} is below the minimum of {matching.listing_min_amount}",
            )
        if request.price_per_unit is None:
            raise _fail(FailureReason.REQUEST_INVALID, "a listing needs a price per unit")
        listing = await self.store.add_listing(
            Listing(
                listing_id=match_id_for(request.event_id, "listing"),
                event_id=request.event_id,
                seller_id=request.from_account,
                total_amount=request.amount,
                available_amount=request.amount,
                price_per_unit=request.price_per_unit,
                allow_partial_fills=request.allow_partial_fills is not False,
                created_at=now,
                expires_at=now + timedelta(seconds=matching.listing_duration_seconds),
            )
        )
        lock = MatchReservation(
            match_id=match_id_for(request.event_id, "lock"),
            event_id=request.event_id,
            buyer_id=self.accounts.settlement_locker,
            seller_id=request.from_account,
            amount=request.amount,
            listing_id=listing.listing_id,
            price_per_unit=listing.price_per_unit,
            status=ReservationStatus.CONFIRMED,
            created_at=now,
            expires_at=now,
        )
        payment = order.verification
        instruction = self._instruction(
            lock,
            Intent.MARKET_SELL,
            sender=request.from_account,
            receiver=self.accounts.settlement_locker,
            payment=payment,
            paid=payment.confirmed_amount if payment else Decimal("0"),
            fees=self.fees.quote(Intent.MARKET_SELL, request.amount),
            proceeds_address=request.proceeds_address,
        )
        logger.info(
            "Listed %s: %d units at %s by %s until %s",
            listing.listing_id,
            listing.total_amount,
            listing.price_per_unit,
            listing.seller_id,
            listing.expires_at.isoformat(),
        )
        plan = OrderMatched(event_id=request.event_id, intent=order.intent, listing=listing, legs=[lock.match_id])
        return plan, [instruction]

    def _reservation(self, order: OrderClassified, listing: Listing, amount: int, now: datetime) -> MatchReservation:
        return MatchReservation(
            match_id=match_id_for(order.event_id, listing.listing_id),
            event_id=order.event_id,
            buyer_id=order.request.from_account,
            seller_id=listing.seller_id,
            amount=amount,
            listing_id=listing.listing_id,
            price_per_unit=listing.price_per_unit,
            created_at=now,
            expires_at=self._lease(now),
        )

    async def _reserve_listing(self, order: OrderClassified, now: datetime) -> List[MatchReservation]:
        request = order.request
        listing_id = request.listing_id
        assert listing_id is not None
        existing = await self.store.reservations_for_event(order.event_id)
        if existing:
            return existing
        for _ in range(CAS_ATTEMPTS):
            listing = await self.store.get_listing(listing_id)
            if listing is None:
                raise _fail(FailureReason.LISTING_NOT_FOUND, f"no listing {listing_id}")
            if listing.effective_status(now) == ListingStatus.EXPIRED:
                raise _fail(FailureReason.LISTING_EXPIRED, f"listing {listing_id} expired at {listing.expires_at.isoformat()}")
            if listing.seller_id == request.from_account:
                raise _fail(FailureReason.REQUEST_INVALID, f"{request.from_account} cannot buy its own listing")
            available = listing.available_amount if listing.is_open(now) else 0
            take = min(request.amount, available)
            # A short fill needs the listing to allow it; the buyer may also opt out
            if take < request.amount and (not listing.allow_partial_fills or request.allow_partial_fills is False):
                take = 0
            if take == 0:
                raise _fail(
                    FailureReason.LISTING_INSUFFICIENT,
                    f"listing {listing_id} has {available} available, {request.amount} requested",
                )
            stored = await self.store.create_reservation(self._reservation(order, listing, take, now))
            if stored is not None:
                return [stored]
            logger.info("Listing %s changed while reserving for %s; retrying", listing_id, order.event_id)
        raise _fail(FailureReason.LISTING_INSUFFICIENT, f"listing {listing_id} could not be reserved")

    async def _walk_book(self, order: OrderClassified, now: datetime) -> List[MatchReservation]:
        request = order.request
        existing = await self.store.reservations_for_event(order.event_id)
        taken = {fill.listing_id for fill in existing}
        # Lapsed holds no longer count towards the order
        fills = [fill for fill in existing if fill.status not in LAPSED_STATES]
        remaining = request.amount - sum(fill.amount for fill in fills)
        for listing in await self.store.open_listings(now):
            if remaining <= 0:
                break
            if listing.listing_id in taken or listing.seller_id == request.from_account:
                continue
            take = min(remaining, listing.available_amount)
            stored = await self.store.create_reservation(self._reservation(order, listing, take, now))
            if stored is None:
                continue
            fills.append(stored)
            remaining -= stored.amount
        if fills and (remaining <= 0 or request.allow_partial_fills):
            return fills
        await self._release(fills)
        raise _fail(
            FailureReason.LISTING_INSUFFICIENT,
            f"book holds {request.amount - remaining} of {request.amount} requested",
        )

    async def _release(self, fills: Sequence[MatchReservation], status: ReservationStatus = ReservationStatus.RELEASED) -> None:
        for fill in fills:
            await self.store.void_reservation(fill.match_id, OPEN_RESERVATION_STATES, status)

    async def _purchase(self, order: OrderClassified, now: datetime) -> Tuple[OrderMatched, List[Message]]:
        if order.request.listing_id:
            fills = await self._reserve_listing(order, now)
        else:
            fills = await self._walk_book(order, now)
        via_market = not order.request.listing_id
        fees = [self.leg_fees(fill, via_market) for fill in fills]
        out: List[Message] = []
        confirmed: List[MatchReservation] = []
        if order.prepaid:
            payment = order.verification
            assert payment is not None
            due = sum((fill.cost + fee.total for fill, fee in zip(fills, fees)), Decimal("0"))
            floor = due * (Decimal(100) - self.settings.verification.amount_tolerance_pct) / Decimal(100)
            if payment.confirmed_amount < floor:
                await self._release(fills)
                raise _fail(
                    FailureReason.AMOUNT_MISMATCH,
                    f"paid {payment.confirmed_amount}, {quantize(due)} due",
                )
            remaining = payment.confirmed_amount
            for index, (fill, fee) in enumerate(zip(fills, fees)):
                if fill.status == ReservationStatus.CONFIRMED:
                    current = fill
                else:
                    current = await self.store.transition_reservation(
                        fill.match_id, OPEN_RESERVATION_STATES, ReservationStatus.CONFIRMED
                    )
                if current is None:
                    raise _fail(FailureReason.RESERVATION_EXPIRED, f"reservation {fill.match_id} lapsed", match_id=fill.match_id)
                last = index == len(fills) - 1
                paid = remaining if last else min(remaining, fill.cost + fee.total)
                remaining -= paid
                confirmed.append(current)
                out.append(self._purchase_instruction(current, fee, payment, paid))
        else:
            for fill, fee in zip(fills, fees):
                current = fill
                if fill.status == ReservationStatus.RESERVED:
                    current = await self.store.transition_reservation(
                        fill.match_id, (ReservationStatus.RESERVED,), ReservationStatus.PAYMENT_PENDING
                    ) or fill
                confirmed.append(current)
                if current.status == ReservationStatus.PAYMENT_PENDING:
                    out.append(
                        PaymentRequested(
                            event_id=fill.event_id,
                            match_id=fill.match_id,
                            buyer_id=fill.buyer_id,
                            amount_usdt=fill.cost + fee.total,
                            deadline=fill.expires_at,
                        )
                    )
        plan = OrderMatched(
            event_id=order.event_id,
            intent=order.intent,
            fills=confirmed,
            legs=[fill.match_id for fill in confirmed],
        )
        return plan, out

    # stage API --------------------------------------------------------------

    async def match(self, order: OrderClassified) -> List[Message]:
        """Match ``order``; returns the plan followed by its instructions or payment requests."""
        plan = await self.store.get_plan(order.event_id)
        if plan is not None:
            logger.info("Event %s already matched; re-announcing", order.event_id)
            replay: List[Message] = [plan]
            replay.extend(await self.store.instructions_for_event(order.event_id))
            return replay
        now = self.clock()
        handlers = {
            Intent.TREASURY_ISSUANCE: self._treasury,
            Intent.PEER_TRANSFER: self._transfer,
            Intent.MARKET_SELL: self._sell,
            Intent.MARKET_PURCHASE: self._purchase,
        }
        plan, out = await handlers[order.intent](order, now)
        for message in out:
            if isinstance(message, SettlementInstruction):
                await self.store.save_instruction(message)
        plan = await self.store.save_plan(plan)
        await self.store.advance_state(order.event_id, EventState.MATCHED, now)
        logger.info(
            "Matched %s (%s): %d leg(s), %d unit(s)",
            order.event_id,
            order.intent.value,
            len(plan.legs),
            plan.total_amount or order.request.amount,
        )
        return [plan, *out]

    async def confirm_payment(self, fill: MatchReservation, payment: VerificationResult) -> SettlementInstruction:
        """Confirm a pending reservation with a verified proof."""
        existing = await self.store.get_instruction(fill.match_id)
        if existing is not None:
            return existing
        now = self.clock()
        if fill.is_lapsed(now):
            await self._release([fill], ReservationStatus.EXPIRED)
            raise _fail(FailureReason.RESERVATION_EXPIRED, f"reservation {fill.match_id} lapsed", match_id=fill.match_id)
        current = await self.store.transition_reservation(
            fill.match_id, OPEN_RESERVATION_STATES, ReservationStatus.CONFIRMED
        )
        if current is None:
            raise _fail(
                FailureReason.RESERVATION_EXPIRED,
                f"reservation {fill.match_id} is no longer open",
                match_id=fill.match_id,
            )
        fees = self.leg_fees(current, await self.via_market(current.event_id))
        instruction = await self.store.save_instruction(
            self._purchase_instruction(current, fees, payment, payment.confirmed_amount)
        )
        logger.info("Confirmed reservation %s for %s", current.match_id, current.event_id)
        return instruction

    async def expire_due(self, now: Optional[datetime] = None) -> List[StageFailed]:
        """Void every lapsed reservation; one failure message per reservation voided here."""
        now = now or self.clock()
        failures: List[StageFailed] = []
        for fill in await self.store.due_reservations(now):
            voided = await self.store.void_reservation(fill.match_id, OPEN_RESERVATION_STATES, ReservationStatus.EXPIRED)
            if voided is None:
                continue
            logger.info("Reservation %s for %s expired; %d unit(s) returned", fill.match_id, fill.event_id, fill.amount)
            failures.append(
                StageFailed(
                    event_id=fill.event_id,
                    stage=Stage.MATCHING,
                    reason=FailureReason.RESERVATION_EXPIRED,
                    detail=f"reservation {fill.match_id} lapsed at {fill.expires_at.isoformat()}",
                    match_id=fill.match_id,
                )
            )
        return failures

    async def handle(self, message: Message) -> List[Message]:
        assert isinstance(message, OrderClassified)
        return await self.match(message)
