"""
Reconciler.

The last stage.  It joins, per event, the matching plan with the posting and
the transfer of every leg.  Once all legs are posted and transferred it asks
the custodian's ownership oracle whether each receiving vault really holds
the asset receipt it was given, finalizes purchase settlements and writes
the COMPLETED receipt.

Failures from any stage (``stage.failed``, ``transfer.failed``, an oracle
mismatch, a finalize posting the ledger does not take) end the event with a
FAILED receipt after compensation:

* postings of legs that never transferred are reversed;
* open reservations are voided and confirmed holds that never moved are
  released, returning their units to the listing;
* a listing whose lock leg never moved is cancelled.

The receipt store is put-if-absent, so whatever arrives after the terminal
receipt is ignored (a late posting for an untransferred leg is reversed).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..errors import FailureReason, PermanentError, SettlementError, Stage, TransientError
from ..models import (
    OPEN_RESERVATION_STATES,
    EventState,
    FeeBreakdown,
    JournalPosting,
    OracleCheck,
    PostingRef,
    Receipt,
    ReceiptError,
    ReceiptStatus,
    ReservationStatus,
    TransferRecord,
    TransferRef,
    VerificationResult,
    balance_deltas,
    utcnow,
)
from ..models_events import (
    LedgerPosted,
    Message,
    OrderCompleted,
    OrderFailed,
    OwnershipChanged,
    StageFailed,
    TransferFailed,
)
from ..resilience import ResiliencePolicy
from .ledger_poster import LedgerPoster

logger = logging.getLogger(__name__)


class Reconciler:
    def __init__(
        self,
        store: Any,
        custodian: Any,
        policy: ResiliencePolicy,
        ledger: LedgerPoster,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.custodian = custodian
        self.policy = policy
        self.ledger = ledger
        self.clock = clock

    # receipt ----------------------------------------------------------------

    async def compose(
        self,
        event_id: str,
        status: ReceiptStatus,
        *,
        oracle: Optional[List[OracleCheck]] = None,
        error: Optional[ReceiptError] = None,
        extra_payment: Optional[VerificationResult] = None,
        reached: Optional[Dict[EventState, datetime]] = None,
    ) -> Receipt:
        request = await self.store.get_request(event_id)
        order = await self.store.get_order(event_id)
        plan = await self.store.get_plan(event_id)
        instructions = sorted(await self.store.instructions_for_event(event_id), key=lambda i: i.match_id)
        postings = sorted(await self.store.postings_for_event(event_id), key=lambda p: (p.posted_at, p.posting_id))
        transfers = sorted(await self.store.transfers_for_event(event_id), key=lambda t: t.delivered_at)

        payments: List[VerificationResult] = []
        if order is not None and order.verification is not None:
            payments.append(order.verification)
        for instruction in instructions:
            if instruction.payment is not None and instruction.payment not in payments:
                payments.append(instruction.payment)
        if extra_payment is not None and extra_payment not in payments:
            payments.append(extra_payment)

        fees = FeeBreakdown()
        for instruction in instructions:
            fees = fees + instruction.fees

        timestamps = await self.store.state_timestamps(event_id)
        for state, at in (reached or {}).items():
            timestamps.setdefault(state.value, at)

        return Receipt(
            event_id=event_id,
            status=status,
            intent=order.intent if order else (plan.intent if plan else None),
            from_account=request.from_account if request else "",
            to_account=request.to_account if request else "",
            amount=request.amount if request else 0,
            listing_id=(request.listing_id if request else None) or (plan.listing.listing_id if plan and plan.listing else None),
            balance_deltas=balance_deltas(postings),
            fills=await self.store.reservations_for_event(event_id),
            payments=payments,
            fees=fees,
            ledger_postings=[
                PostingRef(
                    posting_id=p.posting_id,
                    description=p.description,
                    posted_at=p.posted_at,
                    external_ref=p.external_ref,
                    reverses=p.reverses,
                )
                for p in postings
            ],
            transfers=[
                TransferRef(
                    match_id=t.match_id,
                    asset_receipt_id=t.asset_receipt_id,
                    operation=t.operation,
                    from_account=t.from_account,
                    to_account=t.to_account,
                    amount=t.amount,
                    delivered_at=t.delivered_at,
                )
                for t in transfers
            ],
            oracle=oracle or [],
            timestamps=timestamps,
            error=error,
            composed_at=self.clock(),
        )

    # failure path -----------------------------------------------------------

    async def compensate(self, event_id: str, reason: FailureReason) -> None:
        transfers = {t.match_id: t for t in await self.store.transfers_for_event(event_id)}
        postings = await self.store.postings_for_event(event_id)
        reversed_ids = {p.reverses for p in postings if p.reverses}
        for posting in postings:
            if posting.reverses or posting.posting_id.endswith(":final"):
                continue
            if posting.match_id in transfers or posting.posting_id in reversed_ids:
                continue
            await self.ledger.reverse(posting)

        void_status = (
            ReservationStatus.EXPIRED if reason == FailureReason.RESERVATION_EXPIRED else ReservationStatus.RELEASED
        )
        for fill in await self.store.reservations_for_event(event_id):
            if fill.listing_id is None or fill.match_id in transfers:
                continue
            if fill.status in OPEN_RESERVATION_STATES:
                await self.store.void_reservation(fill.match_id, OPEN_RESERVATION_STATES, void_status)
            elif fill.status == ReservationStatus.CONFIRMED:
                await self.store.void_reservation(
                    fill.match_id, (ReservationStatus.CONFIRMED,), ReservationStatus.RELEASED
                )

        plan = await self.store.get_plan(event_id)
        if plan is not None and plan.listing is not None:
            if not any(leg in transfers for leg in plan.legs):
                await self.store.cancel_listing(plan.listing.listing_id)
                logger.info("Cancelled listing %s of failed event %s", plan.listing.listing_id, event_id)

    async def fail(
        self,
        event_id: str,
        stage: Stage,
        reason: FailureReason,
        detail: str = "",
        match_id: Optional[str] = None,
        verification: Optional[VerificationResult] = None,
    ) -> List[Message]:
        if await self.store.get_receipt(event_id) is not None:
            return []
        await self.compensate(event_id, reason)
        now = self.clock()
        await self.store.advance_state(event_id, EventState.FAILED, now)
        receipt = await self.compose(
            event_id,
            ReceiptStatus.FAILED,
            error=ReceiptError(stage=stage, reason=reason, detail=detail, match_id=match_id),
            extra_payment=verification,
        )
        receipt, created = await self.store.save_receipt(receipt)
        if not created:
            return []
        logger.error("Event %s FAILED at %s: %s %s", event_id, stage.value, reason.value, detail)
        return [OrderFailed(event_id=event_id, receipt=receipt)]

    # success path -----------------------------------------------------------

    async def check_ownership(self, record: TransferRecord) -> OracleCheck:
        vault = record.to_vault or record.to_account
        holdings = await self.policy.call(self.custodian.reveal_ownership, vault)
        entry = holdings.entry_for(record.asset_receipt_id)
        observed = entry.amount if entry is not None and entry.owner_id == vault else 0
        return OracleCheck(
            owner_id=vault,
            asset_receipt_id=record.asset_receipt_id,
            expected_amount=record.amount,
            observed_amount=observed,
            holdings_total=holdings.total,
            verified=observed == record.amount,
            verified_at=self.clock(),
        )

    async def try_complete(self, event_id: str) -> List[Message]:
        plan = await self.store.get_plan(event_id)
        if plan is None or not plan.legs:
            return []
        now = self.clock()
        postings: Dict[str, JournalPosting] = {}
        transfers: Dict[str, TransferRecord] = {}
        for leg in plan.legs:
            fill = await self.store.get_reservation(leg)
            if fill is not None and fill.is_lapsed(now):
                await self.store.void_reservation(leg, OPEN_RESERVATION_STATES, ReservationStatus.EXPIRED)
                return await self.fail(
                    event_id, Stage.MATCHING, FailureReason.RESERVATION_EXPIRED, f"reservation {leg} lapsed", leg
                )
            posting = await self.store.get_posting(f"{event_id}:{leg}")
            transfer = await self.store.get_transfer(f"{event_id}:{leg}")
            if posting is None or transfer is None:
                return []
            postings[leg] = posting
            transfers[leg] = transfer

        checks: List[OracleCheck] = []
        for leg in plan.legs:
            try:
                check = await self.check_ownership(transfers[leg])
            except TransientError as exc:
                return await self.fail(
                    event_id, Stage.RECONCILIATION, FailureReason.ORACLE_UNAVAILABLE, exc.detail or str(exc), leg
                )
            except PermanentError as exc:
                return await self.fail(
                    event_id, Stage.RECONCILIATION, FailureReason.ORACLE_VERIFICATION_FAILED, exc.detail, leg
                )
            checks.append(check)
            if not check.verified:
                return await self.fail(
                    event_id,
                    Stage.RECONCILIATION,
                    FailureReason.ORACLE_VERIFICATION_FAILED,
                    f"{check.owner_id} holds {check.observed_amount} of {check.asset_receipt_id}, expected {check.expected_amount}",
                    leg,
                )

        for leg in plan.legs:
            instruction = await self.store.get_instruction(leg)
            if instruction is None:
                continue
            try:
                await self.ledger.finalize(instruction)
            except SettlementError as exc:
                return await self.fail(event_id, exc.stage or Stage.LEDGER, exc.reason, exc.detail or str(exc), leg)

        # The event only becomes RECONCILED once its receipt is stored
        reconciled_at = self.clock()
        try:
            receipt = await self.compose(
                event_id, ReceiptStatus.COMPLETED, oracle=checks, reached={EventState.RECONCILED: reconciled_at}
            )
            receipt, created = await self.store.save_receipt(receipt)
        except SettlementError as exc:
            return await self.fail(event_id, exc.stage or Stage.RECONCILIATION, exc.reason, exc.detail or str(exc))
        if not created:
            return []
        await self.store.advance_state(event_id, EventState.RECONCILED, reconciled_at)
        logger.info("Event %s COMPLETED: %d leg(s), %d unit(s)", event_id, len(plan.legs), receipt.amount)
        return [OrderCompleted(event_id=event_id, receipt=receipt)]

    # stage API --------------------------------------------------------------

    async def _after_receipt(self, message: Message) -> None:
        if isinstance(message, LedgerPosted):
            transfer = await self.store.get_transfer(f"{message.event_id}:{message.match_id}")
            posting = await self.store.get_posting(message.posting_id)
            reversal = await self.store.get_posting(f"{message.posting_id}:reversal")
            if transfer is None and posting is not None and reversal is None:
                logger.warning("Late posting %s after terminal receipt; reversing", message.posting_id)
                await self.ledger.reverse(posting)
        elif isinstance(message, OwnershipChanged):
            receipt = await self.store.get_receipt(message.event_id)
            if receipt is not None and receipt.status == ReceiptStatus.FAILED:
                logger.warning(
                    "Transfer %s completed after %s failed; manual review needed",
                    message.record.idempotency_key,
                    message.event_id,
                )

    async def handle(self, message: Message) -> List[Message]:
        if await self.store.get_receipt(message.event_id) is not None:
            await self._after_receipt(message)
            return []
        if isinstance(message, StageFailed):
            return await self.fail(
                message.event_id,
                message.stage,
                message.reason,
                message.detail,
                message.match_id,
                message.verification,
            )
        if isinstance(message, TransferFailed):
            return await self.fail(
                message.event_id, Stage.TRANSFER, message.reason, message.detail, message.match_id
            )
        return await self.try_complete(message.event_id)
