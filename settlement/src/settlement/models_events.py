"""Typed message contracts for the pipeline topics.

Each stage consumes one or more topics and produces others.  Rather than a
loosely typed publish/subscribe fabric, every topic has exactly one message
model below.  A model declares its ``topic`` and its partition key (always
the ``event_id``) so that all messages for one request are handled in
submission order by a single worker, while different requests proceed in
parallel.

On the wire a message is the JSON form of the model
(:meth:`Message.to_payload`); consumers rebuild it with
:func:`parse_message`, which raises :class:`ValueError` for unknown topics
or malformed payloads.

Topic map::

    request.admitted        -> admission      -> order.admitted
    order.admitted          -> verification   -> order.validated
    payment.proof_submitted -> verification   -> payment.confirmed
    order.validated         -> classifier     -> order.classified
    order.classified        -> matching       -> order.matched, payment.requested,
                                                 payment.confirmed
    payment.confirmed       -> ledger         -> ledger.posted
    payment.confirmed       -> transfer       -> ownership.changed | transfer.failed
    ledger.posted           -> reconciler
    ownership.changed       -> reconciler     -> order.completed | order.failed
    transfer.failed         -> reconciler     -> order.failed
    stage.failed            -> reconciler     -> order.failed
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import FailureReason, Stage
from .models import (
    Chain,
    FeeBreakdown,
    Intent,
    Listing,
    MatchReservation,
    Receipt,
    Request,
    TransferRecord,
    VerificationResult,
    utcnow,
)

REQUEST_ADMITTED = "request.admitted"
ORDER_ADMITTED = "order.admitted"
ORDER_VALIDATED = "order.validated"
ORDER_CLASSIFIED = "order.classified"
ORDER_MATCHED = "order.matched"
PAYMENT_REQUESTED = "payment.requested"
PAYMENT_PROOF_SUBMITTED = "payment.proof_submitted"
PAYMENT_CONFIRMED = "payment.confirmed"
LEDGER_POSTED = "ledger.posted"
OWNERSHIP_CHANGED = "ownership.changed"
TRANSFER_FAILED = "transfer.failed"
STAGE_FAILED = "stage.failed"
ORDER_COMPLETED = "order.completed"
ORDER_FAILED = "order.failed"


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    topic: ClassVar[str]

    event_id: str
    ts: datetime = Field(default_factory=utcnow)

    @property
    def partition_key(self) -> str:
        return self.event_id

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class RequestAdmitted(Message):
    topic: ClassVar[str] = REQUEST_ADMITTED

    request: Request


class OrderAdmitted(Message):
    """A request whose parties are active, with account roles snapshotted."""

    topic: ClassVar[str] = ORDER_ADMITTED

    request: Request


class OrderValidated(Message):
    topic: ClassVar[str] = ORDER_VALIDATED

    request: Request
    verification: Optional[VerificationResult] = None

    @property
    def prepaid(self) -> bool:
        return self.verification is not None and self.verification.valid


class OrderClassified(Message):
    topic: ClassVar[str] = ORDER_CLASSIFIED

    request: Request
    intent: Intent
    reason: str = ""
    verification: Optional[VerificationResult] = None

    @property
    def prepaid(self) -> bool:
        return self.verification is not None and self.verification.valid


class OrderMatched(Message):
    """The matching decision for one event.

    ``legs`` lists the ``match_id`` of every settlement leg the reconciler
    has to see posted and transferred before the event can complete.
    """

    topic: ClassVar[str] = ORDER_MATCHED

    intent: Intent
    fills: List[MatchReservation] = Field(default_factory=list)
    listing: Optional[Listing] = None
    legs: List[str] = Field(default_factory=list)

    @property
    def total_amount(self) -> int:
        return sum(fill.amount for fill in self.fills)


class PaymentRequested(Message):
    topic: ClassVar[str] = PAYMENT_REQUESTED

    match_id: str
    buyer_id: str
    amount_usdt: Decimal
    deadline: datetime


class MatchProofSubmission(Message):
    """A payment proof submitted after matching for a pending reservation."""

    topic: ClassVar[str] = PAYMENT_PROOF_SUBMITTED

    match_id: str
    proof: str
    chain: Optional[Chain] = None


class SettlementInstruction(Message):
    """One confirmed settlement leg: what to post and what to move.

    ``sender`` is ``None`` for treasury issuance (new units are issued).
    ``paid`` is the USDT received for this leg, ``principal`` the part owed
    to the counterparty and ``fees`` the fee split; any excess is refunded.
    """

    topic: ClassVar[str] = PAYMENT_CONFIRMED

    match_id: str
    intent: Intent
    sender: Optional[str] = None
    receiver: str
    buyer_id: str
    seller_id: str
    amount: int = Field(..., gt=0)
    listing_id: Optional[str] = None
    price_per_unit: Optional[Decimal] = None
    payment: Optional[VerificationResult] = None
    paid: Decimal = Decimal("0")
    principal: Decimal = Decimal("0")
    fees: FeeBreakdown = Field(default_factory=FeeBreakdown)
    proceeds_address: Optional[str] = None

    @property
    def idempotency_key(self) -> str:
        return f"{self.event_id}:{self.match_id}"

    @property
    def refund(self) -> Decimal:
        excess = self.paid - self.principal - self.fees.total
        return excess if excess > 0 else Decimal("0")


class LedgerPosted(Message):
    topic: ClassVar[str] = LEDGER_POSTED

    match_id: str
    posting_id: str
    external_ref: Optional[str] = None
    accounts_affected: List[str] = Field(default_factory=list)


class OwnershipChanged(Message):
    topic: ClassVar[str] = OWNERSHIP_CHANGED

    match_id: str
    record: TransferRecord


class TransferFailed(Message):
    topic: ClassVar[str] = TRANSFER_FAILED

    match_id: str
    reason: FailureReason
    detail: str = ""
    attempts: int = 0


class StageFailed(Message):
    topic: ClassVar[str] = STAGE_FAILED

    stage: Stage
    reason: FailureReason
    detail: str = ""
    match_id: Optional[str] = None
    verification: Optional[VerificationResult] = None


class OrderCompleted(Message):
    topic: ClassVar[str] = ORDER_COMPLETED

    receipt: Receipt


class OrderFailed(Message):
    topic: ClassVar[str] = ORDER_FAILED

    receipt: Receipt


MESSAGE_TYPES: Dict[str, Type[Message]] = {
    cls.topic: cls
    for cls in (
        RequestAdmitted,
        OrderAdmitted,
        OrderValidated,
        OrderClassified,
        OrderMatched,
        PaymentRequested,
        MatchProofSubmission,
        SettlementInstruction,
        LedgerPosted,
        OwnershipChanged,
        TransferFailed,
        StageFailed,
        OrderCompleted,
        OrderFailed,
    )
}


def parse_message(topic: str, payload: Any) -> Message:
    """Rebuild the typed message for ``topic`` from a bus payload.

    Raises
    ------
    ValueError
        If the topic is unknown or the payload does not match its contract.
    """
    try:
        cls = MESSAGE_TYPES[topic]
    except KeyError:
        raise ValueError(f"unknown topic {topic!r}") from None
    if isinstance(payload, cls):
        return payload
    try:
        return cls.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"malformed {topic} message: {exc}") from exc
