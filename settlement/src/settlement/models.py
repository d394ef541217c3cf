"""
Domain models for the settlement pipeline using Pydantic.

These models describe the entities that flow through the pipeline: the
admitted request, payment verification results, listings and the
reservations (fills) made against them, double-entry journal postings,
custodian transfer records and the final receipt.  All of them are frozen;
a state change produces a new instance via ``model_copy`` so that anything
already handed to another stage can never change underneath it.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from .errors import FailureReason, Stage

USDT = "USDT"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Chain(str, Enum):
    TRON = "TRON"
    ETH = "ETH"
    BSC = "BSC"


class Intent(str, Enum):
    TREASURY_ISSUANCE = "BUY_TREASURY"
    MARKET_PURCHASE = "BUY_MARKET"
    MARKET_SELL = "SELL_MARKET"
    PEER_TRANSFER = "TRANSFER"


class AccountRole(str, Enum):
    TRADER = "trader"
    MARKET_MAKER = "market_maker"
    TREASURY = "treasury"
    LIQUIDITY_PROVIDER = "liquidity_provider"
    MATCH_ME = "match_me"
    ASSURANCE = "assurance"
    OPERATOR = "operator"
    ADMIN = "admin"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class ListingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class ReservationStatus(str, Enum):
    RESERVED = "RESERVED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    CONFIRMED = "CONFIRMED"
    EXPIRED = "EXPIRED"
    RELEASED = "RELEASED"


OPEN_RESERVATION_STATES = (ReservationStatus.RESERVED, ReservationStatus.PAYMENT_PENDING)


class Side(str, Enum):
    DEBIT = "Dr"
    CREDIT = "Cr"


class AccountKind(str, Enum):
    ASSET_BALANCE = "asset_balance"
    ASSET_INVENTORY = "asset_inventory"
    ASSET_IN_TRANSIT = "asset_in_transit"
    CASH = "cash"
    SETTLEMENT_PAYABLE = "settlement_payable"
    FEE_INCOME = "fee_income"
    REFUND_PAYABLE = "refund_payable"


class TransferOperation(str, Enum):
    ISSUE = "Issue"
    CHANGE_OWNER = "ChangeOwner"


class ReceiptStatus(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class EventState(str, Enum):
    RECEIVED = "RECEIVED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    MATCHED = "MATCHED"
    LEDGER_POSTED = "LEDGER_POSTED"
    ASSET_TRANSFERRED = "ASSET_TRANSFERRED"
    RECONCILED = "RECONCILED"
    FAILED = "FAILED"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    @property
    def terminal(self) -> bool:
        return self in (EventState.RECONCILED, EventState.FAILED)


_STATE_RANK = {state: index for index, state in enumerate(EventState)}


class Request(BaseModel):
    """An admitted, uniquely identified transfer intent.

    Field aliases follow the ingress wire format (``eventId``, ``from``,
    ``to`` ...); either name is accepted on input.  ``from_role`` and
    ``to_role`` are snapshots taken once at admission so that later
    classification never depends on registry drift.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    event_id: str = Field(..., min_length=1, alias="eventId")
    from_account: str = Field(..., min_length=1, alias="from")
    to_account: str = Field(..., min_length=1, alias="to")
    amount: int = Field(..., gt=0, description="Asset amount in its smallest unit")
    payment_proof: Optional[str] = Field(None, alias="paymentProof")
    chain: Optional[Chain] = None
    payment_amount: Optional[Decimal] = Field(None, gt=0, alias="paymentAmount")
    proceeds_address: Optional[str] = Field(None, alias="proceedsAddress")
    listing_id: Optional[str] = Field(None, alias="listingId")
    price_per_unit: Optional[Decimal] = Field(None, gt=0, alias="pricePerUnit")
    allow_partial_fills: Optional[bool] = Field(None, alias="allowPartialFills")
    from_role: Optional[AccountRole] = Field(None, alias="fromRole")
    to_role: Optional[AccountRole] = Field(None, alias="toRole")
    received_at: datetime = Field(default_factory=utcnow, alias="receivedAt")

    @model_validator(mode="after")
    def _distinct_parties(self) -> "Request":
        if self.from_account == self.to_account:
            raise ValueError("from and to must be different accounts")
        return self


class AccountProfile(BaseModel):
    """What the identity resolver knows about a logical account."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    vault_id: str
    status: AccountStatus = AccountStatus.ACTIVE
    role: AccountRole = AccountRole.TRADER

    @property
    def active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


class PaymentStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"


class PaymentObservation(BaseModel):
    """Raw facts about a payment as reported by one verification backend.

    ``confirmations`` is ``None`` when the backend does not report block
    depth (a payment processor); finality is then implied by ``status``.
    ``token_contract`` is set by chain indexers only.
    """

    model_config = ConfigDict(frozen=True)

    provider: str
    network: Chain
    payment_id: str
    status: PaymentStatus
    token_contract: Optional[str] = None
    currency: str
    amount: Decimal
    confirmations: Optional[int] = None
    timestamp: datetime


class VerificationChecks(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: bool = False
    amount: bool = False
    currency: bool = False
    confirmations: bool = False
    timestamp: bool = False

    def all_passed(self) -> bool:
        return self.status and self.amount and self.currency and self.confirmations and self.timestamp


class VerificationResult(BaseModel):
    """Outcome of checking one payment proof.  Created once, never mutated."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    proof: Optional[str] = None
    provider: Optional[str] = None
    network: Optional[Chain] = None
    payment_id: Optional[str] = None
    expected_amount: Optional[Decimal] = None
    confirmed_amount: Decimal = Decimal("0")
    confirmation_count: int = 0
    checks: VerificationChecks = Field(default_factory=VerificationChecks)
    failure_reason: Optional[FailureReason] = None
    verified_at: datetime = Field(default_factory=utcnow)


class Listing(BaseModel):
    """A standing sell order.  ``available_amount`` only ever moves through the store."""

    model_config = ConfigDict(frozen=True)

    listing_id: str
    event_id: str
    seller_id: str
    total_amount: int = Field(..., gt=0)
    available_amount: int = Field(..., ge=0)
    price_per_unit: Decimal = Field(..., gt=0)
    status: ListingStatus = ListingStatus.ACTIVE
    allow_partial_fills: bool = True
    created_at: datetime
    expires_at: datetime

    @model_validator(mode="after")
    def _within_total(self) -> "Listing":
        if self.available_amount > self.total_amount:
            raise ValueError("available_amount cannot exceed total_amount")
        return self

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def effective_status(self, now: datetime) -> ListingStatus:
        if self.status in (ListingStatus.ACTIVE, ListingStatus.PARTIALLY_FILLED) and self.is_expired(now):
            return ListingStatus.EXPIRED
        return self.status

    def is_open(self, now: datetime) -> bool:
        return self.effective_status(now) in (ListingStatus.ACTIVE, ListingStatus.PARTIALLY_FILLED)

    def with_available(self, available: int) -> "Listing":
        """Return a copy holding ``available`` units with the matching fill status."""
        if available < 0 or available > self.total_amount:
            raise ValueError(f"available amount {available} out of bounds for {self.listing_id}")
        status = self.status
        if status not in (ListingStatus.CANCELLED, ListingStatus.EXPIRED):
            if available == 0:
                status = ListingStatus.FILLED
            elif available == self.total_amount:
                status = ListingStatus.ACTIVE
            else:
                status = ListingStatus.PARTIALLY_FILLED
        return self.model_copy(update={"available_amount": available, "status": status})


class MatchReservation(BaseModel):
    """One allocation decision (a fill), optionally holding listing inventory."""

    model_config = ConfigDict(frozen=True)

    match_id: str
    event_id: str
    buyer_id: str
    seller_id: str
    amount: int = Field(..., gt=0)
    listing_id: Optional[str] = None
    price_per_unit: Optional[Decimal] = None
    status: ReservationStatus = ReservationStatus.RESERVED
    created_at: datetime
    expires_at: datetime

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_RESERVATION_STATES

    def is_lapsed(self, now: datetime) -> bool:
        """True when the lease has run out while the hold is still open."""
        return self.is_open and now >= self.expires_at

    @property
    def cost(self) -> Decimal:
        if self.price_per_unit is None:
            return Decimal("0")
        return self.price_per_unit * self.amount


Fill = MatchReservation


class JournalLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str
    kind: AccountKind
    currency: str
    amount: Decimal = Field(..., gt=0)
    side: Side
    memo: Optional[str] = None

    @property
    def account(self) -> str:
        return f"{self.owner}/{self.kind.value}"


class JournalPosting(BaseModel):
    """One atomic accounting unit keyed by ``posting_id``."""

    model_config = ConfigDict(frozen=True)

    posting_id: str
    event_id: str
    match_id: str
    lines: Tuple[JournalLine, ...]
    description: str
    posted_at: datetime = Field(default_factory=utcnow)
    external_ref: Optional[str] = None
    reverses: Optional[str] = None

    def totals(self) -> Dict[str, Tuple[Decimal, Decimal]]:
        """Map currency to ``(debits, credits)``."""
        debits: Dict[str, Decimal] = defaultdict(Decimal)
        credits: Dict[str, Decimal] = defaultdict(Decimal)
        for line in self.lines:
            if line.side == Side.DEBIT:
                debits[line.currency] += line.amount
            else:
                credits[line.currency] += line.amount
        return {cur: (debits[cur], credits[cur]) for cur in sorted(set(debits) | set(credits))}

    def imbalances(self) -> Dict[str, Decimal]:
        return {cur: dr - cr for cur, (dr, cr) in self.totals().items() if dr != cr}

    def is_balanced(self) -> bool:
        return bool(self.lines) and not self.imbalances()

    def reversal(self, posted_at: Optional[datetime] = None) -> "JournalPosting":
        """Build the offsetting posting for this one (sides swapped)."""
        flipped = tuple(
            line.model_copy(
                update={"side": Side.CREDIT if line.side == Side.DEBIT else Side.DEBIT}
            )
            for line in self.lines
        )
        return JournalPosting(
            posting_id=f"{self.posting_id}:reversal",
            event_id=self.event_id,
            match_id=self.match_id,
            lines=flipped,
            description=f"Reversal of {self.posting_id}",
            posted_at=posted_at or utcnow(),
            reverses=self.posting_id,
        )


class TransferRecord(BaseModel):
    """Result of one successful custodian call."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    match_id: str
    idempotency_key: str
    operation: TransferOperation
    asset_receipt_id: str
    from_account: Optional[str] = None
    to_account: str
    from_vault: Optional[str] = None
    to_vault: Optional[str] = None
    amount: int = Field(..., gt=0)
    delivered_at: datetime


class OwnershipEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_receipt_id: str
    owner_id: str
    amount: int


class Holdings(BaseModel):
    """The oracle's view of what one vault currently owns."""

    model_config = ConfigDict(frozen=True)

    owner_id: str
    entries: Tuple[OwnershipEntry, ...] = ()

    @property
    def total(self) -> int:
        return sum(entry.amount for entry in self.entries if entry.owner_id == self.owner_id)

    def entry_for(self, asset_receipt_id: str) -> Optional[OwnershipEntry]:
        for entry in self.entries:
            if entry.asset_receipt_id == asset_receipt_id:
                return entry
        return None


class FeeBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    listing: Decimal = Decimal("0")
    issuance: Decimal = Decimal("0")
    liquidity: Decimal = Decimal("0")
    currency: str = USDT

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> Decimal:
        return self.listing + self.issuance + self.liquidity

    def __add__(self, other: "FeeBreakdown") -> "FeeBreakdown":
        return FeeBreakdown(
            listing=self.listing + other.listing,
            issuance=self.issuance + other.issuance,
            liquidity=self.liquidity + other.liquidity,
            currency=self.currency,
        )


class ReceiptError(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: Stage
    reason: FailureReason
    detail: str = ""
    match_id: Optional[str] = None


class PostingRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    posting_id: str
    description: str
    posted_at: datetime
    external_ref: Optional[str] = None
    reverses: Optional[str] = None


class TransferRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    match_id: str
    asset_receipt_id: str
    operation: TransferOperation
    from_account: Optional[str] = None
    to_account: str
    amount: int
    delivered_at: datetime


class OracleCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner_id: str
    asset_receipt_id: str
    expected_amount: int
    observed_amount: int
    holdings_total: int
    verified: bool
    verified_at: datetime


class Receipt(BaseModel):
    """The canonical, immutable summary of one event's lifecycle."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    status: ReceiptStatus
    intent: Optional[Intent] = None
    from_account: str
    to_account: str
    amount: int
    listing_id: Optional[str] = None
    balance_deltas: Dict[str, Dict[str, Decimal]] = Field(default_factory=dict)
    fills: List[MatchReservation] = Field(default_factory=list)
    payments: List[VerificationResult] = Field(default_factory=list)
    fees: FeeBreakdown = Field(default_factory=FeeBreakdown)
    ledger_postings: List[PostingRef] = Field(default_factory=list)
    transfers: List[TransferRef] = Field(default_factory=list)
    oracle: List[OracleCheck] = Field(default_factory=list)
    timestamps: Dict[str, datetime] = Field(default_factory=dict)
    error: Optional[ReceiptError] = None
    composed_at: datetime = Field(default_factory=utcnow)

    @property
    def filled_amount(self) -> int:
        return sum(fill.amount for fill in self.fills)


def balance_deltas(postings: List[JournalPosting]) -> Dict[str, Dict[str, Decimal]]:
    """Net debit-minus-credit per owner and currency across ``postings``."""
    deltas: Dict[str, Dict[str, Decimal]] = defaultdict(lambda: defaultdict(Decimal))
    for posting in postings:
        for line in posting.lines:
            sign = 1 if line.side == Side.DEBIT else -1
            deltas[line.owner][line.currency] += sign * line.amount
    return {
        owner: {cur: value for cur, value in sorted(per_cur.items()) if value != 0}
        for owner, per_cur in sorted(deltas.items())
    }
