"""
Ledger poster.

Builds one balanced double-entry posting per settlement leg and submits it
to the external accounting system.  The posting id is the leg's
idempotency key (``event_id:match_id``); a redelivered instruction finds the
stored posting and only re-announces it.  A posting that does not balance is
never submitted: it raises :class:`UnbalancedPostingError`.

Account mapping (``asset`` is the configured asset symbol, cash is USDT):

==================  ==========================================  ==========================================
Intent              Asset lines                                 Cash lines
==================  ==========================================  ==========================================
treasury issuance   Dr buyer/balance, Cr treasury/inventory     Dr assurance/cash (paid),
                                                                Cr buyer/cash (principal)
market purchase     Dr buyer/balance, Cr seller/in_transit      Dr assurance/cash (paid),
                                                                Cr seller/settlement_payable (principal)
market sell (lock)  Dr seller/in_transit, Cr seller/balance     Dr assurance/cash (paid)
peer transfer       Dr receiver/balance, Cr sender/balance      none
==================  ==========================================  ==========================================

Fees are credited to their fee income accounts (listing to the operator,
issuance to the treasury, liquidity to the market maker) and any excess
payment to the payer's refund payable.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, List, Optional

from ..config import Settings
from ..errors import UnbalancedPostingError
from ..models import (
    USDT,
    AccountKind,
    EventState,
    Intent,
    JournalLine,
    JournalPosting,
    Side,
    utcnow,
)
from ..models_events import LedgerPosted, Message, SettlementInstruction
from ..resilience import ResiliencePolicy

logger = logging.getLogger(__name__)


class LedgerPoster:
    def __init__(
        self,
        store: Any,
        client: Any,
        policy: ResiliencePolicy,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.client = client
        self.policy = policy
        self.settings = settings or Settings()
        self.accounts = self.settings.accounts
        self.clock = clock

    def build_posting(self, instruction: SettlementInstruction) -> JournalPosting:
        asset = self.settings.asset_symbol
        units = Decimal(instruction.amount)
        lines: List[JournalLine] = []

        def line(owner: str, kind: AccountKind, currency: str, amount: Decimal, side: Side, memo: str) -> None:
            if amount > 0:
                lines.append(JournalLine(owner=owner, kind=kind, currency=currency, amount=amount, side=side, memo=memo))

        intent = instruction.intent
        buyer, seller = instruction.buyer_id, instruction.seller_id
        if intent == Intent.TREASURY_ISSUANCE:
            line(buyer, AccountKind.ASSET_BALANCE, asset, units, Side.DEBIT, "issued units")
            line(self.accounts.treasury, AccountKind.ASSET_INVENTORY, asset, units, Side.CREDIT, "issued units")
        elif intent == Intent.MARKET_PURCHASE:
            line(buyer, AccountKind.ASSET_BALANCE, asset, units, Side.DEBIT, "purchased units")
            line(seller, AccountKind.ASSET_IN_TRANSIT, asset, units, Side.CREDIT, "purchased units")
        elif intent == Intent.MARKET_SELL:
            line(seller, AccountKind.ASSET_IN_TRANSIT, asset, units, Side.DEBIT, "listed units")
            line(seller, AccountKind.ASSET_BALANCE, asset, units, Side.CREDIT, "listed units")
        else:
            assert instruction.sender is not None
            line(instruction.receiver, AccountKind.ASSET_BALANCE, asset, units, Side.DEBIT, "transfer")
            line(instruction.sender, AccountKind.ASSET_BALANCE, asset, units, Side.CREDIT, "transfer")

        if instruction.paid > 0:
            payer = seller if intent == Intent.MARKET_SELL else buyer
            line(self.accounts.assurance, AccountKind.CASH, USDT, instruction.paid, Side.DEBIT, "payment received")
            if intent == Intent.TREASURY_ISSUANCE:
                line(buyer, AccountKind.CASH, USDT, instruction.principal, Side.CREDIT, "principal")
            elif intent == Intent.MARKET_PURCHASE:
                line(seller, AccountKind.SETTLEMENT_PAYABLE, USDT, instruction.principal, Side.CREDIT, "principal")
            fees = instruction.fees
            line(self.accounts.operator, AccountKind.FEE_INCOME, USDT, fees.listing, Side.CREDIT, "listing fee")
            line(self.accounts.treasury, AccountKind.FEE_INCOME, USDT, fees.issuance, Side.CREDIT, "issuance fee")
            line(self.accounts.market_maker, AccountKind.FEE_INCOME, USDT, fees.liquidity, Side.CREDIT, "liquidity fee")
            line(payer, AccountKind.REFUND_PAYABLE, USDT, instruction.refund, Side.CREDIT, "excess payment")

        return JournalPosting(
            posting_id=instruction.idempotency_key,
            event_id=instruction.event_id,
            match_id=instruction.match_id,
            lines=tuple(lines),
            description=f"{intent.value} {instruction.amount} {asset} ({instruction.idempotency_key})",
            posted_at=self.clock(),
        )

    async def submit(self, posting: JournalPosting) -> JournalPosting:
        """Check balance, post once and store the posting with its external reference."""
        existing = await self.store.get_posting(posting.posting_id)
        if existing is not None:
            return existing
        if not posting.is_balanced():
            raise UnbalancedPostingError(posting.posting_id, posting.imbalances())
        external_ref = await self.policy.call(self.client.post_posting, posting)
        stored = await self.store.save_posting(posting.model_copy(update={"external_ref": external_ref}))
        logger.info("Posted %s as %s (%d lines)", stored.posting_id, external_ref, len(stored.lines))
        return stored

    async def post(self, instruction: SettlementInstruction) -> LedgerPosted:
        posting = await self.store.get_posting(instruction.idempotency_key)
        if posting is None:
            posting = await self.submit(self.build_posting(instruction))
        else:
            logger.info("Posting %s already exists; re-announcing", posting.posting_id)
        await self.store.advance_state(instruction.event_id, EventState.LEDGER_POSTED, self.clock())
        return LedgerPosted(
            event_id=instruction.event_id,
            match_id=instruction.match_id,
            posting_id=posting.posting_id,
            external_ref=posting.external_ref,
            accounts_affected=sorted({line.account for line in posting.lines}),
        )

    async def reverse(self, posting: JournalPosting) -> JournalPosting:
        """Post the offsetting entry for ``posting``."""
        reversal = posting.reversal(self.clock())
        stored = await self.submit(reversal)
        logger.info("Reversed %s", posting.posting_id)
        return stored

    async def finalize(self, instruction: SettlementInstruction) -> Optional[JournalPosting]:
        """Settle the seller's payable into cash once a purchase leg is reconciled."""
        if instruction.intent != Intent.MARKET_PURCHASE or instruction.principal <= 0:
            return None
        seller = instruction.seller_id
        posting = JournalPosting(
            posting_id=f"{instruction.idempotency_key}:final",
            event_id=instruction.event_id,
            match_id=instruction.match_id,
            lines=(
                JournalLine(
                    owner=seller,
                    kind=AccountKind.SETTLEMENT_PAYABLE,
                    currency=USDT,
                    amount=instruction.principal,
                    side=Side.DEBIT,
                    memo="settle payable",
                ),
                JournalLine(
                    owner=seller,
                    kind=AccountKind.CASH,
                    currency=USDT,
                    amount=instruction.principal,
                    side=Side.CREDIT,
                    memo="settle payable",
                ),
            ),
            description=f"Settlement of {instruction.idempotency_key}",
            posted_at=self.clock(),
        )
        return await self.submit(posting)

    async def handle(self, message: Message) -> List[Message]:
        assert isinstance(message, SettlementInstruction)
        return [await self.post(message)]
