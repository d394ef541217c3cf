"""
Accounting system adapter (Firefly III style REST API).

The external ledger stores source -> destination transactions rather than
n-line journals, so a balanced :class:`JournalPosting` is submitted as one
transaction group whose splits pair debits with credits per currency.  The
posting id travels as ``external_id`` and ``error_if_duplicate_hash`` is set,
which makes the call idempotent: a duplicate answer is resolved to the group
that already exists.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List

from ..errors import FailureReason, PermanentError, SettlementError, UnbalancedPostingError
from ..models import JournalPosting, Side
from .http_client import JsonHttpClient

logger = logging.getLogger(__name__)


def pair_lines(posting: JournalPosting) -> List[Dict[str, Any]]:
    """Split a balanced posting into ``source -> destination`` transfers.

    Debits and credits of each currency are matched greedily in line order.
    Raises :class:`UnbalancedPostingError` if any currency does not net out.
    """
    if not posting.is_balanced():
        raise UnbalancedPostingError(posting.posting_id, posting.imbalances())
    splits: List[Dict[str, Any]] = []
    for currency in posting.totals():
        debits = [[line.account, line.amount] for line in posting.lines if line.currency == currency and line.side == Side.DEBIT]
        credits = [[line.account, line.amount] for line in posting.lines if line.currency == currency and line.side == Side.CREDIT]
        d = c = 0
        while d < len(debits) and c < len(credits):
            amount = min(debits[d][1], credits[c][1])
            splits.append(
                {
                    "source_name": credits[c][0],
                    "destination_name": debits[d][0],
                    "currency_code": currency,
                    "amount": str(amount),
                }
            )
            debits[d][1] -= amount
            credits[c][1] -= amount
            if debits[d][1] == Decimal("0"):
                d += 1
            if credits[c][1] == Decimal("0"):
                c += 1
    return splits


class AccountingClient(JsonHttpClient):
    """Posts journal postings to the external accounting system."""

    unavailable_reason = FailureReason.LEDGER_UNAVAILABLE
    not_found_reason = FailureReason.LEDGER_REJECTED
    rejected_reason = FailureReason.LEDGER_REJECTED

    def __init__(self, base_url: str, token: str | None = None, **kwargs: Any) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        super().__init__("accounting", base_url, headers=headers, **kwargs)

    def client_error(self, status: int, payload: Any) -> SettlementError:
        if status == 422 and "duplicate" in str(payload).lower():
            return _DuplicatePosting(FailureReason.LEDGER_REJECTED, str(payload))
        return PermanentError(FailureReason.LEDGER_REJECTED, f"accounting HTTP {status}: {payload}")

    async def post_posting(self, posting: JournalPosting) -> str:
        """Submit ``posting`` and return the external transaction group id."""
        splits = pair_lines(posting)
        body = {
            "error_if_duplicate_hash": True,
            "apply_rules": False,
            "group_title": posting.description,
            "transactions": [
                {
                    "type": "transfer",
                    "date": posting.posted_at.isoformat(),
                    "description": posting.description,
                    "external_id": posting.posting_id,
                    "tags": [posting.event_id],
                    **split,
                }
                for split in splits
            ],
        }
        try:
            response = await self.post("/transactions", body)
        except _DuplicatePosting:
            logger.info("Posting %s already recorded; resolving existing group", posting.posting_id)
            return await self.find_posting(posting.posting_id)
        return str(response["data"]["id"])

    async def find_posting(self, posting_id: str) -> str:
        result = await self.get("/search/transactions", query=f'external_id_is:"{posting_id}"')
        groups = (result or {}).get("data") or []
        if not groups:
            raise PermanentError(FailureReason.LEDGER_REJECTED, f"duplicate {posting_id} not found on lookup")
        return str(groups[0]["id"])


class _DuplicatePosting(PermanentError):
    pass
