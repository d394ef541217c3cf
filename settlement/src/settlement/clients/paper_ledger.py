"""
Paper accounting system for dry-run mode.

Accepts postings in memory and hands back a synthetic reference.  Like the
real accounting API it is idempotent on the posting id and refuses
unbalanced postings.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Dict, List

from ..errors import FailureReason, PermanentError
from ..models import JournalPosting


class PaperLedgerClient:
    """Record postings in memory and return fake transaction group ids."""

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self.postings: Dict[str, JournalPosting] = {}
        self.refs: Dict[str, str] = {}
        self.calls: List[str] = []

    async def post_posting(self, posting: JournalPosting) -> str:
        if self.latency:
            await asyncio.sleep(self.latency)
        self.calls.append(posting.posting_id)
        if not posting.is_balanced():
            raise PermanentError(FailureReason.LEDGER_REJECTED, f"{posting.posting_id} is unbalanced")
        if posting.posting_id not in self.refs:
            self.postings[posting.posting_id] = posting
            self.refs[posting.posting_id] = f"paper-{uuid.uuid4().hex[:12]}"
        return self.refs[posting.posting_id]
